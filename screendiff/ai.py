from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import requests

from .errors import (
    UpstreamBadInputError,
    UpstreamResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)
from .imaging import split_data_uri

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "local", "gemini")
MAX_CHANGES = 5
DEFAULT_TIMEOUT_SECONDS = 45.0


@dataclass(frozen=True)
class ComparisonSummary:
    changes: tuple[str, ...]
    implication: str
    strategic_view: str | None = None


class ComparisonAnalyzer:
    """Asks a hosted vision model what changed between screenshots.

    Every call is a single attempt bounded by ``timeout_seconds``; there are
    no retries. Images are passed as data URIs.
    """

    def __init__(
        self,
        provider: str = "openai",
        api_key: str = "",
        model: str = "gpt-4o",
        endpoint: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        if provider not in PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")
        self.provider = provider
        self.api_key = api_key.strip()
        self.model = model.strip()
        self.endpoint = endpoint.strip()
        self.timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()

    def compare(self, image_a: str, image_b: str) -> ComparisonSummary:
        parsed = self.complete_json(_build_compare_prompt(), images=[image_a, image_b])
        return _normalize_summary(parsed, continuation=False)

    def compare_continuation(self, previous_image: str, image: str, previous_context: str) -> ComparisonSummary:
        parsed = self.complete_json(
            _build_continuation_prompt(previous_context),
            images=[previous_image, image],
        )
        return _normalize_summary(parsed, continuation=True)

    def complete_json(
        self,
        prompt: str,
        images: Sequence[str] = (),
        model: str | None = None,
    ) -> dict[str, Any]:
        model = (model or self.model).strip()
        if not model:
            raise ValidationError("Model is required.")
        if self.provider in {"gemini", "openai"} and not self.api_key:
            raise ValidationError("API key is required for this provider.")

        started = time.monotonic()
        if self.provider == "gemini":
            parsed = self._call_gemini_json(model, prompt, images)
        else:
            parsed = self._call_openai_style_json(model, prompt, images)
        logger.info("AI analysis completed in %.2f seconds", time.monotonic() - started)
        return parsed

    def _call_gemini_json(self, model: str, prompt: str, images: Sequence[str]) -> dict[str, Any]:
        endpoint = (
            self.endpoint
            or f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
        )
        parts: list[dict[str, Any]] = [{"text": prompt}]
        for image in images:
            mime_type, payload = split_data_uri(image)
            parts.append({"inline_data": {"mime_type": mime_type or "image/jpeg", "data": payload}})

        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": 0.2, "responseMimeType": "application/json"},
        }
        data = self._post_json(endpoint, payload, headers={"x-goog-api-key": self.api_key})
        return _parse_ai_json(_extract_gemini_text(data))

    def _call_openai_style_json(self, model: str, prompt: str, images: Sequence[str]) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image in images:
            mime_type, payload = split_data_uri(image)
            data_uri = f"data:{mime_type or 'image/jpeg'};base64,{payload}"
            content.append({"type": "image_url", "image_url": {"url": data_uri}})

        payload = {
            "model": model,
            "temperature": 0.2,
            "messages": [{"role": "user", "content": content}],
            "response_format": {"type": "json_object"},
        }
        data = self._post_json(_resolve_openai_endpoint(self.provider, self.endpoint), payload, _auth_headers(self.api_key))
        return _parse_ai_json(_extract_openai_text(data))

    def _post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=self.timeout_seconds)
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                f"AI analysis timed out after {self.timeout_seconds:.0f} seconds"
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"AI request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailableError(f"AI request failed ({response.status_code}): {response.text}")
        if response.status_code >= 400:
            raise UpstreamBadInputError(f"AI request rejected ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamResponseError("AI provider returned non-JSON response.") from exc
        if not isinstance(data, dict):
            raise UpstreamResponseError("AI provider returned an unexpected payload.")
        return data


def _build_compare_prompt() -> str:
    return (
        "Compare these two screenshots and identify the key differences. Focus on:\n"
        "- Layout changes\n"
        "- Content differences (text, images, buttons)\n"
        "- Color or styling changes\n"
        "- New or removed elements\n"
        "- Functionality changes\n"
        "Return strict JSON with this shape only:\n"
        "{\"changes\": [\"...\"], \"implication\": \"...\"}\n"
        "Rules:\n"
        "- changes: up to 5 concise bullet points describing the changes.\n"
        "- implication: one line explaining why these changes might matter from a product perspective.\n"
        "- No markdown, no prose outside JSON."
    )


def _build_continuation_prompt(previous_context: str) -> str:
    return (
        "This is a continuation comparison in a timeline series.\n"
        f"Previous context: {previous_context.strip() or '(none)'}\n"
        "Compare these two screenshots and identify what's NEW in the latest version. Focus on:\n"
        "- What changed since the previous screenshot\n"
        "- How this continues or diverges from the previous progression\n"
        "- Layout, content, color or styling changes\n"
        "- New or removed elements and functionality changes\n"
        "Return strict JSON with this shape only:\n"
        "{\"changes\": [\"...\"], \"implication\": \"...\", \"strategicView\": \"...\"}\n"
        "Rules:\n"
        "- changes: up to 5 concise bullet points describing the NEW changes.\n"
        "- implication: one line explaining why these changes might matter from a product perspective.\n"
        "- strategicView: how this fits into the overall timeline progression and strategic direction.\n"
        "- No markdown, no prose outside JSON."
    )


def _resolve_openai_endpoint(provider: str, endpoint: str) -> str:
    custom = endpoint.strip()
    if custom:
        return custom
    if provider == "local":
        return "http://localhost:1234/v1/chat/completions"
    return "https://api.openai.com/v1/chat/completions"


def _auth_headers(api_key: str) -> dict[str, str]:
    if not api_key.strip():
        return {}
    return {"Authorization": f"Bearer {api_key.strip()}"}


def _extract_gemini_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        raise UpstreamResponseError("Gemini response missing candidates.")
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    for part in parts if isinstance(parts, list) else ():
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            return text
    raise UpstreamResponseError("Gemini response did not include text output.")


def _extract_openai_text(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise UpstreamResponseError("OpenAI-style response missing choices.")
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content.strip():
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for entry in content:
            if isinstance(entry, dict):
                text = entry.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        joined = "\n".join(chunks).strip()
        if joined:
            return joined
    raise UpstreamResponseError("OpenAI-style response did not include text content.")


def _parse_ai_json(text: str) -> dict[str, Any]:
    trimmed = text.strip()
    if not trimmed:
        raise UpstreamResponseError("AI response was empty.")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start == -1 or end == -1 or start >= end:
            raise UpstreamResponseError("AI response did not contain valid JSON.")
        try:
            parsed = json.loads(trimmed[start : end + 1])
        except json.JSONDecodeError as exc:
            raise UpstreamResponseError("AI response contained invalid JSON.") from exc
    if not isinstance(parsed, dict):
        raise UpstreamResponseError("AI response was not a JSON object.")
    return parsed


def _normalize_summary(parsed: dict[str, Any], continuation: bool) -> ComparisonSummary:
    raw_changes = parsed.get("changes")
    if not isinstance(raw_changes, list):
        raise UpstreamResponseError("AI response did not include a list of changes.")
    changes = tuple(str(change).strip() for change in raw_changes if str(change).strip())[:MAX_CHANGES]
    implication = str(parsed.get("implication") or "").strip()
    if not implication:
        raise UpstreamResponseError("AI response did not include an implication.")

    strategic_view = None
    if continuation:
        strategic_view = str(parsed.get("strategicView") or parsed.get("strategic_view") or "").strip() or None
    return ComparisonSummary(changes=changes, implication=implication, strategic_view=strategic_view)
