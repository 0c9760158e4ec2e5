from __future__ import annotations

import json
import logging
from typing import Any

import requests

from .ai import ComparisonAnalyzer
from .models import Insight
from .normalize import filter_grounded_insights, format_insight

logger = logging.getLogger(__name__)

MAX_INSIGHTS = 3
DEFAULT_TIMEOUT_SECONDS = 30.0


class InsightRetriever:
    """Turns change descriptions into product psychology insights.

    Reference passages come from a remote retrieval endpoint; the analyzer
    then names up to three principles from those passages. Insights whose
    principle does not appear in the passages are dropped. Any failure on
    this path yields an empty list so the comparison itself still succeeds.
    """

    def __init__(
        self,
        endpoint: str,
        access_token: str,
        analyzer: ComparisonAnalyzer | None,
        model: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.endpoint = endpoint.strip()
        self.access_token = access_token.strip()
        self._analyzer = analyzer
        self.model = model
        self.timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.access_token and self._analyzer is not None)

    def get_insights(self, context: str, max_results: int = MAX_INSIGHTS) -> list[Insight]:
        if not self.is_configured:
            logger.info("Insight retrieval is not configured; skipping")
            return []

        max_results = max(1, min(int(max_results), MAX_INSIGHTS))
        try:
            chunks = self.retrieve_chunks(context, max_results)
            if not chunks:
                logger.info("No relevant psychology insights found")
                return []
            logger.info("Retrieved %d raw documents", len(chunks))
            insights = self.synthesize(chunks, context, max_results)
        except Exception:  # noqa: BLE001
            logger.exception("Error retrieving psychology insights")
            return []

        logger.info("Synthesized %d insights from %d raw chunks", len(insights), len(chunks))
        return insights

    def retrieve_chunks(self, context: str, max_results: int) -> list[str]:
        try:
            response = self._session.post(
                self.endpoint,
                json={"question": context, "numResults": max_results},
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout:
            logger.error("Retrieval request timed out after %.0f seconds", self.timeout_seconds)
            raise
        response.raise_for_status()
        documents = response.json().get("documents") or []
        return [_document_text(document) for document in documents]

    def synthesize(self, chunks: list[str], context: str, max_results: int) -> list[Insight]:
        parsed = self._analyzer.complete_json(
            _build_synthesis_prompt(chunks, context, max_results),
            model=self.model,
        )
        raw_insights = parsed.get("insights")
        if not isinstance(raw_insights, list):
            return []

        formatted: list[Insight] = []
        for entry in raw_insights[:max_results]:
            if not isinstance(entry, dict):
                continue
            try:
                formatted.append(format_insight(entry))
            except ValueError as exc:
                logger.warning("Skipping malformed insight: %s", exc)
        return filter_grounded_insights(formatted, chunks)


def _document_text(document: Any) -> str:
    if isinstance(document, str):
        return document
    if isinstance(document, dict):
        for field_name in ("text", "content"):
            value = document.get(field_name)
            if isinstance(value, str) and value:
                return value
    return json.dumps(document)


def _build_synthesis_prompt(chunks: list[str], context: str, max_results: int) -> str:
    numbered = "\n\n".join(f"[{index}] {chunk}" for index, chunk in enumerate(chunks, start=1))
    return (
        "You are a product psychology expert analyzing screenshot changes.\n\n"
        f"Context of the changes:\n{context}\n\n"
        f"Raw retrieval results (may contain formatting, tables, or noise):\n{numbered}\n\n"
        "Constraints:\n"
        "1. Select principles ONLY from the raw retrieval results above.\n"
        "2. Classify each change as \"positive\" or \"negative\" for user experience.\n"
        "3. Reference specific UI changes from the context.\n"
        f"4. If fewer than {max_results} principles are truly relevant, return fewer.\n"
        "5. Do not reuse the same principle as both positive and negative.\n"
        "6. Prioritize by UX impact.\n\n"
        "Return strict JSON with this shape only:\n"
        "{\"insights\": [{\"principle\": \"exact principle name from the results\", "
        "\"outcome\": \"positive|negative\", \"rationale\": \"1-2 sentences\"}]}\n"
        f"Return at most {max_results} insights. No markdown, no prose outside JSON."
    )
