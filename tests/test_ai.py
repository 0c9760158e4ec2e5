from __future__ import annotations

import json
import unittest

import requests

from screendiff.ai import (
    ComparisonAnalyzer,
    _extract_gemini_text,
    _extract_openai_text,
    _normalize_summary,
    _parse_ai_json,
    _resolve_openai_endpoint,
)
from screendiff.errors import (
    UpstreamBadInputError,
    UpstreamResponseError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    ValidationError,
)


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: str | None = None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _openai_reply(content: str) -> FakeResponse:
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


class ParsingTests(unittest.TestCase):
    def test_parse_ai_json_with_wrapped_text(self) -> None:
        raw = "Here is result:\n{\"changes\": [], \"implication\": \"ok\"}\n"
        parsed = _parse_ai_json(raw)
        self.assertEqual(parsed["implication"], "ok")

    def test_parse_ai_json_rejects_non_objects(self) -> None:
        for raw in ("", "no json here", "[1, 2, 3]"):
            with self.subTest(raw=raw):
                with self.assertRaises(UpstreamResponseError):
                    _parse_ai_json(raw)

    def test_normalize_summary_caps_changes(self) -> None:
        summary = _normalize_summary(
            {"changes": [f"change {i}" for i in range(8)] + ["  "], "implication": " Matters. "},
            continuation=False,
        )
        self.assertEqual(len(summary.changes), 5)
        self.assertEqual(summary.implication, "Matters.")
        self.assertIsNone(summary.strategic_view)

    def test_normalize_summary_reads_strategic_view_for_continuations(self) -> None:
        summary = _normalize_summary(
            {"changes": ["a"], "implication": "b", "strategicView": "Moving upmarket."},
            continuation=True,
        )
        self.assertEqual(summary.strategic_view, "Moving upmarket.")

    def test_normalize_summary_requires_changes_and_implication(self) -> None:
        with self.assertRaises(UpstreamResponseError):
            _normalize_summary({"changes": "a", "implication": "b"}, continuation=False)
        with self.assertRaises(UpstreamResponseError):
            _normalize_summary({"changes": ["a"], "implication": ""}, continuation=False)

    def test_extract_gemini_text(self) -> None:
        data = {"candidates": [{"content": {"parts": [{"text": ""}, {"text": "{\"a\": 1}"}]}}]}
        self.assertEqual(_extract_gemini_text(data), "{\"a\": 1}")
        with self.assertRaises(UpstreamResponseError):
            _extract_gemini_text({"candidates": []})

    def test_extract_text_rejects_wrongly_shaped_entries(self) -> None:
        gemini = [
            {"candidates": ["x"]},
            {"candidates": [{"content": "x"}]},
            {"candidates": [{"content": {"parts": ["x", None]}}]},
        ]
        for data in gemini:
            with self.subTest(data=data):
                with self.assertRaises(UpstreamResponseError):
                    _extract_gemini_text(data)
        for data in ({"choices": ["x"]}, {"choices": [{"message": "x"}]}):
            with self.subTest(data=data):
                with self.assertRaises(UpstreamResponseError):
                    _extract_openai_text(data)

    def test_resolve_openai_endpoint(self) -> None:
        self.assertEqual(_resolve_openai_endpoint("openai", ""), "https://api.openai.com/v1/chat/completions")
        self.assertEqual(_resolve_openai_endpoint("local", ""), "http://localhost:1234/v1/chat/completions")
        self.assertEqual(_resolve_openai_endpoint("openai", " http://proxy/v1 "), "http://proxy/v1")


class AnalyzerTests(unittest.TestCase):
    def test_compare_sends_both_images_and_parses_reply(self) -> None:
        session = FakeSession(_openai_reply(json.dumps({"changes": ["Logo moved"], "implication": "Brand focus."})))
        analyzer = ComparisonAnalyzer(api_key="sk-test", session=session, timeout_seconds=12)

        summary = analyzer.compare("data:image/png;base64,QUFB", "QkJC")

        self.assertEqual(summary.changes, ("Logo moved",))
        self.assertEqual(summary.implication, "Brand focus.")
        call = session.calls[0]
        self.assertEqual(call["url"], "https://api.openai.com/v1/chat/completions")
        self.assertEqual(call["headers"], {"Authorization": "Bearer sk-test"})
        self.assertEqual(call["timeout"], 12.0)
        images = [part["image_url"]["url"] for part in call["json"]["messages"][0]["content"][1:]]
        self.assertEqual(images, ["data:image/png;base64,QUFB", "data:image/jpeg;base64,QkJC"])

    def test_continuation_prompt_carries_previous_context(self) -> None:
        reply = {"changes": ["Price dropped"], "implication": "Cheaper.", "strategicView": "Competing on price."}
        session = FakeSession(_openai_reply(json.dumps(reply)))
        analyzer = ComparisonAnalyzer(api_key="sk-test", session=session)

        summary = analyzer.compare_continuation("QUFB", "QkJC", "Previously: header turned blue")

        self.assertEqual(summary.strategic_view, "Competing on price.")
        prompt = session.calls[0]["json"]["messages"][0]["content"][0]["text"]
        self.assertIn("Previously: header turned blue", prompt)

    def test_gemini_uses_api_key_header(self) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": "{\"changes\": [], \"implication\": \"x\"}"}]}}]}
        session = FakeSession(FakeResponse(200, body))
        analyzer = ComparisonAnalyzer(provider="gemini", api_key="g-key", model="gemini-2.0-flash", session=session)

        analyzer.compare("QUFB", "QkJC")

        call = session.calls[0]
        self.assertIn("gemini-2.0-flash:generateContent", call["url"])
        self.assertEqual(call["headers"], {"x-goog-api-key": "g-key"})

    def test_missing_api_key_is_rejected_before_request(self) -> None:
        session = FakeSession(_openai_reply("{}"))
        with self.assertRaises(ValidationError):
            ComparisonAnalyzer(api_key="  ", session=session).compare("QUFB", "QkJC")
        self.assertEqual(session.calls, [])

    def test_local_provider_needs_no_key(self) -> None:
        session = FakeSession(_openai_reply("{\"changes\": [], \"implication\": \"ok\"}"))
        ComparisonAnalyzer(provider="local", session=session).compare("QUFB", "QkJC")
        self.assertEqual(session.calls[0]["headers"], {})

    def test_unknown_provider(self) -> None:
        with self.assertRaises(ValueError):
            ComparisonAnalyzer(provider="anthropic")

    def test_transport_errors_are_classified(self) -> None:
        cases = [
            (requests.Timeout("slow"), UpstreamTimeoutError),
            (requests.ConnectionError("down"), UpstreamUnavailableError),
            (FakeResponse(429, {"error": "rate"}), UpstreamUnavailableError),
            (FakeResponse(503, {"error": "busy"}), UpstreamUnavailableError),
            (FakeResponse(400, {"error": "bad image"}), UpstreamBadInputError),
            (FakeResponse(200, None, text="<html>"), UpstreamResponseError),
            (FakeResponse(200, ["not", "a", "dict"]), UpstreamResponseError),
            (_openai_reply("not json at all"), UpstreamResponseError),
            (FakeResponse(200, {"choices": [None]}), UpstreamResponseError),
        ]
        for outcome, expected in cases:
            with self.subTest(expected=expected.__name__, outcome=outcome):
                analyzer = ComparisonAnalyzer(api_key="sk-test", session=FakeSession(outcome))
                with self.assertRaises(expected):
                    analyzer.compare("QUFB", "QkJC")


if __name__ == "__main__":
    unittest.main()
