from __future__ import annotations

import unittest

from screendiff.models import Insight
from screendiff.normalize import (
    filter_grounded_insights,
    format_insight,
    principle_in_chunks,
    strip_markdown,
)

CASES = [
    ("**bold**", "bold"),
    ("*italic*", "italic"),
    ("`code`", "code"),
    ("[text](https://example.com)", "text"),
    ("![hero banner](https://example.com/a.png)", "hero banner"),
    ("~~strikethrough~~", "strikethrough"),
    ("***nested***", "nested"),
    ("**bold with *italic* inside**", "bold with italic inside"),
    ("***bold italic*** and **just bold**", "bold italic and just bold"),
    ("This \\* is not italic", "This * is not italic"),
    ("var\\_name should not be italic", "var_name should not be italic"),
    ("1\\\\(\\-", "1(\\-"),
    ("**Scarcity**: The *countdown timer* creates urgency", "Scarcity: The countdown timer creates urgency"),
    ('**Social Proof** (e.g., "5,000 users")', 'Social Proof (e.g., "5,000 users")'),
    ("- Item 1\n- Item 2", "Item 1 Item 2"),
    ("1. First\n2. Second", "First Second"),
    ("## Heading\nContent", "Heading Content"),
    ("```javascript\nconst x = 1;\n```", ""),
    ("> This is a quote", "This is a quote"),
    ("above\n---\nbelow", "above below"),
    ("", ""),
    ("   \n\t  ", ""),
    ("**unmatched", "unmatched"),
    ("text   with    spaces", "text with spaces"),
    ("Text with <strong>HTML</strong>", "Text with HTML"),
]


class StripMarkdownTests(unittest.TestCase):
    def test_known_inputs(self) -> None:
        for raw, expected in CASES:
            with self.subTest(raw=raw):
                self.assertEqual(strip_markdown(raw), expected)

    def test_is_idempotent(self) -> None:
        inputs = [raw for raw, _ in CASES] + [
            "**a*b**c*",
            "**bold *italic** mixed*",
            "#> # Title",
            "x *",
            "__init__ and *args*",
            "1\\\\(\\-",
            "\\\\\\*x\\\\*",
            "a\\\\\\\\b \\\\\\\\\\[y\\]",
            "\\\\\\\\\\\\\\\\`",
        ]
        for raw in inputs:
            with self.subTest(raw=raw):
                once = strip_markdown(raw)
                self.assertEqual(strip_markdown(once), once)

    def test_adversarial_nesting_terminates(self) -> None:
        self.assertEqual(strip_markdown("**a*b**c*"), "abc")
        deep = "*" * 200 + "x" + "_" * 200
        self.assertIsInstance(strip_markdown(deep), str)

    def test_non_string_input(self) -> None:
        self.assertEqual(strip_markdown(None), "")
        self.assertEqual(strip_markdown(42), "")


class GroundingTests(unittest.TestCase):
    CHUNKS = [
        "| Principle | Summary |\n| Social Proof | People follow the crowd |",
        "The scarcity effect makes limited items feel more valuable.",
    ]

    def test_principle_match_is_case_insensitive_substring(self) -> None:
        self.assertTrue(principle_in_chunks("social proof", self.CHUNKS))
        self.assertTrue(principle_in_chunks("  Scarcity ", self.CHUNKS))
        self.assertFalse(principle_in_chunks("Anchoring", self.CHUNKS))
        self.assertFalse(principle_in_chunks("", self.CHUNKS))

    def test_ungrounded_insights_are_dropped(self) -> None:
        insights = [
            format_insight({"principle": "**Social Proof**", "outcome": "positive", "rationale": "Adds *reviews*."}),
            format_insight({"principle": "Anchoring", "outcome": "negative", "rationale": "Price moved."}),
        ]
        with self.assertLogs("screendiff.normalize", level="WARNING") as logs:
            grounded = filter_grounded_insights(insights, self.CHUNKS)
        self.assertEqual(
            grounded,
            [Insight(principle="Social Proof", outcome="positive", rationale="Adds reviews.")],
        )
        self.assertIn("Anchoring", logs.output[0])

    def test_format_insight_rejects_unknown_outcome(self) -> None:
        with self.assertRaises(ValueError):
            format_insight({"principle": "Framing", "outcome": "neutral", "rationale": "x"})


if __name__ == "__main__":
    unittest.main()
