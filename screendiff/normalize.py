"""Markdown stripping and grounding checks for model-written insight text."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Sequence

from .models import OUTCOMES, Insight

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10

_ESCAPED = re.compile(r"\\([*_`~\[\]()\\])")

# Applied in order on every pass.
_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^#{1,6}\s+(.+)$", re.M), r"\1"),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"\*([^*]+?)\*"), r"\1"),
    (re.compile(r"_([^_]+?)_"), r"\1"),
    (re.compile(r"```[\s\S]*?```"), ""),
    (re.compile(r"`([^`]+?)`"), r"\1"),
    (re.compile(r"!\[([^\]]*?)\]\([^)]+?\)"), r"\1"),
    (re.compile(r"\[([^\]]+?)\]\([^)]+?\)"), r"\1"),
    (re.compile(r"\[([^\]]+?)\]\[[^\]]+?\]"), r"\1"),
    (re.compile(r"~~(.+?)~~"), r"\1"),
    (re.compile(r"<[^>]+>"), ""),
    (re.compile(r"^>\s+(.+)$", re.M), r"\1"),
    (re.compile(r"^[*\-_]{3,}\s*$", re.M), ""),
    (re.compile(r"^\s*[-*+]\s+", re.M), ""),
    (re.compile(r"^\s*\d+\.\s+", re.M), ""),
    (re.compile(r"\s+"), " "),
)

_EDGE_MARKUP = re.compile(r"^[*_~`#>\-+]+|[*_~`]+$")


def strip_markdown(text: Any) -> str:
    """Remove markdown and HTML formatting, leaving plain single-spaced text.

    Each pass unescapes backslash escapes and then applies the removal rules.
    Passes repeat until one changes nothing (at most ``MAX_ITERATIONS``),
    which also unwraps nested constructs and stacked escapes.
    """
    if not text or not isinstance(text, str):
        return ""

    result = text
    previous = None
    iterations = 0
    while result != previous and iterations < MAX_ITERATIONS:
        previous = result
        iterations += 1
        result = _ESCAPED.sub(r"\1", result)
        for pattern, replacement in _RULES:
            result = pattern.sub(replacement, result)
        result = _trim_edges(result)

    return _trim_edges(result)


def _trim_edges(text: str) -> str:
    return _EDGE_MARKUP.sub("", text.strip()).strip()


def format_insight(raw: dict[str, Any]) -> Insight:
    outcome = str(raw.get("outcome", "")).strip().lower()
    if outcome not in OUTCOMES:
        raise ValueError(f"Unknown insight outcome: {outcome}")
    return Insight(
        principle=strip_markdown(raw.get("principle")),
        outcome=outcome,
        rationale=strip_markdown(raw.get("rationale")),
    )


def principle_in_chunks(principle: str, chunks: Iterable[str]) -> bool:
    needle = principle.lower().strip()
    if not needle:
        return False
    return any(needle in chunk.lower() for chunk in chunks)


def filter_grounded_insights(insights: Sequence[Insight], chunks: Sequence[str]) -> list[Insight]:
    grounded: list[Insight] = []
    for insight in insights:
        if principle_in_chunks(insight.principle, chunks):
            grounded.append(insight)
        else:
            logger.warning(
                'Filtered out insight with principle "%s" - not found in retrieved documents',
                insight.principle,
            )
    return grounded
