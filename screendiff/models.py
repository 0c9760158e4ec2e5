from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

TIMELINE_PREFIX = "timeline-"
COMPARISON_PREFIX = "comparison-"

REPORT_KINDS = ("initial", "continuation", "summary")
OUTCOMES = ("positive", "negative")
FEEDBACK_VALUES = ("useful", "not-useful")


@dataclass(frozen=True)
class Insight:
    principle: str
    outcome: str
    rationale: str

    def to_dict(self) -> dict[str, str]:
        return {"principle": self.principle, "outcome": self.outcome, "rationale": self.rationale}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Insight:
        data = _mapping(data, "insight")
        outcome = str(data["outcome"])
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown insight outcome: {outcome}")
        return cls(
            principle=str(data["principle"]),
            outcome=outcome,
            rationale=str(data["rationale"]),
        )


@dataclass(frozen=True)
class ImagePayload:
    """An uploaded image as carried by a comparison record."""

    name: str
    data: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "data": self.data, "mime_type": self.mime_type, "size": self.size}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImagePayload:
        data = _mapping(data, "image")
        return cls(
            name=str(data.get("name", "")),
            data=str(data["data"]),
            mime_type=str(data.get("mime_type", "image/jpeg")),
            size=int(data.get("size", 0)),
        )


@dataclass(frozen=True)
class Screenshot:
    id: str
    name: str
    data: str
    mime_type: str
    byte_size: int
    captured_at: str
    sequence_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "mime_type": self.mime_type,
            "byte_size": self.byte_size,
            "captured_at": self.captured_at,
            "sequence_index": self.sequence_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Screenshot:
        data = _mapping(data, "screenshot")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            data=str(data["data"]),
            mime_type=str(data.get("mime_type", "image/jpeg")),
            byte_size=int(data.get("byte_size", 0)),
            captured_at=str(data["captured_at"]),
            sequence_index=int(data["sequence_index"]),
        )


@dataclass(frozen=True)
class Report:
    id: str
    kind: str
    to_screenshot_id: str
    changes: tuple[str, ...]
    implication: str
    created_at: str
    from_screenshot_id: str | None = None
    strategic_view: str | None = None
    insights: tuple[Insight, ...] | None = None

    def __post_init__(self) -> None:
        if self.kind not in REPORT_KINDS:
            raise ValueError(f"Unknown report kind: {self.kind}")
        if self.kind != "initial" and not self.from_screenshot_id:
            raise ValueError("Only initial reports may omit from_screenshot_id.")
        if len(self.changes) > 5:
            raise ValueError("A report carries at most 5 changes.")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "from_screenshot_id": self.from_screenshot_id,
            "to_screenshot_id": self.to_screenshot_id,
            "changes": list(self.changes),
            "implication": self.implication,
            "created_at": self.created_at,
        }
        if self.strategic_view is not None:
            data["strategic_view"] = self.strategic_view
        if self.insights is not None:
            data["insights"] = [insight.to_dict() for insight in self.insights]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Report:
        data = _mapping(data, "report")
        insights = data.get("insights")
        return cls(
            id=str(data["id"]),
            kind=str(data["kind"]),
            from_screenshot_id=data.get("from_screenshot_id"),
            to_screenshot_id=str(data["to_screenshot_id"]),
            changes=tuple(str(change) for change in _sequence(data.get("changes"), "changes")),
            implication=str(data.get("implication", "")),
            strategic_view=data.get("strategic_view"),
            insights=(
                None
                if insights is None
                else tuple(Insight.from_dict(entry) for entry in _sequence(insights, "insights"))
            ),
            created_at=str(data["created_at"]),
        )


@dataclass
class Timeline:
    id: str
    created_at: str
    updated_at: str
    title: str | None = None
    screenshots: list[Screenshot] = field(default_factory=list)
    reports: list[Report] = field(default_factory=list)
    feedback: dict[str, str] = field(default_factory=dict)

    kind = "timeline"

    def screenshot_ids(self) -> set[str]:
        return {shot.id for shot in self.screenshots}

    def find_report(self, report_id: str) -> Report | None:
        for report in self.reports:
            if report.id == report_id:
                return report
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "title": self.title,
            "screenshots": [shot.to_dict() for shot in self.screenshots],
            "reports": [report.to_dict() for report in self.reports],
            "feedback": dict(self.feedback),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Timeline:
        if data.get("kind") != cls.kind:
            raise ValueError("Record is not a timeline.")
        screenshots = data.get("screenshots")
        if not isinstance(screenshots, list):
            raise ValueError("Timeline record has no screenshots array.")
        return cls(
            id=str(data["id"]),
            title=data.get("title"),
            screenshots=sorted(
                (Screenshot.from_dict(entry) for entry in screenshots),
                key=lambda shot: shot.sequence_index,
            ),
            reports=[Report.from_dict(entry) for entry in _sequence(data.get("reports"), "reports")],
            feedback={str(k): str(v) for k, v in _mapping(data.get("feedback") or {}, "feedback").items()},
            created_at=str(data["created_at"]),
            updated_at=str(data["updated_at"]),
        )


@dataclass
class Comparison:
    id: str
    image_a: ImagePayload
    image_b: ImagePayload
    changes: tuple[str, ...]
    implication: str
    created_at: str
    insights: tuple[Insight, ...] | None = None
    feedback: str | None = None

    kind = "comparison"

    @property
    def storage_key(self) -> str:
        return comparison_key(self.id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "id": self.id,
            "image_a": self.image_a.to_dict(),
            "image_b": self.image_b.to_dict(),
            "changes": list(self.changes),
            "implication": self.implication,
            "created_at": self.created_at,
            "feedback": self.feedback,
        }
        if self.insights is not None:
            data["insights"] = [insight.to_dict() for insight in self.insights]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Comparison:
        if data.get("kind") != cls.kind:
            raise ValueError("Record is not a comparison.")
        insights = data.get("insights")
        return cls(
            id=str(data["id"]),
            image_a=ImagePayload.from_dict(data["image_a"]),
            image_b=ImagePayload.from_dict(data["image_b"]),
            changes=tuple(str(change) for change in _sequence(data.get("changes"), "changes")),
            implication=str(data.get("implication", "")),
            insights=(
                None
                if insights is None
                else tuple(Insight.from_dict(entry) for entry in _sequence(insights, "insights"))
            ),
            created_at=str(data["created_at"]),
            feedback=data.get("feedback"),
        )


def comparison_key(comparison_id: str) -> str:
    if comparison_id.startswith(COMPARISON_PREFIX):
        return comparison_id
    return f"{COMPARISON_PREFIX}{comparison_id}"


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be an object.")
    return value


def _sequence(value: Any, name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be an array.")
    return value
