from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping

from .errors import StorageFullError, ValidationError
from .imaging import ImageCompressor, decoded_size, split_data_uri
from .models import (
    COMPARISON_PREFIX,
    FEEDBACK_VALUES,
    TIMELINE_PREFIX,
    Comparison,
    Report,
    Screenshot,
    Timeline,
    comparison_key,
)
from .storage import QuotaExceededError, QuotaStorage, parse_timestamp

logger = logging.getLogger(__name__)

TIMELINE_IMAGE_TARGET_KB = 400


def now_iso() -> str:
    return datetime.now().astimezone().isoformat()


class TimelineManager:
    def __init__(
        self,
        storage: QuotaStorage,
        compressor: ImageCompressor,
        clock: Callable[[], str] = now_iso,
        image_target_kb: int = TIMELINE_IMAGE_TARGET_KB,
    ):
        self._storage = storage
        self._compressor = compressor
        self._clock = clock
        self._image_target_kb = image_target_kb

    def create_from_comparison(self, comparison: Comparison, title: str | None = None) -> Timeline:
        """Build an unsaved two-screenshot timeline from a comparison."""
        if (
            not comparison.id
            or comparison.image_a is None
            or comparison.image_b is None
            or not comparison.image_a.data
            or not comparison.image_b.data
            or not (comparison.changes or comparison.implication)
        ):
            raise ValidationError("Invalid comparison data: missing required properties")

        logger.info("Creating timeline from comparison %s", comparison.id)
        now = self._clock()
        first = self._build_screenshot(
            screenshot_id=f"screenshot-{comparison.id}-a",
            name=comparison.image_a.name,
            image_data=comparison.image_a.data,
            captured_at=comparison.created_at,
            sequence_index=0,
        )
        second = self._build_screenshot(
            screenshot_id=f"screenshot-{comparison.id}-b",
            name=comparison.image_b.name,
            image_data=comparison.image_b.data,
            captured_at=comparison.created_at,
            sequence_index=1,
        )
        report = Report(
            id=f"report-{comparison.id}",
            kind="initial",
            from_screenshot_id=first.id,
            to_screenshot_id=second.id,
            changes=tuple(comparison.changes),
            implication=comparison.implication,
            insights=comparison.insights,
            created_at=comparison.created_at,
        )
        return Timeline(
            id=f"{TIMELINE_PREFIX}{uuid.uuid4()}",
            title=title,
            screenshots=[first, second],
            reports=[report],
            feedback={report.id: comparison.feedback} if comparison.feedback else {},
            created_at=now,
            updated_at=now,
        )

    def save(self, timeline: Timeline) -> None:
        now = self._clock()
        if parse_timestamp(now) < parse_timestamp(timeline.created_at):
            now = timeline.created_at
        timeline.updated_at = now
        logger.info("Saving timeline %s", timeline.id)
        self._write(timeline.id, timeline.to_dict())

    def get(self, timeline_id: str) -> Timeline | None:
        data = self._storage.read_json(timeline_id)
        if data is None:
            return None
        try:
            return Timeline.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Stored record %s is not a valid timeline: %s", timeline_id, exc)
            return None

    def list_all(self) -> list[Timeline]:
        timelines = [self.get(key) for key in self._storage.keys(TIMELINE_PREFIX)]
        return sorted(
            (timeline for timeline in timelines if timeline is not None),
            key=lambda timeline: parse_timestamp(timeline.updated_at),
            reverse=True,
        )

    def list_all_comparisons(self) -> list[Comparison]:
        comparisons = [self.get_comparison(key) for key in self._storage.keys(COMPARISON_PREFIX)]
        return sorted(
            (comparison for comparison in comparisons if comparison is not None),
            key=lambda comparison: parse_timestamp(comparison.created_at),
            reverse=True,
        )

    def list_all_items(self) -> list[Timeline | Comparison]:
        items: list[Timeline | Comparison] = [*self.list_all(), *self.list_all_comparisons()]
        return sorted(items, key=_last_touched, reverse=True)

    def add_screenshot(
        self,
        timeline_id: str,
        raw: Mapping[str, Any],
        report: Report | None = None,
    ) -> Timeline | None:
        """Compress ``raw["data"]`` and append it as the next screenshot.

        Returns ``None`` without touching storage when the timeline does not
        exist. When ``report`` is given it is appended in the same write, so
        the screenshot and its report are stored together or not at all.
        """
        timeline = self.get(timeline_id)
        if timeline is None:
            return None

        image_data = raw.get("data")
        if not isinstance(image_data, str) or not image_data:
            raise ValidationError("Invalid screenshot data")

        screenshot = self._build_screenshot(
            screenshot_id=str(raw.get("id") or f"screenshot-{uuid.uuid4()}"),
            name=str(raw.get("name") or ""),
            image_data=image_data,
            captured_at=self._clock(),
            sequence_index=len(timeline.screenshots),
        )
        timeline.screenshots.append(screenshot)
        if report is not None:
            _check_report_links(timeline, report)
            timeline.reports.append(report)
        self.save(timeline)
        return timeline

    def append_report(self, timeline_id: str, report: Report) -> Timeline | None:
        timeline = self.get(timeline_id)
        if timeline is None:
            return None

        _check_report_links(timeline, report)
        timeline.reports.append(report)
        self.save(timeline)
        return timeline

    def record_feedback(self, timeline_id: str, report_id: str, value: str) -> Timeline | None:
        _check_feedback(value)
        timeline = self.get(timeline_id)
        if timeline is None or timeline.find_report(report_id) is None:
            return None
        timeline.feedback[report_id] = value
        self.save(timeline)
        return timeline

    def convert_comparison_to_timeline(self, comparison_id: str, title: str | None = None) -> Timeline | None:
        comparison = self.get_comparison(comparison_id)
        if comparison is None:
            logger.warning("Comparison not found for id %s", comparison_id)
            return None
        timeline = self.create_from_comparison(comparison, title)
        self.save(timeline)
        return timeline

    def delete(self, timeline_id: str) -> bool:
        return self._storage.remove(timeline_id)

    def save_comparison(self, comparison: Comparison) -> None:
        logger.info("Saving comparison %s", comparison.id)
        self._write(comparison.storage_key, comparison.to_dict())

    def get_comparison(self, comparison_id: str) -> Comparison | None:
        key = comparison_key(comparison_id)
        data = self._storage.read_json(key)
        if data is None:
            return None
        try:
            return Comparison.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Stored record %s is not a valid comparison: %s", key, exc)
            return None

    def record_comparison_feedback(self, comparison_id: str, value: str) -> Comparison | None:
        _check_feedback(value)
        comparison = self.get_comparison(comparison_id)
        if comparison is None:
            return None
        comparison.feedback = value
        self.save_comparison(comparison)
        return comparison

    def delete_comparison(self, comparison_id: str) -> bool:
        return self._storage.remove(comparison_key(comparison_id))

    def storage_summary(self) -> dict[str, int]:
        return self._storage.summary()

    def _build_screenshot(
        self,
        screenshot_id: str,
        name: str,
        image_data: str,
        captured_at: str,
        sequence_index: int,
    ) -> Screenshot:
        compressed = self._compressor.compress(image_data, self._image_target_kb)
        mime_type, payload = split_data_uri(compressed)
        return Screenshot(
            id=screenshot_id,
            name=name,
            data=payload,
            mime_type=mime_type or "image/jpeg",
            byte_size=decoded_size(compressed),
            captured_at=captured_at,
            sequence_index=sequence_index,
        )

    def _write(self, key: str, record: dict[str, Any]) -> None:
        try:
            self._storage.write(key, json.dumps(record))
        except QuotaExceededError as exc:
            raise StorageFullError() from exc


def _check_feedback(value: str) -> None:
    if value not in FEEDBACK_VALUES:
        raise ValidationError(f"Feedback must be one of: {', '.join(FEEDBACK_VALUES)}")


def _last_touched(item: Timeline | Comparison):
    if isinstance(item, Timeline):
        return parse_timestamp(item.updated_at)
    return parse_timestamp(item.created_at)


def _check_report_links(timeline: Timeline, report: Report) -> None:
    known = timeline.screenshot_ids()
    if report.to_screenshot_id not in known:
        raise ValidationError(f"Report target {report.to_screenshot_id} is not part of this timeline.")
    if report.from_screenshot_id is not None and report.from_screenshot_id not in known:
        raise ValidationError(f"Report source {report.from_screenshot_id} is not part of this timeline.")
