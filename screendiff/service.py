from __future__ import annotations

import logging
import re
import threading
import uuid
from typing import Callable

from .ai import ComparisonAnalyzer, ComparisonSummary
from .errors import OperationCancelled, ValidationError
from .imaging import decoded_size, split_data_uri
from .logging_setup import log_context
from .models import Comparison, ImagePayload, Insight, Report, Timeline
from .retrieval import InsightRetriever
from .timeline import TimelineManager, now_iso

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
_DATA_URI = re.compile(r"^data:[\w/+.-]+;base64,")


class ScreenDiffService:
    """Runs the compare and add-screenshot flows end to end."""

    def __init__(
        self,
        manager: TimelineManager,
        analyzer: ComparisonAnalyzer,
        retriever: InsightRetriever | None = None,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        clock: Callable[[], str] = now_iso,
    ):
        self.manager = manager
        self._analyzer = analyzer
        self._retriever = retriever
        self._max_upload_bytes = int(max_upload_bytes)
        self._clock = clock

    def compare(self, image_a: ImagePayload | None, image_b: ImagePayload | None) -> Comparison:
        if image_a is None or image_b is None or not image_a.data or not image_b.data:
            raise ValidationError("Both images are required")

        with log_context("compare"):
            uri_a = self._validated_data_uri(image_a)
            uri_b = self._validated_data_uri(image_b)
            summary = self._analyzer.compare(uri_a, uri_b)
            insights = self._insights(_change_context(summary))

            comparison = Comparison(
                id=uuid.uuid4().hex,
                image_a=_stored_image(image_a, uri_a),
                image_b=_stored_image(image_b, uri_b),
                changes=summary.changes,
                implication=summary.implication,
                insights=tuple(insights) if insights else None,
                created_at=self._clock(),
            )
            self.manager.save_comparison(comparison)
            logger.info("Comparison %s stored with %d changes", comparison.id, len(comparison.changes))
            return comparison

    def add_screenshot(
        self,
        timeline_id: str,
        upload: ImagePayload,
        cancel_event: threading.Event | None = None,
    ) -> tuple[Timeline, Report] | None:
        """Compare ``upload`` with the newest screenshot and append both.

        Returns ``None`` if the timeline does not exist. ``cancel_event`` is
        checked between steps; once set, :class:`OperationCancelled` is raised.
        The new screenshot and its report are stored in a single write.
        """
        with log_context("add-screenshot"):
            timeline = self.manager.get(timeline_id)
            if timeline is None:
                return None
            if not timeline.screenshots:
                raise ValidationError("Previous image data is required for comparison")
            if not isinstance(upload.data, str) or not upload.data:
                raise ValidationError("Image data must be a non-empty string")

            image_uri = self._validated_data_uri(upload)
            previous = timeline.screenshots[-1]
            previous_uri = f"data:{previous.mime_type};base64,{previous.data}"
            previous_context = _previous_context(timeline)

            _raise_if_cancelled(cancel_event)
            summary = self._analyzer.compare_continuation(previous_uri, image_uri, previous_context)
            _raise_if_cancelled(cancel_event)
            insights = self._insights(
                f"Timeline continuation. Previous context: {previous_context}. {_change_context(summary)}"
            )
            _begin_commit(cancel_event)

            screenshot_id = f"screenshot-{uuid.uuid4()}"
            report = Report(
                id=f"report-{uuid.uuid4()}",
                kind="continuation",
                from_screenshot_id=previous.id,
                to_screenshot_id=screenshot_id,
                changes=summary.changes,
                implication=summary.implication,
                strategic_view=summary.strategic_view,
                insights=tuple(insights) if insights else None,
                created_at=self._clock(),
            )
            updated = self.manager.add_screenshot(
                timeline_id,
                {"id": screenshot_id, "name": upload.name, "data": image_uri},
                report=report,
            )
            if updated is None:
                return None
            return (updated, report)

    def start_add_screenshot(self, timeline_id: str, upload: ImagePayload) -> AddScreenshotJob:
        job = AddScreenshotJob(self, timeline_id, upload)
        job.start()
        return job

    def _validated_data_uri(self, upload: ImagePayload) -> str:
        data = upload.data.strip()
        if _DATA_URI.match(data):
            uri = data
        elif "," in data:
            raise ValidationError(
                "Invalid image format. Expected base64 data URL format: data:image/[type];base64,[data]"
            )
        else:
            uri = f"data:{upload.mime_type or 'image/jpeg'};base64,{data}"

        if decoded_size(uri) > self._max_upload_bytes:
            limit_mb = self._max_upload_bytes // (1024 * 1024)
            raise ValidationError(f"Image file is too large. Please use an image under {limit_mb}MB.")
        return uri

    def _insights(self, context: str) -> list[Insight]:
        if self._retriever is None:
            return []
        try:
            return self._retriever.get_insights(context)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to retrieve psychology insights")
            return []


class CancelToken(threading.Event):
    """A cancel flag that stops accepting cancellation once storage begins.

    ``cancel()`` returns ``False`` when the flow has already committed, so a
    successful cancel guarantees nothing from the flow is persisted.
    """

    def __init__(self):
        super().__init__()
        self._guard = threading.Lock()
        self._committed = False

    def cancel(self) -> bool:
        with self._guard:
            if self._committed:
                return False
            self.set()
            return True

    def commit(self) -> None:
        with self._guard:
            if self.is_set():
                raise OperationCancelled()
            self._committed = True


class AddScreenshotJob:
    """Runs :meth:`ScreenDiffService.add_screenshot` on a worker thread.

    A successful :meth:`cancel` releases :meth:`wait` straight away with
    :class:`OperationCancelled`. An AI or retrieval request already in flight
    is abandoned rather than interrupted: it runs out on the daemon thread,
    bounded by its own timeout, and its result is discarded.
    """

    def __init__(self, service: ScreenDiffService, timeline_id: str, upload: ImagePayload):
        self._service = service
        self._timeline_id = timeline_id
        self._upload = upload
        self._token = CancelToken()
        self._done = threading.Event()
        self._wakeup = threading.Event()
        self._thread = threading.Thread(target=self._run, name="screendiff-add-screenshot", daemon=True)
        self._result: tuple[Timeline, Report] | None = None
        self._error: BaseException | None = None

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._token.is_set()

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> bool:
        """Cancel the job; ``False`` means it already started storing its result."""
        if not self._token.cancel():
            return False
        self._wakeup.set()
        return True

    def wait(self, timeout_seconds: float | None = None) -> tuple[Timeline, Report] | None:
        if not self._wakeup.wait(timeout_seconds):
            raise TimeoutError("Adding the screenshot is still in progress.")
        if not self._done.is_set():
            raise OperationCancelled()
        if self._error is not None:
            raise self._error
        return self._result

    def _run(self) -> None:
        try:
            self._result = self._service.add_screenshot(self._timeline_id, self._upload, self._token)
        except Exception as exc:  # noqa: BLE001
            self._error = exc
        finally:
            self._done.set()
            self._wakeup.set()


def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled()


def _begin_commit(cancel_event: threading.Event | None) -> None:
    if isinstance(cancel_event, CancelToken):
        cancel_event.commit()
    else:
        _raise_if_cancelled(cancel_event)


def _stored_image(upload: ImagePayload, uri: str) -> ImagePayload:
    mime_type, payload = split_data_uri(uri)
    return ImagePayload(
        name=upload.name,
        data=payload,
        mime_type=mime_type or upload.mime_type,
        size=upload.size or decoded_size(uri),
    )


def _change_context(summary: ComparisonSummary) -> str:
    parts = [f"New changes: {'; '.join(summary.changes)}.", f"Implication: {summary.implication}."]
    if summary.strategic_view:
        parts.append(f"Strategic view: {summary.strategic_view}.")
    return " ".join(parts)


def _previous_context(timeline: Timeline) -> str:
    if not timeline.reports:
        return ""
    last = timeline.reports[-1]
    parts = [f"Changes: {'; '.join(last.changes)}", f"Implication: {last.implication}"]
    if last.strategic_view:
        parts.append(f"Strategic view: {last.strategic_view}")
    return ". ".join(parts)
