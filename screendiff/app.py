from __future__ import annotations

import argparse
import base64
import logging
import mimetypes
import sys
from pathlib import Path

from . import __version__
from .ai import ComparisonAnalyzer
from .config import Config
from .errors import ScreenDiffError, user_message
from .imaging import ImageCompressor
from .logging_setup import configure_logging
from .models import FEEDBACK_VALUES, TIMELINE_PREFIX, Comparison, ImagePayload, Timeline
from .paths import config_path, data_directory, database_path, ensure_directories, log_path
from .retrieval import InsightRetriever
from .service import ScreenDiffService
from .storage import QuotaStorage, SqliteBackend
from .timeline import TimelineManager

logger = logging.getLogger(__name__)


def build_service(base: Path) -> ScreenDiffService:
    config = Config(config_path(base))
    storage = QuotaStorage(SqliteBackend(database_path(base)), config.get_int("storage_max_bytes"))
    manager = TimelineManager(storage, ImageCompressor(), image_target_kb=config.get_int("image_target_kb"))
    analyzer = ComparisonAnalyzer(
        provider=str(config.get("provider", "openai")),
        api_key=str(config.get("api_key", "")),
        model=str(config.get("model", "")),
        endpoint=str(config.get("endpoint", "")),
        timeout_seconds=config.get_int("ai_timeout_seconds"),
    )
    retriever = InsightRetriever(
        endpoint=str(config.get("retrieval_endpoint", "")),
        access_token=str(config.get("retrieval_token", "")),
        analyzer=analyzer,
        model=str(config.get("insight_model", "")) or None,
        timeout_seconds=config.get_int("retrieval_timeout_seconds"),
    )
    return ScreenDiffService(manager, analyzer, retriever, max_upload_bytes=config.get_int("max_upload_bytes"))


def read_image(path: Path) -> ImagePayload:
    raw = path.read_bytes()
    mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return ImagePayload(
        name=path.name,
        data=base64.b64encode(raw).decode("ascii"),
        mime_type=mime_type,
        size=len(raw),
    )


def _print_changes(changes, implication: str, strategic_view: str | None = None, insights=None) -> None:
    for change in changes:
        print(f"  - {change}")
    print(f"  So what: {implication}")
    if strategic_view:
        print(f"  Strategic view: {strategic_view}")
    for insight in insights or ():
        print(f"  [{insight.outcome}] {insight.principle}: {insight.rationale}")


def _print_timeline(timeline: Timeline) -> None:
    print(f"{timeline.id}  {timeline.title or '(untitled)'}  updated={timeline.updated_at}")
    for shot in timeline.screenshots:
        print(f"  #{shot.sequence_index} {shot.id} {shot.name} ({shot.byte_size // 1024}KB)")
    for report in timeline.reports:
        feedback = timeline.feedback.get(report.id)
        suffix = f" feedback={feedback}" if feedback else ""
        print(f"{report.id} [{report.kind}] {report.from_screenshot_id} -> {report.to_screenshot_id}{suffix}")
        _print_changes(report.changes, report.implication, report.strategic_view, report.insights)


def _print_comparison(comparison: Comparison) -> None:
    print(f"comparison {comparison.id}  {comparison.image_a.name} vs {comparison.image_b.name}")
    _print_changes(comparison.changes, comparison.implication, insights=comparison.insights)


def _cmd_compare(service: ScreenDiffService, args: argparse.Namespace) -> int:
    comparison = service.compare(read_image(args.image_a), read_image(args.image_b))
    _print_comparison(comparison)
    return 0


def _cmd_timeline_create(service: ScreenDiffService, args: argparse.Namespace) -> int:
    timeline = service.manager.convert_comparison_to_timeline(args.comparison_id, args.title)
    if timeline is None:
        print(f"Comparison not found: {args.comparison_id}", file=sys.stderr)
        return 1
    _print_timeline(timeline)
    return 0


def _cmd_timeline_add(service: ScreenDiffService, args: argparse.Namespace) -> int:
    job = service.start_add_screenshot(args.timeline_id, read_image(args.image))
    try:
        result = job.wait()
    except KeyboardInterrupt:
        if job.cancel():
            print("Cancelling...", file=sys.stderr)
        else:
            print("Already saving, finishing up...", file=sys.stderr)
        result = job.wait()
    if result is None:
        print(f"Timeline not found: {args.timeline_id}", file=sys.stderr)
        return 1
    timeline, report = result
    print(f"Added screenshot #{len(timeline.screenshots) - 1} to {timeline.id}")
    _print_changes(report.changes, report.implication, report.strategic_view, report.insights)
    return 0


def _cmd_timeline_show(service: ScreenDiffService, args: argparse.Namespace) -> int:
    timeline = service.manager.get(args.timeline_id)
    if timeline is None:
        print(f"Timeline not found: {args.timeline_id}", file=sys.stderr)
        return 1
    _print_timeline(timeline)
    return 0


def _cmd_list(service: ScreenDiffService, args: argparse.Namespace) -> int:
    items = service.manager.list_all_items()
    if not items:
        print("No saved comparisons or timelines.")
    for item in items:
        if isinstance(item, Timeline):
            print(f"{item.id}  timeline  {item.title or '(untitled)'}  screenshots={len(item.screenshots)}  updated={item.updated_at}")
        else:
            print(f"{item.id}  comparison  {item.image_a.name} vs {item.image_b.name}  created={item.created_at}")
    return 0


def _cmd_delete(service: ScreenDiffService, args: argparse.Namespace) -> int:
    if args.item_id.startswith(TIMELINE_PREFIX):
        removed = service.manager.delete(args.item_id)
    else:
        removed = service.manager.delete_comparison(args.item_id)
    return 0 if removed else 1


def _cmd_feedback(service: ScreenDiffService, args: argparse.Namespace) -> int:
    if args.item_id.startswith(TIMELINE_PREFIX):
        if not args.report:
            print("--report is required for timeline feedback", file=sys.stderr)
            return 1
        updated = service.manager.record_feedback(args.item_id, args.report, args.value)
    else:
        updated = service.manager.record_comparison_feedback(args.item_id, args.value)
    if updated is None:
        print(f"Not found: {args.item_id}", file=sys.stderr)
        return 1
    print("Thank you for your feedback!")
    return 0


def _cmd_storage(service: ScreenDiffService, args: argparse.Namespace) -> int:
    summary = service.manager.storage_summary()
    print(
        f"{summary['total_usage_kb']}KB of {summary['max_size_kb']}KB used "
        f"({summary['percent_used']}%), {summary['item_count']} items"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screendiff")
    parser.add_argument("--version", action="store_true", help="Print app version and exit")
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory for the database, config and logs")
    parser.add_argument("--verbose", action="store_true", help="Also log to the console")
    commands = parser.add_subparsers(dest="command")

    compare = commands.add_parser("compare", help="Compare two screenshots")
    compare.add_argument("image_a", type=Path)
    compare.add_argument("image_b", type=Path)
    compare.set_defaults(handler=_cmd_compare)

    timeline = commands.add_parser("timeline", help="Work with timelines")
    timeline_commands = timeline.add_subparsers(dest="timeline_command", required=True)

    create = timeline_commands.add_parser("create", help="Start a timeline from a saved comparison")
    create.add_argument("comparison_id")
    create.add_argument("--title", default=None)
    create.set_defaults(handler=_cmd_timeline_create)

    add = timeline_commands.add_parser("add", help="Add the next screenshot to a timeline")
    add.add_argument("timeline_id")
    add.add_argument("image", type=Path)
    add.set_defaults(handler=_cmd_timeline_add)

    show = timeline_commands.add_parser("show", help="Show a timeline")
    show.add_argument("timeline_id")
    show.set_defaults(handler=_cmd_timeline_show)

    commands.add_parser("list", help="List saved comparisons and timelines").set_defaults(handler=_cmd_list)

    delete = commands.add_parser("delete", help="Delete a comparison or timeline")
    delete.add_argument("item_id")
    delete.set_defaults(handler=_cmd_delete)

    feedback = commands.add_parser("feedback", help="Rate a comparison or timeline report")
    feedback.add_argument("item_id")
    feedback.add_argument("value", choices=list(FEEDBACK_VALUES))
    feedback.add_argument("--report", default=None, help="Report id, required for timelines")
    feedback.set_defaults(handler=_cmd_feedback)

    commands.add_parser("storage", help="Show storage usage").set_defaults(handler=_cmd_storage)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0

    base = args.data_dir or data_directory()
    ensure_directories(base)
    configure_logging(log_path(base), enable_console=args.verbose)

    try:
        service = build_service(base)
        return args.handler(service, args)
    except ScreenDiffError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(user_message(exc), file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        logger.exception("%s failed", args.command)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
