from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(operation)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_OPERATION: contextvars.ContextVar[str | None] = contextvars.ContextVar("log_operation", default=None)


class OperationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.operation = LOG_OPERATION.get() or "-"
        return True


@contextmanager
def log_context(operation: str) -> Iterator[None]:
    token = LOG_OPERATION.set(operation)
    try:
        yield
    finally:
        LOG_OPERATION.reset(token)


def configure_logging(
    log_file: Path,
    level: int = logging.INFO,
    enable_console: bool = False,
    force: bool = False,
) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, "_screendiff_logging_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    operation_filter = OperationFilter()

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.addFilter(operation_filter)
    root.addHandler(file_handler)

    if enable_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(operation_filter)
        root.addHandler(stream_handler)

    root.setLevel(level)
    logging.captureWarnings(True)
    root._screendiff_logging_configured = True
    return root
