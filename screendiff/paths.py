from __future__ import annotations

import os
from pathlib import Path

APP_DIR_NAME = "ScreenDiff"


def data_directory() -> Path:
    override = os.environ.get("SCREENDIFF_HOME")
    if override:
        return Path(override)
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / APP_DIR_NAME
    xdg_data = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg_data) if xdg_data else Path.home() / ".local" / "share"
    return base / APP_DIR_NAME.lower()


def database_path(base: Path | None = None) -> Path:
    return (base or data_directory()) / "screendiff.sqlite3"


def config_path(base: Path | None = None) -> Path:
    return (base or data_directory()) / "config.json"


def log_path(base: Path | None = None) -> Path:
    return (base or data_directory()) / "logs" / "screendiff.log"


def ensure_directories(base: Path | None = None) -> None:
    log_path(base).parent.mkdir(parents=True, exist_ok=True)
