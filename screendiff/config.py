"""
Configuration management for ScreenDiff
Settings live in a JSON file; secrets may come from the environment
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "OPENAI_API_KEY": "api_key",
    "VECTORIZE_ACCESS_TOKEN": "retrieval_token",
    "VECTORIZE_ENDPOINT": "retrieval_endpoint",
}


def default_config() -> dict[str, Any]:
    return {
        "provider": "openai",  # 'openai', 'local' or 'gemini'
        "model": "gpt-4o",
        "insight_model": "gpt-4o-mini",
        "api_key": "",
        "endpoint": "",
        "retrieval_endpoint": "",
        "retrieval_token": "",
        "ai_timeout_seconds": 45,
        "retrieval_timeout_seconds": 30,
        "storage_max_bytes": 4 * 1024 * 1024,
        "image_target_kb": 400,
        "max_upload_bytes": 10 * 1024 * 1024,
    }


class Config:
    """Manage application configuration"""

    def __init__(self, config_file: Path, environ: dict[str, str] | None = None):
        self.config_file = Path(config_file)
        self._environ = os.environ if environ is None else environ
        self._config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        config = default_config()
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    stored = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Error loading config %s: %s", self.config_file, e)
            else:
                if isinstance(stored, dict):
                    config.update(stored)
        return config

    def save(self) -> None:
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self._config, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value, preferring environment overrides"""
        for env_name, config_key in self._env_overrides().items():
            if config_key == key and self._environ.get(env_name):
                return self._environ[env_name]
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value and save"""
        self._config[key] = value
        self.save()

    def get_int(self, key: str) -> int:
        value = self.get(key)
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return int(default_config()[key])
        return parsed if parsed > 0 else int(default_config()[key])

    def _env_overrides(self) -> dict[str, str]:
        overrides = dict(ENV_OVERRIDES)
        if self._config.get("provider") == "gemini":
            overrides.pop("OPENAI_API_KEY")
            overrides["GEMINI_API_KEY"] = "api_key"
        return overrides
