from __future__ import annotations

import json
import os
from typing import Any

from .image_engine.engine import EngineConfig
from .logger import get_logger

_logger = get_logger("settings")


class SettingsManager:
    def __init__(self, settings_path: str):
        self.settings_path = settings_path
        self._settings: dict[str, Any] = {}
        self.load()

    DEFAULTS: dict[str, Any] = {
        "server_url": "http://localhost:3000",
        "project": "analysis",
        "use_full_resolution": False,
        "use_vegetation_filter": False,
        "max_cache_size": 8,
        "max_memory_mb": 500,
        "decode_timeout": 15.0,
        "max_concurrent_preloads": 5,
        "memory_check_interval": 30.0,
        "report_interval": 60.0,
        "request_timeout": 30.0,
        "settle_delay": 0.1,
    }

    def load(self) -> None:
        try:
            if os.path.exists(self.settings_path):
                with open(self.settings_path, encoding="utf-8") as f:
                    data = json.load(f)
                    if isinstance(data, dict):
                        self._settings = data
                        _logger.debug("settings loaded: %s", self.settings_path)
                        return
        except (OSError, ValueError) as e:
            _logger.warning("settings load failed: %s", e)
        self._settings = {}

    def save(self) -> None:
        try:
            directory = os.path.dirname(self.settings_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, ensure_ascii=False, indent=2)
            _logger.debug("settings saved: %s", self.settings_path)
        except OSError as e:
            _logger.error("settings save failed: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._settings:
            return self._settings[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def has(self, key: str) -> bool:
        return key in self._settings

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self.save()

    @property
    def data(self) -> dict[str, Any]:
        return self._settings

    @property
    def server_url(self) -> str:
        return str(self.get("server_url")).rstrip("/")

    @property
    def project(self) -> str:
        return str(self.get("project"))

    @property
    def use_full_resolution(self) -> bool:
        return bool(self.get("use_full_resolution", False))

    @property
    def use_vegetation_filter(self) -> bool:
        return bool(self.get("use_vegetation_filter", False))

    @property
    def settle_delay(self) -> float:
        return self._number("settle_delay", float)

    def _number(self, key: str, kind: type) -> Any:
        value = self.get(key)
        try:
            return kind(value)
        except (TypeError, ValueError):
            _logger.warning("invalid %s in settings: %r; using default", key, value)
            return kind(self.DEFAULTS[key])

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            base_url=self.server_url,
            max_cache_size=self._number("max_cache_size", int),
            max_memory_mb=self._number("max_memory_mb", int),
            decode_timeout=self._number("decode_timeout", float),
            max_concurrent_preloads=self._number("max_concurrent_preloads", int),
            memory_check_interval=self._number("memory_check_interval", float),
            report_interval=self._number("report_interval", float),
            request_timeout=self._number("request_timeout", float),
        )
