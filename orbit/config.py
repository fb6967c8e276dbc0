from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from orbit.services.errors import ConfigurationException

logger = logging.getLogger(__name__)

_MISSING = object()


def config_dir() -> Path:
    override = os.getenv("ORBIT_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path(os.getenv("HOME") or "/home/orbit") / ".config" / "orbit"


def log_dir() -> Path:
    return Path(os.getenv("ORBIT_LOG_DIR", "/tmp")).expanduser()


def database_url() -> str:
    return os.getenv("ORBIT_DATABASE_URL", f"sqlite:///{config_dir() / 'orbit.db'}")


class ConfigManager:
    """JSON-backed settings store with dotted-key access.

    ``get("reverb.app_key")`` walks nested objects; ``set`` writes the whole
    file back immediately.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or config_dir() / "config.json"
        self._data: dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        if not self.path.exists():
            logger.debug("No config file at %s; using defaults", self.path)
            self._data = {}
            return
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise ConfigurationException(f"Invalid JSON in {self.path}: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationException(f"{self.path} must contain a JSON object")
        self._data = parsed

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=4) + "\n", encoding="utf-8")

    def get(self, key: str | None = None, default: Any = None) -> Any:
        if key is None:
            return self._data
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict):
                return default
            node = node.get(part, _MISSING)
            if node is _MISSING:
                return default
        return node

    def set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self.save()

    def get_paths(self) -> list[str]:
        paths = self.get("paths", [])
        return [str(p) for p in paths] if isinstance(paths, list) else []

    def get_tld(self) -> str:
        return str(self.get("tld", "ccc"))

    def is_service_enabled(self, service: str) -> bool:
        return bool(self.get(f"services.{service}.enabled", False))

    def get_reverb_config(self) -> dict[str, Any]:
        return {
            "enabled": self.is_service_enabled("reverb"),
            "app_id": self.get("reverb.app_id", "orbit"),
            "app_key": self.get("reverb.app_key", "orbit-key"),
            "app_secret": self.get("reverb.app_secret", "orbit-secret"),
            "host": self.get("reverb.internal_host", "127.0.0.1"),
            "internal_port": int(self.get("reverb.internal_port", 6001)),
        }

    def get_sequence_url(self) -> str | None:
        url = self.get("sequence.url", "http://localhost:8000")
        return str(url) if url else None
