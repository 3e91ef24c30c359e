"""Configuration management for packsync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

CRITICAL: This module must have NO Flask or network dependencies.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .driver import SyncSettings
from .validation import ValidationError, validate_requestor_id

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_SYNC_CONFIG"]

DEFAULT_SERVER_URL = "http://127.0.0.1:8765"

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "request_timeout": 10,
    "backoff_base_seconds": 1,
    "backoff_max_seconds": 300,
    "max_attempts": 8,
    "background_interval": 60,
    "probe_interval": 15,
    "max_workers": 4,
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses
                ~/.config/packsync/
        """
        if config_dir is None:
            base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
            config_dir = Path(base) / "packsync"
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "packsync.db"),
            "server_database_file": str(self.config_dir / "server.db"),
            "server_url": DEFAULT_SERVER_URL,
            "requestor_id": uuid7().hex,
            "sync": dict(DEFAULT_SYNC_CONFIG),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, filling in (and saving) missing defaults."""
        data: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Could not read {self.config_file}: {e}; using defaults")
                data = {}
            if not isinstance(data, dict):
                data = {}

        changed = False
        for key, value in self._defaults().items():
            if key not in data:
                data[key] = value
                changed = True
        sync = data.get("sync")
        if not isinstance(sync, dict):
            sync = {}
            data["sync"] = sync
        for key, value in DEFAULT_SYNC_CONFIG.items():
            if key not in sync:
                sync[key] = value
                changed = True

        if changed:
            self.save_config(data)
        return data

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write the configuration to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.config_file.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2, sort_keys=True)
        os.replace(tmp, self.config_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def get_database_file(self) -> Path:
        return Path(self.config_data["database_file"])

    def get_server_database_file(self) -> Path:
        return Path(self.config_data["server_database_file"])

    def get_server_url(self) -> str:
        return str(self.config_data["server_url"])

    def get_requestor_id(self) -> str:
        """Get the identity this device submits operations as."""
        return validate_requestor_id(self.config_data["requestor_id"], "requestor_id")

    def set_requestor_id(self, requestor_id: str) -> None:
        self.set("requestor_id", validate_requestor_id(requestor_id, "requestor_id"))

    # ===== Sync Configuration Methods =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get sync configuration."""
        return dict(self.config_data["sync"])

    def _get_positive_number(self, key: str) -> float:
        value = self.config_data["sync"].get(key, DEFAULT_SYNC_CONFIG[key])
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValidationError(f"sync.{key}", "must be a positive number")
        return value

    def get_probe_interval(self) -> float:
        return float(self._get_positive_number("probe_interval"))

    def get_background_interval(self) -> float:
        return float(self._get_positive_number("background_interval"))

    def get_sync_settings(self) -> SyncSettings:
        """Build driver settings from the sync section.

        Raises:
            ValidationError: If a value is not a positive number
        """
        return SyncSettings(
            request_timeout=float(self._get_positive_number("request_timeout")),
            backoff_base=float(self._get_positive_number("backoff_base_seconds")),
            backoff_max=float(self._get_positive_number("backoff_max_seconds")),
            max_attempts=int(self._get_positive_number("max_attempts")),
            max_workers=int(self._get_positive_number("max_workers")),
        )

    def set_sync_value(self, key: str, value: Any) -> None:
        """Set one value of the sync section.

        Raises:
            ValidationError: If the key is unknown
        """
        if key not in DEFAULT_SYNC_CONFIG:
            raise ValidationError("key", f"unknown sync setting: {key}")
        self.config_data["sync"][key] = value
        self.save_config(self.config_data)
