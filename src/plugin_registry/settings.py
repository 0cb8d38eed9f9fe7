"""
Settings store and filesystem locations.

Settings live in a single JSON document validated against SETTINGS_SCHEMA.
The GitHub token and workflow-dispatch options are read from here.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

from src.common.fs_utils import atomic_write_json, read_json
from src.plugin_registry.exceptions import SettingsError

DATA_DIR_ENV = 'PLUGIN_REGISTRY_DATA_DIR'
PLUGINS_DIR_ENV = 'PLUGIN_REGISTRY_PLUGINS_DIR'
TOKEN_ENV = 'GITHUB_TOKEN'

TOKEN_PLACEHOLDER = 'YOUR_GITHUB_PERSONAL_ACCESS_TOKEN'
DEFAULT_LOG_RETENTION_DAYS = 30

SETTINGS_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "github_token": {"type": "string"},
        "github_actions_enabled": {"type": "boolean"},
        "github_actions_triggers": {
            "type": "object",
            "properties": {
                "on_release": {"type": "boolean"},
                "on_update_available": {"type": "boolean"},
                "on_install": {"type": "boolean"},
                "on_update": {"type": "boolean"},
                "on_uninstall": {"type": "boolean"},
                "repo_overrides": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "properties": {"enabled": {"type": "boolean"}},
                    },
                },
            },
        },
        "log_retention_days": {"type": "integer", "minimum": 1},
        "active_plugins": {
            "type": "array",
            "items": {"type": "string"},
            "uniqueItems": True,
        },
    },
}

_validator = Draft7Validator(SETTINGS_SCHEMA)


def validate_settings(settings: Dict[str, Any]) -> None:
    """
    Validate a settings document.

    Raises:
        SettingsError: Listing every schema violation
    """
    errors = []
    for error in _validator.iter_errors(settings):
        error_path = '.'.join(str(p) for p in error.path) or '<root>'
        errors.append(f"{error_path}: {error.message}")
    if errors:
        raise SettingsError(f"Invalid settings: {'; '.join(errors)}")


@dataclass(frozen=True)
class RegistryPaths:
    """Where the registry keeps its state and where plugins are installed."""

    data_dir: Path
    plugins_dir: Path

    @classmethod
    def from_env(cls, data_dir: Optional[str] = None, plugins_dir: Optional[str] = None) -> 'RegistryPaths':
        return cls(
            data_dir=Path(data_dir or os.environ.get(DATA_DIR_ENV) or 'data').resolve(),
            plugins_dir=Path(plugins_dir or os.environ.get(PLUGINS_DIR_ENV) or 'plugins').resolve(),
        )

    @property
    def settings_file(self) -> Path:
        return self.data_dir / 'settings.json'

    @property
    def registry_file(self) -> Path:
        return self.data_dir / 'registry.json'

    @property
    def activity_log_file(self) -> Path:
        return self.data_dir / 'activity_log.json'

    def ensure(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.plugins_dir.mkdir(parents=True, exist_ok=True)


class SettingsStore:
    """
    Key-value settings backed by a JSON file.

    The file is read on first access and rewritten atomically on every set.
    """

    def __init__(self, settings_file: Path):
        self.settings_file = Path(settings_file)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            try:
                data = read_json(self.settings_file, default={})
            except ValueError as e:
                raise SettingsError(f"Could not parse settings file {self.settings_file}: {e}") from e
            if not isinstance(data, dict):
                raise SettingsError(f"Settings file {self.settings_file} must contain a JSON object")
            validate_settings(data)
            self._data = data
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            updated = dict(self._load())
            updated[key] = value
            validate_settings(updated)
            atomic_write_json(self.settings_file, updated)
            self._data = updated

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self._load():
                return
            updated = dict(self._data)
            del updated[key]
            atomic_write_json(self.settings_file, updated)
            self._data = updated

    def all(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._load())

    def reload(self) -> None:
        with self._lock:
            self._data = None

    def get_github_token(self) -> Optional[str]:
        """
        GitHub token from settings, else from the GITHUB_TOKEN environment variable.

        Returns:
            Token, or None for anonymous access
        """
        for token in (self.get('github_token', ''), os.environ.get(TOKEN_ENV, '')):
            token = (token or '').strip()
            if token and token != TOKEN_PLACEHOLDER:
                return token
        return None

    def get_log_retention_days(self) -> int:
        return int(self.get('log_retention_days', DEFAULT_LOG_RETENTION_DAYS))
