"""Settings dataclass and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping

__all__ = ["Settings", "SettingsStore", "DEFAULT_SETTINGS_DIR"]

LOGGER = logging.getLogger(__name__)
DEFAULT_SETTINGS_DIR = Path.home() / ".quillchat"
_DEFAULT_SETTINGS_PATH = DEFAULT_SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "QUILLCHAT_CONVERSATIONS_DIR": "conversations_dir",
    "QUILLCHAT_PERMISSION_POLICY": "permission_policy_path",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "QUILLCHAT_DEBUG_LOGGING": "debug_logging",
    "QUILLCHAT_FAIL_CLOSED_SUGGESTIONS": "fail_closed_suggestions",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "QUILLCHAT_PERMISSION_TIMEOUT": "permission_timeout",
    "QUILLCHAT_SESSION_GRANT_TTL": "session_grant_ttl",
    "QUILLCHAT_RETRY_BASE_SECONDS": "retry_base_seconds",
    "QUILLCHAT_RETRY_MAX_SECONDS": "retry_max_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "QUILLCHAT_MUTATION_RETRIES": "mutation_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable behaviour of a chat session.

    ``permission_timeout`` is in seconds; ``0`` disables expiry. ``session_grant_ttl``
    bounds how long an ``allow_session`` grant stays valid. ``tool_permissions`` holds
    mappings with ``tool_name``, ``auto_approve``, ``always_deny`` and
    ``auto_approve_patterns`` keys.
    """

    permission_timeout: float = 60.0
    session_grant_ttl: float = 86_400.0
    fail_closed_suggestions: bool = False
    tool_permissions: List[Dict[str, Any]] = field(default_factory=list)
    denied_patterns: List[str] = field(default_factory=list)
    permission_policy_path: str = ""
    mutation_retries: int = 0
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    conversations_dir: str = ""
    debug_logging: bool = False

    def resolved_conversations_dir(self) -> Path:
        if self.conversations_dir:
            return Path(self.conversations_dir).expanduser()
        return DEFAULT_SETTINGS_DIR / "conversations"

    def resolved_policy_path(self) -> Path | None:
        if self.permission_policy_path:
            return Path(self.permission_policy_path).expanduser()
        return None


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s (%d field(s))", self._path, len(data))

        if payload and payload.get("version") != _SETTINGS_VERSION:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - defensive guard
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result
