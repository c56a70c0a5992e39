"""Tool permission rules: per-tool configuration, granted permissions and denied paths."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping, Optional, Sequence

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ..chat.message_model import _utcnow

LOGGER = logging.getLogger(__name__)

GrantScope = Literal["once", "session", "always"]
DEFAULT_SESSION_TTL = timedelta(hours=24)
_PATH_KEYS = ("file_path", "notebook_path", "path")


@dataclass(slots=True, frozen=True)
class ToolPermissionConfig:
    """Static rule for one tool name."""

    tool_name: str
    auto_approve: bool = False
    always_deny: bool = False
    auto_approve_patterns: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ToolPermissionConfig:
        name = payload.get("tool_name", payload.get("tool"))
        if not isinstance(name, str) or not name:
            raise ValueError("Tool permission entries require a 'tool_name'")
        patterns = payload.get("auto_approve_patterns") or ()
        if isinstance(patterns, str):
            patterns = (patterns,)
        return cls(
            tool_name=name,
            auto_approve=bool(payload.get("auto_approve", False)),
            always_deny=bool(payload.get("always_deny", False)),
            auto_approve_patterns=tuple(str(item) for item in patterns),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "auto_approve": self.auto_approve,
            "always_deny": self.always_deny,
            "auto_approve_patterns": list(self.auto_approve_patterns),
        }


@dataclass(slots=True, frozen=True)
class AllowedPermission:
    """A cached grant; ``tool_name`` may be ``*`` to cover every tool."""

    tool_name: str
    scope: GrantScope
    granted_at: datetime
    pattern: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def covers(self, tool_name: str, file_path: str | None) -> bool:
        if self.tool_name not in (tool_name, "*"):
            return False
        if not self.pattern:
            return True
        return file_path is not None and matches_pattern(file_path, self.pattern)


class Verdict(str, Enum):
    DENY = "deny"
    ALLOW = "allow"
    ASK = "ask"


@dataclass(slots=True, frozen=True)
class PolicyDecision:
    verdict: Verdict
    reason: str = ""


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def matches_pattern(path: str, pattern: str) -> bool:
    """Glob match where ``**`` spans directories, ``*`` stays within one and ``?`` is one char."""

    return bool(_compile_glob(pattern).match(path))


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(path, pattern) for pattern in patterns)


def extract_file_path(tool_input: Any) -> str | None:
    if not isinstance(tool_input, Mapping):
        return None
    for key in _PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class PermissionPolicy:
    """Evaluates incoming permission requests against configured and granted rules.

    Session-scoped grants carry an ``expires_at`` and are checked against the clock
    on every lookup; no timer is involved.
    """

    def __init__(
        self,
        tool_configs: Iterable[ToolPermissionConfig] = (),
        *,
        denied_patterns: Iterable[str] = (),
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._configs: dict[str, ToolPermissionConfig] = {}
        self._allowed: tuple[AllowedPermission, ...] = ()
        self._denied_patterns: tuple[str, ...] = ()
        self._session_ttl = session_ttl
        self._clock = clock or _utcnow
        self.configure(tool_configs)
        for pattern in denied_patterns:
            self.add_denied_pattern(pattern)

    # ------------------------------------------------------------------
    # Static configuration
    # ------------------------------------------------------------------
    def configure(self, tool_configs: Iterable[ToolPermissionConfig]) -> None:
        self._configs = {config.tool_name: config for config in tool_configs}

    def config_for(self, tool_name: str) -> ToolPermissionConfig | None:
        return self._configs.get(tool_name)

    @property
    def tool_configs(self) -> tuple[ToolPermissionConfig, ...]:
        return tuple(self._configs.values())

    def is_tool_allowed(self, tool_name: str) -> bool:
        config = self._configs.get(tool_name)
        return not (config is not None and config.always_deny)

    def is_tool_auto_approved(self, tool_name: str) -> bool:
        config = self._configs.get(tool_name)
        return bool(config and config.auto_approve)

    def is_tool_denied(self, tool_name: str) -> bool:
        config = self._configs.get(tool_name)
        return bool(config and config.always_deny)

    # ------------------------------------------------------------------
    # Denied patterns
    # ------------------------------------------------------------------
    @property
    def denied_patterns(self) -> tuple[str, ...]:
        return self._denied_patterns

    def add_denied_pattern(self, pattern: str) -> None:
        if pattern and pattern not in self._denied_patterns:
            self._denied_patterns = self._denied_patterns + (pattern,)

    def remove_denied_pattern(self, pattern: str) -> None:
        self._denied_patterns = tuple(item for item in self._denied_patterns if item != pattern)

    def is_denied(self, path: str) -> bool:
        return matches_any(path, self._denied_patterns)

    # ------------------------------------------------------------------
    # Granted permissions
    # ------------------------------------------------------------------
    @property
    def allowed(self) -> tuple[AllowedPermission, ...]:
        return self._allowed

    def add_allowed(self, tool_name: str, scope: GrantScope, *, pattern: str | None = None) -> AllowedPermission:
        """Cache a grant, replacing any previous grant for the same tool and pattern."""

        now = self._clock()
        grant = AllowedPermission(
            tool_name=tool_name,
            scope=scope,
            granted_at=now,
            pattern=pattern,
            expires_at=now + self._session_ttl if scope == "session" else None,
        )
        kept = tuple(
            item for item in self._allowed if not (item.tool_name == tool_name and item.pattern == pattern)
        )
        self._allowed = kept + (grant,)
        LOGGER.debug("Granted %s permission for %s (pattern=%s)", scope, tool_name, pattern)
        return grant

    def remove_allowed(self, tool_name: str, pattern: str | None = None) -> None:
        self._allowed = tuple(
            item for item in self._allowed if not (item.tool_name == tool_name and item.pattern == pattern)
        )

    def clear_allowed(self) -> None:
        self._allowed = ()

    def clear_session_permissions(self) -> None:
        """Drop every grant that is not ``always`` or still within its expiry."""

        now = self._clock()
        self._allowed = tuple(
            item
            for item in self._allowed
            if item.scope == "always" or (item.expires_at is not None and item.expires_at > now)
        )

    def is_auto_allowed(self, tool_name: str, tool_input: Any) -> bool:
        now = self._clock()
        file_path = extract_file_path(tool_input)
        return any(
            not grant.is_expired(now) and grant.covers(tool_name, file_path) for grant in self._allowed
        )

    def snapshot(self) -> tuple[AllowedPermission, ...]:
        return self._allowed

    def restore(self, allowed: Sequence[AllowedPermission]) -> None:
        self._allowed = tuple(allowed)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(self, tool_name: str, tool_input: Any) -> PolicyDecision:
        """Decide whether a request is denied outright, approved outright, or needs a user."""

        config = self._configs.get(tool_name)
        file_path = extract_file_path(tool_input)
        if config is not None and config.always_deny:
            return PolicyDecision(Verdict.DENY, "tool configured as always deny")
        if file_path is not None and self.is_denied(file_path):
            return PolicyDecision(Verdict.DENY, f"path {file_path} matches a denied pattern")
        if config is not None and config.auto_approve:
            return PolicyDecision(Verdict.ALLOW, "tool configured as auto approve")
        if config is not None and file_path is not None and matches_any(file_path, config.auto_approve_patterns):
            return PolicyDecision(Verdict.ALLOW, f"path {file_path} matches an auto approve pattern")
        if self.is_auto_allowed(tool_name, tool_input):
            return PolicyDecision(Verdict.ALLOW, "previously granted")
        return PolicyDecision(Verdict.ASK)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    @classmethod
    def from_yaml(cls, path: Path, **kwargs: Any) -> PermissionPolicy:
        """Load tool rules and denied patterns from a YAML policy file.

        Expected layout::

            tools:
              - tool_name: Bash
                always_deny: true
              - tool_name: Edit
                auto_approve_patterns: ["src/**"]
            denied_patterns:
              - "**/.env"
        """

        payload = load_policy_file(path)
        configs = [ToolPermissionConfig.from_mapping(item) for item in payload.get("tools", [])]
        denied = [str(item) for item in payload.get("denied_patterns", [])]
        extra_denied = kwargs.pop("denied_patterns", ())
        return cls(configs, denied_patterns=[*denied, *extra_denied], **kwargs)

    def with_configs(self, tool_configs: Iterable[ToolPermissionConfig]) -> PermissionPolicy:
        merged = {config.tool_name: config for config in self._configs.values()}
        for config in tool_configs:
            existing = merged.get(config.tool_name)
            merged[config.tool_name] = replace(existing, **_non_default(config)) if existing else config
        self.configure(merged.values())
        return self


def load_policy_file(path: Path) -> dict[str, Any]:
    """Parse a YAML policy file; a missing file yields an empty policy."""

    if not path.exists():
        return {}
    parser = YAML(typ="safe")
    parser.allow_duplicate_keys = False
    try:
        data = parser.load(path.read_text(encoding="utf-8"))
    except YAMLError as exc:
        raise ValueError(f"Permission policy {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Permission policy {path} must contain a mapping at the top level")
    tools = data.get("tools") or []
    denied = data.get("denied_patterns") or []
    if not isinstance(tools, list) or not all(isinstance(item, Mapping) for item in tools):
        raise ValueError(f"Permission policy {path}: 'tools' must be a list of mappings")
    if not isinstance(denied, list):
        raise ValueError(f"Permission policy {path}: 'denied_patterns' must be a list")
    return {"tools": [dict(item) for item in tools], "denied_patterns": list(denied)}


def _non_default(config: ToolPermissionConfig) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if config.auto_approve:
        changes["auto_approve"] = True
    if config.always_deny:
        changes["always_deny"] = True
    if config.auto_approve_patterns:
        changes["auto_approve_patterns"] = config.auto_approve_patterns
    return changes


__all__ = [
    "AllowedPermission",
    "DEFAULT_SESSION_TTL",
    "GrantScope",
    "PermissionPolicy",
    "PolicyDecision",
    "ToolPermissionConfig",
    "Verdict",
    "extract_file_path",
    "load_policy_file",
    "matches_any",
    "matches_pattern",
]
