"""Conversation message data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    """Tagged variants a conversation message can take."""

    USER_INPUT = "userInput"
    ASSISTANT_OUTPUT = "assistant"
    THINKING = "thinking"
    TOOL_INVOCATION = "toolUse"
    TOOL_RESULT = "toolResult"
    ERROR = "error"
    SESSION_INFO = "sessionInfo"
    LOADING = "loading"
    COMPACTING = "compacting"
    COMPACT_BOUNDARY = "compactBoundary"
    PERMISSION_REQUEST = "permissionRequest"
    RESTORE_POINT = "restorePoint"


class ToolStatus(str, Enum):
    """Execution status carried by tool invocation messages."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"


TodoStatus = Literal["pending", "in_progress", "completed"]


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counters reported for one assistant response."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @classmethod
    def from_value(cls, value: Any) -> TokenUsage | None:
        """Coerce a loose mapping into usage, returning ``None`` when unusable."""

        if isinstance(value, TokenUsage):
            return value
        if not isinstance(value, Mapping):
            return None
        input_tokens = value.get("input_tokens")
        output_tokens = value.get("output_tokens")
        if not _is_number(input_tokens) or not _is_number(output_tokens):
            return None
        return cls(
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            cache_read_input_tokens=_int_or_zero(value.get("cache_read_input_tokens")),
            cache_creation_input_tokens=_int_or_zero(value.get("cache_creation_input_tokens")),
        )

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
        }


@dataclass(slots=True, frozen=True)
class TodoItem:
    """Single entry of the assistant-maintained todo list."""

    content: str
    status: TodoStatus = "pending"
    priority: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": self.content, "status": self.status}
        if self.priority:
            payload["priority"] = self.priority
        if self.id is not None:
            payload["id"] = self.id
        return payload


@dataclass(slots=True, frozen=True)
class Message:
    """Represents one entry of the ordered conversation list.

    Messages are immutable; the session store swaps in updated copies produced by
    :meth:`evolve` so that previously captured lists remain untouched.
    """

    id: str
    kind: MessageKind
    content: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    streaming: bool = False
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    raw_input: Dict[str, Any] = field(default_factory=dict)
    status: Optional[ToolStatus] = None
    is_error: bool = False
    usage: Optional[TokenUsage] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def evolve(self, **changes: Any) -> Message:
        """Return a copy of the message with ``changes`` applied."""

        extra = changes.pop("payload_updates", None)
        if extra:
            merged = dict(self.payload)
            merged.update({key: value for key, value in extra.items() if value is not None})
            changes["payload"] = merged
        return replace(self, **changes)

    @property
    def is_tool_invocation(self) -> bool:
        return self.kind is MessageKind.TOOL_INVOCATION

    @property
    def is_resolved(self) -> bool:
        """Whether a tool invocation has received its result."""

        return self.status in (ToolStatus.COMPLETED, ToolStatus.FAILED, ToolStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for traces and CLI output."""

        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.streaming:
            data["streaming"] = True
        if self.tool_use_id is not None:
            data["tool_use_id"] = self.tool_use_id
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.raw_input:
            data["raw_input"] = dict(self.raw_input)
        if self.status is not None:
            data["status"] = self.status.value
        if self.is_error:
            data["is_error"] = True
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.payload:
            data["payload"] = dict(self.payload)
        return data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _int_or_zero(value: Any) -> int:
    return int(value) if _is_number(value) else 0


__all__ = [
    "Message",
    "MessageKind",
    "TodoItem",
    "TodoStatus",
    "TokenUsage",
    "ToolStatus",
]
