"""Conversion between persisted conversation records and :class:`Message` lists.

Persisted conversations are stored as the ordered list of host events that
produced them (``userInput``, ``output``, ``toolUse`` ...). Restoring replays
those records into messages using the same pairing and usage rules the live
dispatcher applies, without touching any session state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .message_model import Message, MessageKind, TodoItem, TokenUsage, ToolStatus, _utcnow
from .todos import TODO_TOOL_NAME, extract_todos_from_input

LOGGER = logging.getLogger(__name__)

_MISSING = object()


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def event_field(event: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read ``key`` from an event envelope, falling back to its ``data`` mapping."""

    value = event.get(key, _MISSING)
    if value is not _MISSING and value is not None:
        return value
    data = event.get("data")
    if isinstance(data, Mapping):
        nested = data.get(key, _MISSING)
        if nested is not _MISSING and nested is not None:
            return nested
    return default


def str_field(event: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    value = event_field(event, key)
    return value if isinstance(value, str) else default


def bool_field(event: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = event_field(event, key)
    return value if isinstance(value, bool) else default


def number_field(event: Mapping[str, Any], key: str) -> float | int | None:
    value = event_field(event, key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def to_timestamp(value: Any) -> datetime:
    """Coerce epoch milliseconds or an ISO-8601 string into an aware datetime."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return _utcnow()
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return _utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


def to_string_content(value: Any) -> str:
    """Render arbitrary payload content as text."""

    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


# ---------------------------------------------------------------------------
# Snapshot payloads
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RestoreSnapshot:
    """Persisted conversation state supplied by the storage collaborator."""

    messages: List[Dict[str, Any]] = field(default_factory=list)
    session_id: Optional[str] = None
    total_cost: Optional[float] = None
    total_tokens: Optional[tuple[int, int]] = None
    conversation_id: Optional[str] = None
    is_processing: Optional[bool] = None

    @classmethod
    def from_value(cls, value: Any) -> RestoreSnapshot | None:
        """Build a snapshot from a loose mapping; ``None`` when there is no message list."""

        if not isinstance(value, Mapping):
            return None
        records = value.get("messages")
        if isinstance(records, (str, bytes)) or not isinstance(records, Sequence):
            return None
        total_cost = value.get("totalCost")
        if isinstance(total_cost, bool) or not isinstance(total_cost, (int, float)):
            total_cost = None
        total_tokens = None
        tokens = value.get("totalTokens")
        if isinstance(tokens, Mapping):
            token_in, token_out = tokens.get("input"), tokens.get("output")
            if _is_count(token_in) and _is_count(token_out):
                total_tokens = (int(token_in), int(token_out))
        session_id = value.get("sessionId")
        conversation_id = value.get("conversationId")
        is_processing = value.get("isProcessing")
        return cls(
            messages=[dict(item) for item in records if isinstance(item, Mapping)],
            session_id=session_id if isinstance(session_id, str) else None,
            total_cost=float(total_cost) if total_cost is not None else None,
            total_tokens=total_tokens,
            conversation_id=conversation_id if isinstance(conversation_id, str) else None,
            is_processing=is_processing if isinstance(is_processing, bool) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"messages": list(self.messages)}
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.total_cost is not None:
            payload["totalCost"] = self.total_cost
        if self.total_tokens is not None:
            payload["totalTokens"] = {"input": self.total_tokens[0], "output": self.total_tokens[1]}
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        if self.is_processing is not None:
            payload["isProcessing"] = self.is_processing
        return payload


@dataclass(slots=True, frozen=True)
class ConversationListItem:
    """Summary row describing a stored conversation."""

    id: str
    title: str
    preview: str
    updated_at: datetime
    message_count: int = 0
    session_id: Optional[str] = None
    total_cost: Optional[float] = None
    tags: tuple[str, ...] = ()


def map_conversation_list(items: Iterable[Any]) -> list[ConversationListItem]:
    """Map raw conversation list entries from the host into typed rows."""

    mapped: list[ConversationListItem] = []
    for index, item in enumerate(items):
        entry = item if isinstance(item, Mapping) else {}
        preview = entry.get("preview")
        preview = preview if isinstance(preview, str) else "Conversation"
        stamp = entry.get("timestamp")
        if stamp is None:
            stamp = entry.get("startTime", entry.get("endTime"))
        message_count = entry.get("messageCount")
        total_cost = entry.get("totalCost")
        session_id = entry.get("sessionId")
        session_id = session_id if isinstance(session_id, str) else None
        tags = entry.get("tags")
        tag_values = tuple(tag for tag in tags if isinstance(tag, str)) if isinstance(tags, list) else ()
        if isinstance(entry.get("filename"), str):
            item_id = entry["filename"]
        elif isinstance(entry.get("id"), str):
            item_id = entry["id"]
        else:
            item_id = session_id or f"conversation-{index}"
        mapped.append(
            ConversationListItem(
                id=item_id,
                title=preview,
                preview=preview,
                updated_at=to_timestamp(stamp),
                message_count=int(message_count) if _is_count(message_count) else 0,
                session_id=session_id,
                total_cost=float(total_cost) if _is_count(total_cost) else None,
                tags=tag_values,
            )
        )
    return mapped


# ---------------------------------------------------------------------------
# Records -> messages
# ---------------------------------------------------------------------------


class _RestoreBuilder:
    """Accumulates messages while replaying stored records in order."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self._tool_index: dict[str, int] = {}
        self._active_assistant: int | None = None
        self._pending_usage: TokenUsage | None = None
        self._handlers = {
            "userInput": self._on_user_input,
            "output": self._on_output,
            "updateTokens": self._on_update_tokens,
            "thinking": self._on_thinking,
            "toolUse": self._on_tool_use,
            "toolResult": self._on_tool_result,
            "error": self._on_error,
        }

    def finalize_assistant(self) -> None:
        if self._active_assistant is None:
            return
        current = self.messages[self._active_assistant]
        if current.streaming:
            self.messages[self._active_assistant] = current.evolve(streaming=False)
        self._active_assistant = None

    def feed(self, index: int, record: Mapping[str, Any]) -> None:
        kind = record.get("type")
        stamp = to_timestamp(record.get("timestamp"))
        millis = int(stamp.timestamp() * 1000)
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            LOGGER.debug("Skipping stored record of type %r", kind)
            return
        handler(index, record, stamp, millis)

    def _on_user_input(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        self.finalize_assistant()
        self.messages.append(
            Message(
                id=f"user-{millis}-{index}",
                kind=MessageKind.USER_INPUT,
                content=to_string_content(record.get("data")),
                timestamp=stamp,
            )
        )

    def _on_output(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        text = record.get("text")
        if not isinstance(text, str):
            data = record.get("data")
            text = data if isinstance(data, str) else ""
        is_final = record.get("isFinal") is True
        if self._active_assistant is None:
            if not text and is_final:
                return
            self.messages.append(
                Message(
                    id=f"assistant-{millis}-{index}",
                    kind=MessageKind.ASSISTANT_OUTPUT,
                    content=text,
                    timestamp=stamp,
                    streaming=not is_final,
                    usage=self._pending_usage,
                )
            )
            self._pending_usage = None
            self._active_assistant = len(self.messages) - 1
        else:
            current = self.messages[self._active_assistant]
            usage = current.usage
            if usage is None and self._pending_usage is not None:
                usage, self._pending_usage = self._pending_usage, None
            self.messages[self._active_assistant] = current.evolve(
                content=current.content + text, usage=usage
            )
        if is_final:
            self.finalize_assistant()

    def _on_update_tokens(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        usage = TokenUsage.from_value(event_field(record, "current"))
        if usage is None:
            return
        self._pending_usage = usage
        if self._active_assistant is not None:
            current = self.messages[self._active_assistant]
            self.messages[self._active_assistant] = current.evolve(usage=current.usage or usage)
            self._pending_usage = None
            return
        for position in range(len(self.messages) - 1, -1, -1):
            candidate = self.messages[position]
            if candidate.kind is MessageKind.ASSISTANT_OUTPUT:
                if candidate.usage is None:
                    self.messages[position] = candidate.evolve(usage=usage)
                    self._pending_usage = None
                break

    def _on_thinking(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        self.finalize_assistant()
        thinking = record.get("thinking")
        content = thinking if isinstance(thinking, str) else to_string_content(record.get("data"))
        self.messages.append(
            Message(id=f"thinking-{millis}-{index}", kind=MessageKind.THINKING, content=content, timestamp=stamp)
        )

    def _on_tool_use(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        self.finalize_assistant()
        tool_use_id = event_field(record, "toolUseId")
        tool_use_id = str(tool_use_id) if tool_use_id is not None else f"tool-{millis}-{index}"
        tool_name = event_field(record, "toolName")
        raw_input = event_field(record, "rawInput")
        self.messages.append(
            Message(
                id=tool_use_id,
                kind=MessageKind.TOOL_INVOCATION,
                timestamp=stamp,
                tool_use_id=tool_use_id,
                tool_name=str(tool_name) if tool_name is not None else "Tool",
                raw_input=dict(raw_input) if isinstance(raw_input, Mapping) else {},
                status=ToolStatus.EXECUTING,
                payload=tool_metrics(record, include=("toolInfo", "fileContentBefore", "startLine", "startLines")),
            )
        )
        self._tool_index[tool_use_id] = len(self.messages) - 1

    def _on_tool_result(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        self.finalize_assistant()
        tool_use_id = event_field(record, "toolUseId")
        tool_use_id = str(tool_use_id) if tool_use_id is not None else ""
        is_error = bool(event_field(record, "isError", False))
        hidden = bool(event_field(record, "hidden", False))
        metrics = tool_metrics(record, include=("fileContentAfter",))
        position = self._tool_index.get(tool_use_id) if tool_use_id else None
        if position is not None:
            existing = self.messages[position]
            self.messages[position] = existing.evolve(
                status=ToolStatus.FAILED if is_error else ToolStatus.COMPLETED,
                payload_updates=metrics,
            )
        if hidden:
            return
        content = record.get("content")
        if not isinstance(content, str):
            data = record.get("data")
            content = to_string_content(data.get("content")) if isinstance(data, Mapping) else ""
        tool_name = str_field(record, "toolName")
        self.messages.append(
            Message(
                id=f"tool-result-{tool_use_id or millis}-{index}",
                kind=MessageKind.TOOL_RESULT,
                content=content,
                timestamp=stamp,
                tool_use_id=tool_use_id or None,
                tool_name=tool_name,
                is_error=is_error,
                payload=metrics,
            )
        )

    def _on_error(self, index: int, record: Mapping[str, Any], stamp: datetime, millis: int) -> None:
        self.finalize_assistant()
        text = record.get("message")
        content = text if isinstance(text, str) else to_string_content(record.get("data"))
        self.messages.append(
            Message(id=f"error-{millis}-{index}", kind=MessageKind.ERROR, content=content, timestamp=stamp)
        )


def build_chat_messages(records: Iterable[Mapping[str, Any]]) -> list[Message]:
    """Rebuild the message list from stored conversation records."""

    builder = _RestoreBuilder()
    for index, record in enumerate(records):
        if isinstance(record, Mapping):
            builder.feed(index, record)
    # a trailing unfinished output stays streaming so the caller can resume it
    return builder.messages


def find_latest_todos(messages: Sequence[Message]) -> list[TodoItem]:
    for message in reversed(messages):
        if message.kind is MessageKind.TOOL_INVOCATION and message.tool_name == TODO_TOOL_NAME:
            todos = extract_todos_from_input(message.raw_input)
            if todos:
                return todos
    return []


def find_todos_in_last_turn(messages: Sequence[Message]) -> list[TodoItem]:
    """Return the todos written after the most recent user message, if any."""

    last_user = -1
    for position in range(len(messages) - 1, -1, -1):
        if messages[position].kind is MessageKind.USER_INPUT:
            last_user = position
            break
    if last_user == -1:
        return []
    return find_latest_todos(messages[last_user:])


# ---------------------------------------------------------------------------
# Messages -> records
# ---------------------------------------------------------------------------


def message_to_records(message: Message) -> list[Dict[str, Any]]:
    """Serialize a message into the stored record(s) that rebuild it."""

    stamp = message.timestamp.isoformat()
    kind = message.kind
    if kind is MessageKind.USER_INPUT:
        return [{"type": "userInput", "data": message.content, "timestamp": stamp}]
    if kind is MessageKind.ASSISTANT_OUTPUT:
        records: list[Dict[str, Any]] = [
            {"type": "output", "text": message.content, "isFinal": not message.streaming, "timestamp": stamp}
        ]
        if message.usage is not None:
            records.append({"type": "updateTokens", "current": message.usage.to_dict(), "timestamp": stamp})
        return records
    if kind is MessageKind.THINKING:
        return [{"type": "thinking", "thinking": message.content, "timestamp": stamp}]
    if kind is MessageKind.TOOL_INVOCATION:
        record: Dict[str, Any] = {
            "type": "toolUse",
            "toolUseId": message.tool_use_id or message.id,
            "toolName": message.tool_name or "Tool",
            "rawInput": dict(message.raw_input),
            "timestamp": stamp,
        }
        record.update(message.payload)
        return [record]
    if kind is MessageKind.TOOL_RESULT:
        record = {
            "type": "toolResult",
            "toolUseId": message.tool_use_id or "",
            "content": message.content,
            "isError": message.is_error,
            "hidden": False,
            "timestamp": stamp,
        }
        if message.tool_name:
            record["toolName"] = message.tool_name
        record.update(message.payload)
        return [record]
    if kind is MessageKind.ERROR:
        return [{"type": "error", "message": message.content, "timestamp": stamp}]
    return []


def messages_to_records(messages: Iterable[Message]) -> list[Dict[str, Any]]:
    records: list[Dict[str, Any]] = []
    for message in messages:
        records.extend(message_to_records(message))
    return records


_METRIC_KEYS = ("duration", "tokens", "cacheReadTokens", "cacheCreationTokens")


def tool_metrics(event: Mapping[str, Any], *, include: Sequence[str] = ()) -> Dict[str, Any]:
    """Collect the optional duration/token fields attached to tool events."""

    metrics: Dict[str, Any] = {}
    for key in _METRIC_KEYS:
        value = number_field(event, key)
        if value is not None:
            metrics[key] = value
    for key in include:
        value = event_field(event, key)
        if value is not None:
            metrics[key] = value
    return metrics


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


__all__ = [
    "ConversationListItem",
    "RestoreSnapshot",
    "bool_field",
    "build_chat_messages",
    "event_field",
    "find_latest_todos",
    "find_todos_in_last_turn",
    "map_conversation_list",
    "message_to_records",
    "messages_to_records",
    "number_field",
    "str_field",
    "to_string_content",
    "to_timestamp",
    "tool_metrics",
]
