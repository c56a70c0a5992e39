"""Canonical conversation state and its mutation surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar

from ..chat.message_model import Message, MessageKind, TodoItem, TokenUsage, _utcnow
from ..chat.restore import ConversationListItem, RestoreSnapshot, messages_to_records

LOGGER = logging.getLogger(__name__)

StateListener = Callable[["SessionState"], None]

_Item = TypeVar("_Item", Message, ConversationListItem)

# Fields merged item by item on revert; counters are reverted by their delta.
_KEYED_FIELDS = frozenset({"messages", "conversations"})
_COUNTER_FIELDS = frozenset({"num_turns"})


@dataclass(slots=True, frozen=True)
class CumulativeTokens:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_creation_tokens: int = 0

    def add(self, usage: TokenUsage) -> CumulativeTokens:
        return CumulativeTokens(
            total_input_tokens=self.total_input_tokens + usage.input_tokens,
            total_output_tokens=self.total_output_tokens + usage.output_tokens,
            total_cache_read_tokens=self.total_cache_read_tokens + usage.cache_read_input_tokens,
            total_cache_creation_tokens=self.total_cache_creation_tokens + usage.cache_creation_input_tokens,
        )


@dataclass(slots=True, frozen=True)
class SessionState:
    """Immutable value holding everything the session store tracks.

    Every mutation produces a new ``SessionState``; a captured instance therefore
    doubles as an exact rollback snapshot.
    """

    messages: tuple[Message, ...] = ()
    is_processing: bool = False
    streaming_message_id: Optional[str] = None
    pending_usage: Optional[TokenUsage] = None
    todos: tuple[TodoItem, ...] = ()
    todos_touched: bool = False
    current_usage: TokenUsage = field(default_factory=TokenUsage)
    cumulative: CumulativeTokens = field(default_factory=CumulativeTokens)
    session_cost_usd: float = 0.0
    all_time_cost_usd: float = 0.0
    request_start_time: Optional[datetime] = None
    num_turns: int = 0
    request_count: int = 0
    last_duration_ms: Optional[float] = None
    session_id: Optional[str] = None
    subscription_type: Optional[str] = None
    connection_status: str = "disconnected"
    tools: tuple[Any, ...] = ()
    mcp_servers: tuple[Any, ...] = ()
    conversations: tuple[ConversationListItem, ...] = ()
    history_loading: bool = False
    active_conversation_id: Optional[str] = None
    usage_data: Optional[Mapping[str, Any]] = None


class SessionStore:
    """Holds the ordered message list, processing flag, streaming pointer and counters.

    The store applies no policy of its own: the dispatcher and the mutations decide
    what changes, the store only guarantees that each change yields a fresh state.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._state = SessionState()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._state.messages

    @property
    def is_processing(self) -> bool:
        return self._state.is_processing

    @property
    def streaming_message_id(self) -> str | None:
        return self._state.streaming_message_id

    @property
    def todos(self) -> tuple[TodoItem, ...]:
        return self._state.todos

    def get_message(self, message_id: str) -> Message | None:
        for message in self._state.messages:
            if message.id == message_id:
                return message
        return None

    def message_ids(self) -> frozenset[str]:
        return frozenset(message.id for message in self._state.messages)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for state changes and return an unsubscribe callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def add_message(self, message: Message) -> None:
        if self.get_message(message.id) is not None:
            raise ValueError(f"Message id {message.id!r} already exists in the conversation")
        self._commit(messages=self._state.messages + (message,))

    def update_message(self, message_id: str, **changes: Any) -> bool:
        """Replace the message ``message_id`` with an evolved copy; False when absent."""

        messages = list(self._state.messages)
        for index, message in enumerate(messages):
            if message.id == message_id:
                messages[index] = message.evolve(**changes)
                self._commit(messages=tuple(messages))
                return True
        LOGGER.debug("update_message ignored unknown id %s", message_id)
        return False

    def append_content(self, message_id: str, text: str) -> bool:
        message = self.get_message(message_id)
        if message is None:
            return False
        return self.update_message(message_id, content=message.content + text)

    def replace_messages(self, messages: Iterable[Message]) -> None:
        self._commit(messages=tuple(messages), streaming_message_id=None)

    # ------------------------------------------------------------------
    # Streaming pointer
    # ------------------------------------------------------------------
    def set_streaming_message_id(self, message_id: str | None) -> None:
        self._commit(streaming_message_id=message_id)

    def finalize_streaming(self) -> bool:
        """Close the open streaming message, if any. Safe to call repeatedly."""

        message_id = self._state.streaming_message_id
        if message_id is None:
            return False
        messages = tuple(
            message.evolve(streaming=False) if message.id == message_id else message
            for message in self._state.messages
        )
        self._commit(messages=messages, streaming_message_id=None)
        return True

    def set_pending_usage(self, usage: TokenUsage | None) -> None:
        self._commit(pending_usage=usage)

    # ------------------------------------------------------------------
    # Processing, todos, timing
    # ------------------------------------------------------------------
    def set_processing(self, is_processing: bool) -> None:
        self._commit(is_processing=bool(is_processing))

    def set_todos(self, todos: Sequence[TodoItem]) -> None:
        self._commit(todos=tuple(todos))

    def clear_todos(self) -> None:
        self._commit(todos=())

    def mark_todos_touched(self, touched: bool = True) -> None:
        self._commit(todos_touched=touched)

    def start_request_timing(self) -> None:
        self._commit(request_start_time=self._clock())

    def stop_request_timing(self) -> float | None:
        """Clear the request timer and return the elapsed milliseconds, if it was running."""

        started = self._state.request_start_time
        if started is None:
            return None
        elapsed = (self._clock() - started).total_seconds() * 1000.0
        self._commit(request_start_time=None)
        return elapsed

    def increment_turns(self) -> None:
        self._commit(num_turns=self._state.num_turns + 1)

    def set_request_count(self, count: int) -> None:
        self._commit(request_count=max(0, int(count)))

    def set_last_duration_ms(self, duration_ms: float | None) -> None:
        self._commit(last_duration_ms=duration_ms)

    # ------------------------------------------------------------------
    # Tokens and costs
    # ------------------------------------------------------------------
    def update_tokens(self, usage: TokenUsage) -> None:
        self._commit(current_usage=usage, cumulative=self._state.cumulative.add(usage))

    def update_session_cost(self, cost_usd: float) -> None:
        delta = cost_usd - self._state.session_cost_usd
        self._commit(
            session_cost_usd=cost_usd,
            all_time_cost_usd=self._state.all_time_cost_usd + max(0.0, delta),
        )

    def reset_token_tracking(self) -> None:
        self._commit(
            current_usage=TokenUsage(),
            cumulative=CumulativeTokens(),
            session_cost_usd=0.0,
            pending_usage=None,
        )

    # ------------------------------------------------------------------
    # Session and history metadata
    # ------------------------------------------------------------------
    def set_session_info(self, session_id: str | None, *, tools: Sequence[Any] = (), mcp_servers: Sequence[Any] = ()) -> None:
        self._commit(
            session_id=session_id,
            tools=tuple(tools),
            mcp_servers=tuple(mcp_servers),
            connection_status="connected",
        )

    def set_session_id(self, session_id: str | None) -> None:
        self._commit(session_id=session_id)

    def set_subscription_type(self, subscription_type: str | None) -> None:
        self._commit(subscription_type=subscription_type)

    def set_connection_status(self, status: str) -> None:
        self._commit(connection_status=status)

    def set_conversations(self, conversations: Iterable[ConversationListItem]) -> None:
        self._commit(conversations=tuple(conversations), history_loading=False)

    def remove_conversation(self, conversation_id: str) -> None:
        remaining = tuple(item for item in self._state.conversations if item.id != conversation_id)
        active = self._state.active_conversation_id
        self._commit(
            conversations=remaining,
            active_conversation_id=None if active == conversation_id else active,
        )

    def set_history_loading(self, loading: bool) -> None:
        self._commit(history_loading=loading)

    def set_active_conversation_id(self, conversation_id: str | None) -> None:
        self._commit(active_conversation_id=conversation_id)

    def set_usage_data(self, data: Mapping[str, Any] | None) -> None:
        self._commit(usage_data=dict(data) if data is not None else None)

    # ------------------------------------------------------------------
    # Whole-conversation operations
    # ------------------------------------------------------------------
    def reset_chat(self) -> None:
        """Start a new conversation; lifetime cost and host metadata survive."""

        current = self._state
        self._set_state(
            SessionState(
                all_time_cost_usd=current.all_time_cost_usd,
                subscription_type=current.subscription_type,
                connection_status=current.connection_status,
                tools=current.tools,
                mcp_servers=current.mcp_servers,
                conversations=current.conversations,
                usage_data=current.usage_data,
            )
        )

    def hydrate_conversation(
        self,
        messages: Sequence[Message],
        *,
        session_id: str | None = None,
        total_cost: float | None = None,
        total_tokens: tuple[int, int] | None = None,
        todos: Sequence[TodoItem] | None = None,
    ) -> None:
        """Replace the conversation wholesale from restored data."""

        input_total, output_total = total_tokens if total_tokens is not None else (0, 0)
        self._commit(
            messages=tuple(messages),
            session_id=session_id,
            is_processing=False,
            streaming_message_id=None,
            pending_usage=None,
            request_start_time=None,
            todos=tuple(todos) if todos is not None else self._state.todos,
            num_turns=sum(1 for message in messages if message.kind is MessageKind.USER_INPUT),
            current_usage=TokenUsage(),
            cumulative=CumulativeTokens(total_input_tokens=input_total, total_output_tokens=output_total),
            session_cost_usd=total_cost if total_cost is not None else 0.0,
        )

    def snapshot(self) -> SessionState:
        return self._state

    def restore(self, snapshot: SessionState) -> None:
        """Put back a state captured with :meth:`snapshot`."""

        self._set_state(snapshot)

    def revert(self, before: SessionState, after: SessionState) -> None:
        """Undo the change that turned ``before`` into ``after``, keeping later writes.

        A field still holding its ``after`` value gets its ``before`` value back; a
        field that moved on since is left alone. Messages and conversations merge
        per id: items the change removed return at their old position, items it
        added are dropped, and items that arrived since stay after them. Turn
        counts are reverted by the change's delta.
        """

        current = self._state
        changes: dict[str, Any] = {}
        for spec in fields(SessionState):
            name = spec.name
            was, became, now = getattr(before, name), getattr(after, name), getattr(current, name)
            if was == became:
                continue
            if name in _KEYED_FIELDS:
                changes[name] = _merge_by_id(was, became, now)
            elif name in _COUNTER_FIELDS:
                changes[name] = max(0, now + was - became)
            elif now == became:
                changes[name] = was
        if "messages" in changes:
            # only the message under the streaming pointer may stream
            pointer = changes.get("streaming_message_id", current.streaming_message_id)
            changes["messages"] = tuple(
                message.evolve(streaming=False) if message.streaming and message.id != pointer else message
                for message in changes["messages"]
            )
        if changes:
            self._commit(**changes)

    def to_snapshot(self) -> RestoreSnapshot:
        """Describe the conversation in the persisted snapshot shape."""

        state = self._state
        return RestoreSnapshot(
            messages=messages_to_records(state.messages),
            session_id=state.session_id,
            total_cost=state.session_cost_usd,
            total_tokens=(state.cumulative.total_input_tokens, state.cumulative.total_output_tokens),
            conversation_id=state.active_conversation_id,
            is_processing=state.is_processing,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _commit(self, **changes: Any) -> None:
        self._set_state(replace(self._state, **changes))

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Session state listener %r failed", listener)


def _merge_by_id(before: Sequence[_Item], after: Sequence[_Item], current: Sequence[_Item]) -> tuple[_Item, ...]:
    after_by_id = {item.id: item for item in after}
    current_by_id = {item.id: item for item in current}
    merged: list[_Item] = []
    for item in before:
        if item.id in current_by_id:
            now = current_by_id[item.id]
            merged.append(item if now == after_by_id.get(item.id) else now)
        elif item.id not in after_by_id:
            merged.append(item)
    seen = {item.id for item in before} | set(after_by_id)
    merged.extend(item for item in current if item.id not in seen)
    return tuple(merged)


__all__ = ["CumulativeTokens", "SessionState", "SessionStore", "StateListener"]
