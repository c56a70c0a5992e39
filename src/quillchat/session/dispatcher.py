"""Inbound event dispatcher.

Each event from the assistant host is routed to exactly one handler. A handler
runs its whole mutation pass before the next event is looked at; if it raises,
the session store is put back to the state it had before the event and the
failure is logged. Nothing escapes :meth:`EventDispatcher.dispatch`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from ..chat.message_model import Message, MessageKind, TokenUsage, ToolStatus, _utcnow
from ..chat.restore import (
    RestoreSnapshot,
    bool_field,
    build_chat_messages,
    event_field,
    find_todos_in_last_turn,
    map_conversation_list,
    number_field,
    str_field,
    to_string_content,
    tool_metrics,
)
from ..chat.todos import TODO_TOOL_NAME, extract_todos_from_input
from ..permissions.manager import PermissionLifecycleManager
from ..utils.ids import generate_message_id, unique_id
from .events import (
    AssistantErrorReported,
    ConversationRestored,
    EventBus,
    PermissionExpired,
    PermissionReopened,
    PermissionResolved,
    ProcessingChanged,
    SessionReset,
)
from .store import SessionStore

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[Mapping[str, Any]], None]


def _text(event: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = event_field(event, key)
        if isinstance(value, str):
            return value
    data = event.get("data")
    return data if isinstance(data, str) else ""


class EventDispatcher:
    """Applies inbound host events to the session store and permission manager."""

    def __init__(
        self,
        store: SessionStore,
        permissions: PermissionLifecycleManager,
        bus: EventBus,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._bus = bus
        self._clock = clock or _utcnow
        self._permission_messages: Dict[str, str] = {}
        self._handlers: Dict[str, EventHandler] = {
            "sessionInfo": self._on_session_info,
            "accountInfo": self._on_account_info,
            "userInput": self._on_user_input,
            "output": self._on_output,
            "thinking": self._on_thinking,
            "toolUse": self._on_tool_use,
            "toolResult": self._on_tool_result,
            "updateTokens": self._on_update_tokens,
            "updateTotals": self._on_update_totals,
            "permissionRequest": self._on_permission_request,
            "updatePermissionStatus": self._on_update_permission_status,
            "setProcessing": self._on_set_processing,
            "error": self._on_error,
            "conversationList": self._on_conversation_list,
            "conversationDeleted": self._on_conversation_deleted,
            "restoreState": self._on_restore_state,
            "compactBoundary": self._on_compact_boundary,
            "compacting": self._on_compacting,
            "loading": self._on_loading,
            "clearLoading": self._on_clear_loading,
            "restorePoint": self._on_restore_point,
            "todosUpdate": self._on_todos_update,
            "sessionCleared": self._on_session_cleared,
            "usageData": self._on_usage_data,
            "usageUpdate": self._on_usage_data,
            "usageError": self._on_usage_error,
        }
        bus.subscribe(PermissionResolved, self._on_permission_resolved)
        bus.subscribe(PermissionExpired, self._on_permission_expired)
        bus.subscribe(PermissionReopened, self._on_permission_reopened)

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, event: Mapping[str, Any]) -> bool:
        """Apply one inbound event. Returns ``False`` when it was ignored or failed."""

        if not isinstance(event, Mapping):
            LOGGER.warning("Ignoring non-mapping event of type %s", type(event).__name__)
            return False
        kind = event.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            LOGGER.debug("Ignoring unknown event type %r", kind)
            return False
        before = self._store.snapshot()
        try:
            handler(event)
        except Exception:
            LOGGER.exception("Handler for %s event failed; session left unchanged", kind)
            self._store.restore(before)
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _new_id(self, prefix: str, candidate: str | None = None) -> str:
        return unique_id(candidate or generate_message_id(prefix), self._store.message_ids(), prefix=prefix)

    def _append(self, kind: MessageKind, *, prefix: str, candidate_id: str | None = None, **fields: Any) -> Message:
        message = Message(id=self._new_id(prefix, candidate_id), kind=kind, timestamp=self._clock(), **fields)
        self._store.add_message(message)
        return message

    def _set_processing(self, is_processing: bool) -> None:
        changed = self._store.is_processing != is_processing
        self._store.set_processing(is_processing)
        if changed:
            self._bus.publish(ProcessingChanged(is_processing=is_processing))

    def _find_invocation(self, tool_use_id: str | None) -> Optional[Message]:
        """Pair a result with its invocation: explicit id first, then the oldest unresolved one."""

        unresolved = [
            message
            for message in self._store.messages
            if message.is_tool_invocation and not message.is_resolved
        ]
        if tool_use_id:
            for message in unresolved:
                if tool_use_id in (message.tool_use_id, message.id):
                    return message
        return unresolved[0] if unresolved else None

    # ------------------------------------------------------------------
    # Session metadata
    # ------------------------------------------------------------------
    def _on_session_info(self, event: Mapping[str, Any]) -> None:
        tools = event_field(event, "tools")
        servers = event_field(event, "mcpServers")
        session_id = str_field(event, "sessionId")
        tools = tuple(tools) if isinstance(tools, (list, tuple)) else ()
        servers = tuple(servers) if isinstance(servers, (list, tuple)) else ()
        self._store.set_session_info(session_id, tools=tools, mcp_servers=servers)
        self._append(
            MessageKind.SESSION_INFO,
            prefix="session",
            payload={"sessionId": session_id, "tools": list(tools), "mcpServers": list(servers)},
        )

    def _on_account_info(self, event: Mapping[str, Any]) -> None:
        account = event_field(event, "account")
        if isinstance(account, Mapping) and isinstance(account.get("subscriptionType"), str):
            self._store.set_subscription_type(account["subscriptionType"])

    def _on_usage_data(self, event: Mapping[str, Any]) -> None:
        data = event.get("data")
        if isinstance(data, Mapping):
            self._store.set_usage_data(data)
        else:
            LOGGER.warning("usageData event without a data mapping")

    def _on_usage_error(self, event: Mapping[str, Any]) -> None:
        LOGGER.info("Usage data unavailable: %s", _text(event, "error", "message") or "unknown error")

    # ------------------------------------------------------------------
    # Conversation content
    # ------------------------------------------------------------------
    def _on_user_input(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        self._append(MessageKind.USER_INPUT, prefix="user", content=_text(event, "text"))

    def _on_output(self, event: Mapping[str, Any]) -> None:
        text = _text(event, "text")
        is_final = bool_field(event, "isFinal")
        state = self._store.state
        streaming = self._store.get_message(state.streaming_message_id) if state.streaming_message_id else None
        if streaming is not None:
            changes: Dict[str, Any] = {"content": streaming.content + text}
            if streaming.usage is None and state.pending_usage is not None:
                changes["usage"] = state.pending_usage
                self._store.set_pending_usage(None)
            self._store.update_message(streaming.id, **changes)
            if is_final:
                self._store.finalize_streaming()
            return
        message = self._append(
            MessageKind.ASSISTANT_OUTPUT,
            prefix="assistant",
            content=text,
            streaming=not is_final,
            usage=state.pending_usage,
        )
        if state.pending_usage is not None:
            self._store.set_pending_usage(None)
        if not is_final:
            self._store.set_streaming_message_id(message.id)

    def _on_thinking(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        self._append(MessageKind.THINKING, prefix="thinking", content=_text(event, "thinking", "text"))

    def _on_tool_use(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        tool_name = str_field(event, "toolName") or "Tool"
        tool_use_id = str_field(event, "toolUseId")
        raw_input = event_field(event, "rawInput")
        raw_input = dict(raw_input) if isinstance(raw_input, Mapping) else {}
        if tool_name == TODO_TOOL_NAME:
            todos = extract_todos_from_input(raw_input)
            if todos:
                self._store.set_todos(todos)
            else:
                self._store.clear_todos()
            self._store.mark_todos_touched()
        message_id = self._new_id("tool", tool_use_id)
        self._store.add_message(
            Message(
                id=message_id,
                kind=MessageKind.TOOL_INVOCATION,
                timestamp=self._clock(),
                content=str_field(event, "toolInfo") or "",
                tool_use_id=tool_use_id or message_id,
                tool_name=tool_name,
                raw_input=raw_input,
                status=ToolStatus.EXECUTING,
                payload=tool_metrics(event, include=("toolInfo", "startLine", "startLines")),
            )
        )

    def _on_tool_result(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        tool_use_id = str_field(event, "toolUseId")
        is_error = bool_field(event, "isError")
        metrics = tool_metrics(event)
        invocation = self._find_invocation(tool_use_id)
        if invocation is None:
            LOGGER.debug("Tool result %s has no unresolved invocation", tool_use_id)
        else:
            self._store.update_message(
                invocation.id,
                status=ToolStatus.FAILED if is_error else ToolStatus.COMPLETED,
                payload_updates=metrics,
            )
            tool_use_id = invocation.tool_use_id
        if bool_field(event, "hidden"):
            return
        self._append(
            MessageKind.TOOL_RESULT,
            prefix="result",
            candidate_id=f"result-{tool_use_id}" if tool_use_id else None,
            content=to_string_content(event_field(event, "content")),
            tool_use_id=tool_use_id,
            tool_name=(invocation.tool_name if invocation is not None else None) or str_field(event, "toolName"),
            is_error=is_error,
            payload=metrics,
        )

    def _on_error(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        text = _text(event, "message", "error") or "Unknown error"
        code = event_field(event, "code")
        code = str(code) if isinstance(code, (str, int)) and not isinstance(code, bool) else None
        recoverable = event_field(event, "recoverable")
        recoverable = recoverable if isinstance(recoverable, bool) else None
        payload: Dict[str, Any] = {}
        if code is not None:
            payload["code"] = code
        if recoverable is not None:
            payload["recoverable"] = recoverable
        self._append(MessageKind.ERROR, prefix="error", content=text, is_error=True, payload=payload)
        self._set_processing(False)
        self._store.stop_request_timing()
        self._bus.publish(AssistantErrorReported(message=text, code=code, recoverable=recoverable))

    def _on_compact_boundary(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        payload = {key: value for key, value in event.items() if key not in ("type", "data")}
        data = event.get("data")
        if isinstance(data, Mapping):
            payload.update(data)
        self._append(MessageKind.COMPACT_BOUNDARY, prefix="compact", payload=payload)
        self._store.reset_token_tracking()

    def _on_compacting(self, event: Mapping[str, Any]) -> None:
        self._append(MessageKind.COMPACTING, prefix="compacting", content=_text(event, "message"))

    def _on_loading(self, event: Mapping[str, Any]) -> None:
        self._append(MessageKind.LOADING, prefix="loading", content=_text(event, "message"))

    def _on_clear_loading(self, event: Mapping[str, Any]) -> None:
        # loading entries stay in the list; the timeline renders them as standalone rows
        LOGGER.debug("clearLoading received")

    def _on_restore_point(self, event: Mapping[str, Any]) -> None:
        data = event.get("data")
        payload = dict(data) if isinstance(data, Mapping) else {}
        content = _text(event, "message", "description")
        self._append(MessageKind.RESTORE_POINT, prefix="restore", content=content, payload=payload)

    def _on_todos_update(self, event: Mapping[str, Any]) -> None:
        todos = extract_todos_from_input({"todos": event_field(event, "todos")})
        self._store.set_todos(todos)
        self._store.mark_todos_touched()

    # ------------------------------------------------------------------
    # Tokens and totals
    # ------------------------------------------------------------------
    def _on_update_tokens(self, event: Mapping[str, Any]) -> None:
        usage = TokenUsage.from_value(event_field(event, "current"))
        if usage is None:
            LOGGER.warning("updateTokens event without usable counters")
            return
        self._store.update_tokens(usage)
        streaming_id = self._store.streaming_message_id
        if streaming_id is not None and self._store.update_message(streaming_id, usage=usage):
            self._store.set_pending_usage(None)
            return
        last_assistant = next(
            (m for m in reversed(self._store.messages) if m.kind is MessageKind.ASSISTANT_OUTPUT),
            None,
        )
        if last_assistant is not None and last_assistant.usage is None:
            self._store.update_message(last_assistant.id, usage=usage)
            self._store.set_pending_usage(None)
            return
        self._store.set_pending_usage(usage)

    def _on_update_totals(self, event: Mapping[str, Any]) -> None:
        state = self._store.state
        explicit = number_field(event, "totalCost")
        increment = number_field(event, "totalCostUsd") or 0.0
        self._store.update_session_cost(
            float(explicit) if explicit is not None else state.session_cost_usd + float(increment)
        )
        duration = number_field(event, "durationMs")
        if duration is not None and duration > 0:
            self._store.set_last_duration_ms(float(duration))
        request_count = number_field(event, "requestCount")
        if request_count is not None:
            self._store.set_request_count(int(request_count))
        else:
            self._store.set_request_count(state.request_count + 1)
        self._store.stop_request_timing()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def _on_set_processing(self, event: Mapping[str, Any]) -> None:
        value = event_field(event, "isProcessing")
        if not isinstance(value, bool):
            LOGGER.warning("setProcessing event without a boolean isProcessing: %r", value)
            return
        self.apply_processing(value)

    def apply_processing(self, is_processing: bool) -> None:
        """Turn processing on or off with the turn bookkeeping that goes with it."""

        if is_processing:
            self._store.start_request_timing()
            self._store.mark_todos_touched(False)
            self._store.clear_todos()
            self._set_processing(True)
            return
        self._store.finalize_streaming()
        self._set_processing(False)
        self._store.stop_request_timing()
        if not self._store.state.todos_touched:
            self._store.clear_todos()

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------
    def _on_permission_request(self, event: Mapping[str, Any]) -> None:
        self._store.finalize_streaming()
        request = self._permissions.handle_request(event)
        if not request.is_pending:
            return
        known = self._store.get_message(self._permission_messages.get(request.request_id, ""))
        if known is not None:
            # one message per request id; a re-sent request reuses it
            if known.payload.get("status") != request.status:
                self._mark_permission(request.request_id, request.status)
            return
        message = self._append(
            MessageKind.PERMISSION_REQUEST,
            prefix="permission",
            candidate_id=f"permission-{request.request_id}",
            content=request.description,
            tool_name=request.tool_name,
            tool_use_id=request.tool_use_id,
            raw_input=dict(request.input),
            payload={
                "requestId": request.request_id,
                "status": request.status,
                "suggestions": list(request.suggestions),
            },
        )
        self._permission_messages[request.request_id] = message.id

    def _on_update_permission_status(self, event: Mapping[str, Any]) -> None:
        request_id = str_field(event, "id") or str_field(event, "requestId")
        status = str_field(event, "status")
        if not request_id or not status:
            LOGGER.warning("updatePermissionStatus requires id and status")
            return
        self._mark_permission(request_id, status)

    def _on_permission_resolved(self, event: PermissionResolved) -> None:
        self._mark_permission(event.request_id, event.status)

    def _on_permission_expired(self, event: PermissionExpired) -> None:
        self._mark_permission(event.request_id, "expired")

    def _on_permission_reopened(self, event: PermissionReopened) -> None:
        self._mark_permission(event.request_id, "pending")

    def _mark_permission(self, request_id: str, status: str) -> None:
        message_id = self._permission_messages.get(request_id)
        if message_id is None:
            message_id = next(
                (
                    m.id
                    for m in self._store.messages
                    if m.kind is MessageKind.PERMISSION_REQUEST and m.payload.get("requestId") == request_id
                ),
                None,
            )
        if message_id is not None:
            self._store.update_message(message_id, payload_updates={"status": status})

    # ------------------------------------------------------------------
    # Whole-conversation events
    # ------------------------------------------------------------------
    def _on_conversation_list(self, event: Mapping[str, Any]) -> None:
        items = event_field(event, "conversations")
        if not isinstance(items, list):
            items = event.get("data")
        if not isinstance(items, list):
            LOGGER.warning("conversationList event without a list of conversations")
            self._store.set_history_loading(False)
            return
        self._store.set_conversations(map_conversation_list(items))

    def _on_conversation_deleted(self, event: Mapping[str, Any]) -> None:
        filename = str_field(event, "filename") or str_field(event, "id")
        if filename:
            self._store.remove_conversation(filename)

    def _on_session_cleared(self, event: Mapping[str, Any]) -> None:
        self._store.reset_chat()
        self._permissions.reset()
        self._permission_messages.clear()
        self._bus.publish(SessionReset(reason="sessionCleared"))

    def _on_restore_state(self, event: Mapping[str, Any]) -> None:
        snapshot = RestoreSnapshot.from_value(event_field(event, "state"))
        if snapshot is None:
            LOGGER.warning("restoreState event without a message list; ignoring")
            return
        messages = build_chat_messages(snapshot.messages)
        resume = (
            snapshot.is_processing is True
            and bool(messages)
            and messages[-1].kind is MessageKind.ASSISTANT_OUTPUT
            and messages[-1].streaming
        )
        if not resume:
            messages = [m.evolve(streaming=False) if m.streaming else m for m in messages]
        todos = find_todos_in_last_turn(messages)
        was_processing = self._store.is_processing
        self._store.hydrate_conversation(
            messages,
            session_id=snapshot.session_id,
            total_cost=snapshot.total_cost,
            total_tokens=snapshot.total_tokens,
            todos=todos,
        )
        self._store.mark_todos_touched(bool(todos))
        self._store.set_request_count(sum(1 for m in messages if m.kind is MessageKind.USER_INPUT))
        self._store.set_active_conversation_id(snapshot.conversation_id)
        self._permission_messages.clear()
        if resume:
            self._store.set_streaming_message_id(messages[-1].id)
        if snapshot.is_processing is True:
            self._store.start_request_timing()
            self._set_processing(True)
        elif was_processing:
            self._bus.publish(ProcessingChanged(is_processing=False))
        self._bus.publish(ConversationRestored(conversation_id=snapshot.conversation_id, message_count=len(messages)))


__all__ = ["EventDispatcher", "EventHandler"]
