"""Chat mutations: sending, clearing, stopping and storing conversations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..chat.message_model import Message, MessageKind
from ..services.conversation_store import ConversationStore
from ..session import commands
from ..session.store import SessionState, SessionStore
from ..session.transport import Transport
from ..utils.ids import generate_message_id, unique_id
from .engine import Mutation, optimistic_mutation

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SendMessageVariables:
    text: str
    model: Optional[str] = None
    plan_mode: Optional[bool] = None
    thinking_mode: Optional[bool] = None
    images: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class StateChange:
    """The session state on either side of one optimistic update."""

    before: SessionState
    after: SessionState
    message_id: Optional[str] = None


def _track(store: SessionStore, change: Callable[[], Optional[str]]) -> StateChange:
    before = store.snapshot()
    try:
        message_id = change()
    except Exception:
        store.restore(before)
        raise
    return StateChange(before, store.snapshot(), message_id)


def _undo(store: SessionStore) -> Callable[[StateChange], None]:
    def rollback(change: StateChange) -> None:
        store.revert(change.before, change.after)

    return rollback


def send_message(store: SessionStore, transport: Transport, **options: Any) -> Mutation[Dict[str, Any], SendMessageVariables]:
    """Show the user's message immediately, then post ``sendMessage``.

    A failed post removes that message and puts back the processing flag, request
    timer and turn count; events dispatched while the post was retrying are kept.
    """

    def apply(variables: SendMessageVariables) -> StateChange:
        def change() -> str:
            message_id = unique_id(generate_message_id("user"), store.message_ids())
            store.finalize_streaming()
            store.add_message(Message(id=message_id, kind=MessageKind.USER_INPUT, content=variables.text))
            store.set_processing(True)
            store.start_request_timing()
            store.increment_turns()
            return message_id

        return _track(store, change)

    async def action(variables: SendMessageVariables) -> Dict[str, Any]:
        command = commands.send_message(
            variables.text,
            model=variables.model,
            plan_mode=variables.plan_mode,
            thinking_mode=variables.thinking_mode,
            images=variables.images,
        )
        transport.post_message(command)
        return command

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=_undo(store),
        name="send_message",
        **options,
    )


def clear_chat(store: SessionStore, **options: Any) -> Mutation[None, None]:
    """Clear the visible conversation locally; the host session is untouched."""

    def apply(_: None) -> StateChange:
        return _track(store, store.reset_chat)

    async def action(_: None) -> None:
        return None

    return optimistic_mutation(
        action, apply=apply, rollback=_undo(store), name="clear_chat", **options
    )


def reset_chat(store: SessionStore, transport: Transport, **options: Any) -> Mutation[Dict[str, Any], None]:
    """Start a new conversation: reset local state and post ``clearConversation``.

    On failure the cleared messages return ahead of any that arrived meanwhile.
    """

    def apply(_: None) -> StateChange:
        return _track(store, store.reset_chat)

    async def action(_: None) -> Dict[str, Any]:
        command = commands.clear_conversation()
        transport.post_message(command)
        return command

    return optimistic_mutation(
        action, apply=apply, rollback=_undo(store), name="reset_chat", **options
    )


def stop_generation(store: SessionStore, transport: Transport, **options: Any) -> Mutation[Dict[str, Any], None]:
    """Ask the host to stop the running request and mark processing off once posted."""

    async def action(_: None) -> Dict[str, Any]:
        command = commands.stop_request()
        transport.post_message(command)
        return command

    def on_success(data: Dict[str, Any], variables: None, context: Any) -> None:
        store.finalize_streaming()
        store.set_processing(False)
        store.stop_request_timing()

    return Mutation(action, on_success=on_success, name="stop_generation", **options)


def persist_conversation(store: SessionStore, conversations: ConversationStore, **options: Any) -> Mutation[str, Optional[str]]:
    """Write the current conversation to storage and return its id.

    The variable is an explicit conversation id; ``None`` reuses the active one or
    allocates a new id.
    """

    async def action(conversation_id: Optional[str]) -> str:
        snapshot = store.to_snapshot()
        saved_id = await asyncio.to_thread(conversations.save, snapshot, conversation_id=conversation_id)
        return saved_id

    def on_success(saved_id: str, variables: Optional[str], context: Any) -> None:
        store.set_active_conversation_id(saved_id)
        store.set_conversations(conversations.list())

    return Mutation(action, on_success=on_success, name="persist_conversation", **options)


def delete_conversation(
    store: SessionStore,
    transport: Transport,
    conversations: ConversationStore | None = None,
    **options: Any,
) -> Mutation[Dict[str, Any], str]:
    """Remove a conversation from the list at once, then delete it for real.

    Posts ``deleteConversation`` to the host and removes the local file when a
    :class:`ConversationStore` is given; either failing puts the entry back at its
    old position in the list.
    """

    def apply(conversation_id: str) -> StateChange:
        return _track(store, lambda: store.remove_conversation(conversation_id))

    async def action(conversation_id: str) -> Dict[str, Any]:
        command = commands.delete_conversation(conversation_id)
        if conversations is not None:
            await asyncio.to_thread(conversations.delete, conversation_id)
        transport.post_message(command)
        return command

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=_undo(store),
        name="delete_conversation",
        **options,
    )


__all__ = [
    "SendMessageVariables",
    "StateChange",
    "clear_chat",
    "delete_conversation",
    "persist_conversation",
    "reset_chat",
    "send_message",
    "stop_generation",
]
