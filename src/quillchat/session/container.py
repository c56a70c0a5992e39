"""Explicit container holding one chat session's collaborators."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping

from ..chat.timeline import TimelineEntry, build_timeline
from ..mutations import chat as chat_mutations
from ..mutations import permissions as permission_mutations
from ..mutations.engine import Mutation, SleepFn
from ..permissions.manager import PermissionLifecycleManager
from ..permissions.policy import PermissionPolicy, ToolPermissionConfig
from ..permissions.timers import Scheduler
from ..services.conversation_store import ConversationStore
from ..services.settings import Settings
from .dispatcher import EventDispatcher
from .events import EventBus, SessionReset
from .store import SessionStore
from .transport import Transport

LOGGER = logging.getLogger(__name__)


def build_policy(settings: Settings, *, clock: Callable[[], datetime] | None = None) -> PermissionPolicy:
    """Combine the YAML policy file (if any) with the rules stored in settings.

    Rules from settings are merged on top of the file's rules for the same tool.
    """

    ttl = timedelta(seconds=settings.session_grant_ttl)
    policy_path = settings.resolved_policy_path()
    if policy_path is not None:
        policy = PermissionPolicy.from_yaml(
            policy_path, denied_patterns=settings.denied_patterns, session_ttl=ttl, clock=clock
        )
    else:
        policy = PermissionPolicy(denied_patterns=settings.denied_patterns, session_ttl=ttl, clock=clock)
    configs = [ToolPermissionConfig.from_mapping(item) for item in settings.tool_permissions]
    return policy.with_configs(configs)


def backoff_for(settings: Settings) -> Callable[[int, BaseException], float]:
    """Exponential delay bounded by the configured base and ceiling, in seconds."""

    base = max(0.0, settings.retry_base_seconds)
    ceiling = max(base, settings.retry_max_seconds)

    def delay(retry_index: int, error: BaseException) -> float:
        return min(ceiling, base * (2 ** retry_index))

    return delay


class ChatSession:
    """Owns the session store, permission manager, event bus and dispatcher.

    Everything that used to be process-wide state lives here, so several sessions
    (or tests) can run side by side. :meth:`reset` starts a new conversation and
    :meth:`dispose` tears the session down so no timer or mutation commits later.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        settings: Settings | None = None,
        policy: PermissionPolicy | None = None,
        conversations: ConversationStore | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.transport = transport
        self.bus: EventBus = EventBus()
        self.store = SessionStore(clock=clock)
        self.conversations = conversations
        self.permissions = PermissionLifecycleManager(
            transport,
            self.bus,
            policy=policy or build_policy(self.settings, clock=clock),
            default_timeout=self.settings.permission_timeout,
            scheduler=scheduler,
            clock=clock,
            fail_closed=self.settings.fail_closed_suggestions,
        )
        self.dispatcher = EventDispatcher(self.store, self.permissions, self.bus, clock=clock)
        self._mutation_options: Dict[str, Any] = {
            "retry": self.settings.mutation_retries,
            "retry_delay": backoff_for(self.settings),
            "clock": clock,
        }
        if sleep is not None:
            self._mutation_options["sleep"] = sleep
        self._mutations: Dict[str, Mutation[Any, Any]] = {}

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def dispatch(self, event: Mapping[str, Any]) -> bool:
        return self.dispatcher.dispatch(event)

    def dispatch_many(self, events: Iterable[Mapping[str, Any]]) -> int:
        """Dispatch events in order and return how many were applied."""

        return sum(1 for event in events if self.dispatcher.dispatch(event))

    def timeline(self) -> tuple[TimelineEntry, ...]:
        state = self.store.state
        return build_timeline(state.messages, state.is_processing)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _mutation(self, key: str, factory: Callable[..., Mutation[Any, Any]], *args: Any) -> Mutation[Any, Any]:
        mutation = self._mutations.get(key)
        if mutation is None or mutation.disposed:
            mutation = factory(*args, **self._mutation_options)
            self._mutations[key] = mutation
        return mutation

    @property
    def send_message(self) -> Mutation[Any, Any]:
        return self._mutation("send_message", chat_mutations.send_message, self.store, self.transport)

    @property
    def clear_chat(self) -> Mutation[Any, Any]:
        return self._mutation("clear_chat", chat_mutations.clear_chat, self.store)

    @property
    def reset_chat(self) -> Mutation[Any, Any]:
        return self._mutation("reset_chat", chat_mutations.reset_chat, self.store, self.transport)

    @property
    def stop_generation(self) -> Mutation[Any, Any]:
        return self._mutation("stop_generation", chat_mutations.stop_generation, self.store, self.transport)

    @property
    def persist_conversation(self) -> Mutation[Any, Any]:
        if self.conversations is None:
            raise RuntimeError("No conversation store configured for this session")
        return self._mutation(
            "persist_conversation", chat_mutations.persist_conversation, self.store, self.conversations
        )

    @property
    def delete_conversation(self) -> Mutation[Any, Any]:
        return self._mutation(
            "delete_conversation",
            chat_mutations.delete_conversation,
            self.store,
            self.transport,
            self.conversations,
        )

    @property
    def grant_permission(self) -> Mutation[Any, Any]:
        return self._mutation("grant_permission", permission_mutations.grant_permission, self.permissions, self.transport)

    @property
    def deny_permission(self) -> Mutation[Any, Any]:
        return self._mutation("deny_permission", permission_mutations.deny_permission, self.permissions, self.transport)

    @property
    def batch_approve(self) -> Mutation[Any, Any]:
        return self._mutation("batch_approve", permission_mutations.batch_approve, self.permissions, self.transport)

    @property
    def clear_permissions(self) -> Mutation[Any, Any]:
        return self._mutation("clear_permissions", permission_mutations.clear_permissions, self.permissions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def reset(self, reason: str = "new conversation") -> None:
        """Start a new conversation: empty store, no pending permissions, idle mutations."""

        for mutation in self._mutations.values():
            mutation.reset()
        self.permissions.reset()
        self.store.reset_chat()
        LOGGER.info("Chat session reset (%s)", reason)
        self.bus.publish(SessionReset(reason=reason))

    def dispose(self) -> None:
        for mutation in self._mutations.values():
            mutation.dispose()
        self._mutations.clear()
        self.permissions.dispose()
        self.bus.clear()
        LOGGER.debug("Chat session disposed")


__all__ = ["ChatSession", "backoff_for", "build_policy"]
