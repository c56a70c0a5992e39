"""Event bus used to notify observers about session and permission activity.

The dispatcher and the permission lifecycle manager publish these events; the
rendering layer (or tests) subscribe to them instead of being called directly.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, DefaultDict, Generic, TypeVar
from weakref import WeakMethod, ref

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all session events."""


# =============================================================================
# Permission events
# =============================================================================


@dataclass(slots=True)
class PermissionRequested(Event):
    """Emitted when a permission request is queued for a user decision.

    Attributes:
        request_id: Identifier of the pending request.
        tool_name: Tool the assistant wants to run.
        tool_use_id: Invocation the request belongs to, when known.
        input: Tool input the decision applies to.
        description: Human readable explanation supplied by the assistant.
    """

    request_id: str
    tool_name: str
    tool_use_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(slots=True)
class PermissionResolved(Event):
    """Emitted once a request reaches approved or denied.

    Attributes:
        request_id: Identifier of the resolved request.
        tool_name: Tool the decision applies to.
        status: ``approved`` or ``denied``.
        decision: Decision sent to the assistant process.
        source: ``manual``, ``suggestion`` or ``policy``.
    """

    request_id: str
    tool_name: str
    status: str
    decision: str
    source: str


@dataclass(slots=True)
class PermissionExpired(Event):
    """Emitted exactly once when a pending request times out."""

    request_id: str
    tool_name: str


@dataclass(slots=True)
class PermissionReopened(Event):
    """Emitted when a resolution is taken back and the request is pending again."""

    request_id: str
    tool_name: str


# =============================================================================
# Session events
# =============================================================================


@dataclass(slots=True)
class ProcessingChanged(Event):
    is_processing: bool


@dataclass(slots=True)
class AssistantErrorReported(Event):
    """Emitted when the assistant process reports an error."""

    message: str
    code: str | None = None
    recoverable: bool | None = None


@dataclass(slots=True)
class ConversationRestored(Event):
    """Emitted after a persisted snapshot replaced the conversation."""

    conversation_id: str | None
    message_count: int


@dataclass(slots=True)
class SessionReset(Event):
    reason: str = "reset"


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are stored as weak references where possible (bound methods), so an
    observer that goes away does not keep receiving events. A handler that raises
    is logged and the remaining handlers still run.

    Thread Safety:
        Not thread-safe; publish from the thread driving the session.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to event type %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Invoke every live handler registered for ``type(event)`` in order."""
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if not handlers:
            logger.debug("No handlers for event type %s", event_type.__name__)
            return

        logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))
        dead_indices: list[int] = []
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for plain callables."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "AssistantErrorReported",
    "ConversationRestored",
    "Event",
    "EventBus",
    "Handler",
    "PermissionExpired",
    "PermissionReopened",
    "PermissionRequested",
    "PermissionResolved",
    "ProcessingChanged",
    "SessionReset",
]
