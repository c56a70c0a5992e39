"""Shared test helpers and stub classes.

Import from here instead of duplicating these in individual test files::

    from tests.helpers import FakeClock, permission_event
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from quillchat.session.events import Event


class FakeClock:
    """Deterministic wall clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class EventRecorder:
    """Collects every event it is subscribed to, in publish order."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


async def no_sleep(delay: float) -> None:
    return None


class BackoffHook:
    """Replacement for ``asyncio.sleep`` that runs queued callbacks during a retry backoff.

    Lets a test deliver inbound events while a mutation is suspended between attempts.
    """

    def __init__(self) -> None:
        self.delays: List[float] = []
        self._queued: List[Callable[[], Any]] = []

    def during_next_backoff(self, callback: Callable[[], Any]) -> None:
        self._queued.append(callback)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        queued, self._queued = self._queued, []
        for callback in queued:
            callback()


def permission_event(request_id: str = "req-1", tool_name: str = "Bash", **extra: Any) -> Dict[str, Any]:
    """Build an inbound ``permissionRequest`` event."""

    event: Dict[str, Any] = {
        "type": "permissionRequest",
        "requestId": request_id,
        "toolName": tool_name,
        "input": extra.pop("input", {"command": "ls"}),
    }
    event.update(extra)
    return event


def tool_use(tool_use_id: str | None, tool_name: str = "Read", **extra: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "toolUse", "toolName": tool_name, "rawInput": extra.pop("raw_input", {})}
    if tool_use_id is not None:
        event["toolUseId"] = tool_use_id
    event.update(extra)
    return event


def tool_result(tool_use_id: str | None, content: str = "ok", **extra: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "toolResult", "content": content}
    if tool_use_id is not None:
        event["toolUseId"] = tool_use_id
    event.update(extra)
    return event
