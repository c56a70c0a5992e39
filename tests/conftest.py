"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

import pytest

from quillchat.permissions.manager import PermissionLifecycleManager
from quillchat.permissions.policy import PermissionPolicy
from quillchat.permissions.timers import ManualScheduler
from quillchat.services.settings import Settings
from quillchat.session.container import ChatSession
from quillchat.session.dispatcher import EventDispatcher
from quillchat.session.events import EventBus
from quillchat.session.store import SessionStore
from quillchat.session.transport import RecordingTransport
from tests.helpers import EventRecorder, FakeClock, no_sleep


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("QUILLCHAT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUILLCHAT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    return SessionStore(clock=clock)


@pytest.fixture
def policy(clock: FakeClock) -> PermissionPolicy:
    return PermissionPolicy(clock=clock)


@pytest.fixture
def permissions(
    transport: RecordingTransport,
    bus: EventBus,
    policy: PermissionPolicy,
    scheduler: ManualScheduler,
    clock: FakeClock,
) -> PermissionLifecycleManager:
    return PermissionLifecycleManager(
        transport, bus, policy=policy, default_timeout=60.0, scheduler=scheduler, clock=clock
    )


@pytest.fixture
def dispatcher(
    store: SessionStore, permissions: PermissionLifecycleManager, bus: EventBus, clock: FakeClock
) -> EventDispatcher:
    return EventDispatcher(store, permissions, bus, clock=clock)


@pytest.fixture
def session_factory(
    transport: RecordingTransport, scheduler: ManualScheduler, clock: FakeClock
) -> Iterator[Callable[..., ChatSession]]:
    created: List[ChatSession] = []

    def factory(**kwargs: Any) -> ChatSession:
        options: Dict[str, Any] = {
            "settings": Settings(),
            "scheduler": scheduler,
            "clock": clock,
            "sleep": no_sleep,
        }
        options.update(kwargs)
        session = ChatSession(transport, **options)
        created.append(session)
        return session

    yield factory
    for session in created:
        session.dispose()


@pytest.fixture
def session(session_factory: Callable[..., ChatSession]) -> ChatSession:
    return session_factory()
