"""Tests for the permission lifecycle manager."""

from __future__ import annotations

import asyncio

import pytest

from quillchat.permissions.manager import (
    PendingPermission,
    PermissionLifecycleManager,
    map_suggestion,
    status_for_decision,
)
from quillchat.permissions.policy import PermissionPolicy, ToolPermissionConfig
from quillchat.permissions.timers import AsyncioScheduler, ManualScheduler
from quillchat.session.errors import UnknownPermissionRequest
from quillchat.session.events import EventBus, PermissionExpired, PermissionRequested, PermissionResolved
from quillchat.session.transport import RecordingTransport
from tests.helpers import EventRecorder, FakeClock, permission_event


@pytest.fixture
def events(bus: EventBus, recorder: EventRecorder) -> EventRecorder:
    for event_type in (PermissionRequested, PermissionResolved, PermissionExpired):
        bus.subscribe(event_type, recorder)
    return recorder


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("suggestion", "expected"),
    [("allow", "allow"), ("allow_all", "allow"), ("allow_session", "allow_session"), ("explain", "deny")],
)
def test_map_suggestion_known_values(suggestion: str, expected: str) -> None:
    assert map_suggestion(suggestion) == expected


def test_map_suggestion_unknown_value(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING"):
        assert map_suggestion("shrug") == "allow"
    assert map_suggestion("shrug", fail_closed=True) == "deny"
    assert "Unrecognised permission suggestion" in caplog.text


def test_status_for_decision() -> None:
    assert status_for_decision("deny") == "denied"
    assert status_for_decision("allow_always") == "approved"


def test_pending_permission_requires_ids(clock: FakeClock) -> None:
    with pytest.raises(ValueError):
        PendingPermission.from_event({"type": "permissionRequest", "toolName": "Bash"}, timestamp=clock())


# ---------------------------------------------------------------------------
# Arrival
# ---------------------------------------------------------------------------


class TestArrival:
    """Tests for handle_request."""

    def test_request_is_queued_with_deadline(
        self, permissions: PermissionLifecycleManager, events: EventRecorder, clock: FakeClock
    ) -> None:
        request = permissions.handle_request(permission_event("r1", toolUseId="t1", description="List"))

        assert request.is_pending
        assert permissions.current_request == request
        assert request.timeout_deadline is not None
        assert (request.timeout_deadline - clock()).total_seconds() == 60
        assert events.of_type(PermissionRequested) == [
            PermissionRequested(
                request_id="r1", tool_name="Bash", tool_use_id="t1", input={"command": "ls"}, description="List"
            )
        ]

    def test_always_deny_is_never_queued(
        self,
        permissions: PermissionLifecycleManager,
        transport: RecordingTransport,
        events: EventRecorder,
        scheduler: ManualScheduler,
    ) -> None:
        permissions.policy.configure([ToolPermissionConfig("Bash", always_deny=True)])

        record = permissions.handle_request(permission_event("r1"))

        assert record.status == "denied"
        assert record.source == "policy"
        assert permissions.pending == ()
        assert scheduler.pending() == 0
        assert events.of_type(PermissionRequested) == []
        assert [(e.status, e.source) for e in events.of_type(PermissionResolved)] == [("denied", "policy")]
        assert transport.sent == [
            {
                "type": "permissionResponse",
                "requestId": "r1",
                "decision": "deny",
                "toolName": "Bash",
                "input": {"command": "ls"},
            }
        ]

    def test_auto_approve_posts_allow(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport, events: EventRecorder
    ) -> None:
        permissions.policy.configure([ToolPermissionConfig("Read", auto_approve=True)])

        record = permissions.handle_request(permission_event("r1", tool_name="Read", input={"file_path": "a"}))

        assert record.status == "approved"
        assert transport.of_type("permissionResponse")[0]["decision"] == "allow"
        assert events.of_type(PermissionRequested) == []

    def test_duplicate_request_is_ignored(
        self, permissions: PermissionLifecycleManager, events: EventRecorder
    ) -> None:
        first = permissions.handle_request(permission_event("r1"))
        second = permissions.handle_request(permission_event("r1", tool_name="Edit"))

        assert second is first
        assert len(permissions.pending) == 1
        assert len(events.of_type(PermissionRequested)) == 1

    def test_without_timeout_no_timer_is_armed(
        self, transport: RecordingTransport, bus: EventBus, scheduler: ManualScheduler, clock: FakeClock
    ) -> None:
        manager = PermissionLifecycleManager(
            transport, bus, default_timeout=None, scheduler=scheduler, clock=clock
        )

        request = manager.handle_request(permission_event("r1"))

        assert request.timeout_deadline is None
        assert scheduler.pending() == 0


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolution:
    """Tests for manual and suggestion-driven resolution."""

    def test_respond_posts_and_records(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport, events: EventRecorder
    ) -> None:
        permissions.handle_request(permission_event("r1"))

        record = permissions.respond("r1", "allow")

        assert record.status == "approved"
        assert record.decision == "allow"
        assert permissions.pending == ()
        assert permissions.find_record("r1") == record
        assert transport.of_type("permissionResponse")[0]["requestId"] == "r1"
        assert [e.source for e in events.of_type(PermissionResolved)] == ["manual"]

    def test_unknown_request_raises(self, permissions: PermissionLifecycleManager) -> None:
        with pytest.raises(UnknownPermissionRequest) as excinfo:
            permissions.respond("ghost", "allow")

        assert excinfo.value.request_id == "ghost"
        assert isinstance(excinfo.value, KeyError)

    def test_second_resolution_is_rejected(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.respond("r1", "deny")

        with pytest.raises(UnknownPermissionRequest):
            permissions.respond("r1", "allow")

    def test_resolve_pending_does_not_post(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport
    ) -> None:
        permissions.handle_request(permission_event("r1"))

        permissions.resolve_pending("r1", "allow")

        assert transport.sent == []
        assert permissions.pending == ()

    def test_session_grant_auto_approves_next_request(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport, events: EventRecorder
    ) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.respond("r1", "allow_session")

        follow_up = permissions.handle_request(permission_event("r2"))

        assert follow_up.status == "approved"
        assert follow_up.source == "policy"
        assert [grant.scope for grant in permissions.policy.allowed] == ["session"]
        assert len(events.of_type(PermissionRequested)) == 1
        assert [c["decision"] for c in transport.of_type("permissionResponse")] == ["allow_session", "allow"]

    def test_current_request_helpers_follow_queue_order(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.handle_request(permission_event("r2"))

        assert permissions.approve_current().request_id == "r1"  # type: ignore[union-attr]
        assert permissions.deny_current().status == "denied"  # type: ignore[union-attr]
        assert permissions.approve_current() is None
        assert permissions.deny_current() is None

    def test_approve_with_suggestion(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport
    ) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.handle_request(permission_event("r2"))

        first = permissions.approve_with_suggestion("explain")
        second = permissions.approve_with_suggestion("allow_always", "r2")

        assert first is not None and first.status == "denied" and first.source == "suggestion"
        assert second is not None and second.decision == "allow_always"
        assert permissions.approve_with_suggestion("allow") is None

    def test_fail_closed_denies_unknown_suggestion(
        self, transport: RecordingTransport, bus: EventBus, scheduler: ManualScheduler, clock: FakeClock
    ) -> None:
        manager = PermissionLifecycleManager(transport, bus, scheduler=scheduler, clock=clock, fail_closed=True)
        manager.handle_request(permission_event("r1"))

        record = manager.approve_with_suggestion("mystery")

        assert record is not None and record.status == "denied"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    """Tests for timer-driven expiry."""

    def test_expires_exactly_once_at_deadline(
        self,
        permissions: PermissionLifecycleManager,
        scheduler: ManualScheduler,
        transport: RecordingTransport,
        events: EventRecorder,
    ) -> None:
        permissions.handle_request(permission_event("r1"))

        assert scheduler.advance(59) == 0
        assert permissions.get_pending("r1") is not None
        assert scheduler.advance(1) == 1
        scheduler.advance(600)

        assert permissions.pending == ()
        assert events.of_type(PermissionExpired) == [PermissionExpired(request_id="r1", tool_name="Bash")]
        assert events.of_type(PermissionResolved) == []
        assert transport.sent == []
        record = permissions.find_record("r1")
        assert record is not None and (record.status, record.source) == ("expired", "expiry")

    def test_manual_resolution_cancels_timer(
        self, permissions: PermissionLifecycleManager, scheduler: ManualScheduler, events: EventRecorder
    ) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.respond("r1", "allow")

        scheduler.advance(120)

        assert events.of_type(PermissionExpired) == []
        assert scheduler.pending() == 0

    def test_expire_ignores_resolved_request(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.respond("r1", "deny")

        assert permissions.expire("r1") is False

    def test_dispose_silences_timers(
        self, permissions: PermissionLifecycleManager, scheduler: ManualScheduler, events: EventRecorder
    ) -> None:
        permissions.handle_request(permission_event("r1"))

        permissions.dispose()
        scheduler.advance(120)

        assert events.of_type(PermissionExpired) == []
        with pytest.raises(RuntimeError):
            permissions.handle_request(permission_event("r2"))


# ---------------------------------------------------------------------------
# Reopen, requeue and reset
# ---------------------------------------------------------------------------


class TestReopen:
    """Tests for taking back a local resolution, requeueing and reset."""

    def test_reopen_requeues_and_rearms_remaining_time(
        self,
        permissions: PermissionLifecycleManager,
        scheduler: ManualScheduler,
        clock: FakeClock,
        events: EventRecorder,
    ) -> None:
        permissions.handle_request(permission_event("r1"))
        clock.advance(20)
        scheduler.advance(20)
        resolution = permissions.resolve_pending("r1", "allow_always")

        assert permissions.reopen(resolution) is True

        assert [p.request_id for p in permissions.pending] == ["r1"]
        assert permissions.get_pending("r1").decision is None  # type: ignore[union-attr]
        assert permissions.history == ()
        assert permissions.policy.allowed == ()
        assert scheduler.advance(39) == 0
        assert scheduler.advance(1) == 1
        assert len(events.of_type(PermissionExpired)) == 1

    def test_reopen_keeps_requests_that_arrived_since(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.handle_request(permission_event("r2"))
        resolution = permissions.resolve_pending("r1", "allow")
        permissions.handle_request(permission_event("r3"))
        permissions.respond("r2", "deny")

        permissions.reopen(resolution)

        assert [p.request_id for p in permissions.pending] == ["r1", "r3"]
        assert [(r.request_id, r.status) for r in permissions.history] == [("r2", "denied")]

    def test_reopen_puts_back_the_grant_it_replaced(
        self, permissions: PermissionLifecycleManager, policy: PermissionPolicy
    ) -> None:
        earlier = policy.add_allowed("Write", "session", pattern="tmp/*")
        permissions.handle_request(
            permission_event("r1", tool_name="Write", input={"file_path": "src/x"}, pattern="tmp/*")
        )
        resolution = permissions.resolve_pending("r1", "allow_always")
        assert [g.scope for g in policy.allowed] == ["always"]

        permissions.reopen(resolution)

        assert policy.allowed == (earlier,)

    def test_reopen_leaves_a_grant_replaced_since(
        self, permissions: PermissionLifecycleManager, policy: PermissionPolicy
    ) -> None:
        permissions.handle_request(permission_event("r1", tool_name="Write"))
        resolution = permissions.resolve_pending("r1", "allow_session")
        newer = policy.add_allowed("Write", "always")

        permissions.reopen(resolution)

        assert policy.allowed == (newer,)

    def test_reopen_after_reset_is_a_no_op(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1"))
        resolution = permissions.resolve_pending("r1", "deny")
        permissions.reset()

        assert permissions.reopen(resolution) is False
        assert permissions.pending == ()

    def test_clear_pending_drops_without_resolving(
        self, permissions: PermissionLifecycleManager, transport: RecordingTransport, scheduler: ManualScheduler
    ) -> None:
        permissions.handle_request(permission_event("r1"))

        dropped = permissions.clear_pending()

        assert [p.request_id for p in dropped] == ["r1"]
        assert permissions.pending == ()
        assert permissions.history == ()
        assert transport.sent == []
        assert scheduler.pending() == 0

    def test_requeue_goes_ahead_of_newer_requests(
        self, permissions: PermissionLifecycleManager, scheduler: ManualScheduler
    ) -> None:
        permissions.handle_request(permission_event("r1"))
        permissions.handle_request(permission_event("r2"))
        dropped = permissions.clear_pending()
        permissions.handle_request(permission_event("r3"))
        permissions.handle_request(permission_event("r2"))

        assert permissions.requeue(dropped) == 1

        assert [p.request_id for p in permissions.pending] == ["r1", "r3", "r2"]
        assert scheduler.pending() == 3

    def test_reset_keeps_live_grants(self, permissions: PermissionLifecycleManager, policy: PermissionPolicy) -> None:
        policy.add_allowed("Bash", "always")
        policy.add_allowed("Edit", "once")
        permissions.handle_request(permission_event("r1", tool_name="Write"))

        permissions.reset()

        assert permissions.pending == ()
        assert permissions.history == ()
        assert [g.tool_name for g in policy.allowed] == ["Bash"]

    def test_to_dict(self, permissions: PermissionLifecycleManager) -> None:
        permissions.handle_request(permission_event("r1", toolUseId="t1"))
        record = permissions.respond("r1", "deny")

        data = record.to_dict()

        assert data["requestId"] == "r1"
        assert data["status"] == "denied"
        assert data["decision"] == "deny"
        assert data["source"] == "manual"
        assert data["toolUseId"] == "t1"
        assert "timeoutDeadline" in data


# ---------------------------------------------------------------------------
# Event loop scheduling
# ---------------------------------------------------------------------------


def test_request_without_event_loop_is_refused(transport: RecordingTransport, bus: EventBus, clock: FakeClock) -> None:
    manager = PermissionLifecycleManager(transport, bus, scheduler=AsyncioScheduler(), clock=clock)

    with pytest.raises(RuntimeError, match="event loop"):
        manager.handle_request(permission_event("r1"))

    assert manager.pending == ()


def test_scheduler_with_explicit_loop_arms_outside_it() -> None:
    loop = asyncio.new_event_loop()
    fired: list[str] = []
    try:
        AsyncioScheduler(loop).call_later(0, lambda: fired.append("r1"))
        loop.run_until_complete(asyncio.sleep(0.01))
    finally:
        loop.close()

    assert fired == ["r1"]


@pytest.mark.asyncio
async def test_manager_built_inside_loop_expires_requests(
    transport: RecordingTransport, bus: EventBus, recorder: EventRecorder
) -> None:
    bus.subscribe(PermissionExpired, recorder)
    manager = PermissionLifecycleManager(transport, bus, default_timeout=0.01)

    manager.handle_request(permission_event("r1"))
    await asyncio.sleep(0.05)

    assert [event.request_id for event in recorder.of_type(PermissionExpired)] == ["r1"]
    manager.dispose()
