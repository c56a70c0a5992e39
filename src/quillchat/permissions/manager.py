"""Permission lifecycle: policy evaluation, the pending queue, expiry and history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Sequence

from ..chat.message_model import _utcnow
from ..chat.restore import event_field, str_field
from ..session import commands
from ..session.errors import UnknownPermissionRequest
from ..session.events import EventBus, PermissionExpired, PermissionReopened, PermissionRequested, PermissionResolved
from ..session.transport import Transport
from .policy import AllowedPermission, PermissionPolicy, Verdict
from .timers import AsyncioScheduler, Scheduler, TimerHandle

LOGGER = logging.getLogger(__name__)

PermissionStatus = Literal["pending", "approved", "denied", "expired"]
ResolutionSource = Literal["manual", "suggestion", "policy", "expiry"]

SUGGESTION_DECISIONS: Dict[str, str] = {
    "allow": "allow",
    "allow_always": "allow_always",
    "allow_session": "allow_session",
    "allow_all": "allow",
    "deny": "deny",
    "explain": "deny",
}


def map_suggestion(suggestion: str, *, fail_closed: bool = False) -> str:
    """Translate a suggestion chosen by the user into an outbound decision.

    Unrecognised suggestions become ``allow``, or ``deny`` when ``fail_closed``.
    """

    decision = SUGGESTION_DECISIONS.get(suggestion)
    if decision is not None:
        return decision
    fallback = "deny" if fail_closed else "allow"
    LOGGER.warning("Unrecognised permission suggestion %r; treating as %s", suggestion, fallback)
    return fallback


def status_for_decision(decision: str) -> PermissionStatus:
    return "denied" if decision == "deny" else "approved"


@dataclass(slots=True, frozen=True)
class PendingPermission:
    """A permission request as the manager tracks it."""

    request_id: str
    tool_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None
    description: str = ""
    suggestions: tuple[str, ...] = ()
    pattern: Optional[str] = None
    status: PermissionStatus = "pending"
    timestamp: datetime = field(default_factory=_utcnow)
    timeout_deadline: Optional[datetime] = None
    decision: Optional[str] = None
    source: Optional[ResolutionSource] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @classmethod
    def from_event(cls, event: Mapping[str, Any], *, timestamp: datetime) -> PendingPermission:
        request_id = str_field(event, "requestId") or str_field(event, "id")
        tool_name = str_field(event, "toolName") or str_field(event, "tool")
        if not request_id or not tool_name:
            raise ValueError("permissionRequest requires requestId and toolName")
        raw_input = event_field(event, "input")
        raw_suggestions = event_field(event, "suggestions")
        suggestions: tuple[str, ...] = ()
        if isinstance(raw_suggestions, (list, tuple)):
            suggestions = tuple(str(item) for item in raw_suggestions if isinstance(item, (str, int)))
        return cls(
            request_id=request_id,
            tool_name=tool_name,
            input=dict(raw_input) if isinstance(raw_input, Mapping) else {},
            tool_use_id=str_field(event, "toolUseId"),
            description=str_field(event, "description") or "",
            suggestions=suggestions,
            pattern=str_field(event, "pattern"),
            timestamp=timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "requestId": self.request_id,
            "toolName": self.tool_name,
            "input": dict(self.input),
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_use_id:
            data["toolUseId"] = self.tool_use_id
        if self.decision:
            data["decision"] = self.decision
        if self.source:
            data["source"] = self.source
        if self.timeout_deadline is not None:
            data["timeoutDeadline"] = self.timeout_deadline.isoformat()
        return data


@dataclass(slots=True, frozen=True)
class Resolution:
    """A local resolution together with what it changed.

    Attributes:
        request: The request as it was while pending.
        record: History record the resolution appended.
        position: Index the request held in the pending queue.
        grants_before: Grant cache before the resolution.
        grants_after: Grant cache right after it.
    """

    request: PendingPermission
    record: PendingPermission
    position: int
    grants_before: tuple[AllowedPermission, ...]
    grants_after: tuple[AllowedPermission, ...]


class PermissionLifecycleManager:
    """Owns the pending-permission queue and resolves each request exactly once.

    Requests are evaluated against the :class:`PermissionPolicy` before they are
    queued. Policy resolutions answer the assistant process straight away and never
    publish :class:`PermissionRequested`. Queued requests wait for a manual decision
    or for their expiry timer, whichever comes first; every resolution path cancels
    the timer.
    """

    def __init__(
        self,
        transport: Transport,
        bus: EventBus,
        *,
        policy: PermissionPolicy | None = None,
        default_timeout: float | None = 60.0,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] | None = None,
        fail_closed: bool = False,
    ) -> None:
        self._transport = transport
        self._bus = bus
        self.policy = policy or PermissionPolicy(clock=clock)
        self.default_timeout = default_timeout
        self.fail_closed = fail_closed
        self._scheduler = scheduler or AsyncioScheduler.for_current_loop()
        self._clock = clock or _utcnow
        self._pending: Dict[str, PendingPermission] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._history: list[PendingPermission] = []
        self._disposed = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def pending(self) -> tuple[PendingPermission, ...]:
        return tuple(self._pending.values())

    @property
    def history(self) -> tuple[PendingPermission, ...]:
        return tuple(self._history)

    @property
    def current_request(self) -> PendingPermission | None:
        return next(iter(self._pending.values()), None)

    def get_pending(self, request_id: str) -> PendingPermission | None:
        return self._pending.get(request_id)

    def find_record(self, request_id: str) -> PendingPermission | None:
        """Return the most recent history record for ``request_id``."""

        for record in reversed(self._history):
            if record.request_id == request_id:
                return record
        return None

    def is_tool_allowed(self, tool_name: str) -> bool:
        return self.policy.is_tool_allowed(tool_name)

    def is_tool_auto_approved(self, tool_name: str) -> bool:
        return self.policy.is_tool_auto_approved(tool_name)

    def is_tool_denied(self, tool_name: str) -> bool:
        return self.policy.is_tool_denied(tool_name)

    # ------------------------------------------------------------------
    # Arrival
    # ------------------------------------------------------------------
    def handle_request(self, event: Mapping[str, Any]) -> PendingPermission:
        """Evaluate an inbound ``permissionRequest`` and queue it if a user must decide.

        Returns the request in its current state: ``pending`` when queued, otherwise
        the finalized record of the policy resolution.
        """

        if self._disposed:
            raise RuntimeError("Permission manager has been disposed")
        request = PendingPermission.from_event(event, timestamp=self._clock())
        existing = self._pending.get(request.request_id)
        if existing is not None:
            LOGGER.warning("Duplicate permission request %s ignored", request.request_id)
            return existing

        verdict = self.policy.evaluate(request.tool_name, request.input)
        if verdict.verdict is Verdict.DENY:
            LOGGER.info("Auto-denied %s request %s: %s", request.tool_name, request.request_id, verdict.reason)
            return self._auto_resolve(request, "deny")
        if verdict.verdict is Verdict.ALLOW:
            LOGGER.info("Auto-approved %s request %s: %s", request.tool_name, request.request_id, verdict.reason)
            return self._auto_resolve(request, "allow")

        if self.default_timeout:
            request = replace(
                request, timeout_deadline=request.timestamp + timedelta(seconds=self.default_timeout)
            )
            self._arm_timer(request.request_id, float(self.default_timeout))
        self._pending[request.request_id] = request
        LOGGER.debug("Queued permission request %s for %s", request.request_id, request.tool_name)
        self._bus.publish(
            PermissionRequested(
                request_id=request.request_id,
                tool_name=request.tool_name,
                tool_use_id=request.tool_use_id,
                input=dict(request.input),
                description=request.description,
            )
        )
        return request

    def _auto_resolve(self, request: PendingPermission, decision: str) -> PendingPermission:
        self._post_decision(request, decision)
        record = self._finalize(request, status_for_decision(decision), decision, "policy")
        self._publish_resolved(record)
        return record

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def respond(self, request_id: str, decision: str, *, source: ResolutionSource = "manual") -> PendingPermission:
        """Resolve a pending request with ``decision`` and answer the assistant process."""

        request = self._require_pending(request_id)
        self._post_decision(request, decision)
        return self._resolve(request, decision, source)

    def resolve_pending(self, request_id: str, decision: str, *, source: ResolutionSource = "manual") -> Resolution:
        """Resolve a pending request locally without posting the decision.

        The returned :class:`Resolution` can be handed to :meth:`reopen` if the
        decision never reaches the assistant process.
        """

        request = self._require_pending(request_id)
        position = list(self._pending).index(request_id)
        grants_before = self.policy.allowed
        record = self._resolve(request, decision, source)
        return Resolution(request, record, position, grants_before, self.policy.allowed)

    def reopen(self, resolution: Resolution) -> bool:
        """Take back one resolution made by :meth:`resolve_pending`.

        Only that request is touched: its history record is dropped, the grant it
        cached is withdrawn unless replaced since, and the request rejoins the queue
        at its old position with the expiry time it had left. Returns ``False`` when
        the record is already gone (for example after a reset) or the request is
        queued again.
        """

        record = resolution.record
        index = next((i for i, item in enumerate(self._history) if item is record), None)
        if index is None:
            LOGGER.debug("Not reopening %s; its resolution is no longer recorded", record.request_id)
            return False
        del self._history[index]
        self._withdraw_grant(resolution)
        if self._disposed or record.request_id in self._pending:
            return False
        self._enqueue(resolution.request, resolution.position)
        LOGGER.info("Permission request %s for %s is pending again", record.request_id, record.tool_name)
        self._bus.publish(PermissionReopened(request_id=record.request_id, tool_name=record.tool_name))
        return True

    def _withdraw_grant(self, resolution: Resolution) -> None:
        before, after = resolution.grants_before, resolution.grants_after
        added = next((grant for grant in after if all(grant is not old for old in before)), None)
        if added is None or all(grant is not added for grant in self.policy.allowed):
            return
        replaced = tuple(old for old in before if all(old is not grant for grant in after))
        self.policy.restore(tuple(grant for grant in self.policy.allowed if grant is not added) + replaced)

    def approve_current(self, decision: str = "allow") -> PendingPermission | None:
        current = self.current_request
        if current is None:
            return None
        return self.respond(current.request_id, decision)

    def deny_current(self) -> PendingPermission | None:
        current = self.current_request
        if current is None:
            return None
        return self.respond(current.request_id, "deny")

    def approve_with_suggestion(self, suggestion: str, request_id: str | None = None) -> PendingPermission | None:
        """Resolve a request (the current one by default) from a suggestion button."""

        target = request_id or (self.current_request.request_id if self.current_request else None)
        if target is None:
            return None
        decision = map_suggestion(suggestion, fail_closed=self.fail_closed)
        return self.respond(target, decision, source="suggestion")

    def expire(self, request_id: str) -> bool:
        """Mark ``request_id`` as expired if it is still pending."""

        request = self._pending.get(request_id)
        if request is None or self._disposed:
            return False
        record = self._finalize(request, "expired", None, "expiry")
        LOGGER.info("Permission request %s for %s expired", request_id, record.tool_name)
        self._bus.publish(PermissionExpired(request_id=request_id, tool_name=record.tool_name))
        return True

    def _resolve(self, request: PendingPermission, decision: str, source: ResolutionSource) -> PendingPermission:
        if decision == "allow_session":
            self.policy.add_allowed(request.tool_name, "session", pattern=request.pattern)
        elif decision == "allow_always":
            self.policy.add_allowed(request.tool_name, "always", pattern=request.pattern)
        record = self._finalize(request, status_for_decision(decision), decision, source)
        self._publish_resolved(record)
        return record

    def _finalize(
        self,
        request: PendingPermission,
        status: PermissionStatus,
        decision: str | None,
        source: ResolutionSource,
    ) -> PendingPermission:
        self._pending.pop(request.request_id, None)
        self._cancel_timer(request.request_id)
        record = replace(request, status=status, decision=decision, source=source, resolved_at=self._clock())
        self._history.append(record)
        return record

    def _publish_resolved(self, record: PendingPermission) -> None:
        self._bus.publish(
            PermissionResolved(
                request_id=record.request_id,
                tool_name=record.tool_name,
                status=record.status,
                decision=record.decision or "",
                source=record.source or "manual",
            )
        )

    def _post_decision(self, request: PendingPermission, decision: str) -> None:
        self._transport.post_message(
            commands.permission_response(request.request_id, decision, request.tool_name, request.input)
        )

    def _require_pending(self, request_id: str) -> PendingPermission:
        request = self._pending.get(request_id)
        if request is None:
            raise UnknownPermissionRequest(request_id)
        return request

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _enqueue(self, request: PendingPermission, position: int) -> None:
        if request.timeout_deadline is not None:
            remaining = (request.timeout_deadline - self._clock()).total_seconds()
            self._arm_timer(request.request_id, max(0.0, remaining))
        items = list(self._pending.items())
        items.insert(min(position, len(items)), (request.request_id, request))
        self._pending = dict(items)

    def _arm_timer(self, request_id: str, delay: float) -> None:
        self._cancel_timer(request_id)
        self._timers[request_id] = self._scheduler.call_later(delay, lambda: self.expire(request_id))

    def _cancel_timer(self, request_id: str) -> None:
        handle = self._timers.pop(request_id, None)
        if handle is not None:
            handle.cancel()

    def _cancel_all_timers(self) -> None:
        for request_id in list(self._timers):
            self._cancel_timer(request_id)

    # ------------------------------------------------------------------
    # Clearing and teardown
    # ------------------------------------------------------------------
    def clear_history(self) -> None:
        self._history.clear()

    def clear_pending(self) -> tuple[PendingPermission, ...]:
        """Drop every queued request without resolving it and return what was dropped."""

        self._cancel_all_timers()
        dropped = tuple(self._pending.values())
        if dropped:
            LOGGER.debug("Dropping %d pending permission request(s)", len(dropped))
        self._pending.clear()
        return dropped

    def requeue(self, requests: Sequence[PendingPermission]) -> int:
        """Put requests returned by :meth:`clear_pending` back at the head of the queue.

        Requests queued again in the meantime are skipped. Returns how many came back.
        """

        if self._disposed:
            return 0
        restored = [request for request in requests if request.request_id not in self._pending]
        for position, request in enumerate(restored):
            self._enqueue(request, position)
        return len(restored)

    def reset(self) -> None:
        """Forget the queue and history for a new conversation and prune grants that ran out."""

        self.clear_pending()
        self.clear_history()
        self.policy.clear_session_permissions()

    def dispose(self) -> None:
        """Tear down; no timer fires afterwards."""

        self._cancel_all_timers()
        self._pending.clear()
        self._disposed = True


__all__ = [
    "PendingPermission",
    "PermissionLifecycleManager",
    "PermissionStatus",
    "Resolution",
    "ResolutionSource",
    "SUGGESTION_DECISIONS",
    "map_suggestion",
    "status_for_decision",
]
