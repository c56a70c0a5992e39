"""Permission mutations that resolve requests optimistically before answering the host."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal

from ..permissions.manager import PendingPermission, PermissionLifecycleManager, Resolution
from ..session import commands
from ..session.transport import Transport
from .engine import Mutation, optimistic_mutation

LOGGER = logging.getLogger(__name__)

GrantScope = Literal["once", "session", "always"]


def scope_to_decision(scope: GrantScope | None) -> str:
    if scope == "always":
        return "allow_always"
    if scope == "session":
        return "allow_session"
    return "allow"


@dataclass(slots=True, frozen=True)
class GrantVariables:
    request_id: str
    scope: GrantScope = "once"


@dataclass(slots=True, frozen=True)
class BatchApproveVariables:
    request_ids: tuple[str, ...]
    scope: GrantScope = "once"

    @classmethod
    def all_pending(cls, manager: PermissionLifecycleManager, scope: GrantScope = "once") -> BatchApproveVariables:
        return cls(tuple(request.request_id for request in manager.pending), scope)


def _response_for(record: PendingPermission) -> Dict[str, Any]:
    return commands.permission_response(record.request_id, record.decision or "deny", record.tool_name, record.input)


def _resolved_record(manager: PermissionLifecycleManager, request_id: str) -> PendingPermission:
    record = manager.find_record(request_id)
    if record is None:
        raise LookupError(f"Permission request {request_id!r} was not resolved")
    return record


def _reopen_all(manager: PermissionLifecycleManager) -> Callable[[tuple[Resolution, ...]], None]:
    """Rollback that takes back only the resolutions one call made, newest first."""

    def rollback(resolutions: tuple[Resolution, ...]) -> None:
        for resolution in reversed(resolutions):
            manager.reopen(resolution)

    return rollback


def grant_permission(
    manager: PermissionLifecycleManager, transport: Transport, **options: Any
) -> Mutation[Dict[str, Any], GrantVariables]:
    """Approve a pending request; ``session``/``always`` scopes also cache a grant.

    If the response cannot be posted the request is pending again and any grant it
    cached is withdrawn; requests that arrived in the meantime stay queued.
    """

    def apply(variables: GrantVariables) -> tuple[Resolution, ...]:
        return (manager.resolve_pending(variables.request_id, scope_to_decision(variables.scope)),)

    async def action(variables: GrantVariables) -> Dict[str, Any]:
        command = _response_for(_resolved_record(manager, variables.request_id))
        transport.post_message(command)
        return command

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=_reopen_all(manager),
        name="grant_permission",
        **options,
    )


def deny_permission(
    manager: PermissionLifecycleManager, transport: Transport, **options: Any
) -> Mutation[Dict[str, Any], str]:
    def apply(request_id: str) -> tuple[Resolution, ...]:
        return (manager.resolve_pending(request_id, "deny"),)

    async def action(request_id: str) -> Dict[str, Any]:
        command = _response_for(_resolved_record(manager, request_id))
        transport.post_message(command)
        return command

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=_reopen_all(manager),
        name="deny_permission",
        **options,
    )


def batch_approve(
    manager: PermissionLifecycleManager, transport: Transport, **options: Any
) -> Mutation[List[Dict[str, Any]], BatchApproveVariables]:
    """Approve several pending requests with one scope.

    Ids that are not pending when the batch starts are skipped. If any post fails,
    every request in the batch returns to the queue.
    """

    skipped: Dict[int, frozenset[str]] = {}

    def apply(variables: BatchApproveVariables) -> tuple[Resolution, ...]:
        decision = scope_to_decision(variables.scope)
        resolutions: list[Resolution] = []
        for request_id in dict.fromkeys(variables.request_ids):
            if manager.get_pending(request_id) is None:
                LOGGER.debug("Skipping %s in batch approval; not pending", request_id)
                continue
            resolutions.append(manager.resolve_pending(request_id, decision))
        resolved = frozenset(resolution.record.request_id for resolution in resolutions)
        skipped[id(variables)] = frozenset(variables.request_ids) - resolved
        return tuple(resolutions)

    async def action(variables: BatchApproveVariables) -> List[Dict[str, Any]]:
        excluded = skipped.get(id(variables), frozenset())
        sent: List[Dict[str, Any]] = []
        for request_id in dict.fromkeys(variables.request_ids):
            record = manager.find_record(request_id)
            if record is None or request_id in excluded:
                continue
            command = _response_for(record)
            transport.post_message(command)
            sent.append(command)
        return sent

    def on_success(sent: List[Dict[str, Any]], variables: BatchApproveVariables, resolutions: Any) -> None:
        LOGGER.info("Batch approved %d permission request(s)", len(sent))

    def on_settled(sent: Any, error: Any, variables: BatchApproveVariables, resolutions: Any) -> None:
        skipped.pop(id(variables), None)

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=_reopen_all(manager),
        on_success=on_success,
        on_settled=on_settled,
        name="batch_approve",
        **options,
    )


def clear_permissions(manager: PermissionLifecycleManager, **options: Any) -> Mutation[None, None]:
    """Drop every pending request locally; a rollback queues the same requests again."""

    def apply(_: None) -> tuple[PendingPermission, ...]:
        return manager.clear_pending()

    async def action(_: None) -> None:
        return None

    return optimistic_mutation(
        action,
        apply=apply,
        rollback=manager.requeue,
        name="clear_permissions",
        **options,
    )


__all__ = [
    "BatchApproveVariables",
    "GrantScope",
    "GrantVariables",
    "batch_approve",
    "clear_permissions",
    "deny_permission",
    "grant_permission",
    "scope_to_decision",
]
