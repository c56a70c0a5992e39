"""Derive the grouped presentation timeline from the conversation list.

The timeline is never stored. Rendering code calls :func:`build_timeline` with the
current message tuple and processing flag and may memoize on those inputs, since the
output is a deterministic value built only from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Literal, Optional, Sequence, Union

from .message_model import Message, MessageKind, ToolStatus, TokenUsage

PlanStatus = Literal["executing", "completed", "failed"]


@dataclass(slots=True, frozen=True)
class ToolStep:
    """A paired (invocation, result?) unit inside a plan."""

    id: str
    invocation: Optional[Message] = None
    result: Optional[Message] = None

    @property
    def has_result(self) -> bool:
        if self.result is not None:
            return True
        return self.invocation is not None and self.invocation.is_resolved

    @property
    def is_error(self) -> bool:
        if self.result is not None and self.result.is_error:
            return True
        return self.invocation is not None and self.invocation.status is ToolStatus.FAILED

    @property
    def status(self) -> str:
        if self.is_error:
            return ToolStatus.FAILED.value
        if self.has_result:
            return ToolStatus.COMPLETED.value
        if self.invocation is not None and self.invocation.status is not None:
            return self.invocation.status.value
        return ToolStatus.PENDING.value


@dataclass(slots=True, frozen=True)
class PlanGroup:
    """One assistant response (or thinking/tool burst) with its tool steps."""

    id: str
    assistant_message: Optional[Message]
    thinking_message: Optional[Message] = None
    steps: tuple[ToolStep, ...] = ()
    status: PlanStatus = "completed"


@dataclass(slots=True, frozen=True)
class StandaloneEntry:
    message: Message


TimelineEntry = Union[PlanGroup, StandaloneEntry]


@dataclass(slots=True, frozen=True)
class StepTotals:
    tokens: int = 0
    cache_created: int = 0
    cache_read: int = 0
    duration: float = 0


@dataclass(slots=True)
class _OpenPlan:
    id: str
    assistant_message: Optional[Message]
    thinking_message: Optional[Message] = None
    steps: list[ToolStep] = field(default_factory=list)

    def attach_invocation(self, message: Message) -> None:
        step_id = message.tool_use_id or message.id
        for index, step in enumerate(self.steps):
            if step.id == step_id and step.invocation is None:
                self.steps[index] = ToolStep(id=step_id, invocation=message, result=step.result)
                return
        self.steps.append(ToolStep(id=step_id, invocation=message))

    def attach_result(self, message: Message) -> None:
        index = self._find_step_for(message)
        if index is None:
            self.steps.append(ToolStep(id=message.tool_use_id or message.id, result=message))
            return
        step = self.steps[index]
        self.steps[index] = ToolStep(id=step.id, invocation=step.invocation, result=message)

    def _find_step_for(self, message: Message) -> int | None:
        open_indexes = [index for index, step in enumerate(self.steps) if step.result is None]
        if message.tool_use_id:
            for index in open_indexes:
                if self.steps[index].id == message.tool_use_id:
                    return index
        for index in open_indexes:
            if self.steps[index].invocation is not None:
                return index
        return None

    def freeze(self, *, is_processing: bool) -> PlanGroup:
        steps = tuple(self.steps)
        return PlanGroup(
            id=self.id,
            assistant_message=self.assistant_message,
            thinking_message=self.thinking_message,
            steps=steps,
            status=derive_plan_status(steps, active=is_processing),
        )


def derive_plan_status(steps: Sequence[ToolStep], *, active: bool) -> PlanStatus:
    """Return ``failed`` on any errored step, else ``completed`` once settled."""

    if any(step.is_error for step in steps):
        return "failed"
    if all(step.has_result for step in steps) and not active:
        return "completed"
    return "executing"


def build_timeline(messages: Iterable[Message], is_processing: bool) -> tuple[TimelineEntry, ...]:
    """Group ``messages`` into plans and standalone entries.

    While the session is processing no plan reports ``completed``; errored steps
    still surface as ``failed``.
    """

    entries: list[TimelineEntry] = []
    current: _OpenPlan | None = None

    def flush() -> None:
        nonlocal current
        if current is not None:
            entries.append(current.freeze(is_processing=is_processing))
            current = None

    for message in messages:
        kind = message.kind
        if kind is MessageKind.SESSION_INFO:
            continue
        if kind is MessageKind.ASSISTANT_OUTPUT:
            flush()
            current = _OpenPlan(id=message.id, assistant_message=message)
        elif kind is MessageKind.THINKING:
            if current is None:
                current = _OpenPlan(id=message.id, assistant_message=None, thinking_message=message)
            else:
                # a plan shows only its latest thinking block
                current.thinking_message = message
        elif kind is MessageKind.TOOL_INVOCATION:
            if current is None:
                current = _OpenPlan(id=message.id, assistant_message=None)
            current.attach_invocation(message)
        elif kind is MessageKind.TOOL_RESULT:
            if current is None:
                current = _OpenPlan(id=message.id, assistant_message=None)
            current.attach_result(message)
        else:
            flush()
            entries.append(StandaloneEntry(message=message))
    flush()
    return tuple(entries)


def calculate_step_totals(steps: Iterable[ToolStep]) -> StepTotals:
    """Sum the token and duration metrics reported on a plan's steps."""

    tokens = cache_created = cache_read = 0
    duration: float = 0
    for step in steps:
        tokens += int(_step_metric(step, "tokens"))
        cache_created += int(_step_metric(step, "cacheCreationTokens"))
        cache_read += int(_step_metric(step, "cacheReadTokens"))
        duration += _step_metric(step, "duration")
    return StepTotals(tokens=tokens, cache_created=cache_created, cache_read=cache_read, duration=duration)


def format_usage_summary(usage: TokenUsage | StepTotals | None) -> str | None:
    if usage is None:
        return None
    if isinstance(usage, TokenUsage):
        total, created, read = usage.total, usage.cache_creation_input_tokens, usage.cache_read_input_tokens
    else:
        total, created, read = usage.tokens, usage.cache_created, usage.cache_read
    if total <= 0 and created <= 0 and read <= 0:
        return None
    parts = [f"Tokens: {total:,}"]
    if created > 0:
        parts.append(f"{created:,} cache created")
    if read > 0:
        parts.append(f"{read:,} cache read")
    return " | ".join(parts)


def plan_summary(plan: PlanGroup, *, limit: int = 80) -> str:
    """Return a one-line label for a plan."""

    if plan.assistant_message is not None and plan.assistant_message.content.strip():
        text = plan.assistant_message.content.strip().splitlines()[0]
    elif plan.steps:
        names = [step.invocation.tool_name or "Tool" for step in plan.steps if step.invocation is not None]
        text = ", ".join(names) if names else "Tool results"
    elif plan.thinking_message is not None:
        text = "Thinking"
    else:
        text = "Response"
    if len(text) > limit:
        text = text[: limit - 1].rstrip() + "…"
    return text


def timeline_to_dict(entries: Iterable[TimelineEntry]) -> list[Dict[str, Any]]:
    """Serialize timeline entries for CLI/trace output."""

    payload: list[Dict[str, Any]] = []
    for entry in entries:
        if isinstance(entry, StandaloneEntry):
            payload.append({"kind": "message", "message": entry.message.to_dict()})
            continue
        payload.append(
            {
                "kind": "plan",
                "id": entry.id,
                "status": entry.status,
                "summary": plan_summary(entry),
                "assistant": entry.assistant_message.to_dict() if entry.assistant_message else None,
                "thinking": entry.thinking_message.to_dict() if entry.thinking_message else None,
                "steps": [
                    {
                        "id": step.id,
                        "status": step.status,
                        "invocation": step.invocation.to_dict() if step.invocation else None,
                        "result": step.result.to_dict() if step.result else None,
                    }
                    for step in entry.steps
                ],
            }
        )
    return payload


def _step_metric(step: ToolStep, key: str) -> float:
    for source in (step.invocation, step.result):
        if source is None:
            continue
        value = source.payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return 0


__all__ = [
    "PlanGroup",
    "PlanStatus",
    "StandaloneEntry",
    "StepTotals",
    "TimelineEntry",
    "ToolStep",
    "build_timeline",
    "calculate_step_totals",
    "derive_plan_status",
    "format_usage_summary",
    "plan_summary",
    "timeline_to_dict",
]
