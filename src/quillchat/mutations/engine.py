"""Async mutation runner with optimistic updates, stale-call discarding and retry."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from ..chat.message_model import _utcnow

LOGGER = logging.getLogger(__name__)

TData = TypeVar("TData")
TVars = TypeVar("TVars")

RetryPredicate = Callable[[int, BaseException], bool]
RetryPolicy = Union[bool, int, RetryPredicate, None]
RetryDelay = Callable[[int, BaseException], float]
SleepFn = Callable[[float], Awaitable[None]]
StateListener = Callable[["MutationState[Any, Any]"], None]

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF = wait_exponential(multiplier=1, exp_base=2, max=30)


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class MutationState(Generic[TData, TVars]):
    """Observable state of a :class:`Mutation`; replaced wholesale on every change."""

    status: MutationStatus = MutationStatus.IDLE
    data: Optional[TData] = None
    error: Optional[BaseException] = None
    attempt_count: int = 0
    variables: Optional[TVars] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_idle(self) -> bool:
        return self.status is MutationStatus.IDLE

    @property
    def is_pending(self) -> bool:
        return self.status is MutationStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self.status is MutationStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is MutationStatus.ERROR


@dataclass(slots=True, frozen=True)
class MutationOutcome(Generic[TData]):
    """Result of a fire-and-forget :meth:`Mutation.mutate` call."""

    data: Optional[TData] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[TData]:
        if self.error is not None:
            raise self.error
        return self.data


def attempts_allowed(retry: RetryPolicy) -> int | None:
    """Total number of invocations a static retry policy permits, ``None`` for predicates."""

    if retry is None or retry is False:
        return 1
    if retry is True:
        return DEFAULT_RETRY_ATTEMPTS
    if isinstance(retry, int):
        return max(0, retry) + 1
    return None


def _build_stop(retry: RetryPolicy) -> Callable[[RetryCallState], bool]:
    limit = attempts_allowed(retry)

    def stop(retry_state: RetryCallState) -> bool:
        if limit is not None:
            return retry_state.attempt_number >= limit
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if error is None:
            return True
        return not retry(retry_state.attempt_number, error)  # type: ignore[operator]

    return stop


def _build_wait(retry_delay: RetryDelay | None) -> Callable[[RetryCallState], float]:
    if retry_delay is None:
        return DEFAULT_BACKOFF

    def wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        return max(0.0, float(retry_delay(retry_state.attempt_number - 1, error)))

    return wait


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Mutation(Generic[TData, TVars]):
    """Runs one user-initiated async action at a time with observable state.

    Each call is tagged with a token. State commits only while that token is the
    most recent one and the mutation has not been disposed; a superseded call keeps
    running to completion but its result never reaches :attr:`state`. Lifecycle
    callbacks still run for every call, so optimistic rollbacks are never skipped.

    Retries happen inside a single call: ``on_mutate`` runs once, the action runs up
    to the number of attempts ``retry`` permits and ``attempt_count`` tracks them.
    """

    def __init__(
        self,
        action: Callable[[TVars], Awaitable[TData]],
        *,
        on_mutate: Callable[[TVars], Any] | None = None,
        on_success: Callable[[TData, TVars, Any], Any] | None = None,
        on_error: Callable[[BaseException, TVars, Any], Any] | None = None,
        on_settled: Callable[[Optional[TData], Optional[BaseException], TVars, Any], Any] | None = None,
        retry: RetryPolicy = False,
        retry_delay: RetryDelay | None = None,
        sleep: SleepFn | None = None,
        clock: Callable[[], datetime] | None = None,
        name: str | None = None,
    ) -> None:
        self._action = action
        self._on_mutate = on_mutate
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled
        self._retry = retry
        self._retry_delay = retry_delay
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow
        self.name = name or getattr(action, "__name__", "mutation")
        self._tokens = itertools.count(1)
        self._token = 0
        self._disposed = False
        self._state: MutationState[TData, TVars] = MutationState()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> MutationState[TData, TVars]:
        return self._state

    @property
    def disposed(self) -> bool:
        return self._disposed

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------
    async def mutate_async(self, variables: TVars) -> TData:
        """Run the mutation and return its data, raising the final error on failure."""

        token = self._begin(variables)
        return await self._execute(token, variables)

    def mutate(self, variables: TVars) -> asyncio.Task[MutationOutcome[TData]]:
        """Start the mutation without awaiting it.

        The returned task always completes with a :class:`MutationOutcome`; failures
        are carried in ``outcome.error`` rather than raised.
        """

        loop = asyncio.get_running_loop()
        token = self._begin(variables)

        async def _run() -> MutationOutcome[TData]:
            try:
                data = await self._execute(token, variables)
            except Exception as error:
                return MutationOutcome(error=error)
            return MutationOutcome(data=data)

        return loop.create_task(_run(), name=f"mutation:{self.name}")

    def reset(self) -> None:
        """Return to idle and orphan any call still in flight."""

        self._token = next(self._tokens)
        self._set_state(MutationState())

    def dispose(self) -> None:
        """Tear the mutation down; in-flight calls can no longer commit."""

        self._disposed = True
        self._token = next(self._tokens)
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _begin(self, variables: TVars) -> int:
        if self._disposed:
            raise RuntimeError(f"Mutation {self.name!r} has been disposed")
        token = next(self._tokens)
        self._token = token
        self._commit(
            token,
            MutationState(
                status=MutationStatus.PENDING,
                variables=variables,
                started_at=self._clock(),
            ),
        )
        return token

    async def _execute(self, token: int, variables: TVars) -> TData:
        context: Any = None
        try:
            if self._on_mutate is not None:
                context = await _maybe_await(self._on_mutate(variables))
            data = await self._run_action(token, variables)
        except Exception as error:
            LOGGER.debug("Mutation %s failed: %s", self.name, error)
            self._commit(
                token,
                replace(
                    self._state,
                    status=MutationStatus.ERROR,
                    error=error,
                    data=None,
                    completed_at=self._clock(),
                ),
            )
            await self._callback("on_error", self._on_error, error, variables, context)
            await self._callback("on_settled", self._on_settled, None, error, variables, context)
            raise
        self._commit(
            token,
            replace(
                self._state,
                status=MutationStatus.SUCCESS,
                data=data,
                error=None,
                completed_at=self._clock(),
            ),
        )
        await self._callback("on_success", self._on_success, data, variables, context)
        await self._callback("on_settled", self._on_settled, data, None, variables, context)
        return data

    async def _run_action(self, token: int, variables: TVars) -> TData:
        retrying = AsyncRetrying(
            reraise=True,
            stop=_build_stop(self._retry),
            wait=_build_wait(self._retry_delay),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    LOGGER.debug("Retrying mutation %s (attempt %d)", self.name, attempt_number)
                self._commit(token, replace(self._state, attempt_count=attempt_number))
                return await self._action(variables)
        raise RuntimeError("retry loop exited without an attempt")  # pragma: no cover

    async def _callback(self, label: str, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            await _maybe_await(callback(*args))
        except Exception:
            LOGGER.exception("Mutation %s %s callback failed", self.name, label)

    def _commit(self, token: int, state: MutationState[TData, TVars]) -> bool:
        if self._disposed or token != self._token:
            LOGGER.debug("Discarding stale update for mutation %s", self.name)
            return False
        self._set_state(state)
        return True

    def _set_state(self, state: MutationState[TData, TVars]) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Mutation %s listener failed", self.name)


@dataclass(slots=True, frozen=True)
class _OptimisticContext:
    snapshot: Any
    user_context: Any = None


def optimistic_mutation(
    action: Callable[[TVars], Awaitable[TData]],
    *,
    get_snapshot: Callable[[], Any] | None = None,
    apply: Callable[[TVars], Any],
    rollback: Callable[[Any], None],
    on_success: Callable[[TData, TVars, Any], Any] | None = None,
    on_error: Callable[[BaseException, TVars, Any], Any] | None = None,
    on_settled: Callable[[Optional[TData], Optional[BaseException], TVars, Any], Any] | None = None,
    **kwargs: Any,
) -> Mutation[TData, TVars]:
    """Build a :class:`Mutation` that applies ``apply`` before the action runs.

    ``get_snapshot`` captures the shared state first; if the speculative change or
    the action fails, ``rollback`` receives that snapshot and must restore it
    exactly. Without ``get_snapshot``, ``apply`` returns an undo record describing
    only what it changed and ``rollback`` receives that record instead, so state
    written by others while the action runs survives a rollback. Such an ``apply``
    must leave the state untouched when it raises. Success needs no confirmation
    step. User callbacks receive the value returned by ``apply`` as their context.
    """

    def _on_mutate(variables: TVars) -> _OptimisticContext:
        if get_snapshot is None:
            applied = apply(variables)
            return _OptimisticContext(applied, applied)
        snapshot = get_snapshot()
        try:
            applied = apply(variables)
        except Exception:
            rollback(snapshot)
            raise
        return _OptimisticContext(snapshot, applied)

    async def _on_success(data: TData, variables: TVars, context: Any) -> None:
        if on_success is not None:
            await _maybe_await(on_success(data, variables, _user_context(context)))

    async def _on_error(error: BaseException, variables: TVars, context: Any) -> None:
        if isinstance(context, _OptimisticContext):
            rollback(context.snapshot)
            LOGGER.debug("Rolled back optimistic update after %s", type(error).__name__)
        if on_error is not None:
            await _maybe_await(on_error(error, variables, _user_context(context)))

    async def _on_settled(data: Optional[TData], error: Optional[BaseException], variables: TVars, context: Any) -> None:
        if on_settled is not None:
            await _maybe_await(on_settled(data, error, variables, _user_context(context)))

    return Mutation(
        action,
        on_mutate=_on_mutate,
        on_success=_on_success,
        on_error=_on_error,
        on_settled=_on_settled,
        **kwargs,
    )


def _user_context(context: Any) -> Any:
    return context.user_context if isinstance(context, _OptimisticContext) else context


__all__ = [
    "DEFAULT_BACKOFF",
    "DEFAULT_RETRY_ATTEMPTS",
    "Mutation",
    "MutationOutcome",
    "MutationState",
    "MutationStatus",
    "RetryPolicy",
    "attempts_allowed",
    "optimistic_mutation",
]
