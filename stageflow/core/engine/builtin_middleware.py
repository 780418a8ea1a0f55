# stageflow/core/engine/builtin_middleware.py
"""
Ready-made middleware factories.

Every factory returns a plain ``Middleware``; register it with
``StageEngine.add_middleware``.  Names default to the factory's purpose and
must be unique per engine, so pass ``name=`` when registering two of a kind.
"""
from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Literal, Optional, Union

from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.middleware import (
    HandlerResult,
    Middleware,
    MiddlewareOutcome,
    MiddlewarePipeline,
)
from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)

Predicate = Callable[[TransitionContext], Union[bool, Awaitable[bool]]]


async def _evaluate(predicate: Predicate, context: TransitionContext) -> bool:
    result = predicate(context)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def _delegate(middleware: Middleware, context: TransitionContext) -> HandlerResult:
    outcome = middleware.handle(context)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def create_logging_middleware(
    *,
    level: int = logging.INFO,
    include_data: bool = False,
    target_logger: Optional[logging.Logger] = None,
    name: str = "logging",
) -> Middleware:
    """Log every pending transition; never changes it"""
    log = target_logger or logger

    def handle(context: TransitionContext) -> None:
        event = context.event or "direct"
        if include_data:
            log.log(level, "Transition: %s -> %s (event: %s, data: %r)",
                    context.from_stage, context.to, event, context.data)
        else:
            log.log(level, "Transition: %s -> %s (event: %s)", context.from_stage, context.to, event)
        return None

    return Middleware(name=name, handle=handle)


def create_validation_middleware(
    validator: Predicate,
    *,
    message: str = "Validation failed",
    error: Optional[Exception] = None,
    name: str = "validation",
) -> Middleware:
    """
    Cancel transitions for which ``validator(context)`` is falsy.

    Args:
        validator: Sync or async predicate over the pending transition
        message: Cancellation reason
        error: If given, raised to the caller instead of a silent cancel
        name: Middleware name
    """

    async def handle(context: TransitionContext) -> HandlerResult:
        if await _evaluate(validator, context):
            return None
        return MiddlewareOutcome.cancel(reason=message, error=error)

    return Middleware(name=name, handle=handle)


class SlidingWindowLimiter:
    """
    Per-key sliding window of allowed timestamps.

    Timestamps older than the window are dropped on every check, and a key
    left with none is forgotten, so custom keys do not accumulate.
    """

    def __init__(self, max_events: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        if max_events < 1:
            raise ValueError("max_transitions must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._allowed: dict[str, list[float]] = {}

    def check(self, key: str) -> tuple[bool, Optional[float]]:
        """
        Record one event for ``key`` if the window has room.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = self._clock()
        self.cleanup(now)

        recent = self._allowed.get(key, [])
        if len(recent) >= self.max_events:
            return False, recent[0] + self.window_seconds - now

        recent.append(now)
        self._allowed[key] = recent
        return True, None

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop expired timestamps; returns the number of keys removed"""
        if now is None:
            now = self._clock()
        cutoff = now - self.window_seconds

        removed = 0
        for key in list(self._allowed):
            recent = [ts for ts in self._allowed[key] if ts > cutoff]
            if recent:
                self._allowed[key] = recent
            else:
                del self._allowed[key]
                removed += 1
        return removed

    def tracked_keys(self) -> list[str]:
        return list(self._allowed)


def create_rate_limit_middleware(
    max_transitions: int,
    window_seconds: float,
    *,
    key: Optional[Callable[[TransitionContext], str]] = None,
    clock: Callable[[], float] = time.monotonic,
    name: str = "rate-limit",
) -> Middleware:
    """
    Cancel a transition once its key was allowed ``max_transitions`` times
    within the sliding ``window_seconds``.

    The default key is the ``(from, to)`` pair.  State lives in the returned
    middleware, so one instance must not be shared between engines.
    """
    limiter = SlidingWindowLimiter(max_transitions, window_seconds, clock)
    key_for = key or (lambda ctx: f"{ctx.from_stage}->{ctx.to}")

    def handle(context: TransitionContext) -> HandlerResult:
        bucket = key_for(context)
        allowed, retry_after = limiter.check(bucket)
        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s (%d per %ss)", bucket, max_transitions, window_seconds,
                extra={"middleware": name},
            )
            return MiddlewareOutcome.cancel(
                reason=f"Rate limit exceeded for transition {context.from_stage} -> {context.to} "
                       f"(retry in {retry_after:.2f}s)"
            )

        return None

    return Middleware(name=name, handle=handle)


def create_conditional_middleware(
    condition: Predicate,
    middleware: Middleware,
    *,
    name: Optional[str] = None,
) -> Middleware:
    """Run ``middleware`` only when ``condition(context)`` holds"""

    async def handle(context: TransitionContext) -> HandlerResult:
        if not await _evaluate(condition, context):
            return None
        return await _delegate(middleware, context)

    return Middleware(name=name or f"conditional-{middleware.name}", handle=handle)


def create_stage_specific_middleware(
    stages: Iterable[str],
    middleware: Middleware,
    *,
    match: Literal["from", "to", "both"] = "from",
    name: Optional[str] = None,
) -> Middleware:
    """Run ``middleware`` only for transitions leaving/entering ``stages``"""
    wanted = frozenset(stages)
    if match not in ("from", "to", "both"):
        raise ValueError(f"Unknown match mode: {match}")

    def condition(context: TransitionContext) -> bool:
        if match == "from":
            return context.from_stage in wanted
        if match == "to":
            return context.to in wanted
        return context.from_stage in wanted and context.to in wanted

    return create_conditional_middleware(condition, middleware, name=name or f"stage-{middleware.name}")


def create_event_specific_middleware(
    events: Iterable[str],
    middleware: Middleware,
    *,
    name: Optional[str] = None,
) -> Middleware:
    """Run ``middleware`` only for ``send`` of one of ``events`` (never for go_to)"""
    wanted = frozenset(events)

    def condition(context: TransitionContext) -> bool:
        return context.event is not None and context.event in wanted

    return create_conditional_middleware(condition, middleware, name=name or f"event-{middleware.name}")


def compose_middleware(*middlewares: Middleware, name: Optional[str] = None) -> Middleware:
    """
    Bundle several middleware into one.

    Members run in the given order with the same semantics as the engine's
    pipeline: rewrites flow to later members, the first cancel wins.  The
    final target is validated by the engine.
    """
    pipeline = MiddlewarePipeline()
    for middleware in middlewares:
        pipeline.add(middleware)

    def accept_any(_stage: str) -> bool:
        return True

    async def handle(context: TransitionContext) -> HandlerResult:
        result = await pipeline.run(context, accept_any)
        if result.cancelled:
            reason = f"{result.cancelled_by}: {result.reason}" if result.reason else result.cancelled_by
            return MiddlewareOutcome.cancel(reason=reason, error=result.error)
        changes: dict[str, Any] = {}
        if result.context.to != context.to:
            changes["to"] = result.context.to
        if result.context.data is not context.data:
            changes["data"] = result.context.data
        return MiddlewareOutcome.proceed(**changes) if changes else None

    return Middleware(name=name or "composed-" + "-".join(pipeline.names()), handle=handle)
