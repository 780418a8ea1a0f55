# stageflow/core/engine/middleware.py
"""
Middleware pipeline: ordered interceptors for pending transitions.

Each middleware receives the ``TransitionContext`` and returns a
``MiddlewareOutcome`` (or ``None`` to pass the context through untouched).
Middlewares run strictly one after another in registration order, since
later ones may depend on rewrites made by earlier ones.  The first
cancellation short-circuits the pipeline.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from stageflow.core.engine.domain import UNSET, TransitionContext
from stageflow.core.engine.errors import (
    DuplicateMiddlewareError,
    MiddlewareError,
    StageFlowError,
    UnknownMiddlewareError,
    UnknownStageError,
)
from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)


class OutcomeKind(str, Enum):
    PROCEED = "proceed"
    CANCEL = "cancel"


@dataclass(frozen=True)
class MiddlewareOutcome:
    kind: OutcomeKind
    to: Optional[str] = None
    data: Any = UNSET
    reason: Optional[str] = None
    # Raised to the caller instead of resolving silently
    error: Optional[Exception] = None

    @classmethod
    def proceed(cls, to: Optional[str] = None, data: Any = UNSET) -> "MiddlewareOutcome":
        """Continue, optionally replacing the target stage and/or data"""
        return cls(OutcomeKind.PROCEED, to=to, data=data)

    @classmethod
    def cancel(cls, reason: Optional[str] = None, error: Optional[Exception] = None) -> "MiddlewareOutcome":
        """Withhold the commit; later middleware and plugin hooks do not run"""
        return cls(OutcomeKind.CANCEL, reason=reason, error=error)

    @property
    def cancelled(self) -> bool:
        return self.kind is OutcomeKind.CANCEL


HandlerResult = Optional[MiddlewareOutcome]
Handler = Callable[[TransitionContext], Union[HandlerResult, Awaitable[HandlerResult]]]


@dataclass(frozen=True)
class Middleware:
    name: str
    handle: Handler


@dataclass(frozen=True)
class PipelineResult:
    context: TransitionContext
    cancelled: bool = False
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None


class MiddlewarePipeline:
    """Ordered, name-keyed middleware registry and its runner"""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        if not middleware.name:
            raise MiddlewareError("Middleware must have a name")
        if any(m.name == middleware.name for m in self._middleware):
            raise DuplicateMiddlewareError(
                f"Middleware '{middleware.name}' is already registered",
                context={"middleware": middleware.name},
            )
        self._middleware.append(middleware)

    def remove(self, name: str) -> Middleware:
        for index, middleware in enumerate(self._middleware):
            if middleware.name == name:
                return self._middleware.pop(index)
        raise UnknownMiddlewareError(
            f"Middleware '{name}' is not registered",
            context={"middleware": name},
        )

    def get(self, name: str) -> Optional[Middleware]:
        return next((m for m in self._middleware if m.name == name), None)

    def names(self) -> list[str]:
        return [m.name for m in self._middleware]

    def __len__(self) -> int:
        return len(self._middleware)

    def __iter__(self) -> Iterator[Middleware]:
        return iter(list(self._middleware))

    async def run(
        self,
        context: TransitionContext,
        stage_exists: Callable[[str], bool],
    ) -> PipelineResult:
        """
        Run every middleware in order against ``context``.

        Args:
            context: Pending transition
            stage_exists: Predicate used to validate rewritten targets

        Returns:
            PipelineResult with the (possibly rewritten) context, or a
            cancellation marker

        Raises:
            UnknownStageError: A middleware rewrote ``to`` to an unknown stage
            MiddlewareError: A middleware raised or returned something
                other than a MiddlewareOutcome/None
        """
        for middleware in list(self._middleware):
            try:
                outcome = middleware.handle(context)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except StageFlowError:
                raise
            except Exception as exc:
                raise MiddlewareError(
                    f"Middleware '{middleware.name}' failed: {exc}",
                    context={"middleware": middleware.name, "from": context.from_stage, "to": context.to},
                ) from exc

            if outcome is None:
                continue

            if not isinstance(outcome, MiddlewareOutcome):
                raise MiddlewareError(
                    f"Middleware '{middleware.name}' returned {type(outcome).__name__}, "
                    "expected MiddlewareOutcome or None",
                    context={"middleware": middleware.name},
                )

            if outcome.cancelled:
                logger.debug(
                    "Transition %s -> %s cancelled by middleware '%s': %s",
                    context.from_stage, context.to, middleware.name, outcome.reason,
                )
                return PipelineResult(
                    context,
                    cancelled=True,
                    cancelled_by=middleware.name,
                    reason=outcome.reason,
                    error=outcome.error,
                )

            changes: dict[str, Any] = {}
            if outcome.to is not None and outcome.to != context.to:
                if not stage_exists(outcome.to):
                    raise UnknownStageError(
                        f"Middleware '{middleware.name}' redirected to unknown stage '{outcome.to}'",
                        context={"middleware": middleware.name, "stage": outcome.to},
                    )
                changes["to"] = outcome.to
            if outcome.data is not UNSET:
                changes["data"] = outcome.data
            if changes:
                logger.debug(
                    "Middleware '%s' rewrote transition %s -> %s: %s",
                    middleware.name, context.from_stage, context.to, sorted(changes),
                )
                context = replace(context, **changes)

        return PipelineResult(context)
