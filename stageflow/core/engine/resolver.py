# stageflow/core/engine/resolver.py
"""
Transition resolution: current stage + event -> applicable transition.

Pure lookup.  A miss is reported as an empty ``Resolution`` rather than an
exception so the engine decides how to surface it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from stageflow.core.engine.domain import Stage, Transition
from stageflow.core.engine.errors import GuardEvaluationError


@dataclass(frozen=True)
class Resolution:
    stage: str
    event: str
    transition: Optional[Transition] = None
    # Transitions whose event matched but whose guard returned False
    rejected_by_guard: int = 0

    @property
    def found(self) -> bool:
        return self.transition is not None

    @property
    def target(self) -> Optional[str]:
        return self.transition.target if self.transition else None


def resolve_transition(
    stage: Stage,
    event: str,
    data: Any = None,
    payload: Any = None,
) -> Resolution:
    """
    Find the first transition of ``stage`` for ``event`` whose guard passes.

    Args:
        stage: Stage the engine is currently in
        event: Event name (exact, case-sensitive match)
        data: Current stage data, first guard argument
        payload: Data sent with the event, second guard argument

    Returns:
        Resolution; ``found`` is False when nothing matched

    Raises:
        GuardEvaluationError: If a guard raises
    """
    rejected = 0
    for transition in stage.transitions:
        if transition.event != event:
            continue
        if transition.guard is None:
            return Resolution(stage.name, event, transition, rejected)
        try:
            allowed = transition.guard(data, payload)
        except Exception as exc:
            raise GuardEvaluationError(
                f"Guard for '{stage.name}' --{event}--> '{transition.target}' failed: {exc}",
                context={"stage": stage.name, "event": event, "target": transition.target},
            ) from exc
        if allowed:
            return Resolution(stage.name, event, transition, rejected)
        rejected += 1

    return Resolution(stage.name, event, None, rejected)
