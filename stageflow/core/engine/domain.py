# stageflow/core/engine/domain.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from stageflow.core.engine.errors import InvalidConfigurationError


# ============================================================================
# SENTINEL FOR "ARGUMENT OMITTED"
# ============================================================================

class _Unset:
    """Marks an omitted ``data`` argument (``None`` is a legitimate value)."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ============================================================================
# CONFIGURATION MODEL (immutable once built)
# ============================================================================

Guard = Callable[[Any, Any], bool]


class Transition(BaseModel):
    """
    Event-triggered edge of a stage.

    Several transitions of one stage may share an ``event``; they are tried
    in declaration order and the first one whose guard passes (or that has
    no guard) wins.
    """
    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    event: str = Field(min_length=1)
    target: str = Field(min_length=1)
    guard: Optional[Guard] = None


class TimerSpec(BaseModel):
    """Event auto-sent after ``duration_ms`` unless the stage is left first."""
    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    duration_ms: float = Field(gt=0)
    event: str = Field(min_length=1)
    payload: Any = None


class Stage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    transitions: tuple[Transition, ...] = ()
    effect_name: Optional[str] = None
    timers: tuple[TimerSpec, ...] = ()

    def events(self) -> list[str]:
        """Distinct event names this stage reacts to, in declaration order"""
        seen: list[str] = []
        for transition in self.transitions:
            if transition.event not in seen:
                seen.append(transition.event)
        return seen


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    initial: str = Field(min_length=1)
    stages: tuple[Stage, ...] = Field(min_length=1)
    initial_data: Any = None

    def stage_map(self) -> dict[str, Stage]:
        return {stage.name: stage for stage in self.stages}


def validate_config(config: EngineConfig) -> dict[str, Stage]:
    """
    Structural checks that pydantic field validation cannot express.

    Returns:
        Mapping of stage name -> Stage

    Raises:
        InvalidConfigurationError: duplicate stage names, unknown initial
            stage, or a transition targeting an unknown stage
    """
    stages: dict[str, Stage] = {}
    duplicates: list[str] = []
    for stage in config.stages:
        if stage.name in stages:
            duplicates.append(stage.name)
        stages[stage.name] = stage

    if duplicates:
        raise InvalidConfigurationError(
            f"Duplicate stage names: {', '.join(sorted(set(duplicates)))}",
            context={"duplicates": sorted(set(duplicates))},
        )

    if config.initial not in stages:
        raise InvalidConfigurationError(
            f"Initial stage '{config.initial}' is not defined. "
            f"Defined stages: {', '.join(stages)}",
            context={"initial": config.initial},
        )

    for stage in config.stages:
        for transition in stage.transitions:
            if transition.target not in stages:
                raise InvalidConfigurationError(
                    f"Stage '{stage.name}' has transition on '{transition.event}' "
                    f"to unknown stage '{transition.target}'",
                    context={
                        "stage": stage.name,
                        "event": transition.event,
                        "target": transition.target,
                    },
                )

    return stages


def config_warnings(config: EngineConfig) -> list[str]:
    """
    Non-fatal findings about a structurally valid config.

    Reported: stages unreachable from the initial stage, stages with no
    outgoing transitions, and stages whose every event is sent by one of
    their own timers (the user cannot move the flow forward there).
    """
    stages = config.stage_map()
    warnings: list[str] = []

    reachable = {config.initial}
    to_visit = [config.initial]
    while to_visit:
        stage = stages.get(to_visit.pop())
        if stage is None:
            continue
        for transition in stage.transitions:
            if transition.target not in reachable:
                reachable.add(transition.target)
                to_visit.append(transition.target)

    for stage in config.stages:
        if stage.name not in reachable:
            warnings.append(f"Stage '{stage.name}' is not reachable from the initial stage")

    for stage in config.stages:
        if not stage.transitions:
            warnings.append(f"Stage '{stage.name}' has no outgoing transitions (potential dead end)")
            continue
        timer_events = {timer.event for timer in stage.timers}
        if timer_events and all(transition.event in timer_events for transition in stage.transitions):
            warnings.append(f"Stage '{stage.name}' only has timer-driven transitions")

    return warnings


# ============================================================================
# RUNTIME STATE
# ============================================================================

class EngineStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    TRANSITIONING = "transitioning"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TransitionContext:
    """
    What middleware and plugin hooks see about a pending (or just
    committed) transition.

    ``event`` is None for direct ``go_to`` navigation.  ``data`` is the data
    that will be committed: the caller's data, or the previous data when the
    caller omitted it.
    """
    from_stage: str
    to: str
    data: Any = None
    event: Optional[str] = None
    payload: Any = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_direct(self) -> bool:
        return self.event is None


@dataclass(frozen=True)
class TransitionResult:
    """Outcome handed back to ``send``/``go_to`` callers"""
    from_stage: str
    to_stage: str
    committed: bool
    event: Optional[str] = None
    cancelled: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class HistoryEntry:
    stage: str
    data: Any = None
    event: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
