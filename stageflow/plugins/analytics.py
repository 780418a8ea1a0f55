# stageflow/plugins/analytics.py
"""
Transition analytics.

``AnalyticsRecorder`` keeps an in-memory event log and per-stage dwell
times.  Install its ``plugin`` on one engine::

    recorder = AnalyticsRecorder()
    engine.install_plugin(recorder.plugin)
    ...
    recorder.get_summary()
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.plugins import Plugin
from stageflow.infra.logging_config import get_logger

if TYPE_CHECKING:
    from stageflow.core.engine.engine import StageEngine

logger = get_logger(__name__)


class AnalyticsEventType(str, Enum):
    STAGE_ENTER = "stage_enter"
    STAGE_EXIT = "stage_exit"
    TRANSITION_START = "transition_start"
    TRANSITION_COMPLETE = "transition_complete"


@dataclass(frozen=True)
class AnalyticsEvent:
    type: AnalyticsEventType
    timestamp: float
    stage: Optional[str] = None
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    event: Optional[str] = None
    # Milliseconds spent in ``stage`` (STAGE_EXIT only)
    duration_ms: Optional[float] = None
    properties: dict[str, Any] = field(default_factory=dict)


AnalyticsHandler = Callable[[AnalyticsEvent], None]


class AnalyticsRecorder:
    def __init__(
        self,
        *,
        name: str = "analytics",
        handlers: Optional[list[AnalyticsHandler]] = None,
        properties: Optional[dict[str, Any]] = None,
        max_events: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._handlers = list(handlers or [])
        self._properties = dict(properties or {})
        self._max_events = max_events
        self._clock = clock

        self.events: list[AnalyticsEvent] = []
        self.stage_durations: dict[str, list[float]] = {}
        self.total_transitions = 0
        self._stage: Optional[str] = None
        self._entered_at: Optional[float] = None

        self.plugin = Plugin(
            name=name,
            version="1.0.0",
            on_install=self._on_install,
            on_start=self._on_start,
            on_stop=self._on_stop,
            on_before_transition=self._on_before_transition,
            on_stage_change=self._on_stage_change,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def average_duration(self, stage: str) -> Optional[float]:
        durations = self.stage_durations.get(stage)
        if not durations:
            return None
        return sum(durations) / len(durations)

    def get_summary(self) -> dict[str, Any]:
        return {
            "total_transitions": self.total_transitions,
            "current_stage": self._stage,
            "stages": {
                stage: {
                    "visits": len(durations),
                    "total_ms": sum(durations),
                    "average_ms": sum(durations) / len(durations),
                }
                for stage, durations in self.stage_durations.items()
                if durations
            },
        }

    def clear(self) -> None:
        self.events.clear()
        self.stage_durations.clear()
        self.total_transitions = 0

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _on_install(self, engine: "StageEngine") -> None:
        # Installed on a running engine: dwell time counts from now
        stage = engine.get_current_stage()
        if stage is not None:
            self._enter(stage)

    def _on_start(self, engine: "StageEngine") -> None:
        self._enter(engine.get_current_stage())

    def _on_stop(self, engine: "StageEngine") -> None:
        if self._stage is not None:
            self._exit(self._stage)
            self._stage = None

    def _on_before_transition(self, context: TransitionContext) -> None:
        self._record(AnalyticsEvent(
            type=AnalyticsEventType.TRANSITION_START,
            timestamp=context.timestamp,
            from_stage=context.from_stage,
            to_stage=context.to,
            event=context.event,
        ))

    def _on_stage_change(self, context: TransitionContext) -> None:
        self.total_transitions += 1
        self._exit(context.from_stage)
        self._record(AnalyticsEvent(
            type=AnalyticsEventType.TRANSITION_COMPLETE,
            timestamp=time.time(),
            from_stage=context.from_stage,
            to_stage=context.to,
            event=context.event,
        ))
        self._enter(context.to)
        self.plugin.state["total_transitions"] = self.total_transitions

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, stage: Optional[str]) -> None:
        self._stage = stage
        self._entered_at = self._clock()
        self._record(AnalyticsEvent(type=AnalyticsEventType.STAGE_ENTER, timestamp=time.time(), stage=stage))

    def _exit(self, stage: str) -> None:
        duration_ms = None
        if self._entered_at is not None:
            duration_ms = (self._clock() - self._entered_at) * 1000
            self.stage_durations.setdefault(stage, []).append(duration_ms)
        self._entered_at = None
        self._record(AnalyticsEvent(
            type=AnalyticsEventType.STAGE_EXIT,
            timestamp=time.time(),
            stage=stage,
            duration_ms=duration_ms,
        ))

    def _record(self, event: AnalyticsEvent) -> None:
        if self._properties:
            event.properties.update(self._properties)
        self.events.append(event)
        if len(self.events) > self._max_events:
            del self.events[: len(self.events) - self._max_events]

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as exc:
                logger.error("Analytics handler failed on %s: %s", event.type.value, exc,
                             exc_info=True, extra={"plugin": self.name})
