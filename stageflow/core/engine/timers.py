# stageflow/core/engine/timers.py
"""
Per-stage timers that auto-send an event after a delay.

Only the current stage's timers are ever active.  Entering a stage cancels
whatever is running and arms the new stage's ``TimerSpec`` list in
declaration order.  Each entry keeps ``scheduled_at``, the length of its
current countdown and, while paused, ``remaining_at_pause``, so pause and
resume are exact regardless of how long the pause lasted.

Timers are armed with ``loop.call_later``; an expired timer is handed to
the ``on_fire`` callback, which routes it through the engine like any other
``send``.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from stageflow.core.engine.domain import Stage, TimerSpec
from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)


class TimerEventType(str, Enum):
    STARTED = "timer:started"
    PAUSED = "timer:paused"
    RESUMED = "timer:resumed"
    RESET = "timer:reset"
    COMPLETED = "timer:completed"
    CANCELLED = "timer:cancelled"


@dataclass(frozen=True)
class TimerEvent:
    type: TimerEventType
    timer_id: str
    stage: str
    event: str
    duration_ms: float
    remaining_ms: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TimerState:
    """Read-only snapshot of an active timer"""
    id: str
    stage: str
    event: str
    duration_ms: float
    remaining_ms: float
    paused: bool


@dataclass
class TimerEntry:
    timer_id: str
    stage: str
    spec: TimerSpec
    epoch: int
    scheduled_at: float = 0.0
    # Length of the current countdown (full duration, or what was left at resume)
    countdown_ms: float = 0.0
    remaining_at_pause: Optional[float] = None
    handle: Optional[asyncio.TimerHandle] = None

    @property
    def paused(self) -> bool:
        return self.remaining_at_pause is not None

    def remaining_ms(self, now: float) -> float:
        if self.remaining_at_pause is not None:
            return self.remaining_at_pause
        elapsed_ms = (now - self.scheduled_at) * 1000
        return max(0.0, self.countdown_ms - elapsed_ms)

    def disarm(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


TimerListener = Callable[[TimerEvent], None]


class TimerManager:
    def __init__(
        self,
        on_fire: Callable[[TimerEntry], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_fire = on_fire
        self._clock = clock
        self._entries: dict[str, TimerEntry] = {}
        self._listeners: list[TimerListener] = []
        self._paused = False
        self._stage: Optional[str] = None
        self._epoch = 0

    @property
    def epoch(self) -> int:
        """Incremented on every stage entry; identifies which entry a timer belongs to"""
        return self._epoch

    @property
    def stage(self) -> Optional[str]:
        return self._stage

    # ------------------------------------------------------------------
    # Stage entry / exit
    # ------------------------------------------------------------------

    def enter_stage(self, stage: Stage) -> int:
        """Cancel running timers and arm ``stage``'s timers. Returns the new epoch."""
        self.cancel_all()
        self._epoch += 1
        self._stage = stage.name
        self._paused = False

        for index, spec in enumerate(stage.timers):
            entry = TimerEntry(
                timer_id=f"{stage.name}:{index}:{spec.event}@{self._epoch}",
                stage=stage.name,
                spec=spec,
                epoch=self._epoch,
            )
            self._entries[entry.timer_id] = entry
            self._arm(entry, spec.duration_ms)
            self._emit(TimerEventType.STARTED, entry, remaining_ms=spec.duration_ms)

        if stage.timers:
            logger.debug("Armed %d timer(s) for stage '%s'", len(stage.timers), stage.name)
        return self._epoch

    def cancel_all(self) -> None:
        now = self._clock()
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.disarm()
            self._emit(TimerEventType.CANCELLED, entry, remaining_ms=entry.remaining_ms(now))
        self._paused = False

    def cancel(self, timer_id: str) -> bool:
        entry = self._entries.pop(timer_id, None)
        if entry is None:
            return False
        entry.disarm()
        self._emit(TimerEventType.CANCELLED, entry, remaining_ms=entry.remaining_ms(self._clock()))
        if not self._entries:
            self._paused = False
        return True

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def pause(self) -> None:
        if self._paused or not self._entries:
            return
        now = self._clock()
        for entry in self._entries.values():
            entry.remaining_at_pause = entry.remaining_ms(now)
            entry.disarm()
            self._emit(TimerEventType.PAUSED, entry, remaining_ms=entry.remaining_at_pause)
        self._paused = True

    def resume(self) -> None:
        if not self._paused:
            return
        for entry in self._entries.values():
            remaining = entry.remaining_at_pause
            self._arm(entry, remaining if remaining is not None else entry.spec.duration_ms)
            self._emit(TimerEventType.RESUMED, entry, remaining_ms=remaining)
        self._paused = False

    def reset(self) -> None:
        """Restart every active timer from its full duration (clears a pause)"""
        for entry in self._entries.values():
            entry.disarm()
            self._arm(entry, entry.spec.duration_ms)
            self._emit(TimerEventType.RESET, entry, remaining_ms=entry.spec.duration_ms)
        self._paused = False

    def remaining_time(self) -> Optional[float]:
        """Milliseconds until the soonest timer fires, or None without timers"""
        if not self._entries:
            return None
        now = self._clock()
        return min(entry.remaining_ms(now) for entry in self._entries.values())

    def are_paused(self) -> bool:
        return self._paused

    def active_timers(self) -> list[TimerState]:
        now = self._clock()
        return [
            TimerState(
                id=entry.timer_id,
                stage=entry.stage,
                event=entry.spec.event,
                duration_ms=entry.spec.duration_ms,
                remaining_ms=entry.remaining_ms(now),
                paused=entry.paused,
            )
            for entry in self._entries.values()
        ]

    def subscribe(self, listener: TimerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _arm(self, entry: TimerEntry, delay_ms: float) -> None:
        loop = asyncio.get_running_loop()
        entry.scheduled_at = self._clock()
        entry.countdown_ms = delay_ms
        entry.remaining_at_pause = None
        entry.handle = loop.call_later(delay_ms / 1000, self._expire, entry.timer_id, entry.epoch)

    def _expire(self, timer_id: str, epoch: int) -> None:
        entry = self._entries.get(timer_id)
        if entry is None or entry.epoch != epoch or entry.paused:
            return
        # Fires at most once per stage entry
        del self._entries[timer_id]
        entry.handle = None
        if not self._entries:
            self._paused = False
        self._emit(TimerEventType.COMPLETED, entry, remaining_ms=0.0)
        self._on_fire(entry)

    def _emit(self, kind: TimerEventType, entry: TimerEntry, remaining_ms: Optional[float] = None) -> None:
        if not self._listeners:
            return
        event = TimerEvent(
            type=kind,
            timer_id=entry.timer_id,
            stage=entry.stage,
            event=entry.spec.event,
            duration_ms=entry.spec.duration_ms,
            remaining_ms=remaining_ms,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("Timer event listener failed on %s: %s", kind.value, exc, exc_info=True)
