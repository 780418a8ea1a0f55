# stageflow/core/engine/engine.py
"""
StageEngine: the public façade of the stage engine.

Every state-changing operation (send, go_to, set_stage_data, reset and
start itself) is appended to one FIFO queue and drained by a single drain
task, so at most one operation is in flight and callers observe results in
submission order.

Committed transition, in order:
    middleware -> on_before_transition -> cancel old timers -> set stage/data
    -> on_stage_change -> on_event (send only) -> arm new timers -> notify
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from stageflow.config import settings
from stageflow.core.engine.domain import (
    UNSET,
    EngineConfig,
    EngineStatus,
    HistoryEntry,
    Stage,
    TransitionContext,
    TransitionResult,
    config_warnings,
    validate_config,
)
from stageflow.core.engine.errors import (
    AlreadyStartedError,
    EngineNotStartedError,
    EngineStateError,
    EngineStoppedError,
    InvalidConfigurationError,
    InvalidTransitionError,
    StageFlowError,
    TransitionCancelledError,
    UnknownStageError,
)
from stageflow.core.engine.middleware import Middleware, MiddlewarePipeline
from stageflow.core.engine.notifier import Notifier, Subscriber
from stageflow.core.engine.plugins import Plugin, PluginHook, PluginManager
from stageflow.core.engine.resolver import resolve_transition
from stageflow.core.engine.timers import TimerEntry, TimerListener, TimerManager, TimerState
from stageflow.infra.logging_config import LogContext, get_logger
from stageflow.infra.metrics import EngineMetrics, MetricsCollector

logger = get_logger(__name__)


@dataclass
class _QueuedOperation:
    label: str
    run: Callable[[], Awaitable[Any]]
    future: asyncio.Future


class StageEngine:
    """
    Finite-state "stage" engine.

    Example::

        engine = StageEngine({
            "initial": "idle",
            "stages": [
                {"name": "idle", "transitions": [{"event": "fetch", "target": "loading"}]},
                {"name": "loading", "transitions": [{"event": "done", "target": "success"}]},
                {"name": "success"},
            ],
        })
        await engine.start()
        await engine.send("fetch")
    """

    def __init__(
        self,
        config: Union[EngineConfig, dict],
        *,
        name: Optional[str] = None,
        history_limit: Optional[int] = None,
        reject_cancelled_transitions: Optional[bool] = None,
        log_transitions: Optional[bool] = None,
        clock: Optional[Callable[[], float]] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        try:
            self._config = config if isinstance(config, EngineConfig) else EngineConfig.model_validate(config)
        except ValidationError as exc:
            raise InvalidConfigurationError(
                f"Invalid engine configuration: {exc.error_count()} error(s)\n{exc}",
                context={"errors": exc.errors(include_url=False)},
            ) from exc
        self._stages: dict[str, Stage] = validate_config(self._config)

        self.name = name or f"engine-{id(self):x}"
        self._reject_cancelled = (
            settings.reject_cancelled_transitions
            if reject_cancelled_transitions is None else reject_cancelled_transitions
        )
        self._log_transitions = settings.log_transitions if log_transitions is None else log_transitions

        self._status = EngineStatus.UNINITIALIZED
        self._current_stage: Optional[str] = None
        self._current_data: Any = None
        if history_limit is None:
            history_limit = settings.history_limit
        if history_limit < 1:
            raise InvalidConfigurationError(
                f"history_limit must be >= 1, got {history_limit}",
                context={"history_limit": history_limit},
            )
        self._history: deque[HistoryEntry] = deque(maxlen=history_limit)

        self.metrics = EngineMetrics(metrics)
        self._plugins = PluginManager(on_hook_failure=self.metrics.plugin_hook_failed)
        self._middleware = MiddlewarePipeline()
        self._notifier = Notifier(on_failure=self.metrics.subscriber_failed)
        self._timers = TimerManager(on_fire=self._on_timer_fired, clock=clock or time.monotonic)

        self._queue: deque[_QueuedOperation] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Future] = set()
        self._log = LogContext(logger, engine=self.name)

        if settings.config_warnings:
            for warning in config_warnings(self._config):
                self._log.warning("Config warning: %s", warning)

    def __repr__(self) -> str:
        return f"<StageEngine {self.name} status={self._status.value} stage={self._current_stage}>"

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def start(self) -> None:
        """
        Enter the initial stage.

        Raises:
            AlreadyStartedError: Engine was started before (stopped engines
                cannot be restarted)
        """
        if self._status is not EngineStatus.UNINITIALIZED:
            raise AlreadyStartedError(
                f"Engine '{self.name}' cannot start from status '{self._status.value}'",
                context={"status": self._status.value},
            )
        # Operations submitted while on_start runs queue behind it
        self._status = EngineStatus.TRANSITIONING
        await self._enqueue("start", self._process_start)

    async def stop(self) -> None:
        """
        Stop the engine for good.

        Pending operations fail with EngineStoppedError; an in-flight
        transition that has not committed yet fails the same way.
        """
        if self._status is EngineStatus.UNINITIALIZED:
            raise EngineNotStartedError(f"Engine '{self.name}' was never started")
        if self._status is EngineStatus.STOPPED:
            raise EngineStoppedError(f"Engine '{self.name}' is already stopped")

        self._status = EngineStatus.STOPPED
        self._timers.cancel_all()

        pending = list(self._queue)
        self._queue.clear()
        for op in pending:
            if not op.future.done():
                op.future.set_exception(
                    EngineStoppedError(
                        f"Engine '{self.name}' stopped before '{op.label}' ran",
                        context={"operation": op.label},
                    )
                )

        await self._plugins.run_hook(PluginHook.ON_STOP, self)
        self._plugins.release_all()
        self._log.bind(stage=self._current_stage).info(
            "Engine stopped (%d pending operation(s) dropped)", len(pending)
        )

    async def reset(self) -> None:
        """Return to the initial stage and data; plugins and middleware stay"""
        await self._submit("reset", self._process_reset)

    async def wait_until_idle(self) -> None:
        """Wait until every queued operation (including timer events) has run"""
        task = self._drain_task
        while task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.wait({task})
            task = self._drain_task

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    async def send(self, event: str, data: Any = UNSET) -> Optional[TransitionResult]:
        """
        Trigger ``event`` from the current stage.

        Args:
            event: Event name
            data: New stage data (also passed to guards); omitted keeps the
                current data

        Returns:
            TransitionResult, or None when called from inside a plugin hook
            or middleware (the send is queued behind the current operation)

        Raises:
            InvalidTransitionError: No transition matches (state unchanged)
            GuardEvaluationError: A guard raised
            MiddlewareError: A middleware raised
            TransitionCancelledError: Middleware cancelled and the engine
                rejects cancellations
            EngineNotStartedError / EngineStoppedError
        """
        return await self._submit(f"send:{event}", partial(self._process_send, event, data))

    async def go_to(self, stage: str, data: Any = UNSET) -> Optional[TransitionResult]:
        """Navigate directly to ``stage``, bypassing event resolution"""
        self._ensure_accepting()
        self.get_stage(stage)
        return await self._submit(f"go_to:{stage}", partial(self._process_go_to, stage, data))

    async def set_stage_data(self, data: Any) -> None:
        """Replace the current stage's data without transitioning"""
        await self._submit("set_stage_data", partial(self._process_set_data, data))

    # ========================================================================
    # READS
    # ========================================================================

    def get_current_stage(self) -> Optional[str]:
        return self._current_stage

    def get_current_data(self) -> Any:
        return self._current_data

    def get_history(self) -> list[HistoryEntry]:
        """Committed stage entries, oldest first (bounded by history_limit)"""
        return list(self._history)

    def has_stage(self, name: str) -> bool:
        return name in self._stages

    def get_stage(self, name: str) -> Stage:
        stage = self._stages.get(name)
        if stage is None:
            raise UnknownStageError(
                f"Stage '{name}' is not defined",
                context={"stage": name, "stages": list(self._stages)},
            )
        return stage

    def get_stage_effect(self, name: str) -> Optional[str]:
        return self.get_stage(name).effect_name

    def get_current_stage_effect(self) -> Optional[str]:
        if self._current_stage is None:
            return None
        return self._stages[self._current_stage].effect_name

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(stage, data)`` for committed state; returns unsubscribe"""
        return self._notifier.subscribe(callback)

    # ========================================================================
    # PLUGINS
    # ========================================================================

    def install_plugin(self, plugin: Plugin) -> None:
        self._ensure_not_stopped()
        self._plugins.install(plugin, self)

    def uninstall_plugin(self, name: str) -> None:
        self._ensure_not_stopped()
        self._plugins.uninstall(name, self)

    def get_installed_plugins(self) -> list[str]:
        return self._plugins.names()

    def get_plugin(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def get_plugin_state(self, name: str) -> dict[str, Any]:
        return self._plugins.require(name).state

    def set_plugin_state(self, name: str, state: dict[str, Any]) -> None:
        """Merge ``state`` into the plugin's state mapping"""
        self._plugins.require(name).state.update(state)

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    def add_middleware(self, middleware: Middleware) -> None:
        self._ensure_not_stopped()
        self._middleware.add(middleware)
        self._log.bind(middleware=middleware.name).debug("Middleware added")

    def remove_middleware(self, name: str) -> None:
        self._middleware.remove(name)
        self._log.bind(middleware=name).debug("Middleware removed")

    def get_middleware(self) -> list[str]:
        return self._middleware.names()

    # ========================================================================
    # TIMERS
    # ========================================================================

    def pause_timers(self) -> None:
        self._timers.pause()

    def resume_timers(self) -> None:
        self._timers.resume()

    def reset_timers(self) -> None:
        self._timers.reset()

    def get_timer_remaining_time(self) -> Optional[float]:
        return self._timers.remaining_time()

    def are_timers_paused(self) -> bool:
        return self._timers.are_paused()

    def get_active_timers(self) -> list[TimerState]:
        return self._timers.active_timers()

    def cancel_timer(self, timer_id: str) -> bool:
        return self._timers.cancel(timer_id)

    def subscribe_to_timer_events(self, listener: TimerListener) -> Callable[[], None]:
        return self._timers.subscribe(listener)

    # ========================================================================
    # QUEUE
    # ========================================================================

    def _ensure_accepting(self) -> None:
        if self._status is EngineStatus.UNINITIALIZED:
            raise EngineNotStartedError(f"Engine '{self.name}' is not started")
        self._ensure_not_stopped()

    def _ensure_not_stopped(self) -> None:
        if self._status is EngineStatus.STOPPED:
            raise EngineStoppedError(f"Engine '{self.name}' is stopped")

    async def _submit(self, label: str, run: Callable[[], Awaitable[Any]]) -> Any:
        self._ensure_accepting()
        return await self._enqueue(label, run)

    async def _enqueue(self, label: str, run: Callable[[], Awaitable[Any]]) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append(_QueuedOperation(label, run, future))

        if asyncio.current_task() is self._drain_task:
            # Issued from a hook of the in-flight operation; it cannot wait for itself
            future.add_done_callback(partial(self._log_deferred_failure, label))
            self._log.debug("Deferred '%s' until the current operation completes", label)
            return None

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        while self._queue:
            op = self._queue.popleft()
            if op.future.done():
                continue
            if self._status is EngineStatus.STOPPED:
                op.future.set_exception(EngineStoppedError(f"Engine '{self.name}' is stopped"))
                continue

            self._status = EngineStatus.TRANSITIONING
            try:
                result = await op.run()
            except asyncio.CancelledError:
                op.future.cancel()
                raise
            except Exception as exc:
                if not op.future.done():
                    op.future.set_exception(exc)
            else:
                if not op.future.done():
                    op.future.set_result(result)
            finally:
                if self._status is EngineStatus.TRANSITIONING:
                    self._status = EngineStatus.IDLE

    def _log_deferred_failure(self, label: str, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._log.warning("Deferred operation '%s' failed: %s", label, exc)

    # ========================================================================
    # OPERATIONS (run on the drain task)
    # ========================================================================

    async def _process_start(self) -> None:
        initial = self._config.initial
        self._current_stage = initial
        self._current_data = self._config.initial_data
        self._history.append(HistoryEntry(stage=initial, data=self._current_data))

        await self._plugins.run_hook(PluginHook.ON_START, self)
        if self._status is EngineStatus.STOPPED:
            return

        self._timers.enter_stage(self._stages[initial])
        self._status = EngineStatus.IDLE
        self._log.bind(stage=initial).info("Engine started")
        self._notifier.notify(self._current_stage, self._current_data)

    async def _process_reset(self) -> None:
        initial = self._config.initial
        self._timers.cancel_all()
        self._current_stage = initial
        self._current_data = self._config.initial_data
        self._history.clear()
        self._history.append(HistoryEntry(stage=initial, data=self._current_data))
        self._timers.enter_stage(self._stages[initial])
        self._log.bind(stage=initial).info("Engine reset")
        self._notifier.notify(self._current_stage, self._current_data)

    async def _process_set_data(self, data: Any) -> None:
        self._current_data = data
        self._notifier.notify(self._current_stage, self._current_data)

    async def _process_send(self, event: str, data: Any) -> TransitionResult:
        stage = self._stages[self._current_stage]
        payload = None if data is UNSET else data
        resolution = resolve_transition(stage, event, self._current_data, payload)

        if not resolution.found:
            self.metrics.transition_rejected("no_match")
            self._log.bind(stage=stage.name, event=event).debug(
                "Event rejected (%d guard(s) failed)", resolution.rejected_by_guard
            )
            raise InvalidTransitionError(
                f"No transition for event '{event}' from stage '{stage.name}'",
                context={
                    "stage": stage.name,
                    "event": event,
                    "available_events": stage.events(),
                    "rejected_by_guard": resolution.rejected_by_guard,
                },
            )

        return await self._run_transition(resolution.target, data, event=event, payload=payload)

    async def _process_go_to(self, stage: str, data: Any) -> TransitionResult:
        return await self._run_transition(stage, data)

    async def _run_transition(
        self,
        target: str,
        data: Any,
        event: Optional[str] = None,
        payload: Any = None,
    ) -> TransitionResult:
        from_stage = self._current_stage
        context = TransitionContext(
            from_stage=from_stage,
            to=target,
            data=self._current_data if data is UNSET else data,
            event=event,
            payload=payload,
        )

        outcome = await self._middleware.run(context, self.has_stage)
        if outcome.cancelled:
            self.metrics.transition_cancelled(outcome.cancelled_by or "unknown")
            self._log.bind(stage=from_stage, event=event, middleware=outcome.cancelled_by).info(
                "Transition to '%s' cancelled: %s", target, outcome.reason
            )
            if outcome.error is not None:
                raise outcome.error
            if self._reject_cancelled:
                raise TransitionCancelledError(
                    f"Transition '{from_stage}' -> '{target}' cancelled by "
                    f"middleware '{outcome.cancelled_by}'"
                    + (f": {outcome.reason}" if outcome.reason else ""),
                    context={"from": from_stage, "to": target, "middleware": outcome.cancelled_by},
                )
            return TransitionResult(
                from_stage=from_stage,
                to_stage=target,
                committed=False,
                event=event,
                cancelled=True,
                reason=outcome.reason,
            )

        context = outcome.context
        await self._plugins.run_hook(PluginHook.ON_BEFORE_TRANSITION, context)

        if self._status is EngineStatus.STOPPED:
            raise EngineStoppedError(
                f"Engine '{self.name}' stopped before '{from_stage}' -> '{context.to}' committed",
                context={"from": from_stage, "to": context.to},
            )

        with self.metrics.track_commit_time():
            self._timers.cancel_all()
            self._current_stage = context.to
            self._current_data = context.data
            self._history.append(HistoryEntry(stage=context.to, data=context.data, event=event))
        self.metrics.transition_committed(from_stage, context.to)

        log = self._log.bind(stage=context.to, event=event)
        if self._log_transitions:
            log.info("Transition %s -> %s", from_stage, context.to)
        else:
            log.debug("Transition %s -> %s", from_stage, context.to)

        stage, stage_data = self._current_stage, self._current_data
        await self._plugins.run_hook(PluginHook.ON_STAGE_CHANGE, context)
        if event is not None:
            await self._plugins.run_hook(PluginHook.ON_EVENT, context)

        result = TransitionResult(from_stage=from_stage, to_stage=context.to, committed=True, event=event)
        if self._status is EngineStatus.STOPPED:
            return result

        self._timers.enter_stage(self._stages[stage])
        self._notifier.notify(stage, stage_data)
        return result

    # ========================================================================
    # TIMER EVENTS
    # ========================================================================

    def _on_timer_fired(self, entry: TimerEntry) -> None:
        self.metrics.timer_fired(entry.stage, entry.spec.event)
        task = asyncio.ensure_future(self._dispatch_timer_event(entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispatch_timer_event(self, entry: TimerEntry) -> None:
        log = self._log.bind(stage=entry.stage, event=entry.spec.event)
        try:
            await self._submit(f"timer:{entry.spec.event}", partial(self._process_timer_event, entry))
        except EngineStateError as exc:
            log.debug("Timer event dropped: %s", exc)
        except StageFlowError as exc:
            log.warning("Timer event failed: %s", exc)
        except Exception as exc:
            log.error("Timer event failed: %s", exc, exc_info=True)

    async def _process_timer_event(self, entry: TimerEntry) -> Optional[TransitionResult]:
        if entry.epoch != self._timers.epoch:
            # Stage was left (or re-entered) while the event waited in the queue
            self._log.bind(stage=entry.stage, event=entry.spec.event).debug("Stale timer event dropped")
            return None
        payload = UNSET if entry.spec.payload is None else entry.spec.payload
        return await self._process_send(entry.spec.event, payload)
