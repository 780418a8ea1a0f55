# stageflow/plugins/logging_plugin.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.plugins import Plugin
from stageflow.infra.logging_config import LogContext, get_logger

if TYPE_CHECKING:
    from stageflow.core.engine.engine import StageEngine

logger = get_logger(__name__)


def create_logging_plugin(
    *,
    name: str = "logging",
    level: int = logging.INFO,
    include_data: bool = False,
    log_transitions: bool = True,
    log_lifecycle: bool = True,
    target_logger: Optional[logging.Logger] = None,
) -> Plugin:
    """
    Plugin that logs engine lifecycle and transitions.

    Args:
        name: Plugin name (unique per engine)
        level: Level used for every record
        include_data: Append stage data to transition records
        log_transitions: Log before/after each committed transition
        log_lifecycle: Log install/uninstall/start/stop
        target_logger: Logger to write to (defaults to this module's)
    """
    base = target_logger or logger

    def ctx(engine: "StageEngine", **extra) -> LogContext:
        return LogContext(base, engine=engine.name, stage=engine.get_current_stage()).bind(plugin=name, **extra)

    def lifecycle(message: str):
        def hook(engine: "StageEngine") -> None:
            if log_lifecycle:
                ctx(engine).log(level, message)
        return hook

    def describe(context: TransitionContext) -> str:
        text = f"{context.from_stage} -> {context.to} (event: {context.event or 'direct'})"
        if include_data:
            text = f"{text} data={context.data!r}"
        return text

    def before(context: TransitionContext) -> None:
        if log_transitions:
            LogContext(base, stage=context.from_stage, event=context.event).bind(plugin=name).log(
                level, "Transition starting: %s", describe(context)
            )

    def after(context: TransitionContext) -> None:
        if log_transitions:
            LogContext(base, stage=context.to, event=context.event).bind(plugin=name).log(
                level, "Transition completed: %s", describe(context)
            )

    return Plugin(
        name=name,
        version="1.0.0",
        on_install=lifecycle("Logging plugin installed"),
        on_uninstall=lifecycle("Logging plugin uninstalled"),
        on_start=lifecycle("Engine started"),
        on_stop=lifecycle("Engine stopping"),
        on_before_transition=before,
        on_stage_change=after,
    )
