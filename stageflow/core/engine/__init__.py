# stageflow/core/engine/__init__.py
"""
Stage engine -- finite-state stage orchestration on asyncio.

Canonical imports:
    from stageflow.core.engine import StageEngine, EngineConfig, Stage
    from stageflow.core.engine.middleware import MiddlewareOutcome
    from stageflow.core.engine.errors import InvalidTransitionError
"""
from stageflow.core.engine.domain import (  # noqa: F401
    UNSET,
    EngineConfig,
    EngineStatus,
    HistoryEntry,
    Stage,
    TimerSpec,
    Transition,
    TransitionContext,
    TransitionResult,
)
from stageflow.core.engine.middleware import Middleware, MiddlewareOutcome  # noqa: F401
from stageflow.core.engine.plugins import Plugin, PluginHook  # noqa: F401
from stageflow.core.engine.timers import TimerEvent, TimerEventType, TimerState  # noqa: F401
from stageflow.core.engine.engine import StageEngine  # noqa: F401
from stageflow.core.engine.recovery import (  # noqa: F401
    CircuitBreaker,
    RecoveryManager,
    RecoveryPolicy,
    create_recovery_plugin,
    with_recovery,
)
