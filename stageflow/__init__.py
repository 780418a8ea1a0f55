# stageflow/__init__.py
"""stageflow: asyncio stage engine with middleware, plugins and stage timers."""
from stageflow.core.engine import (  # noqa: F401
    UNSET,
    EngineConfig,
    EngineStatus,
    Middleware,
    MiddlewareOutcome,
    Plugin,
    Stage,
    StageEngine,
    TimerSpec,
    Transition,
    TransitionContext,
    TransitionResult,
)
from stageflow.core.engine.errors import StageFlowError  # noqa: F401

__version__ = "0.1.0"
