# stageflow/core/engine/errors.py
"""
Typed errors raised by the stage engine.

Every error carries a machine-readable ``code`` so bindings can map
failures without matching on message text.  Configuration and registry
errors are raised synchronously; transition errors are raised from the
awaited ``send``/``go_to`` call and never leave partial state behind.
"""
from __future__ import annotations

from typing import Any


class StageFlowError(Exception):
    """Base class for all stage engine errors."""

    code: str = "STAGEFLOW_ERROR"

    def __init__(self, detail: str = "Stage engine error", context: dict[str, Any] | None = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class InvalidConfigurationError(StageFlowError):
    """Configuration rejected at construction time."""

    code = "INVALID_CONFIGURATION"


# ============================================================================
# TRANSITIONS
# ============================================================================

class TransitionError(StageFlowError):
    """A transition request could not be committed."""

    code = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """No transition of the current stage matches the event (or all guards failed)."""

    code = "INVALID_TRANSITION"


class UnknownStageError(TransitionError):
    """Stage name is not part of the configuration."""

    code = "UNKNOWN_STAGE"


class GuardEvaluationError(TransitionError):
    """A transition guard raised instead of returning a boolean."""

    code = "GUARD_FAILED"


class TransitionCancelledError(TransitionError):
    """Middleware cancelled the transition and the engine rejects cancellations."""

    code = "TRANSITION_CANCELLED"


class MiddlewareError(StageFlowError):
    """A middleware raised while handling a transition."""

    code = "MIDDLEWARE_ERROR"


# ============================================================================
# REGISTRIES
# ============================================================================

class PluginError(StageFlowError):
    code = "PLUGIN_ERROR"


class DuplicatePluginError(PluginError):
    code = "DUPLICATE_PLUGIN"


class UnknownPluginError(PluginError):
    code = "UNKNOWN_PLUGIN"


class PluginDependencyError(PluginError):
    """Missing dependency on install, or a dependent still installed on uninstall."""

    code = "PLUGIN_DEPENDENCY"


class DuplicateMiddlewareError(StageFlowError):
    code = "DUPLICATE_MIDDLEWARE"


class UnknownMiddlewareError(StageFlowError):
    code = "UNKNOWN_MIDDLEWARE"


# ============================================================================
# ENGINE LIFECYCLE
# ============================================================================

class EngineStateError(StageFlowError):
    """Operation is not valid in the engine's current lifecycle status."""

    code = "ENGINE_STATE"


class EngineNotStartedError(EngineStateError):
    code = "ENGINE_NOT_STARTED"


class AlreadyStartedError(EngineStateError):
    code = "ALREADY_STARTED"


class EngineStoppedError(EngineStateError):
    code = "ENGINE_STOPPED"


# ============================================================================
# RECOVERY
# ============================================================================

class RecoveryFailedError(StageFlowError):
    """An operation still failed after its retries (the last failure is ``__cause__``)."""

    code = "RECOVERY_FAILED"


class CircuitOpenError(RecoveryFailedError):
    """Too many recent failures; the operation was not attempted."""

    code = "CIRCUIT_OPEN"
