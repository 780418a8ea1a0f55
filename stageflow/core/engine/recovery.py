# stageflow/core/engine/recovery.py
"""
Retry, circuit breaking and fallback navigation for operations that drive
an engine.

    recovery = RecoveryManager(engine, RecoveryPolicy(retry_attempts=3, fallback_stage="error"))
    await recovery.execute(lambda: submit_order(cart), "submit order")

When every attempt failed (or the failure is not retryable) the engine is
sent to ``fallback_stage`` if one is set, and ``RecoveryFailedError`` is
raised with the last failure chained as ``__cause__``.
"""
from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from stageflow.core.engine.domain import UNSET
from stageflow.core.engine.errors import (
    CircuitOpenError,
    InvalidConfigurationError,
    RecoveryFailedError,
    StageFlowError,
)
from stageflow.core.engine.plugins import Plugin
from stageflow.infra.logging_config import get_logger

if TYPE_CHECKING:
    from stageflow.core.engine.engine import StageEngine

logger = get_logger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[Exception, int], bool]


def is_retryable(exc: Exception, attempt: int) -> bool:
    """Configuration mistakes never heal on retry; everything else may"""
    return not isinstance(exc, InvalidConfigurationError)


class RecoveryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    retry_attempts: int = Field(default=3, ge=1)  # Total attempts, the first one included
    retry_delay: float = Field(default=1.0, ge=0)  # Seconds before the first retry
    backoff_factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)
    max_retry_time: float = Field(default=30.0, gt=0)  # No retry starts after this many seconds
    fallback_stage: Optional[str] = None
    should_retry: RetryPredicate = is_retryable

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)"""
        return min(self.retry_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


class CircuitBreaker:
    """
    Simple circuit breaker.

    States:
    - CLOSED: Normal operation
    - OPEN: Too many failures, reject calls
    - HALF_OPEN: Letting a call through to test recovery
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def is_available(self) -> bool:
        if self.state == "CLOSED":
            return True

        if self.state == "OPEN":
            if self._clock() - self.last_failure_time >= self.timeout:
                logger.info("Circuit breaker '%s' entering HALF_OPEN state", self.name)
                self.state = "HALF_OPEN"
                return True
            return False

        return True

    def record_success(self) -> None:
        if self.state == "HALF_OPEN":
            logger.info("Circuit breaker '%s' closing (recovered)", self.name)
            self.state = "CLOSED"
        self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        # A failure while HALF_OPEN reopens immediately
        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            if self.state != "OPEN":
                logger.error(
                    "Circuit breaker '%s' opening (failures: %d/%d)",
                    self.name, self.failure_count, self.failure_threshold,
                )
                self.state = "OPEN"


class RecoveryManager:
    def __init__(
        self,
        engine: Optional["StageEngine"] = None,
        policy: Optional[RecoveryPolicy] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.policy = policy or RecoveryPolicy()
        self.breaker = breaker
        self._clock = clock
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """
        Await ``operation()`` until it succeeds or the policy gives up.

        Raises:
            CircuitOpenError: The breaker is open; nothing was attempted
            RecoveryFailedError: Every attempt failed (after fallback navigation)
        """
        if self.breaker is not None and not self.breaker.is_available():
            raise CircuitOpenError(
                f"{name} rejected: circuit breaker '{self.breaker.name}' is open",
                context={"operation": name, "breaker": self.breaker.name},
            )

        policy = self.policy
        started = self._clock()
        attempt = 0
        last_exc: Optional[Exception] = None

        while attempt < policy.retry_attempts:
            attempt += 1
            try:
                result = await operation()
            except Exception as exc:
                last_exc = exc
                if self.breaker is not None:
                    self.breaker.record_failure()

                if attempt >= policy.retry_attempts:
                    break
                if not policy.should_retry(exc, attempt):
                    logger.error("Non-retryable error in %s: %s", name, exc)
                    break
                if self._clock() - started >= policy.max_retry_time:
                    logger.error("Retry time (%.1fs) exhausted in %s", policy.max_retry_time, name)
                    break
                if self.breaker is not None and not self.breaker.is_available():
                    break

                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    name, attempt, policy.retry_attempts, exc, delay,
                )
                await self._sleep(delay)
            else:
                if self.breaker is not None:
                    self.breaker.record_success()
                return result

        logger.error("%s failed after %d attempt(s): %s", name, attempt, last_exc)
        fallback = await self._fall_back(name)
        raise RecoveryFailedError(
            f"{name} failed after {attempt} attempt(s): {last_exc}",
            context={
                "operation": name,
                "attempts": attempt,
                "fallback_stage": fallback,
                "error_code": getattr(last_exc, "code", None),
            },
        ) from last_exc

    async def send(self, event: str, data: Any = UNSET):
        """``engine.send`` under this manager's policy"""
        engine = self._require_engine()
        return await self.execute(lambda: engine.send(event, data), f"send:{event}")

    async def go_to(self, stage: str, data: Any = UNSET):
        engine = self._require_engine()
        return await self.execute(lambda: engine.go_to(stage, data), f"go_to:{stage}")

    async def _fall_back(self, name: str) -> Optional[str]:
        stage = self.policy.fallback_stage
        if stage is None or self.engine is None:
            return None
        try:
            await self.engine.go_to(stage)
        except StageFlowError as exc:
            logger.error("Fallback to '%s' after %s failed: %s", stage, name, exc, exc_info=True)
            return None
        logger.warning("Navigated to fallback stage '%s' after %s failed", stage, name)
        return stage

    def _require_engine(self) -> "StageEngine":
        if self.engine is None:
            raise RecoveryFailedError("RecoveryManager has no engine attached")
        return self.engine


async def with_recovery(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RecoveryPolicy] = None,
    name: str = "operation",
) -> T:
    """Retry a standalone operation (no engine, so no fallback navigation)"""
    return await RecoveryManager(policy=policy).execute(operation, name)


def create_recovery_plugin(
    policy: Optional[RecoveryPolicy] = None,
    *,
    breaker: Optional[CircuitBreaker] = None,
    name: str = "error-recovery",
) -> Plugin:
    """
    Plugin that attaches a ``RecoveryManager`` to the engine it is installed
    on; other code reaches it through
    ``engine.get_plugin_state(name)["recovery_manager"]``.
    """
    plugin = Plugin(name=name, version="1.0.0")

    def on_install(engine: "StageEngine") -> None:
        plugin.state["recovery_manager"] = RecoveryManager(engine, policy, breaker=breaker)

    def on_uninstall(engine: "StageEngine") -> None:
        plugin.state.pop("recovery_manager", None)

    plugin.on_install = on_install
    plugin.on_uninstall = on_uninstall
    return plugin
