# tests/test_middleware.py
"""Tests for stageflow/core/engine/middleware.py — outcome pipeline."""
from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest

from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.errors import (
    DuplicateMiddlewareError,
    MiddlewareError,
    UnknownMiddlewareError,
    UnknownStageError,
)
from stageflow.core.engine.middleware import Middleware, MiddlewareOutcome, MiddlewarePipeline

KNOWN_STAGES = {"a", "b", "c"}


def _exists(stage: str) -> bool:
    return stage in KNOWN_STAGES


def _context(**overrides) -> TransitionContext:
    values = {"from_stage": "a", "to": "b", "data": {"n": 1}, "event": "go"}
    values.update(overrides)
    return TransitionContext(**values)


# ============================================================================
# Registry
# ============================================================================

class TestRegistry:
    def setup_method(self):
        self.pipeline = MiddlewarePipeline()

    def test_add_preserves_order(self):
        self.pipeline.add(Middleware("first", lambda ctx: None))
        self.pipeline.add(Middleware("second", lambda ctx: None))
        assert self.pipeline.names() == ["first", "second"]
        assert len(self.pipeline) == 2

    def test_duplicate_name(self):
        self.pipeline.add(Middleware("audit", lambda ctx: None))
        with pytest.raises(DuplicateMiddlewareError):
            self.pipeline.add(Middleware("audit", lambda ctx: None))

    def test_remove_unknown(self):
        with pytest.raises(UnknownMiddlewareError):
            self.pipeline.remove("ghost")

    def test_remove_returns_middleware(self):
        middleware = Middleware("audit", lambda ctx: None)
        self.pipeline.add(middleware)
        assert self.pipeline.remove("audit") is middleware
        assert self.pipeline.get("audit") is None

    def test_empty_name_rejected(self):
        with pytest.raises(MiddlewareError):
            self.pipeline.add(Middleware("", lambda ctx: None))


# ============================================================================
# Execution
# ============================================================================

class TestRun:
    def setup_method(self):
        self.pipeline = MiddlewarePipeline()

    @pytest.mark.asyncio
    async def test_empty_pipeline_passes_context_through(self):
        context = _context()
        result = await self.pipeline.run(context, _exists)
        assert result.context is context
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_runs_in_registration_order(self):
        calls = []
        self.pipeline.add(Middleware("one", lambda ctx: calls.append("one")))
        self.pipeline.add(Middleware("two", lambda ctx: calls.append("two")))
        await self.pipeline.run(_context(), _exists)
        assert calls == ["one", "two"]

    @pytest.mark.asyncio
    async def test_async_and_sync_handlers(self):
        async_handler = AsyncMock(return_value=None)
        sync_handler = Mock(return_value=None)
        self.pipeline.add(Middleware("async", async_handler))
        self.pipeline.add(Middleware("sync", sync_handler))
        await self.pipeline.run(_context(), _exists)
        async_handler.assert_awaited_once()
        sync_handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_rewrite_visible_to_later_middleware(self):
        seen = []
        self.pipeline.add(Middleware("redirect", lambda ctx: MiddlewareOutcome.proceed(to="c", data={"n": 2})))
        self.pipeline.add(Middleware("observer", lambda ctx: seen.append((ctx.to, ctx.data))))
        result = await self.pipeline.run(_context(), _exists)
        assert seen == [("c", {"n": 2})]
        assert result.context.to == "c"
        assert result.context.data == {"n": 2}

    @pytest.mark.asyncio
    async def test_proceed_without_changes_keeps_context(self):
        context = _context()
        self.pipeline.add(Middleware("noop", lambda ctx: MiddlewareOutcome.proceed()))
        result = await self.pipeline.run(context, _exists)
        assert result.context is context

    @pytest.mark.asyncio
    async def test_data_can_be_replaced_with_none(self):
        self.pipeline.add(Middleware("clear", lambda ctx: MiddlewareOutcome.proceed(data=None)))
        result = await self.pipeline.run(_context(), _exists)
        assert result.context.data is None

    @pytest.mark.asyncio
    async def test_cancel_short_circuits(self):
        later = Mock(return_value=None)
        self.pipeline.add(Middleware("gate", lambda ctx: MiddlewareOutcome.cancel(reason="closed")))
        self.pipeline.add(Middleware("later", later))
        result = await self.pipeline.run(_context(), _exists)
        assert result.cancelled
        assert result.cancelled_by == "gate"
        assert result.reason == "closed"
        later.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_carries_error(self):
        error = ValueError("nope")
        self.pipeline.add(Middleware("gate", lambda ctx: MiddlewareOutcome.cancel(error=error)))
        result = await self.pipeline.run(_context(), _exists)
        assert result.error is error

    @pytest.mark.asyncio
    async def test_rewrite_to_unknown_stage(self):
        self.pipeline.add(Middleware("redirect", lambda ctx: MiddlewareOutcome.proceed(to="nowhere")))
        with pytest.raises(UnknownStageError):
            await self.pipeline.run(_context(), _exists)

    @pytest.mark.asyncio
    async def test_raising_middleware_wrapped(self):
        def boom(ctx):
            raise RuntimeError("boom")

        self.pipeline.add(Middleware("boom", boom))
        with pytest.raises(MiddlewareError) as exc_info:
            await self.pipeline.run(_context(), _exists)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.context["middleware"] == "boom"

    @pytest.mark.asyncio
    async def test_invalid_return_value(self):
        self.pipeline.add(Middleware("bad", lambda ctx: True))
        with pytest.raises(MiddlewareError, match="expected MiddlewareOutcome"):
            await self.pipeline.run(_context(), _exists)
