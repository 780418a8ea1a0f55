# tests/test_plugins.py
"""Tests for stageflow/core/engine/plugins.py — registry and hook isolation."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.errors import (
    DuplicatePluginError,
    PluginDependencyError,
    PluginError,
    UnknownPluginError,
)
from stageflow.core.engine.plugins import Plugin, PluginHook, PluginManager


class TestPluginRegistry:
    def setup_method(self):
        self.failures = Mock()
        self.manager = PluginManager(on_hook_failure=self.failures)
        self.engine = Mock(name="engine")

    def test_install_calls_on_install(self):
        on_install = Mock()
        self.manager.install(Plugin(name="audit", on_install=on_install), self.engine)
        on_install.assert_called_once_with(self.engine)
        assert "audit" in self.manager
        assert self.manager.names() == ["audit"]

    def test_duplicate_install(self):
        self.manager.install(Plugin(name="audit"), self.engine)
        with pytest.raises(DuplicatePluginError):
            self.manager.install(Plugin(name="audit"), self.engine)
        assert len(self.manager) == 1

    def test_unnamed_plugin(self):
        with pytest.raises(PluginError):
            self.manager.install(Plugin(name=""), self.engine)

    def test_missing_dependency(self):
        with pytest.raises(PluginDependencyError) as exc_info:
            self.manager.install(Plugin(name="reports", dependencies=["analytics"]), self.engine)
        assert exc_info.value.context["missing"] == ["analytics"]
        assert "reports" not in self.manager

    def test_dependency_satisfied(self):
        self.manager.install(Plugin(name="analytics"), self.engine)
        self.manager.install(Plugin(name="reports", dependencies=["analytics"]), self.engine)
        assert self.manager.names() == ["analytics", "reports"]

    def test_uninstall_blocked_by_dependent(self):
        self.manager.install(Plugin(name="analytics"), self.engine)
        self.manager.install(Plugin(name="reports", dependencies=["analytics"]), self.engine)
        with pytest.raises(PluginDependencyError):
            self.manager.uninstall("analytics", self.engine)

    def test_uninstall_calls_hook(self):
        on_uninstall = Mock()
        self.manager.install(Plugin(name="audit", on_uninstall=on_uninstall), self.engine)
        removed = self.manager.uninstall("audit", self.engine)
        assert removed.name == "audit"
        on_uninstall.assert_called_once_with(self.engine)
        assert "audit" not in self.manager

    def test_uninstall_unknown(self):
        with pytest.raises(UnknownPluginError):
            self.manager.uninstall("ghost", self.engine)

    def test_require(self):
        with pytest.raises(UnknownPluginError):
            self.manager.require("ghost")

    def test_failing_install_hook_is_isolated(self):
        self.manager.install(Plugin(name="audit", on_install=Mock(side_effect=RuntimeError("boom"))), self.engine)
        assert "audit" in self.manager
        self.failures.assert_called_once_with("audit", "on_install")

    def test_release_all_skips_hooks(self):
        on_uninstall = Mock()
        self.manager.install(Plugin(name="audit", on_uninstall=on_uninstall), self.engine)
        self.manager.release_all()
        assert len(self.manager) == 0
        on_uninstall.assert_not_called()


class TestHookDispatch:
    def setup_method(self):
        self.failures = Mock()
        self.manager = PluginManager(on_hook_failure=self.failures)
        self.engine = Mock(name="engine")
        self.context = TransitionContext(from_stage="a", to="b", event="go")

    @pytest.mark.asyncio
    async def test_installation_order(self):
        calls = []
        for name in ("first", "second", "third"):
            self.manager.install(
                Plugin(name=name, on_stage_change=lambda ctx, n=name: calls.append(n)),
                self.engine,
            )
        await self.manager.run_hook(PluginHook.ON_STAGE_CHANGE, self.context)
        assert calls == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_async_hooks_awaited(self):
        hook = AsyncMock()
        self.manager.install(Plugin(name="audit", on_event=hook), self.engine)
        await self.manager.run_hook(PluginHook.ON_EVENT, self.context)
        hook.assert_awaited_once_with(self.context)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_plugins(self):
        after = Mock()
        self.manager.install(
            Plugin(name="broken", on_before_transition=AsyncMock(side_effect=RuntimeError("boom"))),
            self.engine,
        )
        self.manager.install(Plugin(name="healthy", on_before_transition=after), self.engine)
        await self.manager.run_hook(PluginHook.ON_BEFORE_TRANSITION, self.context)
        after.assert_called_once_with(self.context)
        self.failures.assert_called_once_with("broken", "on_before_transition")

    @pytest.mark.asyncio
    async def test_plugins_without_hook_skipped(self):
        self.manager.install(Plugin(name="empty"), self.engine)
        await self.manager.run_hook(PluginHook.ON_STOP, self.engine)
        self.failures.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_install_hook_scheduled(self):
        installed = asyncio.Event()

        async def on_install(engine):
            installed.set()

        self.manager.install(Plugin(name="audit", on_install=on_install), self.engine)
        await asyncio.wait_for(installed.wait(), timeout=1)


class TestPluginModel:
    def test_hook_lookup(self):
        on_start = Mock()
        plugin = Plugin(name="p", on_start=on_start)
        assert plugin.hook(PluginHook.ON_START) is on_start
        assert plugin.hook(PluginHook.ON_STOP) is None

    def test_state_defaults_independent(self):
        a, b = Plugin(name="a"), Plugin(name="b")
        a.state["count"] = 1
        assert b.state == {}
