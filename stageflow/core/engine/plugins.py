# stageflow/core/engine/plugins.py
"""
Plugin registry and hook dispatch.

A plugin is a named bundle of optional hooks.  Only hooks that are set are
invoked.  A failing hook is logged and skipped: it never aborts the
transition and never stops the remaining plugins from running.

Hook order for a committed transition::

    on_before_transition -> (commit) -> on_stage_change -> on_event (send only)
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from stageflow.core.engine.background import schedule_background
from stageflow.core.engine.domain import TransitionContext
from stageflow.core.engine.errors import (
    DuplicatePluginError,
    PluginDependencyError,
    PluginError,
    UnknownPluginError,
)
from stageflow.infra.logging_config import get_logger

if TYPE_CHECKING:
    from stageflow.core.engine.engine import StageEngine

logger = get_logger(__name__)

MaybeAwaitable = Union[None, Awaitable[None]]
EngineHook = Callable[["StageEngine"], MaybeAwaitable]
TransitionHook = Callable[[TransitionContext], MaybeAwaitable]


class PluginHook(str, Enum):
    ON_INSTALL = "on_install"
    ON_UNINSTALL = "on_uninstall"
    ON_START = "on_start"
    ON_STOP = "on_stop"
    ON_BEFORE_TRANSITION = "on_before_transition"
    ON_STAGE_CHANGE = "on_stage_change"
    ON_EVENT = "on_event"


@dataclass
class Plugin:
    """
    Named engine extension.

    Engine hooks (install/uninstall/start/stop) receive the engine;
    transition hooks receive the ``TransitionContext``.  Any hook may be a
    coroutine function.
    """
    name: str
    on_install: Optional[EngineHook] = None
    on_uninstall: Optional[EngineHook] = None
    on_start: Optional[EngineHook] = None
    on_stop: Optional[EngineHook] = None
    on_before_transition: Optional[TransitionHook] = None
    on_stage_change: Optional[TransitionHook] = None
    on_event: Optional[TransitionHook] = None

    # Plugins that must be installed before this one
    dependencies: list[str] = field(default_factory=list)
    version: Optional[str] = None
    state: dict[str, Any] = field(default_factory=dict)

    def hook(self, kind: PluginHook) -> Optional[Callable[..., MaybeAwaitable]]:
        return {
            PluginHook.ON_INSTALL: self.on_install,
            PluginHook.ON_UNINSTALL: self.on_uninstall,
            PluginHook.ON_START: self.on_start,
            PluginHook.ON_STOP: self.on_stop,
            PluginHook.ON_BEFORE_TRANSITION: self.on_before_transition,
            PluginHook.ON_STAGE_CHANGE: self.on_stage_change,
            PluginHook.ON_EVENT: self.on_event,
        }[kind]


class PluginManager:
    """Installed plugins, in installation order"""

    def __init__(self, on_hook_failure: Optional[Callable[[str, str], None]] = None):
        self._plugins: dict[str, Plugin] = {}
        self._on_hook_failure = on_hook_failure
        self._background: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def install(self, plugin: Plugin, engine: "StageEngine") -> None:
        if not plugin.name:
            raise PluginError("Plugin must have a name")
        if plugin.name in self._plugins:
            raise DuplicatePluginError(
                f"Plugin '{plugin.name}' is already installed",
                context={"plugin": plugin.name},
            )
        missing = [dep for dep in plugin.dependencies if dep not in self._plugins]
        if missing:
            raise PluginDependencyError(
                f"Plugin '{plugin.name}' requires {', '.join(missing)} to be installed first",
                context={"plugin": plugin.name, "missing": missing},
            )

        self._plugins[plugin.name] = plugin
        self._call_sync(plugin, PluginHook.ON_INSTALL, engine)
        logger.info("Installed plugin: %s", plugin.name)

    def uninstall(self, name: str, engine: "StageEngine") -> Plugin:
        plugin = self._plugins.get(name)
        if plugin is None:
            raise UnknownPluginError(
                f"Plugin '{name}' is not installed",
                context={"plugin": name},
            )
        dependents = [p.name for p in self._plugins.values() if name in p.dependencies]
        if dependents:
            raise PluginDependencyError(
                f"Cannot uninstall plugin '{name}': required by {', '.join(dependents)}",
                context={"plugin": name, "dependents": dependents},
            )

        del self._plugins[name]
        self._call_sync(plugin, PluginHook.ON_UNINSTALL, engine)
        logger.info("Uninstalled plugin: %s", name)
        return plugin

    def release_all(self) -> None:
        """Drop every plugin without running hooks (engine stop)"""
        self._plugins.clear()

    def get(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def require(self, name: str) -> Plugin:
        plugin = self._plugins.get(name)
        if plugin is None:
            raise UnknownPluginError(f"Plugin '{name}' is not installed", context={"plugin": name})
        return plugin

    def names(self) -> list[str]:
        return list(self._plugins)

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    # ------------------------------------------------------------------
    # Hook dispatch
    # ------------------------------------------------------------------

    async def run_hook(self, kind: PluginHook, argument: Any) -> None:
        """Await ``kind`` on every plugin that defines it, isolating failures"""
        for plugin in list(self._plugins.values()):
            hook = plugin.hook(kind)
            if hook is None:
                continue
            try:
                result = hook(argument)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._report_failure(plugin, kind, exc)

    def _call_sync(self, plugin: Plugin, kind: PluginHook, engine: "StageEngine") -> None:
        hook = plugin.hook(kind)
        if hook is None:
            return
        try:
            result = hook(engine)
        except Exception as exc:
            self._report_failure(plugin, kind, exc)
            return
        if inspect.isawaitable(result):
            schedule_background(result, f"plugin '{plugin.name}' {kind.value}", self._background)

    def _report_failure(self, plugin: Plugin, kind: PluginHook, exc: Exception) -> None:
        logger.error(
            "Plugin '%s' hook %s failed: %s", plugin.name, kind.value, exc,
            exc_info=True,
            extra={"plugin": plugin.name},
        )
        if self._on_hook_failure is not None:
            self._on_hook_failure(plugin.name, kind.value)
