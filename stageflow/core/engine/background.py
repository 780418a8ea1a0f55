# stageflow/core/engine/background.py
"""Fire-and-forget scheduling for awaitables returned from synchronous callbacks."""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable

from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)


def schedule_background(
    awaitable: Awaitable[Any],
    description: str,
    tasks: set[asyncio.Future],
) -> asyncio.Future | None:
    """
    Run ``awaitable`` on the running loop without waiting for it.

    The task is kept in ``tasks`` until it finishes; a failure is logged,
    never raised.  Without a running loop the awaitable is discarded.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        logger.warning("No running event loop, dropped async callback: %s", description)
        return None

    task = asyncio.ensure_future(awaitable)
    tasks.add(task)

    def _done(fut: asyncio.Future) -> None:
        tasks.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error(
                "Background callback failed: %s: %s", description, exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    task.add_done_callback(_done)
    return task
