# stageflow/core/engine/notifier.py
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from stageflow.core.engine.background import schedule_background
from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[str, Any], Union[None, Awaitable[None]]]


class Notifier:
    """
    Ordered subscriber registry owned by one engine.

    ``notify`` works on a snapshot of the registry, so unsubscribing during
    a notification pass does not affect callbacks already scheduled for it.
    """

    def __init__(self, on_failure: Optional[Callable[[], None]] = None):
        self._subscribers: list[tuple[int, Subscriber]] = []
        self._next_token = 0
        self._on_failure = on_failure
        self._background: set[asyncio.Future] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(stage, data)``; returns an idempotent unsubscribe"""
        token = self._next_token
        self._next_token += 1
        self._subscribers.append((token, callback))

        def unsubscribe() -> None:
            self._subscribers = [(t, cb) for t, cb in self._subscribers if t != token]

        return unsubscribe

    def notify(self, stage: str, data: Any) -> None:
        for _, callback in list(self._subscribers):
            try:
                result = callback(stage, data)
            except Exception as exc:
                logger.error("Subscriber failed on stage '%s': %s", stage, exc, exc_info=True)
                if self._on_failure is not None:
                    self._on_failure()
                continue
            if inspect.isawaitable(result):
                schedule_background(result, f"subscriber for stage '{stage}'", self._background)

    def __len__(self) -> int:
        return len(self._subscribers)
