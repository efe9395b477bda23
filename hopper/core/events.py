# hopper/core/events.py
"""Lifecycle notifications for brokers, backends and consumers.

Each collaborator owns a ``LifecycleEvents`` instance. Observers register
callbacks per event; a consumer forwards its broker's and backend's events
to its own instance so applications only subscribe in one place.
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Iterable

from hopper.core.logging import get_logger

logger = get_logger('events')

Listener = Callable[..., Any]


class LifecycleEvent(str, Enum):
    READY = 'ready'
    ERROR = 'error'
    CLOSE = 'close'


class LifecycleEvents:
    """Per-instance observer registry.

    Callbacks may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop and not awaited by ``emit``.
    """

    def __init__(self) -> None:
        self._listeners: dict[LifecycleEvent, list[Listener]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: LifecycleEvent | str, callback: Listener) -> Listener:
        """Register ``callback`` for ``event``. Returns the callback (decorator friendly)."""
        self._listeners.setdefault(LifecycleEvent(event), []).append(callback)
        return callback

    def off(self, event: LifecycleEvent | str, callback: Listener) -> None:
        listeners = self._listeners.get(LifecycleEvent(event), [])
        if callback in listeners:
            listeners.remove(callback)

    def listeners(self, event: LifecycleEvent | str) -> list[Listener]:
        return list(self._listeners.get(LifecycleEvent(event), []))

    def emit(self, event: LifecycleEvent | str, *args: Any) -> None:
        """Call every listener of ``event`` with ``args``.

        A failing listener is logged and does not stop the others.
        """
        for callback in self.listeners(event):
            try:
                result = callback(*args)
            except Exception:
                logger.exception(f'Listener for {LifecycleEvent(event).value!r} failed')
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)

    def forward(self, target: LifecycleEvents, events: Iterable[LifecycleEvent]) -> None:
        """Re-emit ``events`` raised here on ``target``."""
        for event in events:
            self.on(event, lambda *args, _event=event: target.emit(_event, *args))

    def _on_listener_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f'Async listener failed: {task.exception()}')
