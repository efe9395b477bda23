# hopper/core/brokers/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from hopper.core.events import LifecycleEvents
from hopper.core.models.app import ProcessFunc
from hopper.core.models.tasks import TaskMeta


class Broker(ABC):
    """Delivers tasks to registered handlers.

    Implementations own the disposition of each delivery: acknowledge on
    success, reschedule on RETRYING, discard on FAILED.
    """

    def __init__(self) -> None:
        self.events = LifecycleEvents()

    @abstractmethod
    async def register_task(self, meta: TaskMeta, handler: ProcessFunc) -> None:
        """Start consuming ``meta.name`` with at most ``meta.concurrency`` in flight."""

    @abstractmethod
    async def check_health(self) -> Any: ...

    @abstractmethod
    async def close(self) -> Any: ...
