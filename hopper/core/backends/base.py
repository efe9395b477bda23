# hopper/core/backends/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from hopper.core.events import LifecycleEvents
from hopper.core.models.tasks import Task


class Backend(ABC):
    """Records task state transitions.

    Every ``set_task_state_*`` call raises BackendReportError when the
    transition could not be persisted; the consumer propagates that error
    without classifying it.
    """

    def __init__(self) -> None:
        self.events = LifecycleEvents()

    @abstractmethod
    async def set_task_state_received(self, task: Task) -> None: ...

    @abstractmethod
    async def set_task_state_started(self, task: Task) -> None: ...

    @abstractmethod
    async def set_task_state_succeed(self, task: Task, result: Any) -> None: ...

    @abstractmethod
    async def set_task_state_failed(self, task: Task, error: BaseException) -> None: ...

    @abstractmethod
    async def set_task_state_retrying(self, task: Task, error: BaseException) -> None: ...

    @abstractmethod
    async def check_health(self) -> Any: ...

    @abstractmethod
    async def close(self) -> Any: ...
