# hopper/core/backends/memory.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from hopper.core.backends.base import Backend
from hopper.core.events import LifecycleEvent
from hopper.core.models.tasks import Task
from hopper.core.types.status import TaskState


@dataclass
class StateRecord:
    task_id: Optional[str]
    task_name: str
    state: TaskState
    retry_count: int
    payload: Any = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MemoryBackend(Backend):
    """In-process backend for tests and local development.

    ``history`` keeps every transition in report order; ``states`` the latest
    state per task id.
    """

    def __init__(self) -> None:
        super().__init__()
        self.history: list[StateRecord] = []
        self.states: dict[Optional[str], TaskState] = {}
        self.closed = False

    def _record(self, task: Task, state: TaskState, payload: Any = None) -> None:
        self.history.append(
            StateRecord(
                task_id=task.id,
                task_name=task.name,
                state=state,
                retry_count=task.retry_count,
                payload=payload,
            )
        )
        self.states[task.id] = state

    def states_for(self, task_id: Optional[str]) -> list[TaskState]:
        return [r.state for r in self.history if r.task_id == task_id]

    async def set_task_state_received(self, task: Task) -> None:
        self._record(task, TaskState.RECEIVED)

    async def set_task_state_started(self, task: Task) -> None:
        self._record(task, TaskState.STARTED)

    async def set_task_state_succeed(self, task: Task, result: Any) -> None:
        self._record(task, TaskState.SUCCEED, result)

    async def set_task_state_failed(self, task: Task, error: BaseException) -> None:
        self._record(task, TaskState.FAILED, error)

    async def set_task_state_retrying(self, task: Task, error: BaseException) -> None:
        self._record(task, TaskState.RETRYING, error)

    async def check_health(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        self.closed = True
        self.events.emit(LifecycleEvent.CLOSE)
