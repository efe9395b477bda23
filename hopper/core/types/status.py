# hopper/core/types/status.py
"""
Core types and enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class TaskState(Enum):
    """State of a single delivery attempt, as reported to the backend"""

    RECEIVED = 'RECEIVED'  # Delivered to the consumer, handler not yet running.

    STARTED = 'STARTED'  # Version accepted, the user handler is running.

    SUCCEED = 'SUCCEED'  # Handler returned a result.

    FAILED = 'FAILED'  # Handler failed and the task will not be retried.
    RETRYING = 'RETRYING'  # Handler failed and the task is rescheduled.

    @property
    def is_terminal(self) -> bool:
        """Whether this state ends the lifetime of the logical task."""
        return self in TASK_TERMINAL_STATES


TASK_TERMINAL_STATES: frozenset[TaskState] = frozenset({
    TaskState.SUCCEED,
    TaskState.FAILED,
})
