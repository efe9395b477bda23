# hopper/core/retry.py
"""Retry backoff math and failure classification.

Both are pure: the consumer wrapper uses them to label a failed attempt and
the broker uses the computed delay to pick a holding queue.
"""

from __future__ import annotations

from hopper.core.defaults import DEFAULT_GLOBAL_INIT_DELAY_MS
from hopper.core.models.tasks import RetryStrategy, Task
from hopper.core.types.status import TaskState


def fibonacci(n: int) -> int:
    """fib(1) = fib(2) = 1, fib(n) = fib(n-1) + fib(n-2)."""
    if n < 1:
        raise ValueError(f'fibonacci is defined for n >= 1, got {n}')
    prev, curr = 0, 1
    for _ in range(n - 1):
        prev, curr = curr, prev + curr
    return curr


def next_delay_ms(retry_count: int, init_delay_ms: int, strategy: RetryStrategy) -> int:
    """Delay before retry number ``retry_count + 1``.

    LINEAR: init * (n + 1), EXPONENTIAL: init * 2**n, FIBONACCI: init * fib(n + 1).
    """
    if retry_count < 0:
        raise ValueError(f'retry_count must be >= 0, got {retry_count}')
    if init_delay_ms < 1:
        raise ValueError(f'init_delay_ms must be >= 1, got {init_delay_ms}')

    match RetryStrategy(strategy):
        case RetryStrategy.LINEAR:
            return init_delay_ms * (retry_count + 1)
        case RetryStrategy.EXPONENTIAL:
            return init_delay_ms * (2**retry_count)
        case RetryStrategy.FIBONACCI:
            return init_delay_ms * fibonacci(retry_count + 1)


def is_non_retryable(exc: BaseException) -> bool:
    """Whether the error was explicitly marked as terminal by its raiser."""
    return bool(getattr(exc, 'no_retry', False))


def classify_failure(task: Task, exc: BaseException) -> TaskState:
    """FAILED when the error is marked non-retryable or the retry budget is spent."""
    max_retry = task.max_retry or 0
    if is_non_retryable(exc) or task.retry_count >= max_retry:
        return TaskState.FAILED
    return TaskState.RETRYING


def retry_delay_for(task: Task) -> int:
    """Delay before the next attempt of ``task``, using built-in defaults for unset fields."""
    return next_delay_ms(
        task.retry_count,
        task.init_delay_ms or DEFAULT_GLOBAL_INIT_DELAY_MS,
        task.retry_strategy or RetryStrategy.FIBONACCI,
    )
