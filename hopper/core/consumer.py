# hopper/core/consumer.py
from __future__ import annotations

import asyncio
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from hopper.core.backends import Backend, create_backend
from hopper.core.brokers import Broker, create_broker
from hopper.core.errors import BackendReportError, LifecycleError, SourceLocation
from hopper.core.events import LifecycleEvent, Listener, LifecycleEvents
from hopper.core.logging import get_logger
from hopper.core.models.app import ConsumerConfig, ProcessFunc
from hopper.core.models.tasks import Task, TaskMeta, check_version
from hopper.core.registry.tasks import TaskRegistry
from hopper.core.retry import classify_failure, retry_delay_for
from hopper.core.types.status import TaskState

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class _Declaration:
    meta: TaskMeta
    handler: ProcessFunc
    source: Optional[str]


class Consumer:
    """
    Runs handlers for registered task names.

    Each handler is wrapped so that every delivery reports
    RECEIVED -> STARTED -> SUCCEED | FAILED | RETRYING to the backend, runs
    the configured hooks, and labels failures for the broker (``exc.state``
    and, for RETRYING, ``exc.retry_delay_ms``).

    Usage:
        consumer = Consumer(ConsumerConfig(broker_options=AMQPConfig(url=...)))

        @consumer.task('resize', concurrency=8)
        async def resize(body, task):
            ...

        await consumer.start()
    """

    def __init__(
        self,
        config: Optional[ConsumerConfig] = None,
        *,
        broker: Optional[Broker] = None,
        backend: Optional[Backend] = None,
        **options: Any,
    ):
        self.config = config if config is not None else ConsumerConfig(**options)
        self.logger = get_logger('consumer')
        self.broker: Broker = broker if broker is not None else create_broker(self.config)
        self.backend: Optional[Backend] = (
            backend if backend is not None else create_backend(self.config)
        )
        self.registry: TaskRegistry[TaskMeta] = TaskRegistry()
        self._declared: TaskRegistry[_Declaration] = TaskRegistry()

        self.events = LifecycleEvents()
        self.broker.events.forward(
            self.events,
            (LifecycleEvent.READY, LifecycleEvent.ERROR, LifecycleEvent.CLOSE),
        )
        if self.backend is not None:
            self.backend.events.forward(
                self.events, (LifecycleEvent.ERROR, LifecycleEvent.CLOSE)
            )

    def on(self, event: LifecycleEvent | str, callback: Listener) -> Listener:
        return self.events.on(event, callback)

    # --- handler wrapping ---

    def wrap_handler(self, handler: ProcessFunc) -> ProcessFunc:
        """Wrap ``handler(body, task)`` with state reporting, hooks and failure labelling.

        Sequence per invocation:
          1. report RECEIVED
          2. pre_process(task); its errors propagate unlabelled
          3. protocol version check (mismatch is a terminal failure)
          4. report STARTED, run the handler
          5. success: report SUCCEED, post_process(task, SUCCEED, result)
          6. failure: BackendReportError propagates as is; anything else gets
             ``state`` (and ``retry_delay_ms``), is reported, passed to
             post_process and re-raised
        """
        backend = self.backend
        pre_process = self.config.pre_process
        post_process = self.config.post_process

        @functools.wraps(handler)
        async def wrapped(body: Any, task: Task) -> Any:
            if backend is not None:
                await backend.set_task_state_received(task)
            if pre_process is not None:
                await _maybe_await(pre_process(task))

            try:
                check_version(task.v)
                if backend is not None:
                    await backend.set_task_state_started(task)
                result = await _maybe_await(handler(body, task))
            except BackendReportError:
                raise
            except Exception as exc:
                state = classify_failure(task, exc)
                exc.state = state  # type: ignore[attr-defined]
                if state == TaskState.RETRYING:
                    exc.retry_delay_ms = retry_delay_for(task)  # type: ignore[attr-defined]

                self.logger.warning(
                    f'Task {task.name}[{task.id}] attempt {task.retry_count} '
                    f'failed -> {state.value}: {type(exc).__name__}: {exc}'
                )
                if backend is not None:
                    if state == TaskState.RETRYING:
                        await backend.set_task_state_retrying(task, exc)
                    else:
                        await backend.set_task_state_failed(task, exc)
                if post_process is not None:
                    await _maybe_await(post_process(task, state, exc))
                raise

            if backend is not None:
                await backend.set_task_state_succeed(task, result)
            if post_process is not None:
                await _maybe_await(post_process(task, TaskState.SUCCEED, result))
            return result

        return wrapped

    # --- registration ---

    async def register_task(
        self,
        meta: TaskMeta | Mapping[str, Any],
        handler: ProcessFunc,
        *,
        source: Optional[str] = None,
    ) -> TaskMeta:
        """Wrap ``handler`` and start consuming ``meta.name`` on the broker.

        Raises:
            DuplicateTaskNameError: another handler already serves this name
            TransportError: the broker could not set up the subscription
        """
        if not isinstance(meta, TaskMeta):
            meta = TaskMeta.model_validate(meta)
        if meta.concurrency is None:
            meta = meta.model_copy(update={'concurrency': self.config.global_concurrency})

        registered = self.registry.register(meta, name=meta.name, source=source)
        if registered is not meta:
            return registered

        if self.config.process_wrap is not None:
            handler = self.config.process_wrap(meta.name, handler)
        wrapped = self.wrap_handler(handler)

        try:
            await self.broker.register_task(meta, wrapped)
        except BaseException:
            self.registry.unregister(meta.name)
            raise
        return meta

    def task(
        self, name: str, *, concurrency: Optional[int] = None
    ) -> Callable[[F], F]:
        """Declare ``fn`` as the handler of ``name``; subscribed by ``start()``."""
        meta = TaskMeta(name=name, concurrency=concurrency)

        def decorator(fn: F) -> F:
            location = SourceLocation.from_function(fn)
            source = location.format_short() if location else None
            self._declared.register(
                _Declaration(meta=meta, handler=fn, source=source),
                name=name,
                source=source,
            )
            return fn

        return decorator

    @property
    def declared_tasks(self) -> list[str]:
        return self._declared.names()

    async def start(self) -> None:
        """Register every handler declared with ``@consumer.task``."""
        for name in self._declared.names():
            if name in self.registry:
                continue
            declaration = self._declared[name]
            await self.register_task(
                declaration.meta, declaration.handler, source=declaration.source
            )
        self.logger.info(
            f'Consumer started with {len(self.registry)} task(s): '
            f'{", ".join(self.registry.names()) or "-"}'
        )

    # --- lifecycle ---

    async def _on_both(
        self,
        operation: str,
        call: Callable[[Broker | Backend], Awaitable[Any]],
    ) -> dict[str, Any]:
        calls = [call(self.broker)]
        if self.backend is not None:
            calls.append(call(self.backend))
        results = await asyncio.gather(*calls, return_exceptions=True)

        outcomes: dict[str, Any] = {
            'broker': results[0],
            'backend': results[1] if self.backend is not None else None,
        }
        if any(isinstance(v, BaseException) for v in outcomes.values()):
            self.logger.error(f'Consumer {operation} failed: {outcomes}')
            raise LifecycleError(operation, outcomes)
        return outcomes

    async def close(self) -> dict[str, Any]:
        """Close broker and backend concurrently."""
        return await self._on_both('close', lambda c: c.close())

    async def check_health(self) -> dict[str, Any]:
        """Probe broker and backend concurrently."""
        return await self._on_both('check_health', lambda c: c.check_health())
