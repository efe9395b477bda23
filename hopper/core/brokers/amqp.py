# hopper/core/brokers/amqp.py
from __future__ import annotations

import asyncio
import datetime
import functools
from typing import Any, Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractRobustConnection,
)

from hopper.core.brokers.base import Broker
from hopper.core.brokers.publishing import AMQP_ERRORS, publish_task
from hopper.core.codec.serde import SerializationError, task_from_json
from hopper.core.errors import TransportError
from hopper.core.events import LifecycleEvent
from hopper.core.logging import get_logger
from hopper.core.models.app import ProcessFunc
from hopper.core.models.broker import AMQPConfig
from hopper.core.models.tasks import Task, TaskMeta
from hopper.core.retry import classify_failure, retry_delay_for
from hopper.core.types.status import TaskState
from hopper.core.utils.url import mask_url


class AMQPBroker(Broker):
    """
    AMQP 0-9-1 broker on aio-pika.

    One shared robust connection; each registered task name gets its own
    channel whose prefetch equals the task's concurrency, and a durable queue
    named after the task bound to the direct exchange.

    Delivery outcome:
      - undecodable body: reject, no requeue
      - handler returned: ack
      - RETRYING: publish a copy with retry_count + 1 through a holding
        queue, then ack (nack with requeue if that publish fails)
      - FAILED: reject, no requeue (dead-lettered when the queue has a DLX)
    """

    def __init__(self, config: AMQPConfig):
        super().__init__()
        self.config = config
        self.logger = get_logger('amqp')
        self._connection: Optional[AbstractRobustConnection] = None
        self._connect_lock = asyncio.Lock()
        self._channels: dict[str, AbstractChannel] = {}

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> AbstractRobustConnection:
        async with self._connect_lock:
            if self._connection is not None and not self._connection.is_closed:
                return self._connection
            self.logger.info(f'Connecting to {mask_url(self.config.url)}')
            try:
                connection = await aio_pika.connect_robust(
                    self.config.url, **self.config.socket_options
                )
            except AMQP_ERRORS as exc:
                self.logger.error(f'Connection to {mask_url(self.config.url)} failed: {exc}')
                self.events.emit(LifecycleEvent.ERROR, exc)
                raise TransportError('failed to connect to AMQP broker', exc) from exc
            connection.close_callbacks.add(self._on_connection_closed)
            connection.reconnect_callbacks.add(self._on_reconnected)
            self._connection = connection
            return connection

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None, *_: Any) -> None:
        if sender is not self._connection:
            return
        lost = isinstance(exc, BaseException) and not isinstance(exc, asyncio.CancelledError)
        # Robust connections also report transport drops they will recover from;
        # channels and consumers are restored in place.
        if not (sender.is_closed or sender.close_called):
            if lost:
                self.logger.warning(f'Connection lost, reconnecting: {exc}')
                self.events.emit(LifecycleEvent.ERROR, exc)
            return
        self._connection = None
        self._channels.clear()
        if lost:
            self.logger.error(f'Connection lost: {exc}')
            self.events.emit(LifecycleEvent.ERROR, exc)

    def _on_reconnected(self, sender: Any, *_: Any) -> None:
        if sender is self._connection:
            self.logger.info(f'Reconnected to {mask_url(self.config.url)}')

    async def register_task(self, meta: TaskMeta, handler: ProcessFunc) -> None:
        if meta.concurrency is None:
            raise ValueError(f'task {meta.name!r} registered without concurrency')

        connection = await self.connect()
        try:
            channel = await connection.channel(publisher_confirms=True)
            await channel.set_qos(prefetch_count=meta.concurrency)
            exchange = await channel.declare_exchange(
                self.config.exchange_name,
                aio_pika.ExchangeType.DIRECT,
                durable=True,
            )
            queue = await channel.declare_queue(meta.name, durable=True)
            await queue.bind(exchange, routing_key=meta.name)
            await queue.consume(
                functools.partial(self._on_message, channel, exchange, handler)
            )
        except AMQP_ERRORS as exc:
            self.logger.error(f'Failed to register task {meta.name!r}: {exc}')
            self.events.emit(LifecycleEvent.ERROR, exc)
            raise TransportError(f'failed to register task {meta.name!r}', exc) from exc

        self._channels[meta.name] = channel
        self.logger.info(
            f'Consuming {meta.name!r} on exchange {self.config.exchange_name!r} '
            f'(concurrency={meta.concurrency})'
        )
        self.events.emit(LifecycleEvent.READY, meta.name)

    async def _on_message(
        self,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        handler: ProcessFunc,
        message: AbstractIncomingMessage,
    ) -> None:
        try:
            task = task_from_json(message.body)
        except SerializationError as exc:
            self.logger.error(
                f'Rejecting undecodable message on {message.routing_key!r}: {exc}'
            )
            await message.reject(requeue=False)
            return

        try:
            await handler(task.body, task)
        except Exception as exc:
            await self._settle_failure(channel, exchange, task, message, exc)
            return
        await message.ack()

    async def _settle_failure(
        self,
        channel: AbstractChannel,
        exchange: AbstractExchange,
        task: Task,
        message: AbstractIncomingMessage,
        exc: Exception,
    ) -> None:
        state = getattr(exc, 'state', None)
        if not isinstance(state, TaskState):
            state = classify_failure(task, exc)

        if state != TaskState.RETRYING:
            self.logger.warning(f'Task {task.name}[{task.id}] failed permanently: {exc}')
            await message.reject(requeue=False)
            return

        delay_ms = getattr(exc, 'retry_delay_ms', None)
        if not isinstance(delay_ms, int) or delay_ms < 1:
            delay_ms = retry_delay_for(task)
        now = datetime.datetime.now(datetime.timezone.utc)
        retry = task.model_copy(
            update={
                'retry_count': task.retry_count + 1,
                'eta': now + datetime.timedelta(milliseconds=delay_ms),
            }
        )
        try:
            await publish_task(
                channel, exchange, retry, bucket_ms=self.config.delay_bucket_ms, now=now
            )
        except (TransportError, SerializationError) as publish_exc:
            self.logger.error(
                f'Could not reschedule {task.name}[{task.id}], requeueing: {publish_exc}'
            )
            await message.nack(requeue=True)
            return

        self.logger.info(
            f'Task {task.name}[{task.id}] retry {retry.retry_count}/{task.max_retry} '
            f'in {delay_ms}ms'
        )
        await message.ack()

    async def check_health(self) -> bool:
        if not self.is_connected:
            raise TransportError('AMQP broker is not connected')
        return True

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        self._channels.clear()
        if connection is not None and not connection.is_closed:
            await connection.close()
        self.logger.info('AMQP broker closed')
        self.events.emit(LifecycleEvent.CLOSE)
