"""Unit tests for AMQPBroker: subscription setup and delivery disposition."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hopper.core.brokers.amqp import AMQPBroker
from hopper.core.codec.serde import task_to_json
from hopper.core.consumer import Consumer
from hopper.core.errors import TransportError
from hopper.core.events import LifecycleEvent
from hopper.core.models.broker import AMQPConfig
from hopper.core.models.tasks import RetryStrategy, Task, TaskMeta
from hopper.core.types.status import TaskState

CONNECT = 'hopper.core.brokers.amqp.aio_pika.connect_robust'


def _make_channel() -> tuple[MagicMock, MagicMock, MagicMock]:
    exchange = MagicMock()
    exchange.name = 'worker-exchange'
    exchange.publish = AsyncMock()

    queue = MagicMock()
    queue.bind = AsyncMock()
    queue.consume = AsyncMock(return_value='ctag-1')

    channel = MagicMock()
    channel.is_closed = False
    channel.set_qos = AsyncMock()
    channel.declare_exchange = AsyncMock(return_value=exchange)
    channel.declare_queue = AsyncMock(return_value=queue)
    channel.default_exchange = MagicMock()
    channel.default_exchange.publish = AsyncMock()
    return channel, exchange, queue


def _make_connection(channel: MagicMock) -> MagicMock:
    connection = MagicMock()
    connection.is_closed = False
    connection.close_called = False
    connection.channel = AsyncMock(return_value=channel)
    connection.close = AsyncMock()
    return connection


def _make_message(body: bytes) -> MagicMock:
    message = MagicMock()
    message.body = body
    message.routing_key = 'resize'
    message.ack = AsyncMock()
    message.nack = AsyncMock()
    message.reject = AsyncMock()
    return message


def _make_task(**overrides: Any) -> Task:
    fields: dict[str, Any] = {
        'id': 't-1',
        'name': 'resize',
        'body': {'w': 10},
        'max_retry': 3,
        'init_delay_ms': 100,
        'retry_strategy': RetryStrategy.LINEAR,
    }
    fields.update(overrides)
    return Task(**fields)


async def _register(
    broker: AMQPBroker, handler: Any, concurrency: int = 4
) -> tuple[MagicMock, MagicMock, MagicMock, Any]:
    channel, exchange, queue = _make_channel()
    with patch(CONNECT, new_callable=AsyncMock, return_value=_make_connection(channel)):
        await broker.register_task(TaskMeta(name='resize', concurrency=concurrency), handler)
    on_message = queue.consume.await_args.args[0]
    return channel, exchange, queue, on_message


@pytest.mark.unit
class TestRegisterTask:
    @pytest.mark.asyncio
    async def test_declares_topology(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        ready = MagicMock()
        broker.events.on(LifecycleEvent.READY, ready)

        channel, exchange, queue, _ = await _register(broker, AsyncMock(), concurrency=7)

        channel.set_qos.assert_awaited_once_with(prefetch_count=7)
        assert channel.declare_exchange.await_args.args[0] == 'worker-exchange'
        assert channel.declare_exchange.await_args.kwargs['durable'] is True
        channel.declare_queue.assert_awaited_once_with('resize', durable=True)
        queue.bind.assert_awaited_once_with(exchange, routing_key='resize')
        ready.assert_called_once_with('resize')

    @pytest.mark.asyncio
    async def test_one_connection_channel_per_task(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        channel, _, _ = _make_channel()
        connection = _make_connection(channel)
        with patch(CONNECT, new_callable=AsyncMock, return_value=connection) as mock_connect:
            await broker.register_task(TaskMeta(name='resize', concurrency=1), AsyncMock())
            await broker.register_task(TaskMeta(name='thumbnail', concurrency=1), AsyncMock())
        mock_connect.assert_awaited_once()
        assert connection.channel.await_count == 2

    @pytest.mark.asyncio
    async def test_connect_failure(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        errors = MagicMock()
        broker.events.on(LifecycleEvent.ERROR, errors)
        with patch(CONNECT, new_callable=AsyncMock, side_effect=ConnectionRefusedError('no')):
            with pytest.raises(TransportError):
                await broker.register_task(TaskMeta(name='resize', concurrency=1), AsyncMock())
        errors.assert_called_once()

    @pytest.mark.asyncio
    async def test_requires_concurrency(self) -> None:
        with pytest.raises(ValueError):
            await AMQPBroker(AMQPConfig()).register_task(TaskMeta(name='resize'), AsyncMock())


@pytest.mark.unit
class TestDelivery:
    @pytest.mark.asyncio
    async def test_success_acks(self) -> None:
        handler = AsyncMock(return_value='ok')
        _, _, _, on_message = await _register(AMQPBroker(AMQPConfig()), handler)
        task = _make_task()
        message = _make_message(task_to_json(task).encode())

        await on_message(message)

        handler.assert_awaited_once_with({'w': 10}, task)
        message.ack.assert_awaited_once()
        message.reject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_undecodable_rejected_without_requeue(self) -> None:
        handler = AsyncMock()
        _, _, _, on_message = await _register(AMQPBroker(AMQPConfig()), handler)
        message = _make_message(b'{not json')

        await on_message(message)

        handler.assert_not_awaited()
        message.reject.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_retrying_republishes_through_holding_queue(self) -> None:
        error = RuntimeError('flaky')
        error.state = TaskState.RETRYING  # type: ignore[attr-defined]
        error.retry_delay_ms = 1500  # type: ignore[attr-defined]
        channel, exchange, _, on_message = await _register(
            AMQPBroker(AMQPConfig()), AsyncMock(side_effect=error)
        )
        message = _make_message(task_to_json(_make_task(retry_count=1)).encode())

        await on_message(message)

        declare = channel.declare_queue.await_args
        assert declare.args[0] == 'worker-exchange.resize.delay.2000'
        assert declare.kwargs['arguments']['x-dead-letter-exchange'] == 'worker-exchange'
        published = channel.default_exchange.publish.await_args
        assert published.kwargs['routing_key'] == 'worker-exchange.resize.delay.2000'
        data = json.loads(published.args[0].body)
        assert data['retryCount'] == 2
        assert data['id'] == 't-1'
        assert data['eta'] is not None
        exchange.publish.assert_not_awaited()
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reschedule_failure_requeues(self) -> None:
        error = RuntimeError('flaky')
        error.state = TaskState.RETRYING  # type: ignore[attr-defined]
        channel, _, _, on_message = await _register(
            AMQPBroker(AMQPConfig()), AsyncMock(side_effect=error)
        )
        channel.default_exchange.publish.side_effect = ConnectionResetError('reset')
        message = _make_message(task_to_json(_make_task()).encode())

        await on_message(message)

        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_rejected_without_requeue(self) -> None:
        error = RuntimeError('fatal')
        error.state = TaskState.FAILED  # type: ignore[attr-defined]
        channel, _, _, on_message = await _register(
            AMQPBroker(AMQPConfig()), AsyncMock(side_effect=error)
        )
        message = _make_message(task_to_json(_make_task()).encode())

        await on_message(message)

        message.reject.assert_awaited_once_with(requeue=False)
        channel.default_exchange.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unlabelled_error_is_classified(self) -> None:
        channel, _, _, on_message = await _register(
            AMQPBroker(AMQPConfig()), AsyncMock(side_effect=RuntimeError('x'))
        )
        retry_message = _make_message(task_to_json(_make_task(retry_count=0)).encode())
        last_message = _make_message(task_to_json(_make_task(retry_count=3)).encode())

        await on_message(retry_message)
        await on_message(last_message)

        retry_message.ack.assert_awaited_once()
        last_message.reject.assert_awaited_once_with(requeue=False)
        assert channel.default_exchange.publish.await_count == 1


@pytest.mark.unit
class TestConsumerOverAMQP:
    @pytest.mark.asyncio
    async def test_wrapper_labels_drive_disposition(self) -> None:
        broker = AMQPBroker(AMQPConfig(delay_bucket_ms=100))
        consumer = Consumer(broker=broker)
        handler = AsyncMock(side_effect=RuntimeError('flaky'))
        channel, _, queue = _make_channel()

        with patch(CONNECT, new_callable=AsyncMock, return_value=_make_connection(channel)):
            await consumer.register_task(TaskMeta(name='resize'), handler)

        on_message = queue.consume.await_args.args[0]
        # retry_count=2 with LINEAR/100ms -> 300ms
        message = _make_message(task_to_json(_make_task(retry_count=2)).encode())
        await on_message(message)

        assert channel.set_qos.await_args.kwargs['prefetch_count'] == 256
        assert channel.declare_queue.await_args.args[0] == 'worker-exchange.resize.delay.300'
        message.ack.assert_awaited_once()


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_health_requires_connection(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        with pytest.raises(TransportError):
            await broker.check_health()
        await _register(broker, AsyncMock())
        assert await broker.check_health() is True

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        channel, _, _ = _make_channel()
        connection = _make_connection(channel)
        closed = MagicMock()
        broker.events.on(LifecycleEvent.CLOSE, closed)
        with patch(CONNECT, new_callable=AsyncMock, return_value=connection):
            await broker.connect()

        await broker.close()

        connection.close.assert_awaited_once()
        closed.assert_called_once_with()
        assert not broker.is_connected

    @pytest.mark.asyncio
    async def test_transient_drop_keeps_robust_connection(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        channel, _, _ = _make_channel()
        connection = _make_connection(channel)
        errors = MagicMock()
        broker.events.on(LifecycleEvent.ERROR, errors)
        with patch(CONNECT, new_callable=AsyncMock, return_value=connection) as mock_connect:
            await broker.connect()

            lost = ConnectionResetError('reset')
            broker._on_connection_closed(connection, lost)

            errors.assert_called_once_with(lost)
            assert broker.is_connected
            assert await broker.check_health() is True
            assert await broker.connect() is connection
        mock_connect.assert_awaited_once()
        connection.reconnect_callbacks.add.assert_called_once_with(broker._on_reconnected)

    @pytest.mark.asyncio
    async def test_final_close_clears_connection(self) -> None:
        broker = AMQPBroker(AMQPConfig())
        channel, _, _ = _make_channel()
        connection = _make_connection(channel)
        errors = MagicMock()
        broker.events.on(LifecycleEvent.ERROR, errors)
        with patch(CONNECT, new_callable=AsyncMock, return_value=connection):
            await broker.connect()

        lost = ConnectionResetError('reset')
        connection.is_closed = True
        broker._on_connection_closed(connection, lost)

        errors.assert_called_once_with(lost)
        assert not broker.is_connected
        with pytest.raises(TransportError):
            await broker.check_health()
