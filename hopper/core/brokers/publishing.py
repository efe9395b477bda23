# hopper/core/brokers/publishing.py
"""Publish path shared by the producer and the broker's retry rescheduling."""

from __future__ import annotations

import asyncio
import datetime
from typing import Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange

from hopper.core.brokers.delay import schedule_delayed
from hopper.core.codec.serde import task_to_json
from hopper.core.defaults import DEFAULT_DELAY_BUCKET_MS
from hopper.core.errors import TransportError
from hopper.core.models.tasks import Task

AMQP_ERRORS: tuple[type[BaseException], ...] = (
    aio_pika.exceptions.AMQPError,
    aio_pika.exceptions.ChannelInvalidStateError,
    OSError,
    asyncio.TimeoutError,
)
"""Failures of the transport, as raised by aio-pika and the socket layer."""


def build_message(task: Task) -> aio_pika.Message:
    return aio_pika.Message(
        body=task_to_json(task).encode('utf-8'),
        content_type='application/json',
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=task.id,
        priority=task.priority,
    )


async def publish_task(
    channel: AbstractChannel,
    exchange: AbstractExchange,
    task: Task,
    *,
    bucket_ms: int = DEFAULT_DELAY_BUCKET_MS,
    now: Optional[datetime.datetime] = None,
) -> None:
    """Publish ``task`` with routing key ``task.name``.

    A task whose eta lies in the future goes to the matching holding queue
    (see ``hopper.core.brokers.delay``) instead of the exchange. Returns once
    the broker confirmed the publish.

    Raises:
        SerializationError: the task body has no JSON form
        TransportError: the declaration or publish failed
    """
    message = build_message(task)
    delay_ms = task.delay_ms(now)
    try:
        if delay_ms > 0:
            declaration = schedule_delayed(
                exchange.name, task.name, delay_ms, bucket_ms=bucket_ms
            )
            await channel.declare_queue(
                declaration.queue_name,
                durable=declaration.durable,
                arguments=declaration.arguments,
            )
            await channel.default_exchange.publish(
                message, routing_key=declaration.queue_name
            )
        else:
            await exchange.publish(message, routing_key=task.name)
    except AMQP_ERRORS as exc:
        raise TransportError(f'failed to publish task {task.name!r} ({task.id})', exc) from exc
