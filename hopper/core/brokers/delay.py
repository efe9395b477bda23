# hopper/core/brokers/delay.py
"""Delayed delivery on top of plain AMQP.

A message that must wait is published to a holding queue that nobody
consumes. The queue has a per-message TTL equal to the (bucketed) delay and
dead-letters expired messages back to the real exchange and routing key, so
the broker redelivers them once the delay has elapsed.

Delays are rounded up to whole buckets: repeated retries at the same
magnitude share one queue, and a message is never released early.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hopper.core.defaults import DEFAULT_DELAY_BUCKET_MS, DELAY_QUEUE_IDLE_EXPIRY_MS


@dataclass(frozen=True)
class DelayQueueDeclaration:
    """Name and declaration parameters of one holding queue.

    Equal inputs produce equal declarations, so declaring the same queue
    twice is a no-op on the broker.
    """

    queue_name: str
    delay_ms: int
    durable: bool = True
    arguments: dict[str, Any] = field(default_factory=dict)


def bucket_delay_ms(delay_ms: int, bucket_ms: int = DEFAULT_DELAY_BUCKET_MS) -> int:
    """Round ``delay_ms`` up to a whole number of buckets (at least one)."""
    if bucket_ms < 1:
        raise ValueError(f'bucket_ms must be >= 1, got {bucket_ms}')
    buckets = max(1, -(-delay_ms // bucket_ms))
    return buckets * bucket_ms


def delay_queue_name(exchange_name: str, routing_key: str, bucketed_ms: int) -> str:
    return f'{exchange_name}.{routing_key}.delay.{bucketed_ms}'


def schedule_delayed(
    exchange_name: str,
    routing_key: str,
    delay_ms: int,
    *,
    bucket_ms: int = DEFAULT_DELAY_BUCKET_MS,
) -> DelayQueueDeclaration:
    """Holding queue for delivering to ``exchange_name``/``routing_key`` after ``delay_ms``."""
    if delay_ms <= 0:
        raise ValueError(f'delay_ms must be > 0, got {delay_ms}')

    bucketed = bucket_delay_ms(delay_ms, bucket_ms)
    return DelayQueueDeclaration(
        queue_name=delay_queue_name(exchange_name, routing_key, bucketed),
        delay_ms=bucketed,
        arguments={
            'x-message-ttl': bucketed,
            'x-dead-letter-exchange': exchange_name,
            'x-dead-letter-routing-key': routing_key,
            'x-expires': bucketed + DELAY_QUEUE_IDLE_EXPIRY_MS,
        },
    )
