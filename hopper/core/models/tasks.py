# hopper/core/models/tasks.py
from __future__ import annotations

import datetime
from enum import Enum
from typing import Annotated, Any, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from hopper.core.defaults import TASK_PROTOCOL_VERSION
from hopper.core.errors import VersionMismatchError


class RetryStrategy(str, Enum):
    """Backoff growth rate applied between retries of a failed task."""

    LINEAR = 'LINEAR'
    EXPONENTIAL = 'EXPONENTIAL'
    FIBONACCI = 'FIBONACCI'


class Task(BaseModel):
    """
    One unit of work travelling from a producer to a consumer.

    Fields:
        id: unique id, assigned by Producer.create_task
        name: task type; routing key and consumer queue name
        body: opaque payload handed to the handler unchanged
        priority: optional AMQP priority hint
        eta: earliest execution time; future values are held in a delay queue
        v: protocol version, consumers reject versions they cannot run
        retry_count: reschedules so far, starts at 0
        max_retry: retries allowed before a failure becomes terminal
        init_delay_ms: base delay fed into the backoff strategy
        retry_strategy: backoff growth rate

    Retry fields left as None are filled from producer defaults.
    Serialized with camelCase keys (``retryCount``, ``initDelayMs`` ...) and
    ``eta`` as epoch milliseconds.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    name: Annotated[str, Field(min_length=1)]
    body: Any = None
    priority: Optional[Annotated[int, Field(ge=0, le=255)]] = None
    eta: Optional[datetime.datetime] = None
    v: int = TASK_PROTOCOL_VERSION
    retry_count: Annotated[int, Field(ge=0)] = 0
    max_retry: Optional[Annotated[int, Field(ge=0)]] = None
    init_delay_ms: Optional[Annotated[int, Field(ge=1)]] = None
    retry_strategy: Optional[RetryStrategy] = None

    @field_validator('eta')
    @classmethod
    def _eta_as_utc(cls, value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value

    @field_serializer('eta')
    def _eta_as_epoch_ms(self, value: Optional[datetime.datetime]) -> Optional[int]:
        if value is None:
            return None
        return int(value.timestamp() * 1000)

    @model_validator(mode='after')
    def validate_retry_budget(self) -> Self:
        """retry_count never exceeds max_retry."""
        if self.max_retry is not None and self.retry_count > self.max_retry:
            raise ValueError(
                f'retry_count ({self.retry_count}) exceeds max_retry ({self.max_retry})'
            )
        return self

    def delay_ms(self, now: Optional[datetime.datetime] = None) -> int:
        """Milliseconds until eta, 0 when there is no eta or it has passed."""
        if self.eta is None:
            return 0
        now = now or datetime.datetime.now(datetime.timezone.utc)
        remaining = (self.eta - now).total_seconds() * 1000
        return max(0, int(remaining))


class TaskMeta(BaseModel):
    """
    Registration-time options for one task name.

    Fields:
        name: task name to consume
        concurrency: in-flight ceiling for this name; global default when None
    """

    model_config = ConfigDict(extra='forbid')

    name: Annotated[str, Field(min_length=1)]
    concurrency: Optional[Annotated[int, Field(ge=1)]] = None


def check_version(v: Any) -> None:
    """Raise VersionMismatchError unless ``v`` is the supported protocol version."""
    if v != TASK_PROTOCOL_VERSION:
        raise VersionMismatchError(v, TASK_PROTOCOL_VERSION)
