# hopper/core/models/app.py
from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hopper.core.defaults import (
    DEFAULT_AMQP_URL,
    DEFAULT_DELAY_BUCKET_MS,
    DEFAULT_EXCHANGE_NAME,
    DEFAULT_GLOBAL_CONCURRENCY,
    DEFAULT_GLOBAL_INIT_DELAY_MS,
    DEFAULT_GLOBAL_MAX_RETRY,
)
from hopper.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected
from hopper.core.models.broker import AMQPConfig, PostgresConfig
from hopper.core.models.tasks import RetryStrategy, Task
from hopper.core.types.status import TaskState

# handler(body, task) -> result
ProcessFunc = Callable[[Any, Task], Awaitable[Any]]
ProcessWrap = Callable[[str, ProcessFunc], ProcessFunc]
PreProcessHook = Callable[[Task], Any]
PostProcessHook = Callable[[Task, TaskState, Any], Any]


class BrokerType(str, Enum):
    AMQP = 'AMQP'


class BackendType(str, Enum):
    NONE = 'NONE'
    MEMORY = 'MEMORY'
    POSTGRES = 'POSTGRES'


class ProducerConfig(BaseModel):
    """
    Producer settings.

    Fields:
        exchange_name: direct exchange tasks are published to; must match the consumer
        is_test_mode: record created tasks in Producer.created_tasks, no network I/O
        url: AMQP broker URL
        socket_options: extra keyword arguments for aio_pika.connect
        global_max_retry: max_retry for tasks that leave it unset
        global_init_delay_ms: init_delay_ms for tasks that leave it unset
        global_retry_strategy: retry_strategy for tasks that leave it unset
        delay_bucket_ms: granularity of eta holding queues
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    exchange_name: str = Field(default=DEFAULT_EXCHANGE_NAME, min_length=1)
    is_test_mode: bool = False
    url: str = DEFAULT_AMQP_URL
    socket_options: dict[str, Any] = Field(default_factory=dict)
    global_max_retry: int = Field(default=DEFAULT_GLOBAL_MAX_RETRY, ge=0)
    global_init_delay_ms: int = Field(default=DEFAULT_GLOBAL_INIT_DELAY_MS, ge=1)
    global_retry_strategy: RetryStrategy = RetryStrategy.FIBONACCI
    delay_bucket_ms: int = Field(default=DEFAULT_DELAY_BUCKET_MS, ge=1)

    @model_validator(mode='after')
    def validate_url(self) -> ProducerConfig:
        # Reuse the broker URL rules
        AMQPConfig(url=self.url)
        return self

    def amqp(self) -> AMQPConfig:
        return AMQPConfig(
            url=self.url,
            exchange_name=self.exchange_name,
            socket_options=dict(self.socket_options),
            delay_bucket_ms=self.delay_bucket_ms,
        )


class ConsumerConfig(BaseModel):
    """
    Consumer settings.

    Fields:
        broker_type: transport implementation
        broker_options: transport settings
        backend_type: where task state transitions are recorded (NONE skips reporting)
        backend_options: settings for the POSTGRES backend
        process_wrap: wraps each handler before registration (instrumentation, APM)
        pre_process: called with the task before the version check and handler
        post_process: called with (task, state, result_or_error) after each attempt
        global_concurrency: in-flight ceiling for task names without their own
    """

    model_config = ConfigDict(extra='forbid', frozen=True, arbitrary_types_allowed=True)

    broker_type: BrokerType = BrokerType.AMQP
    broker_options: AMQPConfig = Field(default_factory=AMQPConfig)
    backend_type: BackendType = BackendType.NONE
    backend_options: Optional[PostgresConfig] = None
    process_wrap: Optional[ProcessWrap] = None
    pre_process: Optional[PreProcessHook] = None
    post_process: Optional[PostProcessHook] = None
    global_concurrency: int = DEFAULT_GLOBAL_CONCURRENCY

    @model_validator(mode='after')
    def validate_consumer_configuration(self) -> ConsumerConfig:
        """Collects all independent errors and raises them together."""
        report = ValidationReport('consumer config')

        if self.global_concurrency < 1:
            report.add(
                ConfigurationError(
                    message='global_concurrency must be positive',
                    code=ErrorCode.CONFIG_INVALID_CONCURRENCY,
                    notes=[f'got global_concurrency={self.global_concurrency}'],
                    help_text='set global_concurrency >= 1 (default 256)',
                )
            )

        if self.backend_type == BackendType.POSTGRES and self.backend_options is None:
            report.add(
                ConfigurationError(
                    message='backend_options required for the POSTGRES backend',
                    code=ErrorCode.CONFIG_INVALID_BACKEND,
                    notes=['backend_type=POSTGRES but backend_options is None'],
                    help_text="pass backend_options=PostgresConfig(database_url='postgresql+psycopg://...')",
                )
            )
        elif self.backend_type != BackendType.POSTGRES and self.backend_options is not None:
            report.add(
                ConfigurationError(
                    message=f'backend_options given for the {self.backend_type.value} backend',
                    code=ErrorCode.CONFIG_INVALID_BACKEND,
                    notes=['backend_options is only read by the POSTGRES backend'],
                    help_text='either remove backend_options or set backend_type=POSTGRES',
                )
            )

        raise_collected(report)
        return self
