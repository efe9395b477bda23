"""hopper - AMQP task queue with state tracking and retry-with-backoff"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.producer import Producer
from .core.consumer import Consumer
from .core.models.app import (
    BackendType,
    BrokerType,
    ConsumerConfig,
    ProducerConfig,
)
from .core.models.broker import AMQPConfig, PostgresConfig
from .core.models.tasks import RetryStrategy, Task, TaskMeta
from .core.types.status import TaskState, TASK_TERMINAL_STATES
from .core.retry import classify_failure, next_delay_ms
from .core.brokers import AMQPBroker, Broker, schedule_delayed
from .core.backends import Backend, MemoryBackend, PostgresBackend
from .core.events import LifecycleEvent, LifecycleEvents
from .core.errors import (
    BackendReportError,
    ConfigurationError,
    ErrorCode,
    HopperError,
    LifecycleError,
    MultipleValidationErrors,
    NonRetryableError,
    TransportError,
    VersionMismatchError,
)
from .core.codec.serde import SerializationError
from .core.registry.tasks import DuplicateTaskNameError, NotRegistered

__all__ = [
    # Producer / consumer
    'Producer',
    'Consumer',
    'ProducerConfig',
    'ConsumerConfig',
    'BrokerType',
    'BackendType',
    'AMQPConfig',
    'PostgresConfig',
    # Tasks
    'Task',
    'TaskMeta',
    'TaskState',
    'TASK_TERMINAL_STATES',
    'RetryStrategy',
    'next_delay_ms',
    'classify_failure',
    'schedule_delayed',
    # Collaborators
    'Broker',
    'AMQPBroker',
    'Backend',
    'MemoryBackend',
    'PostgresBackend',
    'LifecycleEvent',
    'LifecycleEvents',
    # Errors
    'HopperError',
    'ConfigurationError',
    'MultipleValidationErrors',
    'ErrorCode',
    'NonRetryableError',
    'VersionMismatchError',
    'BackendReportError',
    'TransportError',
    'LifecycleError',
    'SerializationError',
    'DuplicateTaskNameError',
    'NotRegistered',
]
