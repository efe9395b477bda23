from hopper.core.brokers.amqp import AMQPBroker
from hopper.core.brokers.base import Broker
from hopper.core.brokers.delay import DelayQueueDeclaration, schedule_delayed
from hopper.core.brokers.publishing import publish_task
from hopper.core.errors import ConfigurationError, ErrorCode
from hopper.core.models.app import BrokerType, ConsumerConfig


def create_broker(config: ConsumerConfig) -> Broker:
    """Broker selected by ``config.broker_type``."""
    if config.broker_type == BrokerType.AMQP:
        return AMQPBroker(config.broker_options)
    raise ConfigurationError(
        message=f'unsupported broker type {config.broker_type!r}',
        code=ErrorCode.CONFIG_INVALID_BROKER,
        help_text='use broker_type=BrokerType.AMQP',
    )


__all__ = [
    'AMQPBroker',
    'Broker',
    'DelayQueueDeclaration',
    'create_broker',
    'publish_task',
    'schedule_delayed',
]
