from typing import Optional

from hopper.core.backends.base import Backend
from hopper.core.backends.memory import MemoryBackend, StateRecord
from hopper.core.backends.postgres import PostgresBackend
from hopper.core.errors import ConfigurationError, ErrorCode
from hopper.core.models.app import BackendType, ConsumerConfig


def create_backend(config: ConsumerConfig) -> Optional[Backend]:
    """Backend selected by ``config.backend_type``; None means no reporting."""
    match config.backend_type:
        case BackendType.NONE:
            return None
        case BackendType.MEMORY:
            return MemoryBackend()
        case BackendType.POSTGRES:
            if config.backend_options is None:
                raise ConfigurationError(
                    message='backend_options required for the POSTGRES backend',
                    code=ErrorCode.CONFIG_INVALID_BACKEND,
                    help_text="pass backend_options=PostgresConfig(database_url='postgresql+psycopg://...')",
                )
            return PostgresBackend(config.backend_options)
    raise ConfigurationError(
        message=f'unsupported backend type {config.backend_type!r}',
        code=ErrorCode.CONFIG_INVALID_BACKEND,
    )


__all__ = [
    'Backend',
    'MemoryBackend',
    'PostgresBackend',
    'StateRecord',
    'create_backend',
]
