# hopper/core/backends/postgres.py
from __future__ import annotations

import hashlib
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.sql.elements import TextClause

from hopper.core.backends.base import Backend
from hopper.core.backends.sql import (
    HEALTH_CHECK_SQL,
    MARK_FAILED_SQL,
    MARK_RETRYING_SQL,
    MARK_STARTED_SQL,
    MARK_SUCCEED_SQL,
    SCHEMA_ADVISORY_LOCK_SQL,
    UPSERT_RECEIVED_SQL,
)
from hopper.core.codec.serde import SerializationError, dumps_json, exception_to_json
from hopper.core.errors import BackendReportError
from hopper.core.events import LifecycleEvent
from hopper.core.logging import get_logger
from hopper.core.models.broker import PostgresConfig
from hopper.core.models.task_pg import Base
from hopper.core.models.tasks import Task
from hopper.core.types.status import TaskState
from hopper.core.utils.url import mask_url


class PostgresBackend(Backend):
    """
    Task state store on PostgreSQL (SQLAlchemy async engine over psycopg).

    One row per task id in ``hopper_task_states``. RECEIVED upserts the row,
    later transitions update it in place. The table is created on first use.
    """

    def __init__(self, config: PostgresConfig):
        super().__init__()
        self.config = config
        self.logger = get_logger('backend')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False

        self.logger.info(f'PostgresBackend initialized ({mask_url(self.config.database_url)})')

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key, distinct per database URL."""
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'hopper-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serializes DDL across consumers starting at the same time
            await conn.execute(
                SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()}
            )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def ensure_schema_initialized(self) -> None:
        await self._ensure_initialized()

    async def _report(
        self,
        task: Task,
        transition: TaskState,
        statement: TextClause,
        params: Mapping[str, Any],
    ) -> None:
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                await session.execute(statement, {'id': task.id, **params})
                await session.commit()
        except SQLAlchemyError as exc:
            self.logger.error(
                f'Failed to report {transition.value} for task {task.id}: {exc}'
            )
            self.events.emit(LifecycleEvent.ERROR, exc)
            raise BackendReportError(task.id, transition, exc) from exc

    def _serialize(self, task: Task, transition: TaskState, value: Any) -> str:
        try:
            return dumps_json(value)
        except SerializationError as exc:
            raise BackendReportError(task.id, transition, exc) from exc

    async def set_task_state_received(self, task: Task) -> None:
        await self._report(
            task,
            TaskState.RECEIVED,
            UPSERT_RECEIVED_SQL,
            {
                'task_name': task.name,
                'body': self._serialize(task, TaskState.RECEIVED, task.body),
                'retry_count': task.retry_count,
                'max_retry': task.max_retry,
            },
        )

    async def set_task_state_started(self, task: Task) -> None:
        await self._report(
            task, TaskState.STARTED, MARK_STARTED_SQL, {'retry_count': task.retry_count}
        )

    async def set_task_state_succeed(self, task: Task, result: Any) -> None:
        await self._report(
            task,
            TaskState.SUCCEED,
            MARK_SUCCEED_SQL,
            {'result': self._serialize(task, TaskState.SUCCEED, result)},
        )

    async def set_task_state_failed(self, task: Task, error: BaseException) -> None:
        await self._report(
            task,
            TaskState.FAILED,
            MARK_FAILED_SQL,
            {'error': dumps_json(exception_to_json(error))},
        )

    async def set_task_state_retrying(self, task: Task, error: BaseException) -> None:
        await self._report(
            task,
            TaskState.RETRYING,
            MARK_RETRYING_SQL,
            {'error': dumps_json(exception_to_json(error))},
        )

    async def check_health(self) -> bool:
        async with self.async_engine.connect() as conn:
            await conn.execute(HEALTH_CHECK_SQL)
        return True

    async def close(self) -> None:
        await self.async_engine.dispose()
        self.logger.info('PostgresBackend closed')
        self.events.emit(LifecycleEvent.CLOSE)
