from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Index,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from hopper.core.types.status import TaskState


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskStateModel(Base):
    """
    Latest reported state of one task, written by PostgresBackend.

    - id: str # task id assigned by the producer (uuid4)
    - task_name: str # task type / routing key
    - state: TaskState # RECEIVED, STARTED, SUCCEED, FAILED, RETRYING
    - body: str # task body, serialized as json
    - result: str # handler result on SUCCEED, serialized as json
    - error: str # error on FAILED/RETRYING, serialized as json
    - retry_count: int # retry_count of the attempt that reported last
    - max_retry: int # retry budget of the task
    - received_at: datetime # first RECEIVED of the task
    - started_at: datetime # last STARTED
    - finished_at: datetime # SUCCEED or FAILED
    - updated_at: datetime # last transition of any kind
    """

    __tablename__ = 'hopper_task_states'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_name: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[TaskState] = mapped_column(
        SQLAlchemyEnum(TaskState, native_enum=False),
        nullable=False,
        default=TaskState.RECEIVED,
    )

    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_retry: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_hopper_task_states_name_state', 'task_name', 'state'),
    )
