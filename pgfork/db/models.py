from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Strategy(str, Enum):
    SAME_SERVER = "same-server"
    CROSS_SERVER = "cross-server"


class JobPhase(str, Enum):
    PLANNING = "planning"
    CLEANUP = "cleanup"
    SCHEMA = "schema"
    DATA = "data"
    CONSTRAINTS = "constraints"
    VERIFY = "verify"
    DONE = "done"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ForkJobRecord(Base):
    __tablename__ = "fork_jobs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    spec: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    plan: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    phase: Mapped[JobPhase] = mapped_column(
        SAEnum(JobPhase, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobPhase.PLANNING,
    )
    failed_phase: Mapped[JobPhase | None] = mapped_column(
        SAEnum(JobPhase, native_enum=False, values_callable=_enum_values),
        nullable=True,
    )
    applied_ddl: Mapped[list[str]] = mapped_column(JSON(none_as_null=True), nullable=False, default=list)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tasks: Mapped[list["TableTaskRecord"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="TableTaskRecord.position",
    )

    __table_args__ = (
        Index("ix_fork_jobs_phase_updated", "phase", "updated_at"),
        Index("ix_fork_jobs_created_id", "created_at", "id"),
    )


class TableTaskRecord(Base):
    __tablename__ = "fork_table_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("fork_jobs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    estimated_rows: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        SAEnum(TaskStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    rows_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    job: Mapped[ForkJobRecord] = relationship(back_populates="tasks")

    __table_args__ = (
        UniqueConstraint("job_id", "table_name", name="uq_fork_table_tasks_job_table"),
        Index("ix_fork_table_tasks_job_status", "job_id", "status"),
    )
