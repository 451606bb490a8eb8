from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pgfork.core.config import Settings
from pgfork.db.models import ForkJobRecord, JobPhase, TaskStatus
from pgfork.jobs.metrics import MetricsReport, build_report
from pgfork.jobs.store import TERMINAL_PHASES, InvalidJobStateError, JobNotFoundError, record_to_job
from pgfork.jobs.types import ForkJob

ACTIVE_GRACE_SECONDS = 60


@dataclass(frozen=True)
class CleanupResult:
    deleted: list[str]
    dry_run: bool


class JobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _is_active(self, record: ForkJobRecord) -> bool:
        if record.phase in TERMINAL_PHASES:
            return False
        updated_at = self._coerce_utc(record.updated_at)
        return updated_at is not None and self._now() - updated_at < timedelta(seconds=ACTIVE_GRACE_SECONDS)

    def list_jobs(self, *, limit: int = 50, phase: JobPhase | None = None) -> list[ForkJob]:
        bounded_limit = max(1, min(limit, 500))
        with self._session_factory() as session:
            stmt = select(ForkJobRecord).order_by(ForkJobRecord.created_at.desc(), ForkJobRecord.id.desc())
            if phase is not None:
                stmt = stmt.where(ForkJobRecord.phase == phase)
            rows = session.scalars(stmt.limit(bounded_limit)).all()
            return [record_to_job(row) for row in rows]

    def get_job(self, job_id: str) -> ForkJob:
        with self._session_factory() as session:
            record = session.get(ForkJobRecord, job_id)
            if record is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return record_to_job(record)

    def delete_job(self, job_id: str, *, force: bool = False) -> None:
        with self._session_factory() as session:
            record = session.get(ForkJobRecord, job_id)
            if record is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if not force and self._is_active(record):
                raise InvalidJobStateError(f"Job {job_id} is still running (phase {record.phase.value})")
            session.delete(record)
            session.commit()

    def cleanup_old_jobs(self, *, max_age: timedelta | None = None, dry_run: bool = False) -> CleanupResult:
        age = max_age if max_age is not None else timedelta(hours=self._settings.job_retention_hours)
        cutoff = self._now() - age
        with self._session_factory() as session:
            candidates = session.scalars(
                select(ForkJobRecord).where(ForkJobRecord.phase.in_([JobPhase.DONE, JobPhase.FAILED]))
            ).all()
            expired = [
                record
                for record in candidates
                if (self._coerce_utc(record.updated_at) or self._now()) < cutoff
            ]
            deleted = [record.id for record in expired]
            if not dry_run:
                for record in expired:
                    session.delete(record)
                session.commit()
            return CleanupResult(deleted=sorted(deleted), dry_run=dry_run)

    def metrics_report(self, *, period: timedelta, include_trends: bool = False) -> MetricsReport:
        now = self._now()
        with self._session_factory() as session:
            rows = session.scalars(select(ForkJobRecord).order_by(ForkJobRecord.created_at, ForkJobRecord.id)).all()
            jobs = [record_to_job(row) for row in rows]
        return build_report(jobs, period=period, include_trends=include_trends, now=now)


def job_progress(job: ForkJob) -> float:
    if not job.tasks:
        return 1.0 if job.phase == JobPhase.DONE else 0.0
    completed = sum(1 for task in job.tasks if task.status == TaskStatus.COMPLETED)
    return completed / len(job.tasks)


def snapshot_to_dict(job: ForkJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "phase": job.phase.value,
        "failed_phase": job.failed_phase.value if job.failed_phase else None,
        "strategy": job.plan.strategy.value if job.plan else None,
        "spec": job.spec,
        "progress": job_progress(job),
        "tables": [
            {
                "name": task.name,
                "status": task.status.value,
                "estimated_rows": task.estimated_rows,
                "rows_transferred": task.rows_transferred,
                "attempts": task.attempts,
                "last_error": task.last_error,
            }
            for task in job.tasks
        ],
        "applied_ddl": sorted(job.applied_ddl),
        "error_code": job.error_code,
        "error_message": job.error_message,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "finished_at": job.finished_at,
    }
