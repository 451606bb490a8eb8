from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pgfork.db.models import ForkJobRecord, JobPhase, TableTaskRecord, TaskStatus
from pgfork.fork.errors import ForkError
from pgfork.fork.types import TableTask, TransferPlan
from pgfork.jobs.types import ForkJob


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.IN_PROGRESS},
    TaskStatus.COMPLETED: set(),
}

PHASE_ORDER: list[JobPhase] = [
    JobPhase.PLANNING,
    JobPhase.CLEANUP,
    JobPhase.SCHEMA,
    JobPhase.DATA,
    JobPhase.CONSTRAINTS,
    JobPhase.VERIFY,
    JobPhase.DONE,
]
TERMINAL_PHASES = {JobPhase.DONE, JobPhase.FAILED}
INTERRUPTED_MESSAGE = "interrupted before completion"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def record_to_job(record: ForkJobRecord) -> ForkJob:
    return ForkJob(
        id=record.id,
        spec=dict(record.spec or {}),
        fingerprint=record.fingerprint,
        plan=TransferPlan.from_dict(record.plan) if record.plan else None,
        phase=record.phase,
        failed_phase=record.failed_phase,
        tasks=[
            TableTask(
                name=task.table_name,
                estimated_rows=task.estimated_rows,
                position=task.position,
                status=task.status,
                rows_transferred=task.rows_transferred,
                attempts=task.attempts,
                last_error=task.last_error,
            )
            for task in sorted(record.tasks, key=lambda item: item.position)
        ],
        applied_ddl=set(record.applied_ddl or []),
        error_code=record.error_code,
        error_message=record.error_message,
        created_at=record.created_at,
        updated_at=record.updated_at,
        finished_at=record.finished_at,
    )


class JobStateStore:
    """Authoritative record of a fork job.

    Every write goes through one lock and commits before returning, so a crash
    at any point leaves the last completed transition on disk.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, logger: logging.Logger | None = None):
        self._session_factory = session_factory
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def _enforce_task_transition(self, table: str, from_status: TaskStatus, to_status: TaskStatus) -> None:
        if to_status not in ALLOWED_TASK_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal task transition for {table}: {from_status.value} -> {to_status.value}")

    def _enforce_phase_transition(self, from_phase: JobPhase, to_phase: JobPhase) -> None:
        if from_phase in TERMINAL_PHASES:
            raise InvalidJobStateError(f"Illegal phase transition: {from_phase.value} -> {to_phase.value}")
        if to_phase == JobPhase.FAILED:
            return
        if PHASE_ORDER.index(to_phase) < PHASE_ORDER.index(from_phase):
            raise InvalidJobStateError(f"Illegal phase transition: {from_phase.value} -> {to_phase.value}")

    def _get_record(self, session: Session, job_id: str) -> ForkJobRecord:
        record = session.get(ForkJobRecord, job_id)
        if record is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return record

    def _get_task(self, session: Session, job_id: str, table: str) -> TableTaskRecord:
        task = session.scalar(
            select(TableTaskRecord).where(TableTaskRecord.job_id == job_id, TableTaskRecord.table_name == table)
        )
        if task is None:
            raise JobNotFoundError(f"Task {table} not found for job {job_id}")
        return task

    def load(self, job_id: str) -> ForkJob | None:
        with self._lock, self._session_factory() as session:
            record = session.get(ForkJobRecord, job_id)
            return None if record is None else record_to_job(record)

    def create_job(self, job_id: str, *, spec: dict, fingerprint: str) -> ForkJob:
        with self._lock, self._session_factory() as session:
            existing = session.get(ForkJobRecord, job_id)
            if existing is not None:
                self._logger.warning("Replacing existing state for job %s (phase %s)", job_id, existing.phase.value)
                session.delete(existing)
                session.flush()
            record = ForkJobRecord(
                id=job_id,
                spec=spec,
                fingerprint=fingerprint,
                plan=None,
                phase=JobPhase.PLANNING,
                applied_ddl=[],
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record_to_job(record)

    def save_plan(self, job_id: str, plan: TransferPlan) -> ForkJob:
        with self._lock, self._session_factory() as session:
            record = self._get_record(session, job_id)
            if record.plan is not None:
                raise InvalidJobStateError(f"Job {job_id} already has a plan")
            record.plan = plan.to_dict()
            for position, planned in enumerate(plan.tables):
                record.tasks.append(
                    TableTaskRecord(
                        position=position,
                        table_name=planned.name,
                        estimated_rows=planned.estimated_rows,
                        status=TaskStatus.PENDING,
                        rows_transferred=0,
                        attempts=0,
                    )
                )
            record.updated_at = _now()
            session.commit()
            session.refresh(record)
            return record_to_job(record)

    def set_phase(self, job_id: str, phase: JobPhase) -> None:
        with self._lock, self._session_factory() as session:
            record = self._get_record(session, job_id)
            if record.phase == phase:
                return
            self._enforce_phase_transition(record.phase, phase)
            now = _now()
            record.phase = phase
            record.updated_at = now
            if phase == JobPhase.DONE:
                record.finished_at = now
                record.error_code = None
                record.error_message = None
            session.commit()
        self._logger.debug("Job %s entered phase %s", job_id, phase.value, extra={"job_id": job_id})

    def mark_ddl_applied(self, job_id: str, key: str) -> None:
        with self._lock, self._session_factory() as session:
            record = self._get_record(session, job_id)
            applied = list(record.applied_ddl or [])
            if key not in applied:
                applied.append(key)
                record.applied_ddl = applied
                record.updated_at = _now()
                session.commit()

    def start_task(self, job_id: str, table: str) -> TableTask:
        with self._lock, self._session_factory() as session:
            task = self._get_task(session, job_id, table)
            self._enforce_task_transition(table, task.status, TaskStatus.IN_PROGRESS)
            now = _now()
            task.status = TaskStatus.IN_PROGRESS
            task.rows_transferred = 0
            task.attempts += 1
            task.last_error = None
            task.started_at = now
            task.finished_at = None
            task.job.updated_at = now
            session.commit()
            return self._to_task(task)

    def complete_task(self, job_id: str, table: str, *, rows: int) -> TableTask:
        return self._finish_task(job_id, table, TaskStatus.COMPLETED, rows=rows, error=None)

    def fail_task(self, job_id: str, table: str, *, rows: int, error: str) -> TableTask:
        return self._finish_task(job_id, table, TaskStatus.FAILED, rows=rows, error=error)

    def _finish_task(self, job_id: str, table: str, status: TaskStatus, *, rows: int, error: str | None) -> TableTask:
        with self._lock, self._session_factory() as session:
            task = self._get_task(session, job_id, table)
            self._enforce_task_transition(table, task.status, status)
            now = _now()
            task.status = status
            task.rows_transferred = rows
            task.last_error = error
            task.finished_at = now
            task.job.updated_at = now
            session.commit()
            return self._to_task(task)

    def fail_job(self, job_id: str, error: ForkError) -> None:
        with self._lock, self._session_factory() as session:
            record = self._get_record(session, job_id)
            if record.phase in TERMINAL_PHASES:
                return
            now = _now()
            record.failed_phase = record.phase
            record.phase = JobPhase.FAILED
            record.error_code = error.code
            record.error_message = str(error)
            record.updated_at = now
            record.finished_at = now
            session.commit()

    def reopen_for_resume(self, job_id: str) -> ForkJob:
        """Prepare a stored job for another run.

        Tasks left in progress by a crashed run are marked failed so that they
        restart from the first row; completed tasks are left untouched.
        """
        with self._lock, self._session_factory() as session:
            record = self._get_record(session, job_id)
            if record.phase == JobPhase.DONE:
                return record_to_job(record)
            if record.phase == JobPhase.FAILED:
                record.phase = record.failed_phase or JobPhase.PLANNING
                record.failed_phase = None
            now = _now()
            for task in record.tasks:
                if task.status == TaskStatus.IN_PROGRESS:
                    self._enforce_task_transition(task.table_name, task.status, TaskStatus.FAILED)
                    task.status = TaskStatus.FAILED
                    task.last_error = INTERRUPTED_MESSAGE
                    task.finished_at = now
            record.error_code = None
            record.error_message = None
            record.finished_at = None
            record.updated_at = now
            session.commit()
            session.refresh(record)
            return record_to_job(record)

    def _to_task(self, task: TableTaskRecord) -> TableTask:
        return TableTask(
            name=task.table_name,
            estimated_rows=task.estimated_rows,
            position=task.position,
            status=task.status,
            rows_transferred=task.rows_transferred,
            attempts=task.attempts,
            last_error=task.last_error,
        )
