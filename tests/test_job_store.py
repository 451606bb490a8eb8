from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import pgfork.db.session as db_session_module
from pgfork.core.config import get_settings
from pgfork.db.init_db import initialize_database
from pgfork.db.models import ForkJobRecord, JobPhase, Strategy, TaskStatus
from pgfork.fork.errors import ForkConnectionError
from pgfork.fork.types import PlannedTable, TransferPlan
from pgfork.jobs import InvalidJobStateError, JobNotFoundError, JobService, JobStateStore
from pgfork.jobs.service import job_progress
from pgfork.jobs.store import INTERRUPTED_MESSAGE

PLAN = TransferPlan(
    strategy=Strategy.CROSS_SERVER,
    tables=(PlannedTable("orders", 10), PlannedTable("users", None)),
)


def make_store() -> JobStateStore:
    initialize_database()
    return JobStateStore(db_session_module.get_session_factory())


def make_service() -> JobService:
    initialize_database()
    return JobService(get_settings(), db_session_module.get_session_factory())


def create_planned_job(store: JobStateStore, job_id: str = "job-1") -> None:
    store.create_job(job_id, spec={"target_database": "app_fork"}, fingerprint="abc")
    store.save_plan(job_id, PLAN)


def test_state_database_lives_in_state_dir(isolated_settings: Path) -> None:
    make_store()
    assert (isolated_settings / "pgfork.sqlite3").exists()


def test_save_plan_creates_pending_tasks_in_plan_order() -> None:
    store = make_store()
    create_planned_job(store)

    job = store.load("job-1")
    assert job is not None
    assert job.plan == PLAN
    assert [task.name for task in job.tasks] == ["orders", "users"]
    assert all(task.status == TaskStatus.PENDING for task in job.tasks)
    with pytest.raises(InvalidJobStateError):
        store.save_plan("job-1", PLAN)


def test_task_transitions_are_enforced() -> None:
    store = make_store()
    create_planned_job(store)

    with pytest.raises(InvalidJobStateError):
        store.complete_task("job-1", "orders", rows=10)

    store.start_task("job-1", "orders")
    completed = store.complete_task("job-1", "orders", rows=10)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.rows_transferred == 10

    try:
        store.start_task("job-1", "orders")
    except InvalidJobStateError:
        pass
    else:
        raise AssertionError("expected InvalidJobStateError")


def test_failed_task_can_start_a_new_attempt() -> None:
    store = make_store()
    create_planned_job(store)

    store.start_task("job-1", "users")
    failed = store.fail_task("job-1", "users", rows=3, error="boom")
    assert failed.status == TaskStatus.FAILED
    assert failed.last_error == "boom"

    retried = store.start_task("job-1", "users")
    assert retried.status == TaskStatus.IN_PROGRESS
    assert retried.attempts == 2
    assert retried.rows_transferred == 0
    assert retried.last_error is None


def test_phases_only_move_forward() -> None:
    store = make_store()
    create_planned_job(store)

    store.set_phase("job-1", JobPhase.SCHEMA)
    store.set_phase("job-1", JobPhase.DATA)
    with pytest.raises(InvalidJobStateError):
        store.set_phase("job-1", JobPhase.SCHEMA)

    store.set_phase("job-1", JobPhase.DONE)
    job = store.load("job-1")
    assert job.phase == JobPhase.DONE
    assert job.finished_at is not None
    with pytest.raises(InvalidJobStateError):
        store.set_phase("job-1", JobPhase.VERIFY)


def test_reopen_after_crash_marks_in_progress_tasks_failed() -> None:
    store = make_store()
    create_planned_job(store)
    store.set_phase("job-1", JobPhase.DATA)
    store.start_task("job-1", "orders")
    store.complete_task("job-1", "orders", rows=10)
    store.start_task("job-1", "users")
    store.fail_job("job-1", ForkConnectionError("server went away", table="users"))

    failed = store.load("job-1")
    assert failed.phase == JobPhase.FAILED
    assert failed.failed_phase == JobPhase.DATA
    assert failed.error_code == "CONNECTION"
    assert "users" in failed.error_message

    reopened = store.reopen_for_resume("job-1")
    assert reopened.phase == JobPhase.DATA
    assert reopened.failed_phase is None
    assert reopened.error_code is None
    assert reopened.task("orders").status == TaskStatus.COMPLETED
    assert reopened.task("users").status == TaskStatus.FAILED
    assert reopened.task("users").last_error == INTERRUPTED_MESSAGE


def test_applied_ddl_keys_are_recorded_once() -> None:
    store = make_store()
    create_planned_job(store)

    store.mark_ddl_applied("job-1", "table:orders")
    store.mark_ddl_applied("job-1", "table:orders")
    store.mark_ddl_applied("job-1", "index:orders.ix_orders_user")

    assert store.load("job-1").applied_ddl == {"table:orders", "index:orders.ix_orders_user"}


def test_create_job_replaces_existing_record() -> None:
    store = make_store()
    create_planned_job(store)

    replaced = store.create_job("job-1", spec={"target_database": "other"}, fingerprint="def")

    assert replaced.plan is None
    assert replaced.tasks == []
    assert replaced.fingerprint == "def"


def test_unknown_job_raises_not_found() -> None:
    store = make_store()
    assert store.load("missing") is None
    with pytest.raises(JobNotFoundError):
        store.set_phase("missing", JobPhase.DATA)


def test_service_lists_and_reports_progress() -> None:
    store = make_store()
    create_planned_job(store, "job-a")
    create_planned_job(store, "job-b")
    store.start_task("job-b", "orders")
    store.complete_task("job-b", "orders", rows=10)
    service = make_service()

    jobs = service.list_jobs(limit=10)
    assert {job.id for job in jobs} == {"job-a", "job-b"}
    assert job_progress(service.get_job("job-b")) == 0.5
    assert service.list_jobs(phase=JobPhase.DONE) == []
    with pytest.raises(JobNotFoundError):
        service.get_job("missing")


def test_service_refuses_to_delete_active_job() -> None:
    store = make_store()
    create_planned_job(store)
    store.set_phase("job-1", JobPhase.DATA)
    service = make_service()

    with pytest.raises(InvalidJobStateError):
        service.delete_job("job-1")

    service.delete_job("job-1", force=True)
    assert store.load("job-1") is None


def _age_job(job_id: str, hours: int) -> None:
    session_factory = db_session_module.get_session_factory()
    with session_factory() as session:
        record = session.get(ForkJobRecord, job_id)
        record.updated_at = datetime.now(tz=timezone.utc) - timedelta(hours=hours)
        session.commit()


def test_cleanup_only_removes_old_terminal_jobs() -> None:
    store = make_store()
    for job_id in ("old-done", "old-running", "new-done"):
        create_planned_job(store, job_id)
    store.set_phase("old-done", JobPhase.DONE)
    store.set_phase("new-done", JobPhase.DONE)
    store.set_phase("old-running", JobPhase.DATA)
    _age_job("old-done", 200)
    _age_job("old-running", 200)
    service = make_service()

    preview = service.cleanup_old_jobs(dry_run=True)
    assert preview.deleted == ["old-done"]
    assert store.load("old-done") is not None

    result = service.cleanup_old_jobs(max_age=timedelta(hours=100))
    assert result.deleted == ["old-done"]
    assert store.load("old-done") is None
    assert store.load("old-running") is not None
    assert store.load("new-done") is not None


def _updated_at(store: JobStateStore, job_id: str) -> datetime:
    job = store.load(job_id)
    assert job is not None and job.updated_at is not None
    value = job.updated_at
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def test_task_transitions_refresh_job_heartbeat() -> None:
    store = make_store()
    create_planned_job(store)
    store.set_phase("job-1", JobPhase.DATA)
    service = make_service()
    cutoff = datetime.now(tz=timezone.utc) - timedelta(minutes=1)

    _age_job("job-1", 2)
    store.start_task("job-1", "orders")
    assert _updated_at(store, "job-1") > cutoff

    _age_job("job-1", 2)
    store.complete_task("job-1", "orders", rows=10)
    assert _updated_at(store, "job-1") > cutoff

    with pytest.raises(InvalidJobStateError):
        service.delete_job("job-1")
