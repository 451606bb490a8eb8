from __future__ import annotations

import threading

from sqlalchemy.exc import OperationalError

from pgfork.db.init_db import initialize_session_factory
from pgfork.db.models import JobPhase, TaskStatus
from pgfork.db.session import create_state_session_factory
from pgfork.fork.errors import ResumeMismatchError
from pgfork.fork.orchestrator import fork
from pgfork.fork.transfer import DataTransferWorkerPool
from pgfork.jobs import JobStateStore


def _fail_table(monkeypatch, name: str) -> None:
    original = DataTransferWorkerPool._write_chunk

    def denied(self, conn, table, rows):  # type: ignore[no-untyped-def]
        if table.name == name:
            raise OperationalError("INSERT", {}, Exception(f"permission denied for table {name}"))
        return original(self, conn, table, rows)

    monkeypatch.setattr(DataTransferWorkerPool, "_write_chunk", denied)


def _spy_copies(monkeypatch) -> list[str]:
    copied: list[str] = []
    lock = threading.Lock()
    original = DataTransferWorkerPool._copy_table

    def spy(self, name, progress):  # type: ignore[no-untyped-def]
        with lock:
            copied.append(name)
        return original(self, name, progress)

    monkeypatch.setattr(DataTransferWorkerPool, "_copy_table", spy)
    return copied


def test_resume_skips_completed_tables(servers, monkeypatch) -> None:
    servers.seed_scenario()
    spec = servers.spec(job_id="resume-1", max_connections=1)

    with monkeypatch.context() as patch:
        _fail_table(patch, "users")
        first = fork(spec)

    assert first.success is False
    assert first.phase == JobPhase.FAILED
    statuses = {task.name: task.status for task in first.tables}
    assert statuses == {
        "audit_logs": TaskStatus.COMPLETED,
        "products": TaskStatus.COMPLETED,
        "users": TaskStatus.FAILED,
    }

    copied = _spy_copies(monkeypatch)
    resumed = fork(servers.spec(job_id="resume-1", max_connections=1, resume=True))

    assert resumed.success, resumed.error
    assert copied == ["users"]
    assert servers.count("users") == 100
    assert servers.count("products") == 50
    assert servers.count("audit_logs") == 1000
    attempts = {task.name: task.attempts for task in resumed.tables}
    assert attempts == {"audit_logs": 1, "products": 1, "users": 2}
    assert all(task.status == TaskStatus.COMPLETED for task in resumed.tables)


def test_resume_with_changed_selection_is_rejected(servers, monkeypatch) -> None:
    servers.seed_scenario()
    with monkeypatch.context() as patch:
        _fail_table(patch, "users")
        first = fork(servers.spec(job_id="resume-2", max_connections=1))
    assert first.success is False

    resumed = fork(servers.spec(job_id="resume-2", resume=True, exclude_tables=("audit_logs",)))

    assert isinstance(resumed.error, ResumeMismatchError)
    factory = create_state_session_factory(servers.state_dir)
    initialize_session_factory(factory)
    stored = JobStateStore(factory).load("resume-2")
    assert stored is not None
    assert stored.phase == JobPhase.FAILED
    assert stored.failed_phase == JobPhase.DATA
    factory.kw["bind"].dispose()


def test_resuming_completed_job_is_a_no_op(servers, monkeypatch) -> None:
    servers.seed_scenario()
    assert fork(servers.spec(job_id="resume-3")).success

    copied = _spy_copies(monkeypatch)
    resumed = fork(servers.spec(job_id="resume-3", resume=True))

    assert resumed.success, resumed.error
    assert resumed.phase == JobPhase.DONE
    assert copied == []


def test_resume_without_stored_state_starts_fresh(servers) -> None:
    servers.seed_scenario()

    result = fork(servers.spec(job_id="never-ran", resume=True, exclude_tables=("audit_logs",)))

    assert result.success, result.error
    assert servers.count("users") == 100


def test_resume_reapplies_only_missing_post_data_ddl(servers, monkeypatch) -> None:
    servers.seed_scenario()
    original = DataTransferWorkerPool.run
    state = {"interrupt": True}

    def interrupted(self, tasks):  # type: ignore[no-untyped-def]
        copied = original(self, tasks)
        if state["interrupt"]:
            raise OperationalError("COMMIT", {}, Exception("permission denied after load"))
        return copied

    monkeypatch.setattr(DataTransferWorkerPool, "run", interrupted)
    first = fork(servers.spec(job_id="resume-4"))
    assert first.success is False
    assert all(task.status == TaskStatus.COMPLETED for task in first.tables)

    state["interrupt"] = False
    copied = _spy_copies(monkeypatch)
    resumed = fork(servers.spec(job_id="resume-4", resume=True))

    assert resumed.success, resumed.error
    assert copied == []
    assert "ix_products_sku" in servers.indexes("products")
    assert servers.count("audit_logs") == 1000
