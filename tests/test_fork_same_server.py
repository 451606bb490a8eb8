from __future__ import annotations

from sqlalchemy import create_engine, text

from pgfork.db.models import JobPhase, Strategy, TaskStatus
from pgfork.fork.errors import PlanningError
from pgfork.fork.orchestrator import fork


def test_same_server_fork_clones_database(servers) -> None:
    servers.seed_scenario()

    result = fork(servers.spec(same_server=True))

    assert result.success, result.error
    assert result.strategy == Strategy.SAME_SERVER
    assert result.phase == JobPhase.DONE
    assert servers.tables(same_server=True) == {"users", "products", "audit_logs"}
    for table, expected in (("users", 100), ("products", 50), ("audit_logs", 1000)):
        assert servers.count(table, same_server=True) == expected
    assert {task.name: task.rows_transferred for task in result.tables} == {
        "audit_logs": 1000,
        "products": 50,
        "users": 100,
    }
    assert all(task.status == TaskStatus.COMPLETED for task in result.tables)
    assert [statement.key for statement in result.plan.schema_ddl] == ["clone"]


def test_same_server_with_filters_falls_back_to_cross_server(servers) -> None:
    servers.seed_scenario()

    result = fork(servers.spec(same_server=True, exclude_tables=("audit_logs",)))

    assert result.success, result.error
    assert result.strategy == Strategy.CROSS_SERVER
    assert servers.tables(same_server=True) == {"users", "products"}


def test_same_server_rejects_existing_target_without_drop(servers) -> None:
    servers.seed_scenario()
    servers.target_path(same_server=True).touch()

    result = fork(servers.spec(same_server=True))

    assert isinstance(result.error, PlanningError)
    assert "already exists" in str(result.error)


def test_same_server_drop_if_exists_replaces_target(servers) -> None:
    servers.seed_scenario()
    engine = create_engine(f"sqlite:///{servers.target_path(same_server=True).as_posix()}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE stale (id INTEGER PRIMARY KEY)"))
    engine.dispose()

    result = fork(servers.spec(same_server=True, drop_if_exists=True))

    assert result.success, result.error
    assert "stale" not in servers.tables(same_server=True)
    assert servers.count("users", same_server=True) == 100
