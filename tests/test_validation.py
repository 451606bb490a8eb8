from __future__ import annotations

from dataclasses import replace

from pgfork.fork.types import ConnectionConfig, ForkSpec
from pgfork.fork.validation import validate_fork_spec


def _spec(**overrides) -> ForkSpec:  # type: ignore[no-untyped-def]
    values = {
        "source": ConnectionConfig(host="db-a.internal", database="app", user="forker"),
        "destination": ConnectionConfig(host="db-b.internal", user="forker"),
        "target_database": "app_copy",
    }
    values.update(overrides)
    return ForkSpec(**values)


def _fields(spec: ForkSpec) -> set[str]:
    return {violation.field for violation in validate_fork_spec(spec)}


def test_valid_spec_has_no_violations() -> None:
    assert validate_fork_spec(_spec()) == []


def test_every_violation_is_reported_at_once() -> None:
    spec = _spec(
        target_database="",
        schema_only=True,
        data_only=True,
        max_connections=0,
        chunk_size=200_000,
        timeout_seconds=0,
    )
    assert _fields(spec) == {"target_database", "schema_only", "max_connections", "chunk_size", "timeout_seconds"}


def test_same_server_target_cannot_be_source() -> None:
    source = ConnectionConfig(host="db.internal", database="app", user="forker")
    spec = _spec(source=source, destination=replace(source, database="postgres"), target_database="app")
    assert spec.same_server is True
    assert _fields(spec) == {"target_database"}


def test_same_name_on_other_server_is_allowed() -> None:
    assert validate_fork_spec(_spec(target_database="app")) == []


def test_target_name_length_limit() -> None:
    assert validate_fork_spec(_spec(target_database="a" * 63)) == []
    assert _fields(_spec(target_database="a" * 64)) == {"target_database"}


def test_table_filters_must_not_overlap_or_be_blank() -> None:
    spec = _spec(include_tables=("users", " "), exclude_tables=("users",))
    assert _fields(spec) == {"include_tables[1]", "exclude_tables"}


def test_connection_fields_are_checked() -> None:
    spec = _spec(
        source=ConnectionConfig(host="", database="", user="", port=70000, sslmode="sometimes"),
        destination=ConnectionConfig(host="db-b", driver="mysql"),
    )
    assert _fields(spec) == {
        "source.host",
        "source.database",
        "source.user",
        "source.port",
        "source.sslmode",
        "destination.driver",
    }


def test_resume_requires_job_id() -> None:
    assert _fields(_spec(resume=True)) == {"job_id"}
    assert validate_fork_spec(_spec(resume=True, job_id="nightly")) == []


def test_data_only_cannot_drop_target() -> None:
    assert _fields(_spec(data_only=True, drop_if_exists=True)) == {"drop_if_exists"}


def test_retry_delays_must_be_ordered() -> None:
    spec = _spec(retry_attempts=0, retry_initial_delay_seconds=5.0, retry_max_delay_seconds=1.0)
    assert _fields(spec) == {"retry_attempts", "retry_max_delay_seconds"}
