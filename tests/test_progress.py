from __future__ import annotations

import json
from pathlib import Path

from pgfork.db.models import JobPhase, TaskStatus
from pgfork.fork.progress import ProgressFileSink, ProgressTracker, format_duration, snapshot_to_document
from pgfork.fork.types import CurrentTableProgress, ProgressSnapshot, TableTask


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.snapshots: list[ProgressSnapshot] = []
        self.closed = False

    def publish(self, snapshot: ProgressSnapshot) -> None:
        self.snapshots.append(snapshot)

    def close(self) -> None:
        self.closed = True


def test_format_duration() -> None:
    assert format_duration(0) == "0s"
    assert format_duration(45.4) == "45s"
    assert format_duration(330) == "5m30s"
    assert format_duration(3723) == "1h2m3s"
    assert format_duration(None) == "unknown"


def test_percent_uses_row_estimates_and_moving_rate() -> None:
    clock = FakeClock()
    tracker = ProgressTracker(
        [TableTask("users", 1000), TableTask("orders", 3000)],
        clock=clock,
    )
    tracker.set_phase(JobPhase.DATA)
    tracker.table_started("users")
    tracker.rows_copied("users", 0)
    clock.now += 10
    tracker.rows_copied("users", 1000)
    tracker.table_finished("users", rows=1000, success=True)

    snapshot = tracker.snapshot()
    assert snapshot.percent_complete == 25.0
    assert snapshot.tables_completed == 1
    assert snapshot.rows_completed == 1000
    assert snapshot.rows_total == 4000
    assert snapshot.eta_seconds == 30.0
    assert snapshot.current_table.name == "users"
    assert snapshot.current_table.percent_complete == 100.0


def test_percent_falls_back_to_table_counts_without_estimates() -> None:
    tracker = ProgressTracker([TableTask("a", None), TableTask("b", 10), TableTask("c", None), TableTask("d", 5)])
    tracker.table_started("a")
    tracker.table_finished("a", rows=7, success=True)

    snapshot = tracker.snapshot()
    assert snapshot.rows_total is None
    assert snapshot.percent_complete == 25.0
    assert snapshot.eta_seconds is None


def test_resumed_tracker_counts_completed_tasks() -> None:
    tracker = ProgressTracker(
        [
            TableTask("done", 100, status=TaskStatus.COMPLETED, rows_transferred=100),
            TableTask("failed", 100, status=TaskStatus.FAILED, rows_transferred=40),
        ]
    )
    snapshot = tracker.snapshot()
    assert snapshot.tables_completed == 1
    assert snapshot.rows_completed == 100
    assert snapshot.percent_complete == 50.0


def test_publishing_is_throttled_between_transitions() -> None:
    clock = FakeClock()
    sink = RecordingSink()
    tracker = ProgressTracker([TableTask("users", 100)], sink=sink, min_interval=2.0, clock=clock)

    tracker.table_started("users")
    tracker.rows_copied("users", 10)
    tracker.rows_copied("users", 10)
    assert len(sink.snapshots) == 1

    clock.now += 2.5
    tracker.rows_copied("users", 10)
    assert len(sink.snapshots) == 2

    tracker.table_finished("users", rows=30, success=True)
    assert len(sink.snapshots) == 3

    tracker.close()
    assert sink.closed is True
    assert sink.snapshots[-1].rows_completed == 30


def test_snapshot_document_format() -> None:
    snapshot = ProgressSnapshot(
        phase=JobPhase.DATA,
        percent_complete=45.234,
        tables_completed=12,
        tables_total=25,
        rows_completed=1250000,
        rows_total=2765000,
        elapsed_seconds=330,
        current_table=CurrentTableProgress(
            name="user_events",
            percent_complete=78.5,
            rows_completed=785000,
            rows_total=1000000,
            rows_per_second=15000.2,
        ),
        eta_seconds=135,
    )

    assert snapshot_to_document(snapshot) == {
        "phase": "data",
        "overall": {
            "percent_complete": 45.2,
            "tables_completed": 12,
            "tables_total": 25,
            "rows_completed": 1250000,
            "rows_total": 2765000,
            "duration": "5m30s",
        },
        "current_table": {
            "name": "user_events",
            "percent_complete": 78.5,
            "rows_completed": 785000,
            "rows_total": 1000000,
            "speed": "15000 rows/sec",
        },
        "estimated_time_remaining": "2m15s",
    }


def test_file_sink_writes_latest_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "progress.json"
    sink = ProgressFileSink(path)
    tracker = ProgressTracker([TableTask("users", 10)], sink=sink)
    tracker.set_phase(JobPhase.DATA)
    tracker.table_started("users")
    tracker.table_finished("users", rows=10, success=True)
    tracker.set_phase(JobPhase.DONE)
    tracker.close()

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["phase"] == "done"
    assert document["overall"]["tables_completed"] == 1
    assert not path.with_name("progress.json.tmp").exists()
