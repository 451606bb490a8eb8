from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pgfork.cli import main
from pgfork.db.models import JobPhase, TaskStatus
from pgfork.fork.errors import CancellationError, ForkError
from pgfork.fork.metrics import ForkMetrics, render_prometheus, write_metrics_file
from pgfork.fork.orchestrator import fork
from pgfork.fork.types import ForkResult, TableTask
from pgfork.jobs.metrics import build_report
from pgfork.jobs.types import ForkJob

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _job(
    job_id: str,
    *,
    phase: JobPhase = JobPhase.DONE,
    started: datetime,
    seconds: float,
    rows: tuple[int, ...] = (100,),
    failed_tables: int = 0,
    error_code: str | None = None,
) -> ForkJob:
    tasks = [
        TableTask(name=f"t{index}", estimated_rows=count, status=TaskStatus.COMPLETED, rows_transferred=count)
        for index, count in enumerate(rows)
    ]
    tasks += [
        TableTask(name=f"failed{index}", estimated_rows=None, status=TaskStatus.FAILED, last_error="boom")
        for index in range(failed_tables)
    ]
    finished = started + timedelta(seconds=seconds) if phase in (JobPhase.DONE, JobPhase.FAILED) else None
    return ForkJob(
        id=job_id,
        spec={
            "target_database": f"{job_id}_db",
            "source": {"driver": "postgresql", "host": "db", "port": 5432, "user": "app", "database": "app"},
        },
        fingerprint="fp",
        plan=None,
        phase=phase,
        failed_phase=JobPhase.DATA if phase == JobPhase.FAILED else None,
        tasks=tasks,
        error_code=error_code,
        error_message="boom" if error_code else None,
        created_at=started,
        updated_at=finished or started,
        finished_at=finished,
    )


def test_report_summary_and_performance() -> None:
    jobs = [
        _job("fast", started=NOW - timedelta(hours=5), seconds=10, rows=(100, 50)),
        _job("slow", started=NOW - timedelta(hours=4), seconds=100, rows=(1000,)),
        _job("medium", started=NOW - timedelta(hours=3), seconds=40, rows=(200,)),
        _job(
            "broken",
            phase=JobPhase.FAILED,
            started=NOW - timedelta(hours=2),
            seconds=5,
            failed_tables=1,
            error_code="INTEGRITY",
        ),
        _job("stopped", phase=JobPhase.FAILED, started=NOW - timedelta(hours=2), seconds=5, error_code="CANCELLED"),
        _job("live", phase=JobPhase.DATA, started=NOW - timedelta(minutes=10), seconds=0, rows=(10,)),
    ]

    report = build_report(jobs, period=timedelta(days=1), now=NOW)

    summary = report.summary
    assert summary.total_jobs == 6
    assert summary.completed_jobs == 3
    assert summary.failed_jobs == 1
    assert summary.cancelled_jobs == 1
    assert summary.running_jobs == 1
    assert summary.success_rate == 50.0
    assert summary.total_rows_transferred == 150 + 1000 + 200 + 100 + 100 + 10
    assert [job.job_id for job in report.jobs][0] == "fast"

    live = next(job for job in report.jobs if job.job_id == "live")
    assert live.finished_at is None
    assert live.duration_seconds == 600

    stats = report.performance
    assert stats.fastest_job.job_id == "fast"
    assert stats.slowest_job.job_id == "slow"
    assert stats.largest_transfer.job_id == "slow"
    assert stats.most_tables.job_id == "fast"
    assert stats.median_duration_seconds == 40
    assert stats.p95_duration_seconds == 100
    assert stats.average_rows_per_second == (15 + 10 + 5) / 3
    assert stats.error_rate == 2 / 6 * 100
    assert report.trends is None


def test_report_ignores_jobs_outside_the_period() -> None:
    jobs = [
        _job("recent", started=NOW - timedelta(hours=1), seconds=10),
        _job("old", started=NOW - timedelta(days=10), seconds=10),
    ]

    report = build_report(jobs, period=timedelta(days=7), now=NOW)

    assert [job.job_id for job in report.jobs] == ["recent"]
    assert report.summary.total_jobs == 1


def test_empty_report_has_zeroed_statistics() -> None:
    report = build_report([], period=timedelta(days=7), now=NOW)

    assert report.summary.total_jobs == 0
    assert report.summary.success_rate == 0.0
    assert report.performance.fastest_job is None
    assert report.to_dict()["jobs"] == []


def test_trends_compare_first_and_last_day() -> None:
    jobs = [
        _job("monday", started=NOW - timedelta(days=2), seconds=10, rows=(100,)),
        _job("monday-failed", phase=JobPhase.FAILED, started=NOW - timedelta(days=2), seconds=1, error_code="CONNECTION"),
        _job("wednesday", started=NOW - timedelta(hours=1), seconds=10, rows=(500,)),
    ]

    report = build_report(jobs, period=timedelta(days=7), include_trends=True, now=NOW)

    daily = report.trends.daily
    assert [day.date for day in daily] == ["2026-03-08", "2026-03-10"]
    assert daily[0].job_count == 2
    assert daily[0].success_rate == 50.0
    assert daily[1].average_rows_per_second == 50.0
    assert report.trends.speed_trend == "improving"
    assert report.trends.success_trend == "improving"


def test_prometheus_text_carries_labels_and_status() -> None:
    result = ForkResult(
        job_id="job-1",
        success=False,
        target_database='app"fork',
        phase=JobPhase.FAILED,
        tables=(
            TableTask("users", 100, status=TaskStatus.COMPLETED, rows_transferred=100, attempts=1),
            TableTask("orders", 50, status=TaskStatus.FAILED, rows_transferred=20, attempts=3),
        ),
        duration_seconds=4.0,
        error=ForkError("boom"),
    )
    metrics = ForkMetrics.from_result(result)

    text = render_prometheus(metrics, generated_at=NOW)

    assert metrics.status == "failed"
    assert metrics.error_count == 2
    assert text.startswith("# pgfork metrics generated at 2026-03-10T12:00:00+00:00\n")
    labels = 'job_id="job-1",target="app\\"fork"'
    assert f"pgfork_fork_transferred_rows{{{labels}}} 120" in text
    assert f"pgfork_fork_tables_processed{{{labels}}} 1" in text
    assert f"pgfork_fork_tables_failed{{{labels}}} 1" in text
    assert f"pgfork_fork_table_attempts{{{labels}}} 4" in text
    assert f"pgfork_fork_transfer_rate_rows_per_second{{{labels}}} 30.000000" in text
    assert f'pgfork_fork_status{{{labels},status="failed"}} 1' in text
    assert "# TYPE pgfork_fork_duration_seconds gauge" in text


def test_cancelled_fork_is_reported_as_interrupted() -> None:
    result = ForkResult(
        job_id="job-2",
        success=False,
        target_database="app_fork",
        phase=JobPhase.FAILED,
        error=CancellationError("cancelled"),
    )

    assert ForkMetrics.from_result(result).status == "interrupted"


def test_write_metrics_file_reports_unwritable_path(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    metrics = ForkMetrics.from_result(ForkResult(job_id="job-3", success=True, target_database="db", phase=JobPhase.DONE))

    assert write_metrics_file(blocker / "metrics.prom", metrics) is False
    assert write_metrics_file(tmp_path / "out" / "metrics.prom", metrics) is True
    assert (tmp_path / "out" / "metrics.prom").read_text(encoding="utf-8").count("# TYPE") == 8


def test_fork_writes_metrics_file(servers, tmp_path: Path) -> None:
    servers.seed_scenario()
    metrics_path = tmp_path / "textfile" / "pgfork.prom"

    result = fork(servers.spec(metrics_file=metrics_path))

    assert result.success, result.error
    text = metrics_path.read_text(encoding="utf-8")
    assert f'pgfork_fork_transferred_rows{{job_id="{result.job_id}",target="app_fork"}} 1150' in text
    assert 'status="completed"} 1' in text
    assert not metrics_path.with_name("pgfork.prom.tmp").exists()


def test_dry_run_writes_no_metrics(servers, tmp_path: Path) -> None:
    servers.seed_scenario()
    metrics_path = tmp_path / "pgfork.prom"

    result = fork(servers.spec(metrics_file=metrics_path, dry_run=True))

    assert result.success
    assert not metrics_path.exists()


def test_metrics_command_reports_stored_jobs(servers, capsys) -> None:
    servers.seed_scenario()
    assert fork(servers.spec(job_id="cli-metrics")).success

    exit_code = main(["metrics", "--state-dir", str(servers.state_dir), "--period", "1d"])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "Total jobs: 1" in out
    assert "Completed: 1 (100.0%)" in out
    assert "Rows transferred: 1150" in out
    assert "cli-metrics" in out


def test_metrics_command_json_output(servers, capsys) -> None:
    servers.seed_scenario()
    assert fork(servers.spec(job_id="json-metrics")).success

    exit_code = main(["metrics", "--state-dir", str(servers.state_dir), "--output", "json", "--trends"])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["summary"]["completed_jobs"] == 1
    assert payload["jobs"][0]["job_id"] == "json-metrics"
    assert payload["jobs"][0]["tables_processed"] == 3
    assert len(payload["trends"]["daily"]) == 1
