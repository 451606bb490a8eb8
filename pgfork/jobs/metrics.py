from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from pgfork.db.models import JobPhase, TaskStatus
from pgfork.jobs.types import ForkJob

SPEED_TREND_MARGIN = 0.10
SUCCESS_TREND_MARGIN = 5.0


@dataclass(frozen=True)
class JobMetric:
    job_id: str
    status: str
    source: str
    target: str
    started_at: datetime
    finished_at: datetime | None
    duration_seconds: float
    rows_transferred: int
    rows_per_second: float
    tables_processed: int
    tables_failed: int
    error_count: int


@dataclass(frozen=True)
class MetricsSummary:
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    running_jobs: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    total_rows_transferred: int = 0
    total_tables_processed: int = 0


@dataclass(frozen=True)
class PerformanceStats:
    fastest_job: JobMetric | None = None
    slowest_job: JobMetric | None = None
    largest_transfer: JobMetric | None = None
    most_tables: JobMetric | None = None
    average_rows_per_second: float = 0.0
    median_duration_seconds: float = 0.0
    p95_duration_seconds: float = 0.0
    error_rate: float = 0.0


@dataclass(frozen=True)
class DailyStat:
    date: str
    job_count: int
    success_rate: float
    average_rows_per_second: float
    rows_transferred: int


@dataclass(frozen=True)
class TrendAnalysis:
    daily: list[DailyStat] = field(default_factory=list)
    speed_trend: str | None = None
    success_trend: str | None = None


@dataclass(frozen=True)
class MetricsReport:
    generated_at: datetime
    period_seconds: float
    summary: MetricsSummary
    jobs: list[JobMetric]
    performance: PerformanceStats
    trends: TrendAnalysis | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _status(job: ForkJob) -> str:
    if job.phase == JobPhase.DONE:
        return "completed"
    if job.phase == JobPhase.FAILED:
        return "cancelled" if job.error_code == "CANCELLED" else "failed"
    return "running"


def _describe_source(spec: dict[str, Any]) -> str:
    source = spec.get("source") or {}
    if source.get("driver") == "sqlite":
        return f"sqlite:{source.get('host')}/{source.get('database')}.db"
    return f"{source.get('user')}@{source.get('host')}:{source.get('port')}/{source.get('database')}"


def job_metric(job: ForkJob, *, now: datetime) -> JobMetric:
    started_at = _utc(job.created_at) or now
    status = _status(job)
    finished_at = _utc(job.finished_at or job.updated_at) if status != "running" else None
    duration = max(((finished_at or now) - started_at).total_seconds(), 0.0)
    rows = sum(task.rows_transferred for task in job.tasks)
    failed = sum(1 for task in job.tasks if task.status == TaskStatus.FAILED)
    return JobMetric(
        job_id=job.id,
        status=status,
        source=_describe_source(job.spec),
        target=str(job.spec.get("target_database", "")),
        started_at=started_at,
        finished_at=finished_at,
        duration_seconds=duration,
        rows_transferred=rows,
        rows_per_second=rows / duration if duration > 0 else 0.0,
        tables_processed=sum(1 for task in job.tasks if task.status == TaskStatus.COMPLETED),
        tables_failed=failed,
        error_count=failed + (1 if job.error_message else 0),
    )


def summarize(metrics: list[JobMetric]) -> MetricsSummary:
    if not metrics:
        return MetricsSummary()
    by_status: dict[str, int] = defaultdict(int)
    for metric in metrics:
        by_status[metric.status] += 1
    total = len(metrics)
    return MetricsSummary(
        total_jobs=total,
        completed_jobs=by_status["completed"],
        failed_jobs=by_status["failed"],
        cancelled_jobs=by_status["cancelled"],
        running_jobs=by_status["running"],
        success_rate=by_status["completed"] / total * 100,
        average_duration_seconds=sum(metric.duration_seconds for metric in metrics) / total,
        total_rows_transferred=sum(metric.rows_transferred for metric in metrics),
        total_tables_processed=sum(metric.tables_processed for metric in metrics),
    )


def performance(metrics: list[JobMetric]) -> PerformanceStats:
    """Extremes and percentiles over completed jobs; the error rate counts every job."""
    if not metrics:
        return PerformanceStats()
    completed = [metric for metric in metrics if metric.status == "completed"]
    error_rate = sum(1 for metric in metrics if metric.error_count) / len(metrics) * 100
    if not completed:
        return PerformanceStats(error_rate=error_rate)

    durations = sorted(metric.duration_seconds for metric in completed)
    p95_index = min(int(len(durations) * 0.95), len(durations) - 1)
    return PerformanceStats(
        fastest_job=min(completed, key=lambda metric: metric.duration_seconds),
        slowest_job=max(completed, key=lambda metric: metric.duration_seconds),
        largest_transfer=max(completed, key=lambda metric: metric.rows_transferred),
        most_tables=max(completed, key=lambda metric: metric.tables_processed),
        average_rows_per_second=sum(metric.rows_per_second for metric in completed) / len(completed),
        median_duration_seconds=durations[len(durations) // 2],
        p95_duration_seconds=durations[p95_index],
        error_rate=error_rate,
    )


def _direction(*, improving: bool, declining: bool) -> str:
    if improving:
        return "improving"
    if declining:
        return "declining"
    return "stable"


def trends(metrics: list[JobMetric]) -> TrendAnalysis:
    """Per-day rollup; a trend is reported once at least two days have jobs."""
    days: dict[str, list[JobMetric]] = defaultdict(list)
    for metric in metrics:
        days[metric.started_at.date().isoformat()].append(metric)

    daily: list[DailyStat] = []
    for date in sorted(days):
        items = days[date]
        completed = [metric for metric in items if metric.status == "completed"]
        daily.append(
            DailyStat(
                date=date,
                job_count=len(items),
                success_rate=len(completed) / len(items) * 100,
                average_rows_per_second=(
                    sum(metric.rows_per_second for metric in completed) / len(completed) if completed else 0.0
                ),
                rows_transferred=sum(metric.rows_transferred for metric in items),
            )
        )

    if len(daily) < 2:
        return TrendAnalysis(daily=daily)
    first, last = daily[0], daily[-1]
    speed = _direction(
        improving=last.average_rows_per_second > first.average_rows_per_second * (1 + SPEED_TREND_MARGIN),
        declining=last.average_rows_per_second < first.average_rows_per_second * (1 - SPEED_TREND_MARGIN),
    )
    success = _direction(
        improving=last.success_rate > first.success_rate + SUCCESS_TREND_MARGIN,
        declining=last.success_rate < first.success_rate - SUCCESS_TREND_MARGIN,
    )
    return TrendAnalysis(daily=daily, speed_trend=speed, success_trend=success)


def build_report(
    jobs: list[ForkJob],
    *,
    period: timedelta,
    include_trends: bool = False,
    now: datetime | None = None,
) -> MetricsReport:
    current = now or datetime.now(tz=timezone.utc)
    cutoff = current - period
    metrics = [
        job_metric(job, now=current)
        for job in jobs
        if (_utc(job.created_at) or current) >= cutoff
    ]
    metrics.sort(key=lambda metric: metric.started_at)
    return MetricsReport(
        generated_at=current,
        period_seconds=period.total_seconds(),
        summary=summarize(metrics),
        jobs=metrics,
        performance=performance(metrics),
        trends=trends(metrics) if include_trends else None,
    )
