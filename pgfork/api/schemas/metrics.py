from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class JobMetricResponse(BaseModel):
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


class MetricsSummaryResponse(BaseModel):
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    cancelled_jobs: int
    running_jobs: int
    success_rate: float
    average_duration_seconds: float
    total_rows_transferred: int
    total_tables_processed: int


class PerformanceStatsResponse(BaseModel):
    fastest_job: JobMetricResponse | None
    slowest_job: JobMetricResponse | None
    largest_transfer: JobMetricResponse | None
    most_tables: JobMetricResponse | None
    average_rows_per_second: float
    median_duration_seconds: float
    p95_duration_seconds: float
    error_rate: float


class DailyStatResponse(BaseModel):
    date: str
    job_count: int
    success_rate: float
    average_rows_per_second: float
    rows_transferred: int


class TrendAnalysisResponse(BaseModel):
    daily: list[DailyStatResponse]
    speed_trend: str | None
    success_trend: str | None


class MetricsReportResponse(BaseModel):
    generated_at: datetime
    period_seconds: float
    summary: MetricsSummaryResponse
    jobs: list[JobMetricResponse]
    performance: PerformanceStatsResponse
    trends: TrendAnalysisResponse | None
