from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from pgfork.api.routes.jobs import get_job_service
from pgfork.api.schemas.metrics import MetricsReportResponse
from pgfork.jobs import JobService

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", response_model=MetricsReportResponse)
def get_metrics(
    period_hours: float = Query(default=168, gt=0, le=24 * 366),
    trends: bool = False,
    service: JobService = Depends(get_job_service),
) -> MetricsReportResponse:
    report = service.metrics_report(period=timedelta(hours=period_hours), include_trends=trends)
    return MetricsReportResponse.model_validate(report.to_dict())
