from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from pgfork.api.schemas.jobs import CleanupJobsRequest, CleanupJobsResponse, JobListResponse, JobResponse
from pgfork.core.config import get_settings
from pgfork.db.models import JobPhase
from pgfork.db.session import get_session_factory
from pgfork.jobs import InvalidJobStateError, JobNotFoundError, JobService, snapshot_to_dict

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service() -> JobService:
    return JobService(settings=get_settings(), session_factory=get_session_factory())


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    phase: JobPhase | None = None,
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    jobs = service.list_jobs(limit=limit, phase=phase)
    return JobListResponse(items=[JobResponse.model_validate(snapshot_to_dict(job)) for job in jobs])


@router.post("/cleanup", response_model=CleanupJobsResponse)
def cleanup_jobs(request: CleanupJobsRequest, service: JobService = Depends(get_job_service)) -> CleanupJobsResponse:
    max_age = timedelta(hours=request.older_than_hours) if request.older_than_hours is not None else None
    result = service.cleanup_old_jobs(max_age=max_age, dry_run=request.dry_run)
    return CleanupJobsResponse(deleted=result.deleted, dry_run=result.dry_run)


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(job_id: str, force: bool = False, service: JobService = Depends(get_job_service)) -> None:
    try:
        service.delete_job(job_id, force=force)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
