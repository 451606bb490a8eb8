from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CleanupJobsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    older_than_hours: float | None = Field(default=None, gt=0)
    dry_run: bool = False


class CleanupJobsResponse(BaseModel):
    deleted: list[str]
    dry_run: bool


class TableTaskResponse(BaseModel):
    name: str
    status: str
    estimated_rows: int | None
    rows_transferred: int
    attempts: int
    last_error: str | None


class JobListResponse(BaseModel):
    items: list["JobResponse"]


class JobResponse(BaseModel):
    id: str
    phase: str
    failed_phase: str | None
    strategy: str | None
    spec: dict[str, Any]
    progress: float
    tables: list[TableTaskResponse]
    applied_ddl: list[str]
    error_code: str | None
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None
    finished_at: datetime | None


JobListResponse.model_rebuild()
