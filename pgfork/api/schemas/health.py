from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class StateStoreHealth(BaseModel):
    reachable: bool
    total_jobs: int | None = None
    unfinished_jobs: int | None = None
    error: str | None = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    state_dir: str
    state_store: StateStoreHealth
    checked_at: datetime
