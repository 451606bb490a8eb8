from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from pgfork.api.schemas.health import HealthResponse, StateStoreHealth
from pgfork.core.config import get_settings
from pgfork.core.version import __version__
from pgfork.db.models import ForkJobRecord
from pgfork.db.session import get_session_factory
from pgfork.jobs.store import TERMINAL_PHASES

router = APIRouter(tags=["health"])
logger = logging.getLogger("pgfork.api")


def check_state_store() -> StateStoreHealth:
    try:
        with get_session_factory()() as session:
            total = session.scalar(select(func.count()).select_from(ForkJobRecord))
            unfinished = session.scalar(
                select(func.count()).select_from(ForkJobRecord).where(ForkJobRecord.phase.not_in(list(TERMINAL_PHASES)))
            )
    except SQLAlchemyError as exc:
        logger.warning("State store health check failed: %s", exc)
        return StateStoreHealth(reachable=False, error=str(exc.__cause__ or exc))
    return StateStoreHealth(reachable=True, total_jobs=total or 0, unfinished_jobs=unfinished or 0)


@router.get("/health", response_model=HealthResponse)
def get_health(response: Response) -> HealthResponse:
    settings = get_settings()
    store = check_state_store()
    if not store.reachable:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="ok" if store.reachable else "degraded",
        service=settings.app_name,
        version=__version__,
        state_dir=settings.state_dir.as_posix(),
        state_store=store,
        checked_at=datetime.now(tz=timezone.utc),
    )
