from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from pgfork.api.routes.health import router as health_router
from pgfork.api.routes.jobs import router as jobs_router
from pgfork.api.routes.metrics import router as metrics_router
from pgfork.core.config import get_settings
from pgfork.core.logging import configure_logging
from pgfork.db.init_db import initialize_database


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    initialize_database()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(metrics_router, prefix="/api/v1")
    return app
