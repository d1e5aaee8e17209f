from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from storeshift.api.routes.health import router as health_router
from storeshift.api.routes.migrations import router as migrations_router
from storeshift.api.routes.workspaces import router as workspaces_router
from storeshift.core.config import get_settings
from storeshift.core.logging import configure_logging
from storeshift.db.init_db import initialize_database
from storeshift.worker.pipeline import resume_orphaned_migrations


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    resume_orphaned_migrations()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(workspaces_router, prefix="/api/v1")
    app.include_router(migrations_router, prefix="/api/v1")
    return app
