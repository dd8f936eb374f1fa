# ABOUTME: FastAPI application factory with database and scheduled-sync lifespan.
# ABOUTME: Main entry point for the reader-sync HTTP API.

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from reader_sync.config import get_settings
from reader_sync.db.session import close_db, init_db

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Set up the database and, when configured, the periodic sync loop."""
    from reader_sync.services.sync import run_periodic_sync

    logger.info("app_startup")
    await init_db()

    settings = get_settings()
    periodic = None
    if settings.sync_interval_minutes > 0:
        periodic = asyncio.create_task(run_periodic_sync(settings.sync_interval_minutes))
        logger.info("periodic_sync_started", interval_minutes=settings.sync_interval_minutes)

    yield

    logger.info("app_shutdown")
    if periodic is not None:
        periodic.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await periodic
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="reader-sync",
        description="Quota-aware article sync for a personal RSS reader",
        version="0.1.0",
        lifespan=lifespan,
    )

    from reader_sync.web.routes import router

    app.include_router(router)

    return app


app = create_app()
