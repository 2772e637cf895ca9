"""FastAPI application for the ELD integration service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .scheduler import scheduled_sync_worker

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables for SQLite (local dev); PostgreSQL uses Alembic migrations
    if "sqlite" in settings.database_url:
        from .database import engine
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    scheduled_sync_worker.start()
    yield
    await scheduled_sync_worker.stop()


app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Import and register routers
from .routers import connections, cron, health, sync, webhooks  # noqa: E402

app.include_router(connections.router)
app.include_router(sync.router)
app.include_router(webhooks.router)
app.include_router(cron.router)
app.include_router(health.router)
