"""Scheduler endpoint hit by an external cron."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import get_session_factory
from ..providers import ProviderFactory
from ..scheduler import run_scheduled_sync
from ..security.cron import require_cron_secret
from .deps import get_provider_factory

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.api_route("/eld-sync", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def eld_sync(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    report = await run_scheduled_sync(session_factory, provider_factory=provider_factory)
    return {"success": True, **report.to_dict()}
