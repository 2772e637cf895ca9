"""Inbound ELD vendor webhooks."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..providers import ProviderFactory
from ..security.webhooks import verify_webhook_signature
from ..services.webhook_svc import WebhookRouter
from .deps import get_provider_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/eld", tags=["webhooks"])


@router.post("/webhook")
async def eld_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    body = await request.body()
    verify_webhook_signature(request, body)
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc

    try:
        await WebhookRouter(db, provider_factory=provider_factory).dispatch(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"received": True}
