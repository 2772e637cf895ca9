"""Notification persistence with per-entity deduplication."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.notification import Notification
from ..timeutil import utcnow

logger = logging.getLogger(__name__)


async def already_notified(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    notification_type: str,
    entity_id: str,
    window: timedelta | None = None,
) -> bool:
    """True when a notification exists for the entity (within ``window`` if given)."""
    stmt = select(Notification.id).where(
        Notification.tenant_id == tenant_id,
        Notification.notification_type == notification_type,
        Notification.entity_id == entity_id,
    )
    if window is not None:
        stmt = stmt.where(Notification.created_at >= utcnow() - window)
    return (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None


async def create_notification(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    notification_type: str,
    title: str,
    message: str,
    *,
    urgency: str = "normal",
    entity_type: str | None = None,
    entity_id: str | None = None,
    link: str | None = None,
    data: dict | None = None,
    dedup_window: timedelta | None = None,
    dedup_forever: bool = False,
) -> Notification | None:
    """Add a notification unless one for the same entity/type is still in its dedup window.

    Returns ``None`` when suppressed. The caller commits.
    """
    if entity_id and (dedup_forever or dedup_window is not None):
        window = None if dedup_forever else dedup_window
        if await already_notified(db, tenant_id, notification_type, entity_id, window):
            logger.debug("Suppressed duplicate %s for %s", notification_type, entity_id)
            return None

    notification = Notification(
        tenant_id=tenant_id,
        notification_type=notification_type,
        title=title,
        message=message,
        urgency=urgency,
        entity_type=entity_type,
        entity_id=entity_id,
        link=link,
        data=data,
    )
    db.add(notification)
    await db.flush()
    return notification
