"""Tenant-facing notifications emitted as sync side effects."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TenantMixin, TimestampMixin, UUIDMixin


class Notification(UUIDMixin, TimestampMixin, TenantMixin, Base):
    __tablename__ = "notification"
    __table_args__ = (
        Index("ix_notification_dedup", "tenant_id", "notification_type", "entity_id"),
    )

    notification_type: Mapped[str] = mapped_column(String(50))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    urgency: Mapped[str] = mapped_column(String(20), default="normal")
    entity_type: Mapped[str | None] = mapped_column(String(50), default=None)
    entity_id: Mapped[str | None] = mapped_column(String(100), default=None)
    link: Mapped[str | None] = mapped_column(String(500), default=None)
    data: Mapped[dict | None] = mapped_column(JSON, default=None)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
