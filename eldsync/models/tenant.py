"""Tenant (fleet account) and the internally-owned vehicle/driver records."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TenantMixin, TimestampMixin, UUIDMixin


class Tenant(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "tenant"

    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    plan: Mapped[str] = mapped_column(String(20), default="basic")
    subscription_status: Mapped[str] = mapped_column(String(30), default="active")


class Vehicle(UUIDMixin, TimestampMixin, TenantMixin, Base):
    __tablename__ = "vehicle"

    name: Mapped[str] = mapped_column(String(255))
    vin: Mapped[str | None] = mapped_column(String(32), default=None)
    license_plate: Mapped[str | None] = mapped_column(String(32), default=None)
    make: Mapped[str | None] = mapped_column(String(100), default=None)
    model: Mapped[str | None] = mapped_column(String(100), default=None)
    year: Mapped[int | None] = mapped_column(Integer, default=None)
    odometer_miles: Mapped[float | None] = mapped_column(Float, default=None)
    engine_hours: Mapped[float | None] = mapped_column(Float, default=None)

    # Last connection/external id that touched this record.
    eld_connection_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None)
    eld_external_id: Mapped[str | None] = mapped_column(String(100), default=None)
    eld_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_location: Mapped[dict | None] = mapped_column(JSON, default=None)
    last_location_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class Driver(UUIDMixin, TimestampMixin, TenantMixin, Base):
    __tablename__ = "driver"

    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    phone: Mapped[str | None] = mapped_column(String(50), default=None)
    license_number: Mapped[str | None] = mapped_column(String(50), default=None)
    license_state: Mapped[str | None] = mapped_column(String(10), default=None)

    eld_connection_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None)
    eld_external_id: Mapped[str | None] = mapped_column(String(100), default=None)
    eld_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
