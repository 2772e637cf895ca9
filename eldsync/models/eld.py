"""ELD connection, sync job, entity mapping and synced data tables."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, Float, Index, Integer, String, Text,
    UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, ConnectionScopedMixin, TenantMixin, TimestampMixin, UUIDMixin

_LIVE_STATUS_CLAUSE = "status IN ('pending', 'active', 'error')"


class EldConnection(UUIDMixin, TimestampMixin, TenantMixin, Base):
    __tablename__ = "eld_connection"
    __table_args__ = (
        # One live (pending/active/error) connection per tenant and provider.
        Index(
            "uq_eld_connection_live",
            "tenant_id",
            "provider",
            unique=True,
            sqlite_where=text(_LIVE_STATUS_CLAUSE),
            postgresql_where=text(_LIVE_STATUS_CLAUSE),
        ),
    )

    provider: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    access_token: Mapped[str | None] = mapped_column(Text, default=None)
    refresh_token: Mapped[str | None] = mapped_column(Text, default=None)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    external_connection_id: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    account_name: Mapped[str | None] = mapped_column(String(255), default=None)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class SyncJob(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_sync_job"
    __table_args__ = (
        # Atomic guard: the insert itself fails when a job is already running.
        Index(
            "uq_eld_sync_job_running",
            "connection_id",
            "data_type",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    data_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="running", index=True)
    trigger: Mapped[str] = mapped_column(String(20), default="manual")
    external_job_id: Mapped[str | None] = mapped_column(String(255), default=None, index=True)
    record_counts: Mapped[dict | None] = mapped_column(JSON, default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class EntityMapping(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_entity_mapping"
    __table_args__ = (
        UniqueConstraint("connection_id", "entity_type", "external_id", name="uq_eld_mapping_external"),
        Index(
            "uq_eld_mapping_internal",
            "connection_id",
            "entity_type",
            "internal_id",
            unique=True,
            sqlite_where=text("internal_id IS NOT NULL"),
            postgresql_where=text("internal_id IS NOT NULL"),
        ),
    )

    entity_type: Mapped[str] = mapped_column(String(20))
    external_id: Mapped[str] = mapped_column(String(100))
    internal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    match_source: Mapped[str | None] = mapped_column(String(20), default=None)
    match_confidence: Mapped[float | None] = mapped_column(Float, default=None)
    match_method: Mapped[str | None] = mapped_column(String(40), default=None)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    orphaned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    # Denormalized display fields used by the matching heuristics.
    external_name: Mapped[str | None] = mapped_column(String(255), default=None)
    external_identifier: Mapped[str | None] = mapped_column(String(100), default=None)
    external_vin: Mapped[str | None] = mapped_column(String(32), default=None)
    external_email: Mapped[str | None] = mapped_column(String(255), default=None)
    external_data: Mapped[dict | None] = mapped_column(JSON, default=None)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class HosLogEvent(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_hos_log_event"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_driver_id", "start_time", name="uq_eld_hos_event"),
    )

    external_driver_id: Mapped[str] = mapped_column(String(100))
    driver_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    external_vehicle_id: Mapped[str | None] = mapped_column(String(100), default=None)
    duty_status: Mapped[str] = mapped_column(String(20))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0)
    log_date: Mapped[date] = mapped_column(Date, index=True)
    location: Mapped[str | None] = mapped_column(String(255), default=None)
    violations: Mapped[list | None] = mapped_column(JSON, default=None)


class HosDailyLog(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_hos_daily_log"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_driver_id", "log_date", name="uq_eld_hos_daily"),
    )

    external_driver_id: Mapped[str] = mapped_column(String(100))
    driver_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    log_date: Mapped[date] = mapped_column(Date)
    driving_minutes: Mapped[int] = mapped_column(Integer, default=0)
    on_duty_minutes: Mapped[int] = mapped_column(Integer, default=0)
    off_duty_minutes: Mapped[int] = mapped_column(Integer, default=0)
    sleeper_minutes: Mapped[int] = mapped_column(Integer, default=0)
    has_violation: Mapped[bool] = mapped_column(Boolean, default=False)
    violations: Mapped[list | None] = mapped_column(JSON, default=None)


class VehicleLocation(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_vehicle_location"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_vehicle_id", "recorded_at", name="uq_eld_location"),
    )

    external_vehicle_id: Mapped[str] = mapped_column(String(100))
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    speed_mph: Mapped[float | None] = mapped_column(Float, default=None)
    heading: Mapped[float | None] = mapped_column(Float, default=None)
    odometer_miles: Mapped[float | None] = mapped_column(Float, default=None)
    address: Mapped[str | None] = mapped_column(String(500), default=None)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FaultCode(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_fault_code"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_vehicle_id", "code", "first_observed_at", name="uq_eld_fault"
        ),
    )

    external_vehicle_id: Mapped[str] = mapped_column(String(100))
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    code: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    severity: Mapped[str] = mapped_column(String(20), default="info")
    source: Mapped[str | None] = mapped_column(String(50), default=None)
    first_observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_observed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class IftaMileage(UUIDMixin, TimestampMixin, TenantMixin, ConnectionScopedMixin, Base):
    __tablename__ = "eld_ifta_mileage"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_vehicle_id", "jurisdiction", "year", "month",
            name="uq_eld_ifta",
        ),
    )

    external_vehicle_id: Mapped[str] = mapped_column(String(100))
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, default=None, index=True)
    jurisdiction: Mapped[str] = mapped_column(String(8))
    year: Mapped[int] = mapped_column(Integer)
    month: Mapped[int] = mapped_column(Integer)
    quarter: Mapped[int] = mapped_column(Integer)
    miles: Mapped[float] = mapped_column(Float, default=0.0)
    fuel_gallons: Mapped[float | None] = mapped_column(Float, default=None)
