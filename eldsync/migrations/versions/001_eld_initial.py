"""ELD sync schema: tenants, fleet records, connections, jobs, mappings, synced data.

Revision ID: 001_eld_initial
Revises:
Create Date: 2026-10-12
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_eld_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE_STATUS = sa.text("status IN ('pending', 'active', 'error')")
_RUNNING = sa.text("status = 'running'")
_MATCHED = sa.text("internal_id IS NOT NULL")


def _has_table(bind, name: str) -> bool:
    return sa.inspect(bind).has_table(name)


def _has_index(bind, table_name: str, index_name: str) -> bool:
    indexes = sa.inspect(bind).get_indexes(table_name)
    return any(idx.get("name") == index_name for idx in indexes)


def _base_columns(tenant: bool = True, connection: bool = False) -> list[sa.Column]:
    columns = [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if tenant:
        columns.append(
            sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenant.id", ondelete="CASCADE"), nullable=False)
        )
    if connection:
        columns.append(
            sa.Column(
                "connection_id", sa.Uuid(), sa.ForeignKey("eld_connection.id", ondelete="CASCADE"), nullable=False
            )
        )
    return columns


def _create_index(bind, name: str, table: str, columns: list[str], **kw) -> None:
    if not _has_index(bind, table, name):
        op.create_index(name, table, columns, **kw)


def upgrade() -> None:
    bind = op.get_bind()

    if not _has_table(bind, "tenant"):
        op.create_table(
            "tenant",
            *_base_columns(tenant=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("plan", sa.String(length=20), nullable=False),
            sa.Column("subscription_status", sa.String(length=30), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_tenant_slug", "tenant", ["slug"], unique=True)

    if not _has_table(bind, "vehicle"):
        op.create_table(
            "vehicle",
            *_base_columns(),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("vin", sa.String(length=32), nullable=True),
            sa.Column("license_plate", sa.String(length=32), nullable=True),
            sa.Column("make", sa.String(length=100), nullable=True),
            sa.Column("model", sa.String(length=100), nullable=True),
            sa.Column("year", sa.Integer(), nullable=True),
            sa.Column("odometer_miles", sa.Float(), nullable=True),
            sa.Column("engine_hours", sa.Float(), nullable=True),
            sa.Column("eld_connection_id", sa.Uuid(), nullable=True),
            sa.Column("eld_external_id", sa.String(length=100), nullable=True),
            sa.Column("eld_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_location", sa.JSON(), nullable=True),
            sa.Column("last_location_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_vehicle_tenant_id", "vehicle", ["tenant_id"])

    if not _has_table(bind, "driver"):
        op.create_table(
            "driver",
            *_base_columns(),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=50), nullable=True),
            sa.Column("license_number", sa.String(length=50), nullable=True),
            sa.Column("license_state", sa.String(length=10), nullable=True),
            sa.Column("eld_connection_id", sa.Uuid(), nullable=True),
            sa.Column("eld_external_id", sa.String(length=100), nullable=True),
            sa.Column("eld_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_driver_tenant_id", "driver", ["tenant_id"])

    if not _has_table(bind, "eld_connection"):
        op.create_table(
            "eld_connection",
            *_base_columns(),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("external_connection_id", sa.String(length=255), nullable=True),
            sa.Column("account_name", sa.String(length=255), nullable=True),
            sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_eld_connection_tenant_id", "eld_connection", ["tenant_id"])
    _create_index(bind, "ix_eld_connection_status", "eld_connection", ["status"])
    _create_index(
        bind, "ix_eld_connection_external_connection_id", "eld_connection", ["external_connection_id"]
    )
    _create_index(
        bind, "uq_eld_connection_live", "eld_connection", ["tenant_id", "provider"],
        unique=True, sqlite_where=_LIVE_STATUS, postgresql_where=_LIVE_STATUS,
    )

    if not _has_table(bind, "eld_sync_job"):
        op.create_table(
            "eld_sync_job",
            *_base_columns(connection=True),
            sa.Column("data_type", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("trigger", sa.String(length=20), nullable=False),
            sa.Column("external_job_id", sa.String(length=255), nullable=True),
            sa.Column("record_counts", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_eld_sync_job_tenant_id", "eld_sync_job", ["tenant_id"])
    _create_index(bind, "ix_eld_sync_job_connection_id", "eld_sync_job", ["connection_id"])
    _create_index(bind, "ix_eld_sync_job_status", "eld_sync_job", ["status"])
    _create_index(bind, "ix_eld_sync_job_external_job_id", "eld_sync_job", ["external_job_id"])
    _create_index(
        bind, "uq_eld_sync_job_running", "eld_sync_job", ["connection_id", "data_type"],
        unique=True, sqlite_where=_RUNNING, postgresql_where=_RUNNING,
    )

    if not _has_table(bind, "eld_entity_mapping"):
        op.create_table(
            "eld_entity_mapping",
            *_base_columns(connection=True),
            sa.Column("entity_type", sa.String(length=20), nullable=False),
            sa.Column("external_id", sa.String(length=100), nullable=False),
            sa.Column("internal_id", sa.Uuid(), nullable=True),
            sa.Column("match_source", sa.String(length=20), nullable=True),
            sa.Column("match_confidence", sa.Float(), nullable=True),
            sa.Column("match_method", sa.String(length=40), nullable=True),
            sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("orphaned_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("external_name", sa.String(length=255), nullable=True),
            sa.Column("external_identifier", sa.String(length=100), nullable=True),
            sa.Column("external_vin", sa.String(length=32), nullable=True),
            sa.Column("external_email", sa.String(length=255), nullable=True),
            sa.Column("external_data", sa.JSON(), nullable=True),
            sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("connection_id", "entity_type", "external_id", name="uq_eld_mapping_external"),
        )
    _create_index(bind, "ix_eld_entity_mapping_tenant_id", "eld_entity_mapping", ["tenant_id"])
    _create_index(bind, "ix_eld_entity_mapping_connection_id", "eld_entity_mapping", ["connection_id"])
    _create_index(bind, "ix_eld_entity_mapping_internal_id", "eld_entity_mapping", ["internal_id"])
    _create_index(
        bind, "uq_eld_mapping_internal", "eld_entity_mapping", ["connection_id", "entity_type", "internal_id"],
        unique=True, sqlite_where=_MATCHED, postgresql_where=_MATCHED,
    )

    if not _has_table(bind, "eld_hos_log_event"):
        op.create_table(
            "eld_hos_log_event",
            *_base_columns(connection=True),
            sa.Column("external_driver_id", sa.String(length=100), nullable=False),
            sa.Column("driver_id", sa.Uuid(), nullable=True),
            sa.Column("external_vehicle_id", sa.String(length=100), nullable=True),
            sa.Column("duty_status", sa.String(length=20), nullable=False),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_minutes", sa.Integer(), nullable=False),
            sa.Column("log_date", sa.Date(), nullable=False),
            sa.Column("location", sa.String(length=255), nullable=True),
            sa.Column("violations", sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("connection_id", "external_driver_id", "start_time", name="uq_eld_hos_event"),
        )
    _create_index(bind, "ix_eld_hos_log_event_tenant_id", "eld_hos_log_event", ["tenant_id"])
    _create_index(bind, "ix_eld_hos_log_event_connection_id", "eld_hos_log_event", ["connection_id"])
    _create_index(bind, "ix_eld_hos_log_event_driver_id", "eld_hos_log_event", ["driver_id"])
    _create_index(bind, "ix_eld_hos_log_event_log_date", "eld_hos_log_event", ["log_date"])

    if not _has_table(bind, "eld_hos_daily_log"):
        op.create_table(
            "eld_hos_daily_log",
            *_base_columns(connection=True),
            sa.Column("external_driver_id", sa.String(length=100), nullable=False),
            sa.Column("driver_id", sa.Uuid(), nullable=True),
            sa.Column("log_date", sa.Date(), nullable=False),
            sa.Column("driving_minutes", sa.Integer(), nullable=False),
            sa.Column("on_duty_minutes", sa.Integer(), nullable=False),
            sa.Column("off_duty_minutes", sa.Integer(), nullable=False),
            sa.Column("sleeper_minutes", sa.Integer(), nullable=False),
            sa.Column("has_violation", sa.Boolean(), nullable=False),
            sa.Column("violations", sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("connection_id", "external_driver_id", "log_date", name="uq_eld_hos_daily"),
        )
    _create_index(bind, "ix_eld_hos_daily_log_tenant_id", "eld_hos_daily_log", ["tenant_id"])
    _create_index(bind, "ix_eld_hos_daily_log_connection_id", "eld_hos_daily_log", ["connection_id"])
    _create_index(bind, "ix_eld_hos_daily_log_driver_id", "eld_hos_daily_log", ["driver_id"])

    if not _has_table(bind, "eld_vehicle_location"):
        op.create_table(
            "eld_vehicle_location",
            *_base_columns(connection=True),
            sa.Column("external_vehicle_id", sa.String(length=100), nullable=False),
            sa.Column("vehicle_id", sa.Uuid(), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=False),
            sa.Column("longitude", sa.Float(), nullable=False),
            sa.Column("speed_mph", sa.Float(), nullable=True),
            sa.Column("heading", sa.Float(), nullable=True),
            sa.Column("odometer_miles", sa.Float(), nullable=True),
            sa.Column("address", sa.String(length=500), nullable=True),
            sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("connection_id", "external_vehicle_id", "recorded_at", name="uq_eld_location"),
        )
    _create_index(bind, "ix_eld_vehicle_location_tenant_id", "eld_vehicle_location", ["tenant_id"])
    _create_index(bind, "ix_eld_vehicle_location_connection_id", "eld_vehicle_location", ["connection_id"])
    _create_index(bind, "ix_eld_vehicle_location_vehicle_id", "eld_vehicle_location", ["vehicle_id"])

    if not _has_table(bind, "eld_fault_code"):
        op.create_table(
            "eld_fault_code",
            *_base_columns(connection=True),
            sa.Column("external_vehicle_id", sa.String(length=100), nullable=False),
            sa.Column("vehicle_id", sa.Uuid(), nullable=True),
            sa.Column("code", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False),
            sa.Column("source", sa.String(length=50), nullable=True),
            sa.Column("first_observed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_observed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("occurrence_count", sa.Integer(), nullable=False),
            sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "connection_id", "external_vehicle_id", "code", "first_observed_at", name="uq_eld_fault"
            ),
        )
    _create_index(bind, "ix_eld_fault_code_tenant_id", "eld_fault_code", ["tenant_id"])
    _create_index(bind, "ix_eld_fault_code_connection_id", "eld_fault_code", ["connection_id"])
    _create_index(bind, "ix_eld_fault_code_vehicle_id", "eld_fault_code", ["vehicle_id"])

    if not _has_table(bind, "eld_ifta_mileage"):
        op.create_table(
            "eld_ifta_mileage",
            *_base_columns(connection=True),
            sa.Column("external_vehicle_id", sa.String(length=100), nullable=False),
            sa.Column("vehicle_id", sa.Uuid(), nullable=True),
            sa.Column("jurisdiction", sa.String(length=8), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("quarter", sa.Integer(), nullable=False),
            sa.Column("miles", sa.Float(), nullable=False),
            sa.Column("fuel_gallons", sa.Float(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "connection_id", "external_vehicle_id", "jurisdiction", "year", "month", name="uq_eld_ifta"
            ),
        )
    _create_index(bind, "ix_eld_ifta_mileage_tenant_id", "eld_ifta_mileage", ["tenant_id"])
    _create_index(bind, "ix_eld_ifta_mileage_connection_id", "eld_ifta_mileage", ["connection_id"])
    _create_index(bind, "ix_eld_ifta_mileage_vehicle_id", "eld_ifta_mileage", ["vehicle_id"])

    if not _has_table(bind, "notification"):
        op.create_table(
            "notification",
            *_base_columns(),
            sa.Column("notification_type", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("urgency", sa.String(length=20), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=True),
            sa.Column("entity_id", sa.String(length=100), nullable=True),
            sa.Column("link", sa.String(length=500), nullable=True),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "ix_notification_tenant_id", "notification", ["tenant_id"])
    _create_index(bind, "ix_notification_dedup", "notification", ["tenant_id", "notification_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "notification",
        "eld_ifta_mileage",
        "eld_fault_code",
        "eld_vehicle_location",
        "eld_hos_daily_log",
        "eld_hos_log_event",
        "eld_entity_mapping",
        "eld_sync_job",
        "eld_connection",
        "driver",
        "vehicle",
        "tenant",
    ):
        op.drop_table(table)
