"""Idempotent upserts of synced ELD data.

Every writer looks rows up by their natural key (connection, external id and
the record's own time key) before inserting, so replaying a sync with the
same provider response leaves the row count unchanged.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models.eld import EldConnection, FaultCode, HosDailyLog, HosLogEvent, IftaMileage, VehicleLocation
from ..models.enums import NotificationType
from ..models.tenant import Driver, Vehicle
from ..providers import (
    ExternalDriver, ExternalVehicle, FaultCodeRecord, HosLogEntry, JurisdictionMileage, LocationSnapshot,
)
from ..services import notification_svc
from ..timeutil import as_utc, month_range, quarter_of, utcnow

logger = logging.getLogger(__name__)

DRIVING_LIMIT_MINUTES = 11 * 60
ON_DUTY_WINDOW_MINUTES = 14 * 60
NOTIFY_FAULT_SEVERITIES = ("critical", "high")

_DUTY_COLUMNS = {
    "driving": "driving_minutes",
    "on_duty": "on_duty_minutes",
    "off_duty": "off_duty_minutes",
    "sleeper": "sleeper_minutes",
}


@dataclass
class UpsertCounts:
    created: int = 0
    updated: int = 0

    def as_dict(self, fetched: int, **extra: int) -> dict[str, int]:
        return {"fetched": fetched, "created": self.created, "updated": self.updated, **extra}


# -- Vehicles / drivers ----------------------------------------------------


async def apply_vehicle_details(
    db: AsyncSession,
    connection: EldConnection,
    vehicles: Sequence[ExternalVehicle],
    internal_ids: dict[str, uuid.UUID | None],
) -> int:
    """Copy vendor readings onto matched internal vehicles; returns how many were touched."""
    touched = 0
    now = utcnow()
    for external in vehicles:
        internal_id = internal_ids.get(external.external_id)
        vehicle = await db.get(Vehicle, internal_id) if internal_id else None
        if vehicle is None:
            continue
        vehicle.eld_connection_id = connection.id
        vehicle.eld_external_id = external.external_id
        vehicle.eld_synced_at = now
        if external.odometer_miles is not None:
            vehicle.odometer_miles = external.odometer_miles
        if external.engine_hours is not None:
            vehicle.engine_hours = external.engine_hours
        # Fill gaps only; tenant-entered identifiers win.
        vehicle.vin = vehicle.vin or external.vin
        vehicle.license_plate = vehicle.license_plate or external.license_plate
        touched += 1
    await db.flush()
    return touched


async def apply_driver_details(
    db: AsyncSession,
    connection: EldConnection,
    drivers: Sequence[ExternalDriver],
    internal_ids: dict[str, uuid.UUID | None],
) -> int:
    touched = 0
    now = utcnow()
    for external in drivers:
        internal_id = internal_ids.get(external.external_id)
        driver = await db.get(Driver, internal_id) if internal_id else None
        if driver is None:
            continue
        driver.eld_connection_id = connection.id
        driver.eld_external_id = external.external_id
        driver.eld_synced_at = now
        driver.email = driver.email or external.email
        driver.phone = driver.phone or external.phone
        driver.license_number = driver.license_number or external.license_number
        touched += 1
    await db.flush()
    return touched


# -- Hours of service ------------------------------------------------------


def _duration_minutes(entry: HosLogEntry) -> int:
    if entry.duration_minutes is not None:
        return max(0, int(entry.duration_minutes))
    if entry.end_time is not None:
        return max(0, round((entry.end_time - entry.start_time).total_seconds() / 60))
    return 0


async def upsert_hos_events(
    db: AsyncSession,
    connection: EldConnection,
    entries: Sequence[HosLogEntry],
    driver_ids: dict[str, uuid.UUID | None],
) -> tuple[UpsertCounts, set[tuple[str, date]]]:
    """Upsert duty-status events; returns counts and the (driver, day) keys touched."""
    counts = UpsertCounts()
    touched: set[tuple[str, date]] = set()
    if not entries:
        return counts, touched

    starts = [as_utc(e.start_time) for e in entries]
    stmt = select(HosLogEvent).where(
        HosLogEvent.connection_id == connection.id,
        HosLogEvent.external_driver_id.in_({e.external_driver_id for e in entries}),
        HosLogEvent.start_time >= min(starts),
        HosLogEvent.start_time <= max(starts),
    )
    existing = {
        (event.external_driver_id, as_utc(event.start_time)): event
        for event in (await db.execute(stmt)).scalars().all()
    }

    for entry in entries:
        start = as_utc(entry.start_time)
        key = (entry.external_driver_id, start)
        event = existing.get(key)
        if event is None:
            event = HosLogEvent(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                external_driver_id=entry.external_driver_id,
                start_time=start,
                log_date=start.date(),
            )
            db.add(event)
            existing[key] = event
            counts.created += 1
        else:
            counts.updated += 1
        event.driver_id = driver_ids.get(entry.external_driver_id)
        event.external_vehicle_id = entry.external_vehicle_id
        event.duty_status = entry.duty_status
        event.end_time = as_utc(entry.end_time)
        event.duration_minutes = _duration_minutes(entry)
        event.location = entry.location
        event.violations = list(entry.violations) or None
        touched.add((entry.external_driver_id, start.date()))

    await db.flush()
    return counts, touched


def detect_violations(totals: dict[str, int]) -> list[str]:
    violations = []
    if totals["driving_minutes"] > DRIVING_LIMIT_MINUTES:
        violations.append("11-hour driving limit exceeded")
    if totals["driving_minutes"] + totals["on_duty_minutes"] > ON_DUTY_WINDOW_MINUTES:
        violations.append("14-hour on-duty limit exceeded")
    return violations


async def rebuild_daily_logs(
    db: AsyncSession,
    connection: EldConnection,
    keys: set[tuple[str, date]],
    driver_ids: dict[str, uuid.UUID | None],
) -> list[HosDailyLog]:
    """Recompute daily totals from every stored event for each (driver, day)."""
    daily_logs: list[HosDailyLog] = []
    for external_driver_id, log_date in sorted(keys):
        events = (
            await db.execute(
                select(HosLogEvent).where(
                    HosLogEvent.connection_id == connection.id,
                    HosLogEvent.external_driver_id == external_driver_id,
                    HosLogEvent.log_date == log_date,
                )
            )
        ).scalars().all()

        totals = dict.fromkeys(_DUTY_COLUMNS.values(), 0)
        reported: list[str] = []
        for event in events:
            column = _DUTY_COLUMNS.get(event.duty_status)
            if column:
                totals[column] += event.duration_minutes or 0
            for violation in event.violations or []:
                if violation not in reported:
                    reported.append(violation)
        violations = reported + [v for v in detect_violations(totals) if v not in reported]

        daily = (
            await db.execute(
                select(HosDailyLog).where(
                    HosDailyLog.connection_id == connection.id,
                    HosDailyLog.external_driver_id == external_driver_id,
                    HosDailyLog.log_date == log_date,
                )
            )
        ).scalar_one_or_none()
        if daily is None:
            daily = HosDailyLog(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                external_driver_id=external_driver_id,
                log_date=log_date,
            )
            db.add(daily)
        daily.driver_id = driver_ids.get(external_driver_id)
        for column, minutes in totals.items():
            setattr(daily, column, minutes)
        daily.has_violation = bool(violations)
        daily.violations = violations or None
        daily_logs.append(daily)

    await db.flush()
    return daily_logs


async def notify_hos_violations(
    db: AsyncSession, connection: EldConnection, daily_logs: Sequence[HosDailyLog]
) -> int:
    """One HOS_VIOLATION_OCCURRED per flagged daily log per dedup window."""
    window = timedelta(hours=settings.hos_violation_dedup_hours)
    sent = 0
    for daily in daily_logs:
        if not daily.has_violation:
            continue
        notification = await notification_svc.create_notification(
            db,
            connection.tenant_id,
            NotificationType.HOS_VIOLATION_OCCURRED,
            "Hours-of-service violation",
            f"Driver log for {daily.log_date.isoformat()}: {', '.join(daily.violations or [])}",
            urgency="high",
            entity_type="hos_daily_log",
            entity_id=str(daily.id),
            link="/compliance/hos",
            data={
                "driverId": str(daily.driver_id) if daily.driver_id else None,
                "externalDriverId": daily.external_driver_id,
                "logDate": daily.log_date.isoformat(),
                "violations": daily.violations or [],
            },
            dedup_window=window,
        )
        if notification is not None:
            sent += 1
    return sent


# -- IFTA ------------------------------------------------------------------


async def upsert_ifta_mileage(
    db: AsyncSession,
    connection: EldConnection,
    records: Sequence[JurisdictionMileage],
    vehicle_ids: dict[str, uuid.UUID | None],
    start_month: str,
    end_month: str,
) -> UpsertCounts:
    """Store miles per (vehicle, jurisdiction, month).

    Period totals without a month are spread evenly over the requested months.
    """
    months = month_range(start_month, end_month)
    miles: dict[tuple[str, str, int, int], float] = defaultdict(float)
    gallons: dict[tuple[str, str, int, int], float] = {}
    for record in records:
        if record.year and record.month:
            targets, share = [(record.year, record.month)], 1.0
        else:
            targets, share = months, 1.0 / len(months)
        for year, month in targets:
            key = (record.external_vehicle_id, record.jurisdiction, year, month)
            miles[key] += record.miles * share
            if record.fuel_gallons is not None:
                gallons[key] = gallons.get(key, 0.0) + float(record.fuel_gallons) * share

    counts = UpsertCounts()
    for key, total in miles.items():
        external_vehicle_id, jurisdiction, year, month = key
        row = (
            await db.execute(
                select(IftaMileage).where(
                    IftaMileage.connection_id == connection.id,
                    IftaMileage.external_vehicle_id == external_vehicle_id,
                    IftaMileage.jurisdiction == jurisdiction,
                    IftaMileage.year == year,
                    IftaMileage.month == month,
                )
            )
        ).scalar_one_or_none()
        if row is None:
            row = IftaMileage(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                external_vehicle_id=external_vehicle_id,
                jurisdiction=jurisdiction,
                year=year,
                month=month,
                quarter=quarter_of(month),
            )
            db.add(row)
            counts.created += 1
        else:
            counts.updated += 1
        row.vehicle_id = vehicle_ids.get(external_vehicle_id)
        row.miles = round(total, 2)
        row.fuel_gallons = round(gallons[key], 3) if key in gallons else None

    await db.flush()
    return counts


# -- Locations -------------------------------------------------------------


async def upsert_locations(
    db: AsyncSession,
    connection: EldConnection,
    snapshots: Sequence[LocationSnapshot],
    vehicle_ids: dict[str, uuid.UUID | None],
) -> UpsertCounts:
    counts = UpsertCounts()
    for snapshot in snapshots:
        recorded_at = as_utc(snapshot.recorded_at)
        row = (
            await db.execute(
                select(VehicleLocation).where(
                    VehicleLocation.connection_id == connection.id,
                    VehicleLocation.external_vehicle_id == snapshot.external_vehicle_id,
                    VehicleLocation.recorded_at == recorded_at,
                )
            )
        ).scalar_one_or_none()
        if row is None:
            row = VehicleLocation(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                external_vehicle_id=snapshot.external_vehicle_id,
                recorded_at=recorded_at,
            )
            db.add(row)
            counts.created += 1
        else:
            counts.updated += 1
        internal_id = vehicle_ids.get(snapshot.external_vehicle_id)
        row.vehicle_id = internal_id
        row.latitude = snapshot.latitude
        row.longitude = snapshot.longitude
        row.speed_mph = snapshot.speed_mph
        row.heading = snapshot.heading
        row.odometer_miles = snapshot.odometer_miles
        row.address = snapshot.address

        vehicle = await db.get(Vehicle, internal_id) if internal_id else None
        if vehicle is not None:
            last_seen = as_utc(vehicle.last_location_at)
            if last_seen is None or recorded_at > last_seen:
                vehicle.last_location = {
                    "latitude": snapshot.latitude,
                    "longitude": snapshot.longitude,
                    "speedMph": snapshot.speed_mph,
                    "heading": snapshot.heading,
                    "address": snapshot.address,
                }
                vehicle.last_location_at = recorded_at
                if snapshot.odometer_miles is not None:
                    vehicle.odometer_miles = snapshot.odometer_miles

    await db.flush()
    return counts


# -- Fault codes -----------------------------------------------------------


async def upsert_fault_codes(
    db: AsyncSession,
    connection: EldConnection,
    faults: Sequence[FaultCodeRecord],
    vehicle_ids: dict[str, uuid.UUID | None],
) -> UpsertCounts:
    counts = UpsertCounts()
    for fault in faults:
        first_seen = as_utc(fault.first_observed_at)
        last_seen = as_utc(fault.last_observed_at) or first_seen
        row = (
            await db.execute(
                select(FaultCode).where(
                    FaultCode.connection_id == connection.id,
                    FaultCode.external_vehicle_id == fault.external_vehicle_id,
                    FaultCode.code == fault.code,
                    FaultCode.first_observed_at == first_seen,
                )
            )
        ).scalar_one_or_none()
        if row is None:
            row = FaultCode(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                external_vehicle_id=fault.external_vehicle_id,
                code=fault.code,
                first_observed_at=first_seen,
                last_observed_at=last_seen,
                occurrence_count=1,
            )
            db.add(row)
            counts.created += 1
        else:
            previous = as_utc(row.last_observed_at)
            if previous is not None and last_seen > previous:
                row.occurrence_count = (row.occurrence_count or 1) + 1
                row.last_observed_at = last_seen
            counts.updated += 1
        row.vehicle_id = vehicle_ids.get(fault.external_vehicle_id)
        row.description = fault.description
        row.severity = fault.severity
        row.source = fault.source
        row.is_active = fault.is_active

    await db.flush()
    return counts


async def notify_fault_codes(db: AsyncSession, connection: EldConnection) -> int:
    """VEHICLE_FAULT_CODE for active critical/high faults not notified yet; never re-sent."""
    pending = (
        await db.execute(
            select(FaultCode).where(
                FaultCode.connection_id == connection.id,
                FaultCode.is_active.is_(True),
                FaultCode.severity.in_(NOTIFY_FAULT_SEVERITIES),
                FaultCode.notified_at.is_(None),
            )
        )
    ).scalars().all()

    sent = 0
    now = utcnow()
    for fault in pending:
        notification = await notification_svc.create_notification(
            db,
            connection.tenant_id,
            NotificationType.VEHICLE_FAULT_CODE,
            f"{fault.severity.title()} vehicle fault {fault.code}",
            fault.description or f"Fault code {fault.code} reported",
            urgency="critical" if fault.severity == "critical" else "high",
            entity_type="eld_fault_code",
            entity_id=str(fault.id),
            link="/maintenance/faults",
            data={
                "vehicleId": str(fault.vehicle_id) if fault.vehicle_id else None,
                "externalVehicleId": fault.external_vehicle_id,
                "code": fault.code,
                "severity": fault.severity,
            },
            dedup_forever=True,
        )
        fault.notified_at = now
        if notification is not None:
            sent += 1
    await db.flush()
    return sent
