"""Samsara adapter.

Cursor pagination: responses carry ``pagination.endCursor`` and
``pagination.hasNextPage``; the cursor is passed back as ``after``.
Distances come back in meters.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from typing import Any

from ..config import settings
from ..timeutil import month_bounds, parse_datetime
from .base import (
    AccountInfo,
    BaseProvider,
    ExternalDriver,
    ExternalVehicle,
    FaultCodeRecord,
    FetchResult,
    HosLogEntry,
    JurisdictionMileage,
    LocationSnapshot,
    _as_int,
    _as_str,
    normalize_duty_status,
    normalize_severity,
)

logger = logging.getLogger(__name__)

METERS_TO_MILES = 0.000621371


def _miles(meters: Any) -> float | None:
    if meters in (None, ""):
        return None
    return float(meters) * METERS_TO_MILES


class SamsaraProvider(BaseProvider):
    provider_id = "samsara"
    display_name = "Samsara"
    features = ("vehicles", "drivers", "hos", "ifta", "gps", "fault_codes", "webhooks")
    auth_url = "https://api.samsara.com/oauth2/authorize"
    token_url = "https://api.samsara.com/oauth2/token"

    @classmethod
    def default_base_url(cls) -> str:
        return settings.samsara_api_base

    async def _paginate(self, path: str, params: dict | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            query = dict(params or {})
            if cursor:
                query["after"] = cursor
            data = await self._get(path, params=query)
            items.extend(data.get("data") or [])
            pagination = data.get("pagination") or {}
            cursor = pagination.get("endCursor")
            if not pagination.get("hasNextPage") or not cursor:
                return items

    async def fetch_account(self) -> AccountInfo:
        data = await self._get("/me")
        org = data.get("data") or {}
        return AccountInfo(account_id=_as_str(org.get("id")), name=org.get("name") or "Unknown")

    async def fetch_vehicles(self) -> FetchResult[ExternalVehicle]:
        rows = await self._paginate("/fleet/vehicles")
        vehicles = [
            ExternalVehicle(
                external_id=str(v["id"]),
                name=v.get("name"),
                vin=v.get("vin"),
                license_plate=v.get("licensePlate"),
                make=v.get("make"),
                model=v.get("model"),
                year=_as_int(v.get("year")),
                odometer_miles=_miles(v.get("odometerMeters")),
                engine_hours=v.get("engineHours"),
            )
            for v in rows
            if v.get("id") is not None
        ]
        logger.info("Fetched %d vehicles from Samsara", len(vehicles))
        return FetchResult(vehicles)

    async def fetch_drivers(self) -> FetchResult[ExternalDriver]:
        rows = await self._paginate("/fleet/drivers")
        drivers: list[ExternalDriver] = []
        for d in rows:
            if d.get("id") is None:
                continue
            first, _, last = (d.get("name") or "").partition(" ")
            drivers.append(
                ExternalDriver(
                    external_id=str(d["id"]),
                    first_name=first or None,
                    last_name=last or None,
                    email=d.get("email"),
                    phone=d.get("phone"),
                    license_number=d.get("licenseNumber"),
                    license_state=d.get("licenseState"),
                )
            )
        logger.info("Fetched %d drivers from Samsara", len(drivers))
        return FetchResult(drivers)

    async def fetch_hos_logs(self, start: str, end: str) -> FetchResult[HosLogEntry]:
        start_time = datetime.combine(datetime.fromisoformat(start).date(), time.min, tzinfo=timezone.utc)
        end_time = datetime.combine(datetime.fromisoformat(end).date(), time.max, tzinfo=timezone.utc)
        rows = await self._paginate(
            "/fleet/hos/logs",
            params={"startTime": start_time.isoformat(), "endTime": end_time.isoformat()},
        )
        logs: list[HosLogEntry] = []
        for row in rows:
            driver_id = _as_str((row.get("driver") or {}).get("id"))
            started = parse_datetime(row.get("startTime") or row.get("logStartTime"))
            if not driver_id or started is None:
                continue
            duration_ms = row.get("durationMs")
            logs.append(
                HosLogEntry(
                    external_driver_id=driver_id,
                    external_vehicle_id=_as_str((row.get("vehicle") or {}).get("id")),
                    duty_status=normalize_duty_status(row.get("hosStatusType")),
                    start_time=started,
                    end_time=parse_datetime(row.get("endTime")),
                    duration_minutes=round(duration_ms / 60000) if duration_ms else None,
                    location=(row.get("location") or {}).get("name"),
                    violations=[str(v.get("type")) for v in row.get("violations") or [] if v.get("type")],
                )
            )
        logger.info("Fetched %d HOS logs from Samsara", len(logs))
        return FetchResult(logs)

    async def fetch_jurisdiction_mileage(
        self, start_month: str, end_month: str
    ) -> FetchResult[JurisdictionMileage]:
        start, end = month_bounds(start_month, end_month)
        rows = await self._paginate(
            "/fleet/reports/ifta/jurisdiction",
            params={"startDate": start.isoformat(), "endDate": end.isoformat()},
        )
        records: list[JurisdictionMileage] = []
        for report in rows:
            vehicle_id = _as_str((report.get("vehicle") or {}).get("id") or report.get("vehicleId"))
            if not vehicle_id:
                continue
            for item in report.get("jurisdictions") or []:
                if not item.get("jurisdiction"):
                    continue
                records.append(
                    JurisdictionMileage(
                        external_vehicle_id=vehicle_id,
                        jurisdiction=str(item["jurisdiction"]).upper(),
                        miles=float(item.get("totalDistanceMiles") or 0),
                        fuel_gallons=item.get("fuelPurchasedGallons"),
                    )
                )
        logger.info("Fetched %d IFTA jurisdiction rows from Samsara", len(records))
        return FetchResult(records)

    async def fetch_vehicle_locations(self) -> FetchResult[LocationSnapshot]:
        rows = await self._paginate("/fleet/vehicles/stats", params={"types": "gps"})
        snapshots: list[LocationSnapshot] = []
        for vehicle in rows:
            gps = vehicle.get("gps")
            # The stats feed returns either the latest point or a short list.
            if isinstance(gps, list):
                gps = gps[0] if gps else None
            recorded_at = parse_datetime((gps or {}).get("time"))
            if not gps or vehicle.get("id") is None or recorded_at is None:
                continue
            snapshots.append(
                LocationSnapshot(
                    external_vehicle_id=str(vehicle["id"]),
                    latitude=float(gps["latitude"]),
                    longitude=float(gps["longitude"]),
                    recorded_at=recorded_at,
                    speed_mph=gps.get("speedMilesPerHour"),
                    heading=gps.get("headingDegrees"),
                    odometer_miles=_miles(gps.get("odometerMeters")),
                    address=(gps.get("reverseGeo") or {}).get("formattedLocation"),
                )
            )
        logger.info("Fetched %d locations from Samsara", len(snapshots))
        return FetchResult(snapshots)

    async def fetch_fault_codes(self) -> FetchResult[FaultCodeRecord]:
        rows = await self._paginate("/fleet/vehicles/stats", params={"types": "faultCodes"})
        faults: list[FaultCodeRecord] = []
        for vehicle in rows:
            if vehicle.get("id") is None:
                continue
            readings = vehicle.get("faultCodes") or []
            if isinstance(readings, dict):
                readings = [readings]
            for reading in readings:
                observed = parse_datetime(reading.get("time"))
                if observed is None:
                    continue
                for fault in reading.get("faultCodes") or []:
                    code = fault.get("faultCode") or fault.get("dtcShortCode")
                    if not code:
                        continue
                    faults.append(
                        FaultCodeRecord(
                            external_vehicle_id=str(vehicle["id"]),
                            code=str(code),
                            description=fault.get("description"),
                            severity=normalize_severity(fault.get("severity")),
                            source=fault.get("source") or "engine",
                            first_observed_at=observed,
                            last_observed_at=observed,
                            is_active=fault.get("isActive") is not False,
                        )
                    )
        logger.info("Fetched %d fault codes from Samsara", len(faults))
        return FetchResult(faults)
