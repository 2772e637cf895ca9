"""Motive (formerly KeepTruckin) adapter.

Page-number pagination: ``page_no`` starting at 1 and ``per_page=100``; a
short page ends the listing.
"""

from __future__ import annotations

import logging
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

PER_PAGE = 100


class MotiveProvider(BaseProvider):
    provider_id = "motive"
    display_name = "Motive"
    features = ("vehicles", "drivers", "hos", "ifta", "gps", "fault_codes", "webhooks")
    auth_url = "https://api.gomotive.com/oauth/authorize"
    token_url = "https://api.gomotive.com/oauth/token"
    scopes = (
        "vehicles.read",
        "drivers.read",
        "hos.read",
        "ifta.read",
        "locations.read",
        "fault_codes.read",
    )

    @classmethod
    def default_base_url(cls) -> str:
        return settings.motive_api_base

    async def _paginate(self, path: str, key: str, params: dict | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page_no": page, "per_page": PER_PAGE})
            data = await self._get(path, params=query)
            batch = data.get(key) or []
            # Motive wraps each row in a singular envelope ({"vehicle": {...}}).
            items.extend(row.get(key.rstrip("s"), row) if isinstance(row, dict) else row for row in batch)
            if len(batch) < PER_PAGE:
                return items
            page += 1

    async def fetch_account(self) -> AccountInfo:
        data = await self._get("/users/me")
        user = data.get("user") or {}
        company = user.get("company") or {}
        return AccountInfo(
            account_id=_as_str(company.get("id")),
            name=company.get("name") or "Unknown",
        )

    async def fetch_vehicles(self) -> FetchResult[ExternalVehicle]:
        rows = await self._paginate("/vehicles", "vehicles")
        vehicles = [
            ExternalVehicle(
                external_id=str(v["id"]),
                name=v.get("number") or v.get("name"),
                vin=v.get("vin"),
                license_plate=v.get("license_plate_number"),
                make=v.get("make"),
                model=v.get("model"),
                year=_as_int(v.get("year")),
                odometer_miles=v.get("current_odometer"),
                engine_hours=v.get("engine_hours"),
            )
            for v in rows
            if v.get("id") is not None
        ]
        logger.info("Fetched %d vehicles from Motive", len(vehicles))
        return FetchResult(vehicles)

    async def fetch_drivers(self) -> FetchResult[ExternalDriver]:
        rows = await self._paginate("/users", "users", params={"role": "driver"})
        drivers = [
            ExternalDriver(
                external_id=str(d["id"]),
                first_name=d.get("first_name"),
                last_name=d.get("last_name"),
                email=d.get("email"),
                phone=d.get("phone"),
                license_number=d.get("driver_license_number"),
                license_state=d.get("driver_license_state"),
            )
            for d in rows
            if d.get("id") is not None
        ]
        logger.info("Fetched %d drivers from Motive", len(drivers))
        return FetchResult(drivers)

    async def fetch_hos_logs(self, start: str, end: str) -> FetchResult[HosLogEntry]:
        rows = await self._paginate("/hos_logs", "hos_logs", params={"start_date": start, "end_date": end})
        logs: list[HosLogEntry] = []
        for row in rows:
            driver_id = _as_str((row.get("driver") or {}).get("id"))
            started = parse_datetime(row.get("start_time"))
            if not driver_id or started is None:
                continue
            duration = row.get("duration")
            logs.append(
                HosLogEntry(
                    external_driver_id=driver_id,
                    external_vehicle_id=_as_str((row.get("vehicle") or {}).get("id")),
                    duty_status=normalize_duty_status(row.get("status")),
                    start_time=started,
                    end_time=parse_datetime(row.get("end_time")),
                    duration_minutes=round(duration / 60) if duration else None,
                    location=(row.get("location") or {}).get("name"),
                    violations=[
                        v.get("type") or v.get("name") or str(v)
                        for v in row.get("violations") or []
                        if isinstance(v, dict)
                    ],
                )
            )
        logger.info("Fetched %d HOS logs from Motive", len(logs))
        return FetchResult(logs)

    async def fetch_jurisdiction_mileage(
        self, start_month: str, end_month: str
    ) -> FetchResult[JurisdictionMileage]:
        start, end = month_bounds(start_month, end_month)
        data = await self._get(
            "/ifta/summary",
            params={"start_date": start.isoformat(), "end_date": end.isoformat()},
        )
        records: list[JurisdictionMileage] = []
        for summary in data.get("ifta_summary") or []:
            vehicle_id = _as_str((summary.get("vehicle") or {}).get("id"))
            if not vehicle_id:
                continue
            for breakdown in summary.get("jurisdiction_breakdown") or []:
                if not breakdown.get("jurisdiction"):
                    continue
                records.append(
                    JurisdictionMileage(
                        external_vehicle_id=vehicle_id,
                        jurisdiction=str(breakdown["jurisdiction"]).upper(),
                        miles=float(breakdown.get("distance") or 0),
                        fuel_gallons=breakdown.get("fuel"),
                    )
                )
        logger.info("Fetched %d IFTA jurisdiction rows from Motive", len(records))
        return FetchResult(records)

    async def fetch_vehicle_locations(self) -> FetchResult[LocationSnapshot]:
        data = await self._get("/vehicle_locations")
        snapshots: list[LocationSnapshot] = []
        for loc in data.get("vehicle_locations") or []:
            loc = loc.get("vehicle_location", loc)
            vehicle_id = _as_str((loc.get("vehicle") or {}).get("id"))
            recorded_at = parse_datetime(loc.get("located_at"))
            if not vehicle_id or recorded_at is None or loc.get("latitude") is None:
                continue
            snapshots.append(
                LocationSnapshot(
                    external_vehicle_id=vehicle_id,
                    latitude=float(loc["latitude"]),
                    longitude=float(loc["longitude"]),
                    recorded_at=recorded_at,
                    speed_mph=loc.get("speed"),
                    heading=loc.get("bearing"),
                    odometer_miles=loc.get("odometer"),
                    address=loc.get("description"),
                )
            )
        logger.info("Fetched %d locations from Motive", len(snapshots))
        return FetchResult(snapshots)

    async def fetch_fault_codes(self) -> FetchResult[FaultCodeRecord]:
        rows = await self._paginate("/fault_codes", "fault_codes")
        faults: list[FaultCodeRecord] = []
        for fault in rows:
            vehicle_id = _as_str((fault.get("vehicle") or {}).get("id"))
            first_seen = parse_datetime(fault.get("first_observed_at"))
            if not vehicle_id or not fault.get("code") or first_seen is None:
                continue
            faults.append(
                FaultCodeRecord(
                    external_vehicle_id=vehicle_id,
                    code=str(fault["code"]),
                    description=fault.get("description"),
                    severity=normalize_severity(fault.get("severity")),
                    source=fault.get("source") or "engine",
                    first_observed_at=first_seen,
                    last_observed_at=parse_datetime(fault.get("last_observed_at")) or first_seen,
                    is_active=fault.get("is_active") is not False,
                )
            )
        logger.info("Fetched %d fault codes from Motive", len(faults))
        return FetchResult(faults)
