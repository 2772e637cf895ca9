"""Sync engine: pull one or more ELD data types for a connection and persist them.

Each narrow sync runs the same pipeline:

1. load the connection (must be ``active`` or ``error``)
2. check the tenant's entitlement for the data type (no job is created if not)
3. claim a ``running`` SyncJob atomically (``SyncInProgress`` if one exists)
4. call the provider adapter and upsert the results
5. complete or fail the job and settle the connection status

``sync_all`` repeats steps 3-4 per entitled data type and isolates failures,
so one failing type never stops its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import ConnectionNotActive, FeatureNotEntitled, InvalidSyncWindow, SyncInProgress
from ..models.eld import EldConnection
from ..models.enums import SYNCABLE_CONNECTION_STATUSES, DataType, EntityType, JobStatus, SyncTrigger
from ..models.tenant import Tenant
from ..providers import AuthExpiredError, BaseProvider, ProviderError, ProviderFactory, TransientError, create_provider
from ..services.connection_svc import ConnectionManager
from ..services.entitlements import effective_tier, entitled_data_types, is_entitled, required_tier
from ..timeutil import previous_quarter_start, quarter_months, quarter_ranges, utcnow
from . import records
from .jobs import claim_sync_job, complete_sync_job, fail_sync_job
from .reconciler import EntityReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[BaseProvider, EldConnection], Awaitable[dict]]

_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def check_date_range(start: str, end: str) -> None:
    try:
        first, last = date.fromisoformat(start), date.fromisoformat(end)
    except ValueError as exc:
        raise InvalidSyncWindow(f"Invalid date range {start}..{end}") from exc
    if first > last:
        raise InvalidSyncWindow(f"Start date {start} is after end date {end}")


def check_month_range(start_month: str, end_month: str) -> None:
    if not (_MONTH.match(start_month) and _MONTH.match(end_month)):
        raise InvalidSyncWindow(f"Invalid month range {start_month}..{end_month}")
    if start_month > end_month:
        raise InvalidSyncWindow(f"Start month {start_month} is after end month {end_month}")


@dataclass
class SyncOutcome:
    data_type: DataType
    job_id: uuid.UUID | None
    status: str
    counts: dict = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "dataType": self.data_type.value,
            "syncJobId": str(self.job_id) if self.job_id else None,
            "status": self.status,
            "counts": self.counts,
            "error": self.error,
        }


@dataclass
class SyncAllResult:
    connection_id: uuid.UUID
    job_id: uuid.UUID
    outcomes: list[SyncOutcome] = field(default_factory=list)
    skipped: list[DataType] = field(default_factory=list)

    @property
    def failed(self) -> list[SyncOutcome]:
        return [o for o in self.outcomes if o.status == JobStatus.FAILED]

    @property
    def succeeded(self) -> list[SyncOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    @property
    def success(self) -> bool:
        """At least one data type synced; per-type failures are reported alongside."""
        return bool(self.succeeded) or not self.failed

    def to_dict(self) -> dict:
        return {
            "connectionId": str(self.connection_id),
            "syncJobId": str(self.job_id),
            "success": self.success,
            "partial": self.partial,
            "results": {o.data_type.value: o.to_dict() for o in self.outcomes},
            "skipped": [d.value for d in self.skipped],
        }


@dataclass
class SyncWindow:
    """Date ranges for the time-series data types."""

    hos_start: str
    hos_end: str
    ifta_start_month: str
    ifta_end_month: str

    @classmethod
    def for_sync_all(cls, today: date | None = None) -> "SyncWindow":
        today = today or utcnow().date()
        _, quarter_end = quarter_months(today)
        return cls(
            hos_start=(today - timedelta(days=settings.sync_all_hos_days)).isoformat(),
            hos_end=today.isoformat(),
            ifta_start_month=previous_quarter_start(today),
            ifta_end_month=quarter_end,
        )

    @classmethod
    def for_scheduler(cls, today: date | None = None) -> "SyncWindow":
        today = today or utcnow().date()
        quarter_start, quarter_end = quarter_months(today)
        return cls(
            hos_start=(today - timedelta(days=1)).isoformat(),
            hos_end=today.isoformat(),
            ifta_start_month=quarter_start,
            ifta_end_month=quarter_end,
        )

    def validate(self) -> None:
        check_date_range(self.hos_start, self.hos_end)
        check_month_range(self.ifta_start_month, self.ifta_end_month)


async def _bounded(coro: Awaitable[T]) -> T:
    """Bound a whole (possibly paginated) provider fetch."""
    try:
        return await asyncio.wait_for(coro, timeout=settings.provider_call_timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise TransientError("Provider call timed out") from exc


class SyncEngine:
    def __init__(
        self,
        db: AsyncSession,
        *,
        provider_factory: ProviderFactory = create_provider,
        connections: ConnectionManager | None = None,
        reconciler: EntityReconciler | None = None,
    ):
        self.db = db
        self.connections = connections or ConnectionManager(db, provider_factory=provider_factory)
        self.reconciler = reconciler or EntityReconciler(db)

    # -- Public operations -------------------------------------------------

    async def sync_vehicles(
        self, tenant_id: uuid.UUID, connection_id: uuid.UUID, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncOutcome:
        return await self._run(tenant_id, connection_id, DataType.VEHICLES, trigger, self._vehicles_op())

    async def sync_drivers(
        self, tenant_id: uuid.UUID, connection_id: uuid.UUID, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncOutcome:
        return await self._run(tenant_id, connection_id, DataType.DRIVERS, trigger, self._drivers_op())

    async def sync_hos_logs(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        start: str,
        end: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncOutcome:
        check_date_range(start, end)
        return await self._run(tenant_id, connection_id, DataType.HOS, trigger, self._hos_op(start, end))

    async def sync_ifta_mileage(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        start_month: str,
        end_month: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncOutcome:
        check_month_range(start_month, end_month)
        return await self._run(
            tenant_id, connection_id, DataType.IFTA, trigger, self._ifta_op(start_month, end_month)
        )

    async def sync_vehicle_locations(
        self, tenant_id: uuid.UUID, connection_id: uuid.UUID, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncOutcome:
        return await self._run(tenant_id, connection_id, DataType.LOCATIONS, trigger, self._locations_op())

    async def sync_fault_codes(
        self, tenant_id: uuid.UUID, connection_id: uuid.UUID, trigger: SyncTrigger = SyncTrigger.MANUAL
    ) -> SyncOutcome:
        return await self._run(tenant_id, connection_id, DataType.FAULTS, trigger, self._faults_op())

    async def sync_all(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        window: SyncWindow | None = None,
    ) -> SyncAllResult:
        """Every entitled data type, in dependency order, each in its own job."""
        window = window or SyncWindow.for_sync_all()
        window.validate()
        tenant, connection = await self._load(tenant_id, connection_id)
        if effective_tier(tenant) is None:
            raise FeatureNotEntitled("Subscription does not include ELD sync", DataType.ALL.value)
        entitled = entitled_data_types(tenant)

        umbrella_id = await claim_sync_job(self.db, connection, DataType.ALL, trigger)
        result = SyncAllResult(connection_id=connection.id, job_id=umbrella_id)
        operations = {
            DataType.VEHICLES: self._vehicles_op(),
            DataType.DRIVERS: self._drivers_op(),
            DataType.HOS: self._hos_op(window.hos_start, window.hos_end),
            DataType.IFTA: self._ifta_op(window.ifta_start_month, window.ifta_end_month),
            DataType.LOCATIONS: self._locations_op(),
            DataType.FAULTS: self._faults_op(),
        }
        for data_type, operation in operations.items():
            if data_type not in entitled:
                result.skipped.append(data_type)
                continue
            try:
                job_id = await claim_sync_job(self.db, connection, data_type, trigger)
            except SyncInProgress as exc:
                result.outcomes.append(SyncOutcome(data_type, exc.job_id, "in_progress"))
                continue
            result.outcomes.append(await self._execute(connection, data_type, job_id, operation))

        await self._settle(connection, result.outcomes)

        counts = {o.data_type.value: o.counts for o in result.outcomes}
        if result.failed and not result.succeeded:
            await fail_sync_job(self.db, umbrella_id, self._failure_summary(result.failed), counts)
        else:
            await complete_sync_job(self.db, umbrella_id, counts)
        logger.info(
            "sync_all connection=%s completed=%s failed=%s skipped=%s",
            connection.id,
            [o.data_type.value for o in result.succeeded],
            [o.data_type.value for o in result.failed],
            [d.value for d in result.skipped],
        )
        return result

    # -- Pipeline ------------------------------------------------------------

    async def _load(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> tuple[Tenant, EldConnection]:
        connection = await self.connections.get_connection(tenant_id, connection_id)
        if connection.status not in SYNCABLE_CONNECTION_STATUSES:
            raise ConnectionNotActive(f"Connection is {connection.status}", status=connection.status)
        tenant = await self.db.get(Tenant, tenant_id)
        return tenant, connection

    async def _run(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        data_type: DataType,
        trigger: SyncTrigger,
        operation: Operation,
    ) -> SyncOutcome:
        tenant, connection = await self._load(tenant_id, connection_id)
        if not is_entitled(tenant, data_type):
            raise FeatureNotEntitled(
                f"{data_type.value} sync requires the {required_tier(data_type).value} plan",
                data_type.value,
                tier=tenant.plan,
            )
        job_id = await claim_sync_job(self.db, connection, data_type, trigger)
        outcome = await self._execute(connection, data_type, job_id, operation)
        await self._settle(connection, [outcome])
        return outcome

    async def _execute(
        self, connection: EldConnection, data_type: DataType, job_id: uuid.UUID, operation: Operation
    ) -> SyncOutcome:
        """Run one claimed job to completion or failure; never raises provider errors."""
        try:
            provider = await self.connections.provider_for(connection)
        except ProviderError as exc:
            await fail_sync_job(self.db, job_id, exc.public_message)
            return SyncOutcome(data_type, job_id, JobStatus.FAILED.value, error=exc.public_message, error_kind=exc.kind)

        try:
            try:
                counts = await operation(provider, connection)
            except AuthExpiredError:
                # One local recovery attempt: refresh and replay.
                await self.db.rollback()
                await self.db.refresh(connection)
                await self.connections.refresh_tokens(connection, provider)
                counts = await operation(provider, connection)
            await self.db.commit()
            await complete_sync_job(self.db, job_id, counts)
            connection.last_sync_at = utcnow()
            await self.db.commit()
            logger.info("Synced %s for connection %s: %s", data_type.value, connection.id, counts)
            return SyncOutcome(data_type, job_id, JobStatus.COMPLETED.value, counts=counts)
        except ProviderError as exc:
            logger.warning("%s sync failed for connection %s: %s", data_type.value, connection.id, exc)
            await self.db.rollback()
            await self.db.refresh(connection)
            await fail_sync_job(self.db, job_id, exc.public_message)
            return SyncOutcome(data_type, job_id, JobStatus.FAILED.value, error=exc.public_message, error_kind=exc.kind)
        except Exception:
            logger.exception("%s sync crashed for connection %s", data_type.value, connection.id)
            await self.db.rollback()
            await self.db.refresh(connection)
            message = "Internal error while storing synced data"
            await fail_sync_job(self.db, job_id, message)
            return SyncOutcome(data_type, job_id, JobStatus.FAILED.value, error=message, error_kind="internal")
        finally:
            await provider.aclose()

    async def _settle(self, connection: EldConnection, outcomes: list[SyncOutcome]) -> None:
        """Promote error -> active only when every attempted type succeeded.

        Internal failures say nothing about the vendor link, so they neither
        flag the connection nor count as a clean run.
        """
        attempted = [o for o in outcomes if o.status in (JobStatus.COMPLETED, JobStatus.FAILED)]
        failed = [o for o in attempted if o.status == JobStatus.FAILED]
        provider_failed = [o for o in failed if o.error_kind != "internal"]
        if provider_failed:
            await self.connections.record_failure(connection, self._failure_summary(provider_failed))
        elif attempted and not failed:
            await self.connections.record_success(connection)

    @staticmethod
    def _failure_summary(failed: list[SyncOutcome]) -> str:
        return "; ".join(f"{o.data_type.value}: {o.error}" for o in failed)

    # -- Operations ----------------------------------------------------------

    def _vehicles_op(self) -> Operation:
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            result = await _bounded(provider.fetch_vehicles())
            created, updated = await self.reconciler.upsert_external_vehicles(connection, result.records)
            report = await self.reconciler.auto_match_vehicles(connection.tenant_id, connection.id)
            internal_ids = await self.reconciler.ensure_mappings(
                connection, EntityType.VEHICLE, (v.external_id for v in result.records)
            )
            await records.apply_vehicle_details(self.db, connection, result.records, internal_ids)
            return {
                "fetched": result.count,
                "created": created,
                "updated": updated,
                "matched": len(report.matched),
                "ambiguous": len(report.ambiguous),
            }

        return op

    def _drivers_op(self) -> Operation:
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            result = await _bounded(provider.fetch_drivers())
            created, updated = await self.reconciler.upsert_external_drivers(connection, result.records)
            report = await self.reconciler.auto_match_drivers(connection.tenant_id, connection.id)
            internal_ids = await self.reconciler.ensure_mappings(
                connection, EntityType.DRIVER, (d.external_id for d in result.records)
            )
            await records.apply_driver_details(self.db, connection, result.records, internal_ids)
            return {
                "fetched": result.count,
                "created": created,
                "updated": updated,
                "matched": len(report.matched),
                "ambiguous": len(report.ambiguous),
            }

        return op

    def _hos_op(self, start: str, end: str) -> Operation:
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            result = await _bounded(provider.fetch_hos_logs(start, end))
            driver_ids = await self.reconciler.ensure_mappings(
                connection, EntityType.DRIVER, (e.external_driver_id for e in result.records)
            )
            counts, touched = await records.upsert_hos_events(self.db, connection, result.records, driver_ids)
            daily_logs = await records.rebuild_daily_logs(self.db, connection, touched, driver_ids)
            sent = await records.notify_hos_violations(self.db, connection, daily_logs)
            return counts.as_dict(
                result.count,
                daily_logs=len(daily_logs),
                violations=sum(1 for d in daily_logs if d.has_violation),
                notifications=sent,
            )

        return op

    def _ifta_op(self, start_month: str, end_month: str) -> Operation:
        # Period totals are spread over the fetched months, so each fetch
        # stays inside one quarter.
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            totals: Counter = Counter()
            for first, last in quarter_ranges(start_month, end_month):
                result = await _bounded(provider.fetch_jurisdiction_mileage(first, last))
                vehicle_ids = await self.reconciler.ensure_mappings(
                    connection, EntityType.VEHICLE, (r.external_vehicle_id for r in result.records)
                )
                counts = await records.upsert_ifta_mileage(
                    self.db, connection, result.records, vehicle_ids, first, last
                )
                totals.update(counts.as_dict(result.count))
            return dict(totals)

        return op

    def _locations_op(self) -> Operation:
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            result = await _bounded(provider.fetch_vehicle_locations())
            vehicle_ids = await self.reconciler.ensure_mappings(
                connection, EntityType.VEHICLE, (s.external_vehicle_id for s in result.records)
            )
            counts = await records.upsert_locations(self.db, connection, result.records, vehicle_ids)
            return counts.as_dict(result.count)

        return op

    def _faults_op(self) -> Operation:
        async def op(provider: BaseProvider, connection: EldConnection) -> dict:
            result = await _bounded(provider.fetch_fault_codes())
            vehicle_ids = await self.reconciler.ensure_mappings(
                connection, EntityType.VEHICLE, (f.external_vehicle_id for f in result.records)
            )
            counts = await records.upsert_fault_codes(self.db, connection, result.records, vehicle_ids)
            sent = await records.notify_fault_codes(self.db, connection)
            return counts.as_dict(result.count, notifications=sent)

        return op
