"""Scheduled sync pass and the background worker that repeats it."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import settings
from .database import async_session_factory
from .errors import ConnectionNotActive, EldError, SyncInProgress
from .models.enums import SyncTrigger
from .models.tenant import Tenant
from .providers import ProviderFactory, create_provider
from .services.connection_svc import ConnectionManager
from .services.entitlements import effective_tier
from .sync.engine import SyncEngine, SyncWindow
from .sync.jobs import reap_stuck_jobs
from .timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ConnectionSyncResult:
    connection_id: uuid.UUID
    tenant_id: uuid.UUID
    provider: str
    status: str
    results: dict = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "connectionId": str(self.connection_id),
            "tenantId": str(self.tenant_id),
            "provider": self.provider,
            "status": self.status,
            "results": self.results,
            "error": self.error,
        }


@dataclass
class SchedulerReport:
    connections_processed: int = 0
    sync_results: list[ConnectionSyncResult] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    reaped_jobs: int = 0
    collapsed_connections: int = 0

    def to_dict(self) -> dict:
        return {
            "connectionsProcessed": self.connections_processed,
            "syncResults": [r.to_dict() for r in self.sync_results],
            "errors": self.errors,
            "reapedJobs": self.reaped_jobs,
            "collapsedConnections": self.collapsed_connections,
        }


async def _sync_connection(
    db: AsyncSession,
    connection_id: uuid.UUID,
    tenant_id: uuid.UUID,
    provider: str,
    provider_factory: ProviderFactory,
    window: SyncWindow,
) -> ConnectionSyncResult:
    result = ConnectionSyncResult(connection_id, tenant_id, provider, status="synced")
    manager = ConnectionManager(db, provider_factory=provider_factory)
    connection = await manager.get_connection(tenant_id, connection_id)
    tenant = await db.get(Tenant, tenant_id)

    # The tenant may have downgraded since connecting: flag, never delete.
    if effective_tier(tenant) is None:
        await manager.record_failure(connection, "Subscription no longer includes ELD sync")
        result.status = "not_entitled"
        result.error = connection.error_message
        return result

    engine = SyncEngine(db, provider_factory=provider_factory, connections=manager)
    try:
        outcome = await engine.sync_all(tenant_id, connection_id, SyncTrigger.SCHEDULER, window)
    except SyncInProgress as exc:
        result.status = "in_progress"
        result.error = f"Sync job {exc.job_id} is still running" if exc.job_id else exc.message
        return result
    except ConnectionNotActive as exc:
        result.status = "skipped"
        result.error = exc.message
        return result

    result.results = {o.data_type.value: o.to_dict() for o in outcome.outcomes}
    if outcome.failed:
        result.status = "partial" if outcome.succeeded else "failed"
        result.error = "; ".join(f"{o.data_type.value}: {o.error}" for o in outcome.failed)
    return result


async def run_scheduled_sync(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    *,
    provider_factory: ProviderFactory = create_provider,
    now: datetime | None = None,
) -> SchedulerReport:
    """One pass: reap stuck jobs and collapse duplicate live rows, then sync every stale connection.

    Each connection gets its own session; an exception for one connection is
    recorded in the report and the pass moves on.
    """
    now = now or utcnow()
    report = SchedulerReport()

    async with session_factory() as db:
        report.reaped_jobs = await reap_stuck_jobs(
            db, timedelta(minutes=settings.sync_job_timeout_minutes), now
        )
        manager = ConnectionManager(db, provider_factory=provider_factory)
        report.collapsed_connections = await manager.collapse_all_duplicate_connections()
        due = [
            (c.id, c.tenant_id, c.provider)
            for c in await manager.find_stale_connections(
                timedelta(minutes=settings.sync_stale_minutes), now
            )
        ]

    logger.info("Scheduled sync: %d connection(s) due, %d stuck job(s) reaped", len(due), report.reaped_jobs)
    window = SyncWindow.for_scheduler(now.date())
    semaphore = asyncio.Semaphore(max(1, settings.scheduler_max_concurrency))

    async def process(connection_id: uuid.UUID, tenant_id: uuid.UUID, provider: str) -> None:
        async with semaphore:
            async with session_factory() as db:
                try:
                    result = await _sync_connection(
                        db, connection_id, tenant_id, provider, provider_factory, window
                    )
                except EldError as exc:
                    result = ConnectionSyncResult(connection_id, tenant_id, provider, "error", error=exc.message)
                    report.errors.append({"connectionId": str(connection_id), "error": exc.message})
                except Exception as exc:
                    logger.exception("Scheduled sync failed for connection %s", connection_id)
                    result = ConnectionSyncResult(
                        connection_id, tenant_id, provider, "error", error=type(exc).__name__
                    )
                    report.errors.append({"connectionId": str(connection_id), "error": "Unexpected error"})
            report.connections_processed += 1
            report.sync_results.append(result)

    await asyncio.gather(*(process(*item) for item in due))
    return report


class ScheduledSyncWorker:
    """Runs ``run_scheduled_sync`` every ``scheduler_interval_seconds``."""

    def __init__(self, provider_factory: ProviderFactory = create_provider) -> None:
        self.provider_factory = provider_factory
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        if self._task is not None or not settings.scheduler_enabled:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="eld-scheduled-sync")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                report = await run_scheduled_sync(provider_factory=self.provider_factory)
                logger.info(
                    "Scheduled sync pass: %d processed, %d error(s)",
                    report.connections_processed,
                    len(report.errors),
                )
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - defensive log path
                logger.exception("Scheduled sync loop failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=settings.scheduler_interval_seconds)
            except asyncio.TimeoutError:
                pass


scheduled_sync_worker = ScheduledSyncWorker()
