"""Manual "sync now" and sync history."""

from __future__ import annotations

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..errors import EldError
from ..models.enums import SYNCABLE_CONNECTION_STATUSES, DataType
from ..models.tenant import Tenant
from ..providers import ProviderError, ProviderFactory
from ..schemas.eld import SyncRequest
from ..services.connection_svc import ConnectionManager, serialize_connection
from ..sync.engine import SyncEngine, SyncWindow
from ..sync.jobs import list_sync_jobs, serialize_job
from ..tenant.deps import get_current_tenant
from ..timeutil import quarter_months, utcnow
from .deps import get_provider_factory, http_error

router = APIRouter(prefix="/api/eld", tags=["sync"])


def _manual_window(data: SyncRequest) -> SyncWindow:
    today = utcnow().date()
    quarter_start, quarter_end = quarter_months(today)
    options = data.options
    return SyncWindow(
        hos_start=options.start_date or (today - timedelta(days=settings.manual_hos_days)).isoformat(),
        hos_end=options.end_date or today.isoformat(),
        ifta_start_month=options.start_month or quarter_start,
        ifta_end_month=options.end_month or quarter_end,
    )


@router.get("/sync")
async def sync_history(
    connection_id: uuid.UUID | None = Query(None, alias="connectionId"),
    limit: int = Query(20, ge=1, le=100),
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
):
    jobs = await list_sync_jobs(db, tenant.id, connection_id=connection_id, limit=limit)
    manager = ConnectionManager(db)
    connections = await manager.list_connections(tenant.id)
    return {
        "jobs": [serialize_job(job) for job in jobs],
        "connections": [serialize_connection(c) for c in connections],
    }


@router.post("/sync")
async def trigger_sync(
    data: SyncRequest,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    manager = ConnectionManager(db, provider_factory=provider_factory)
    engine = SyncEngine(db, provider_factory=provider_factory, connections=manager)

    connection_id = data.connection_id
    if connection_id is None:
        syncable = [
            c for c in await manager.list_connections(tenant.id) if c.status in SYNCABLE_CONNECTION_STATUSES
        ]
        if not syncable:
            raise HTTPException(status_code=404, detail="No active ELD connection")
        connection_id = syncable[0].id

    window = _manual_window(data)
    try:
        if data.sync_type == DataType.ALL:
            result = await engine.sync_all(tenant.id, connection_id, window=window)
            return result.to_dict()

        if data.sync_type == DataType.VEHICLES:
            outcome = await engine.sync_vehicles(tenant.id, connection_id)
        elif data.sync_type == DataType.DRIVERS:
            outcome = await engine.sync_drivers(tenant.id, connection_id)
        elif data.sync_type == DataType.HOS:
            outcome = await engine.sync_hos_logs(tenant.id, connection_id, window.hos_start, window.hos_end)
        elif data.sync_type == DataType.IFTA:
            outcome = await engine.sync_ifta_mileage(
                tenant.id, connection_id, window.ifta_start_month, window.ifta_end_month
            )
        elif data.sync_type == DataType.LOCATIONS:
            outcome = await engine.sync_vehicle_locations(tenant.id, connection_id)
        else:
            outcome = await engine.sync_fault_codes(tenant.id, connection_id)
    except (EldError, ProviderError) as exc:
        raise http_error(exc) from exc

    if not outcome.ok:
        raise HTTPException(
            status_code=502,
            detail={"error": outcome.error, "syncJobId": str(outcome.job_id), "dataType": outcome.data_type.value},
        )
    return {"success": True, **outcome.to_dict()}
