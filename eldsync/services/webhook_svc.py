"""Dispatch inbound vendor webhook events.

Events arrive as ``{"type": str, "data": {...}}``; ``data.connectionId`` is
the vendor-side connection id. Unknown event types and events for unknown
connections are logged and ignored. Every handler is safe to replay: sync
calls go through idempotent upserts and notifications are deduplicated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConnectionNotActive, EldError, FeatureNotEntitled, IllegalTransition, SyncInProgress
from ..models.eld import EldConnection
from ..models.enums import ConnectionStatus, DataType, JobStatus, NotificationType, SyncTrigger
from ..models.tenant import Tenant
from ..providers import ProviderFactory, create_provider
from ..sync.engine import SyncEngine
from ..sync.jobs import find_job_by_external_id
from ..timeutil import utcnow
from . import notification_svc
from .connection_svc import ConnectionManager
from .entitlements import is_entitled

logger = logging.getLogger(__name__)


class WebhookEventType(StrEnum):
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    CONNECTION_STATUS_CHANGED = "connection.status_changed"
    CONNECTION_DISCONNECTED = "connection.disconnected"
    VEHICLES_UPDATED = "data.vehicles_updated"
    DRIVERS_UPDATED = "data.drivers_updated"
    HOS_UPDATED = "data.hos_updated"
    LOCATIONS_UPDATED = "data.locations_updated"
    SAFETY_EVENTS = "data.safety_events"


# Vendor connection vocabulary -> internal lifecycle; anything else is an error.
VENDOR_STATUS_MAP = {
    "active": ConnectionStatus.ACTIVE,
    "connected": ConnectionStatus.ACTIVE,
    "inactive": ConnectionStatus.DISCONNECTED,
    "disconnected": ConnectionStatus.DISCONNECTED,
    "error": ConnectionStatus.ERROR,
    "pending": ConnectionStatus.PENDING,
}

ALERT_SEVERITIES = ("critical", "high")


@dataclass
class WebhookEvent:
    type: WebhookEventType
    data: dict = field(default_factory=dict)

    @property
    def external_connection_id(self) -> str | None:
        value = self.data.get("connectionId") or self.data.get("connection_id")
        return str(value) if value else None


def parse_event(payload: object) -> WebhookEvent | None:
    """Typed event, or ``None`` when the type is not one we handle.

    Raises ``ValueError`` for an envelope that is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    raw_type = payload.get("type")
    try:
        event_type = WebhookEventType(raw_type)
    except ValueError:
        return None
    data = payload.get("data")
    return WebhookEvent(type=event_type, data=data if isinstance(data, dict) else {})


def map_vendor_status(value: str | None) -> ConnectionStatus:
    return VENDOR_STATUS_MAP.get((value or "").strip().lower(), ConnectionStatus.ERROR)


Handler = Callable[[EldConnection, WebhookEvent], Awaitable[None]]


class WebhookRouter:
    """Routes one parsed event to its handler."""

    def __init__(self, db: AsyncSession, provider_factory: ProviderFactory = create_provider):
        self.db = db
        self.connections = ConnectionManager(db, provider_factory=provider_factory)
        self.engine = SyncEngine(db, provider_factory=provider_factory, connections=self.connections)
        self.handlers: dict[WebhookEventType, Handler] = {
            WebhookEventType.SYNC_COMPLETED: self.on_sync_completed,
            WebhookEventType.SYNC_FAILED: self.on_sync_failed,
            WebhookEventType.CONNECTION_STATUS_CHANGED: self.on_status_changed,
            WebhookEventType.CONNECTION_DISCONNECTED: self.on_disconnected,
            WebhookEventType.VEHICLES_UPDATED: self.on_vehicles_updated,
            WebhookEventType.DRIVERS_UPDATED: self.on_drivers_updated,
            WebhookEventType.HOS_UPDATED: self.on_hos_updated,
            WebhookEventType.LOCATIONS_UPDATED: self.on_locations_updated,
            WebhookEventType.SAFETY_EVENTS: self.on_safety_events,
        }
        missing = set(WebhookEventType) - self.handlers.keys()
        if missing:
            raise RuntimeError(f"No webhook handler for {sorted(missing)}")

    async def dispatch(self, payload: object) -> bool:
        """Handle ``payload``; returns False when it was ignored.

        Component failures are logged and swallowed here so one bad event
        never turns into a vendor retry storm.
        """
        event = parse_event(payload)
        if event is None:
            logger.info("Ignoring unhandled webhook event type %r", payload.get("type"))
            return False

        external_id = event.external_connection_id
        connection = await self.connections.find_by_external_id(external_id) if external_id else None
        if connection is None:
            logger.info("Ignoring %s for unknown connection %r", event.type.value, external_id)
            return False

        try:
            await self.handlers[event.type](connection, event)
        except (SyncInProgress, ConnectionNotActive, FeatureNotEntitled) as exc:
            logger.info("Skipped %s for connection %s: %s", event.type.value, connection.id, exc)
            return False
        except Exception:
            logger.exception("Webhook %s failed for connection %s", event.type.value, connection.id)
            await self.db.rollback()
            return False
        return True

    # -- Vendor-side sync lifecycle --------------------------------------

    async def on_sync_completed(self, connection: EldConnection, event: WebhookEvent) -> None:
        sync_id = event.data.get("syncId")
        counts = event.data.get("recordCounts") or {}
        if sync_id:
            job = await find_job_by_external_id(self.db, connection.id, str(sync_id))
            if job is not None and job.status != JobStatus.COMPLETED:
                job.status = JobStatus.COMPLETED.value
                job.record_counts = counts
                job.error_message = None
                job.completed_at = utcnow()

        connection.last_sync_at = utcnow()
        if connection.status in (ConnectionStatus.ACTIVE, ConnectionStatus.ERROR):
            await self.connections.record_success(connection)

        total = sum(v for v in counts.values() if isinstance(v, (int, float)))
        await notification_svc.create_notification(
            self.db,
            connection.tenant_id,
            NotificationType.ELD_SYNC_COMPLETED,
            "ELD sync complete",
            f"Synced {int(total)} records from your ELD provider.",
            entity_type="eld_sync",
            entity_id=str(sync_id) if sync_id else None,
            link="/settings/integrations",
            data={"syncId": sync_id, "recordCounts": counts},
            dedup_forever=True,
        )
        await self.db.commit()

    async def on_sync_failed(self, connection: EldConnection, event: WebhookEvent) -> None:
        sync_id = event.data.get("syncId")
        message = str(event.data.get("error") or "Sync failed at the provider")
        if sync_id:
            job = await find_job_by_external_id(self.db, connection.id, str(sync_id))
            if job is not None and job.status == JobStatus.RUNNING:
                job.status = JobStatus.FAILED.value
                job.error_message = message
                job.completed_at = utcnow()

        await self.connections.record_failure(connection, message)
        await notification_svc.create_notification(
            self.db,
            connection.tenant_id,
            NotificationType.ELD_SYNC_FAILED,
            "ELD sync failed",
            f"Failed to sync data from your ELD provider: {message}",
            urgency="high",
            entity_type="eld_sync",
            entity_id=str(sync_id) if sync_id else None,
            link="/settings/integrations",
            data={"syncId": sync_id},
            dedup_forever=True,
        )
        await self.db.commit()

    # -- Connection lifecycle --------------------------------------------

    async def on_status_changed(self, connection: EldConnection, event: WebhookEvent) -> None:
        target = map_vendor_status(event.data.get("status"))
        message = event.data.get("message")
        if target == ConnectionStatus.DISCONNECTED:
            await self.connections.disconnect(connection, message)
            return
        if target == ConnectionStatus.ERROR:
            await self.connections.record_failure(
                connection, message or "The provider reported a connection problem"
            )
            return
        try:
            self.connections.transition(connection, target)
        except IllegalTransition as exc:
            logger.warning("Ignoring vendor status for connection %s: %s", connection.id, exc)
            return
        await self.db.commit()

    async def on_disconnected(self, connection: EldConnection, event: WebhookEvent) -> None:
        await self.connections.disconnect(connection, event.data.get("reason"))

    # -- Data changed ----------------------------------------------------

    async def on_vehicles_updated(self, connection: EldConnection, event: WebhookEvent) -> None:
        await self.engine.sync_vehicles(connection.tenant_id, connection.id, SyncTrigger.WEBHOOK)

    async def on_drivers_updated(self, connection: EldConnection, event: WebhookEvent) -> None:
        await self.engine.sync_drivers(connection.tenant_id, connection.id, SyncTrigger.WEBHOOK)

    async def on_hos_updated(self, connection: EldConnection, event: WebhookEvent) -> None:
        end = utcnow()
        start = end - timedelta(hours=24)
        tenant_id, connection_id = connection.tenant_id, connection.id
        tenant = await self.db.get(Tenant, tenant_id)
        if not is_entitled(tenant, DataType.HOS):
            raise FeatureNotEntitled("HOS sync requires the premium plan", DataType.HOS.value, tenant.plan)
        try:
            await self.engine.sync_hos_logs(
                tenant_id, connection_id, start.date().isoformat(), end.date().isoformat(), SyncTrigger.WEBHOOK
            )
        except EldError as exc:
            logger.info("HOS sync skipped for connection %s: %s", connection_id, exc)

        driver_id = event.data.get("driverId")
        violations = (event.data.get("hosStatus") or {}).get("violations") or []
        for violation in violations:
            if not isinstance(violation, dict):
                continue
            kind = violation.get("type") or "violation"
            await notification_svc.create_notification(
                self.db,
                tenant_id,
                NotificationType.HOS_VIOLATION_OCCURRED,
                "HOS violation detected",
                f"{kind}: {violation.get('description') or 'see the driver log'}",
                urgency="critical",
                entity_type="eld_driver",
                entity_id=f"{connection_id}:{driver_id}:{kind}",
                link="/compliance/hos",
                data={"externalDriverId": driver_id, "violation": violation},
                dedup_window=timedelta(hours=24),
            )
        await self.db.commit()

    async def on_locations_updated(self, connection: EldConnection, event: WebhookEvent) -> None:
        await self.engine.sync_vehicle_locations(connection.tenant_id, connection.id, SyncTrigger.WEBHOOK)

    async def on_safety_events(self, connection: EldConnection, event: WebhookEvent) -> None:
        tenant = await self.db.get(Tenant, connection.tenant_id)
        if not is_entitled(tenant, DataType.FAULTS):
            raise FeatureNotEntitled("Safety events require the fleet plan", DataType.FAULTS.value, tenant.plan)

        tenant_id, connection_id = connection.tenant_id, connection.id
        try:
            await self.engine.sync_fault_codes(tenant_id, connection_id, SyncTrigger.WEBHOOK)
        except EldError as exc:
            # The events themselves are still worth surfacing.
            logger.info("Fault sync skipped for connection %s: %s", connection_id, exc)

        for item in event.data.get("events") or []:
            if not isinstance(item, dict):
                continue
            severity = str(item.get("severity") or "").lower()
            if severity not in ALERT_SEVERITIES:
                continue
            code = item.get("code") or item.get("type") or "event"
            event_id = item.get("id") or f"{item.get('vehicleId')}:{code}:{item.get('occurredAt')}"
            await notification_svc.create_notification(
                self.db,
                tenant_id,
                NotificationType.SAFETY_EVENT,
                f"Vehicle alert: {code}",
                item.get("description") or f"Safety event {code} reported on a vehicle",
                urgency="critical" if severity == "critical" else "high",
                entity_type="eld_safety_event",
                entity_id=f"{connection_id}:{event_id}",
                link="/maintenance/faults",
                data={"event": item},
                dedup_forever=True,
            )
        await self.db.commit()
