"""ELD connection lifecycle: OAuth, verification, refresh, disconnect and delete.

Status transitions go through ``ConnectionManager.transition`` so that only
the edges in ``ALLOWED_TRANSITIONS`` are ever written.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import ConnectionNotActive, ConnectionNotFound, IllegalTransition, InvalidOAuthState
from ..models.eld import (
    EldConnection, EntityMapping, FaultCode, HosDailyLog, HosLogEvent, IftaMileage, SyncJob,
    VehicleLocation,
)
from ..models.enums import (
    LIVE_CONNECTION_STATUSES, SYNCABLE_CONNECTION_STATUSES, ConnectionStatus, NotificationType,
)
from ..models.tenant import Driver, Tenant, Vehicle
from ..providers import (
    AuthExpiredError, BaseProvider, ProviderError, ProviderFactory, TransientError, create_provider,
    get_provider_info, is_supported,
)
from ..providers.errors import UnsupportedProviderError
from ..security.oauth_state import decode_state, encode_state
from ..timeutil import as_utc, utcnow
from . import notification_svc

logger = logging.getLogger(__name__)

S = ConnectionStatus

ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    S.PENDING: frozenset({S.ACTIVE, S.DISCONNECTED, S.DELETED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.ERROR, S.DISCONNECTED, S.DELETED}),
    S.ERROR: frozenset({S.ACTIVE, S.ERROR, S.DISCONNECTED, S.DELETED}),
    S.DISCONNECTED: frozenset({S.DELETED}),
    S.DELETED: frozenset(),
}

# Rows removed with a connection on hard delete.
_CONNECTION_SCOPED = (
    SyncJob, EntityMapping, HosLogEvent, HosDailyLog, VehicleLocation, FaultCode, IftaMileage,
)


def can_transition(current: str, target: str) -> bool:
    return ConnectionStatus(target) in ALLOWED_TRANSITIONS[ConnectionStatus(current)]


@dataclass
class AuthorizationRequest:
    url: str
    state: str
    provider: str
    connection_id: uuid.UUID


@dataclass
class VerificationResult:
    valid: bool
    status: str
    account_name: str | None = None
    error: str | None = None


@dataclass
class ConnectionStatusSummary:
    connections: list[EldConnection] = field(default_factory=list)

    @property
    def active(self) -> list[EldConnection]:
        return [c for c in self.connections if c.status == ConnectionStatus.ACTIVE]

    @property
    def has_active_connection(self) -> bool:
        return bool(self.active)

    @property
    def needs_attention(self) -> list[EldConnection]:
        return [c for c in self.connections if c.status == ConnectionStatus.ERROR]

    def to_dict(self) -> dict:
        return {
            "hasConnection": any(c.status in LIVE_CONNECTION_STATUSES for c in self.connections),
            "hasActiveConnection": self.has_active_connection,
            "activeCount": len(self.active),
            "errorCount": len(self.needs_attention),
            "connections": [serialize_connection(c) for c in self.connections],
        }


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_connection(connection: EldConnection) -> dict:
    """Public view of a connection; never includes credential material."""
    return {
        "id": str(connection.id),
        "provider": connection.provider,
        "status": connection.status,
        "accountName": connection.account_name,
        "externalConnectionId": connection.external_connection_id,
        "lastSyncAt": _iso(connection.last_sync_at),
        "errorMessage": connection.error_message,
        "connectedAt": _iso(connection.connected_at),
        "disconnectedAt": _iso(connection.disconnected_at),
        "createdAt": _iso(connection.created_at),
    }


class ConnectionManager:
    """Owns connection rows and their credential material."""

    def __init__(self, db: AsyncSession, provider_factory: ProviderFactory = create_provider):
        self.db = db
        self.provider_factory = provider_factory

    # -- Lookup ----------------------------------------------------------

    async def get_connection(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> EldConnection:
        stmt = select(EldConnection).where(
            EldConnection.id == connection_id,
            EldConnection.tenant_id == tenant_id,
        )
        connection = (await self.db.execute(stmt)).scalar_one_or_none()
        if connection is None:
            raise ConnectionNotFound("Connection not found")
        return connection

    async def list_connections(
        self, tenant_id: uuid.UUID, provider: str | None = None
    ) -> list[EldConnection]:
        stmt = select(EldConnection).where(EldConnection.tenant_id == tenant_id)
        if provider:
            stmt = stmt.where(EldConnection.provider == provider)
        stmt = stmt.order_by(EldConnection.created_at.desc())
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_live_connection(self, tenant_id: uuid.UUID, provider: str) -> EldConnection | None:
        stmt = (
            select(EldConnection)
            .where(
                EldConnection.tenant_id == tenant_id,
                EldConnection.provider == provider,
                EldConnection.status.in_([s.value for s in LIVE_CONNECTION_STATUSES]),
            )
            .order_by(EldConnection.created_at.desc())
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def find_by_external_id(self, external_connection_id: str) -> EldConnection | None:
        """Resolve a vendor-side connection id, preferring live rows, newest first."""
        stmt = select(EldConnection).where(
            EldConnection.external_connection_id == external_connection_id
        )
        rows = list((await self.db.execute(stmt)).scalars().all())
        if not rows:
            return None
        rows.sort(
            key=lambda c: (c.status in LIVE_CONNECTION_STATUSES, as_utc(c.created_at)),
            reverse=True,
        )
        return rows[0]

    async def find_stale_connections(
        self, stale_after: timedelta, now: datetime | None = None
    ) -> list[EldConnection]:
        """Syncable connections never synced or last synced before ``now - stale_after``."""
        cutoff = (now or utcnow()) - stale_after
        stmt = (
            select(EldConnection)
            .where(
                EldConnection.status.in_([s.value for s in SYNCABLE_CONNECTION_STATUSES]),
                or_(EldConnection.last_sync_at.is_(None), EldConnection.last_sync_at < cutoff),
            )
            .order_by(EldConnection.last_sync_at.asc().nulls_first())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    # -- State machine ---------------------------------------------------

    def transition(
        self,
        connection: EldConnection,
        target: ConnectionStatus,
        error_message: str | None = None,
    ) -> None:
        if not can_transition(connection.status, target):
            raise IllegalTransition(connection.status, target)
        if connection.status != target:
            logger.info(
                "Connection %s: %s -> %s", connection.id, connection.status, target.value
            )
        connection.status = target.value
        connection.error_message = error_message

    async def record_success(self, connection: EldConnection) -> None:
        """Any successful provider call brings an errored connection back to active."""
        if connection.status == ConnectionStatus.ERROR:
            self.transition(connection, ConnectionStatus.ACTIVE)
        elif connection.status == ConnectionStatus.ACTIVE:
            connection.error_message = None
        await self.db.commit()

    async def record_failure(self, connection: EldConnection, message: str) -> None:
        """Move a syncable connection to ``error``; notifies on the first failure only."""
        if connection.status not in SYNCABLE_CONNECTION_STATUSES:
            logger.info("Not flagging %s connection %s: %s", connection.status, connection.id, message)
            return
        was_active = connection.status == ConnectionStatus.ACTIVE
        self.transition(connection, ConnectionStatus.ERROR, error_message=message)
        if was_active:
            await notification_svc.create_notification(
                self.db,
                connection.tenant_id,
                NotificationType.ELD_CONNECTION_ERROR,
                "ELD connection needs attention",
                f"{connection.provider.title()} sync failed: {message}",
                urgency="high",
                entity_type="eld_connection",
                entity_id=str(connection.id),
                link="/settings/integrations",
                dedup_window=timedelta(hours=24),
            )
        await self.db.commit()

    # -- OAuth -----------------------------------------------------------

    async def get_authorization_url(
        self,
        provider: str,
        tenant_id: uuid.UUID,
        redirect_uri: str,
        *,
        reconnect: bool = False,
        connection_id: uuid.UUID | None = None,
    ) -> AuthorizationRequest:
        if not is_supported(provider):
            raise UnsupportedProviderError(provider)

        if reconnect and connection_id:
            connection = await self.get_connection(tenant_id, connection_id)
            if connection.provider != provider:
                raise ConnectionNotFound("Connection does not belong to this provider")
        else:
            connection = await self.get_live_connection(tenant_id, provider)
            if connection is None:
                connection = await self._create_connection(tenant_id, provider)
                await self.db.commit()

        state = encode_state(str(tenant_id), provider, str(connection.id), reconnect=reconnect)
        adapter = self.provider_factory(provider)
        try:
            url = adapter.authorization_url(redirect_uri, state)
        finally:
            await adapter.aclose()
        return AuthorizationRequest(url=url, state=state, provider=provider, connection_id=connection.id)

    async def complete_authorization(self, code: str, state: str, redirect_uri: str) -> EldConnection:
        """Exchange the callback code and activate (or re-activate) a connection."""
        decoded = decode_state(state)
        if not is_supported(decoded.provider):
            raise UnsupportedProviderError(decoded.provider)
        try:
            tenant_id = uuid.UUID(decoded.tenant_id)
        except ValueError as exc:
            raise InvalidOAuthState("OAuth state names an unknown tenant") from exc
        if await self.db.get(Tenant, tenant_id) is None:
            raise InvalidOAuthState("OAuth state names an unknown tenant")

        adapter = self.provider_factory(decoded.provider)
        try:
            tokens = await adapter.exchange_authorization_code(code, redirect_uri)
            try:
                account = await asyncio.wait_for(
                    adapter.fetch_account(), timeout=settings.provider_timeout_seconds
                )
            except (ProviderError, asyncio.TimeoutError) as exc:
                logger.warning("Account lookup after OAuth failed for %s: %s", decoded.provider, exc)
                account = None
        finally:
            await adapter.aclose()

        connection = await self._connection_for_callback(tenant_id, decoded.provider, decoded.connection_id)
        now = utcnow()
        connection.access_token = tokens.access_token
        connection.refresh_token = tokens.refresh_token
        connection.token_expires_at = tokens.expires_at
        connection.connected_at = now
        connection.disconnected_at = None
        if account is not None:
            connection.external_connection_id = account.account_id or connection.external_connection_id
            connection.account_name = account.name
        self.transition(connection, ConnectionStatus.ACTIVE)
        await self.db.commit()
        logger.info("Connected %s for tenant %s (connection %s)", decoded.provider, tenant_id, connection.id)
        return connection

    async def _connection_for_callback(
        self, tenant_id: uuid.UUID, provider: str, connection_id: str | None
    ) -> EldConnection:
        if connection_id:
            stmt = select(EldConnection).where(
                EldConnection.id == uuid.UUID(connection_id),
                EldConnection.tenant_id == tenant_id,
            )
            existing = (await self.db.execute(stmt)).scalar_one_or_none()
            if existing is not None and existing.status in LIVE_CONNECTION_STATUSES:
                return existing
        live = await self.get_live_connection(tenant_id, provider)
        if live is not None:
            return live
        # Previous row was disconnected or deleted: start a new lifecycle.
        return await self._create_connection(tenant_id, provider)

    async def _create_connection(self, tenant_id: uuid.UUID, provider: str) -> EldConnection:
        connection = EldConnection(
            tenant_id=tenant_id,
            provider=provider,
            status=ConnectionStatus.PENDING.value,
        )
        self.db.add(connection)
        await self.db.flush()
        carried = await self._carry_over_mappings(connection)
        if carried:
            logger.info("Carried %d entity mappings into connection %s", carried, connection.id)
        return connection

    async def _carry_over_mappings(self, connection: EldConnection) -> int:
        """Copy matches from the most recently created disconnected connection."""
        stmt = (
            select(EldConnection)
            .where(
                EldConnection.tenant_id == connection.tenant_id,
                EldConnection.provider == connection.provider,
                EldConnection.status == ConnectionStatus.DISCONNECTED.value,
                EldConnection.id != connection.id,
            )
            .order_by(EldConnection.created_at.desc())
            .limit(1)
        )
        previous = (await self.db.execute(stmt)).scalar_one_or_none()
        if previous is None:
            return 0

        mappings = (
            await self.db.execute(select(EntityMapping).where(EntityMapping.connection_id == previous.id))
        ).scalars().all()
        for old in mappings:
            self.db.add(
                EntityMapping(
                    tenant_id=old.tenant_id,
                    connection_id=connection.id,
                    entity_type=old.entity_type,
                    external_id=old.external_id,
                    internal_id=old.internal_id,
                    match_source=old.match_source,
                    match_confidence=old.match_confidence,
                    match_method=old.match_method,
                    matched_at=old.matched_at,
                    orphaned_at=old.orphaned_at,
                    external_name=old.external_name,
                    external_identifier=old.external_identifier,
                    external_vin=old.external_vin,
                    external_email=old.external_email,
                    external_data=old.external_data,
                    last_seen_at=old.last_seen_at,
                )
            )
        await self.db.flush()
        return len(mappings)

    # -- Credentials -----------------------------------------------------

    async def provider_for(self, connection: EldConnection) -> BaseProvider:
        """Adapter authenticated as ``connection``, refreshing a token that is about to expire.

        The caller owns the returned adapter and must ``aclose()`` it.
        """
        if not connection.access_token:
            raise AuthExpiredError("Connection has no credentials")
        provider = self.provider_factory(connection.provider, access_token=connection.access_token)
        expires_at = as_utc(connection.token_expires_at)
        margin = timedelta(seconds=settings.token_refresh_margin_seconds)
        if expires_at is not None and expires_at - utcnow() <= margin:
            try:
                await self.refresh_tokens(connection, provider)
            except ProviderError:
                await provider.aclose()
                raise
        return provider

    async def refresh_tokens(self, connection: EldConnection, provider: BaseProvider) -> None:
        """Refresh the access token in place; moves the connection to ``error`` if refused."""
        if not connection.refresh_token:
            error = AuthExpiredError("Access token expired and no refresh token is stored")
            await self.record_failure(connection, error.public_message)
            raise error
        try:
            tokens = await provider.refresh_token(connection.refresh_token)
        except AuthExpiredError as exc:
            await self.record_failure(connection, exc.public_message)
            raise
        connection.access_token = tokens.access_token
        connection.refresh_token = tokens.refresh_token or connection.refresh_token
        connection.token_expires_at = tokens.expires_at
        provider.access_token = tokens.access_token
        await self.db.commit()
        logger.info("Refreshed access token for connection %s", connection.id)

    async def verify_connection(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> VerificationResult:
        """Cheap read-only call confirming the stored credentials still work."""
        connection = await self.get_connection(tenant_id, connection_id)
        if connection.status not in SYNCABLE_CONNECTION_STATUSES:
            raise ConnectionNotActive(
                f"Connection is {connection.status}", status=connection.status
            )

        try:
            provider = await self.provider_for(connection)
        except ProviderError as exc:
            await self.record_failure(connection, exc.public_message)
            return VerificationResult(False, connection.status, error=exc.public_message)

        try:
            account = await asyncio.wait_for(
                provider.fetch_account(), timeout=settings.provider_timeout_seconds
            )
        except asyncio.TimeoutError:
            message = TransientError("").public_message
            await self.record_failure(connection, message)
            return VerificationResult(False, connection.status, error=message)
        except ProviderError as exc:
            await self.record_failure(connection, exc.public_message)
            return VerificationResult(False, connection.status, error=exc.public_message)
        finally:
            await provider.aclose()

        if account.account_id:
            connection.external_connection_id = account.account_id
        connection.account_name = account.name or connection.account_name
        await self.record_success(connection)
        return VerificationResult(True, connection.status, account_name=connection.account_name)

    # -- Teardown --------------------------------------------------------

    async def disconnect_connection(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        reason: str | None = None,
    ) -> EldConnection:
        """Soft disconnect: clear credentials, keep synced data. Idempotent."""
        connection = await self.get_connection(tenant_id, connection_id)
        return await self._disconnect(connection, reason)

    async def _disconnect(self, connection: EldConnection, reason: str | None) -> EldConnection:
        if connection.status == ConnectionStatus.DISCONNECTED:
            return connection
        self.transition(connection, ConnectionStatus.DISCONNECTED, error_message=reason)
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.disconnected_at = utcnow()
        await notification_svc.create_notification(
            self.db,
            connection.tenant_id,
            NotificationType.ELD_DISCONNECTED,
            "ELD disconnected",
            f"Your {get_provider_info(connection.provider).name} connection was disconnected."
            + (f" {reason}" if reason else ""),
            urgency="high",
            entity_type="eld_connection",
            entity_id=str(connection.id),
            link="/settings/integrations",
            dedup_forever=True,
        )
        await self.db.commit()
        logger.info("Disconnected connection %s (%s)", connection.id, reason or "tenant request")
        return connection

    async def disconnect(self, connection: EldConnection, reason: str | None = None) -> EldConnection:
        return await self._disconnect(connection, reason)

    async def delete_connection(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> None:
        """Hard delete: the row, its jobs, mappings and synced data."""
        connection = await self.get_connection(tenant_id, connection_id)
        if not can_transition(connection.status, ConnectionStatus.DELETED):
            raise IllegalTransition(connection.status, ConnectionStatus.DELETED)

        for model in _CONNECTION_SCOPED:
            await self.db.execute(delete(model).where(model.connection_id == connection.id))
        for model in (Vehicle, Driver):
            await self.db.execute(
                update(model)
                .where(model.tenant_id == tenant_id, model.eld_connection_id == connection.id)
                .values(eld_connection_id=None, eld_external_id=None)
            )
        await self.db.delete(connection)
        await self.db.commit()
        logger.info("Deleted connection %s for tenant %s", connection_id, tenant_id)

    # -- Reporting -------------------------------------------------------

    async def get_connection_status(self, tenant_id: uuid.UUID) -> ConnectionStatusSummary:
        return ConnectionStatusSummary(connections=await self.list_connections(tenant_id))

    async def collapse_duplicate_connections(self, tenant_id: uuid.UUID) -> int:
        """Keep the most recently created live row per provider; disconnect older duplicates."""
        stmt = select(EldConnection).where(
            EldConnection.tenant_id == tenant_id,
            EldConnection.status.in_([s.value for s in LIVE_CONNECTION_STATUSES]),
        )
        by_provider: dict[str, list[EldConnection]] = {}
        for connection in (await self.db.execute(stmt)).scalars().all():
            by_provider.setdefault(connection.provider, []).append(connection)

        collapsed = 0
        for rows in by_provider.values():
            rows.sort(key=lambda c: as_utc(c.created_at), reverse=True)
            for stale in rows[1:]:
                await self._disconnect(stale, "Superseded by a newer connection")
                collapsed += 1
        return collapsed

    async def collapse_all_duplicate_connections(self) -> int:
        """Run ``collapse_duplicate_connections`` for every tenant holding a live row."""
        stmt = (
            select(EldConnection.tenant_id)
            .where(EldConnection.status.in_([s.value for s in LIVE_CONNECTION_STATUSES]))
            .distinct()
        )
        tenant_ids = list((await self.db.execute(stmt)).scalars().all())
        collapsed = 0
        for tenant_id in tenant_ids:
            collapsed += await self.collapse_duplicate_connections(tenant_id)
        if collapsed:
            logger.warning("Disconnected %d duplicate live connection(s)", collapsed)
        return collapsed
