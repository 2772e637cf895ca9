"""ELD connection management: status, OAuth, verification, matching, removal."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..errors import EldError
from ..models.enums import EntityType
from ..models.tenant import Tenant
from ..providers import ProviderError, ProviderFactory, UnsupportedProviderError, list_providers
from ..schemas.eld import ConnectionAction, ConnectionDelete
from ..services.connection_svc import ConnectionManager, serialize_connection
from ..sync.reconciler import EntityReconciler, serialize_mapping
from ..tenant.deps import get_current_tenant
from .deps import get_provider_factory, http_error

router = APIRouter(prefix="/api/eld", tags=["connections"])


def _providers_payload() -> list[dict]:
    return [
        {"id": p.id, "name": p.name, "features": list(p.features), "configured": p.configured}
        for p in list_providers()
    ]


@router.get("/connections")
async def list_connections(
    provider: str | None = None,
    include_mappings: bool = Query(False, alias="includeMappings"),
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    manager = ConnectionManager(db, provider_factory=provider_factory)
    summary = await manager.get_connection_status(tenant.id)
    if provider:
        summary.connections = [c for c in summary.connections if c.provider == provider]
    payload = summary.to_dict()
    if include_mappings:
        reconciler = EntityReconciler(db)
        for item, connection in zip(payload["connections"], summary.connections):
            mappings = await reconciler.list_mappings(tenant.id, connection.id)
            item["mappings"] = [serialize_mapping(m) for m in mappings]
    return payload


@router.post("/connections")
async def connection_action(
    data: ConnectionAction,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    manager = ConnectionManager(db, provider_factory=provider_factory)
    reconciler = EntityReconciler(db)

    if data.action == "list-providers":
        return {"providers": _providers_payload()}

    try:
        if data.action == "initiate-oauth":
            if not data.provider:
                raise HTTPException(status_code=400, detail="provider is required")
            request = await manager.get_authorization_url(
                data.provider,
                tenant.id,
                data.redirect_uri or settings.oauth_redirect_uri,
                reconnect=data.reconnect,
                connection_id=data.connection_id,
            )
            return {
                "authorizationUrl": request.url,
                "state": request.state,
                "provider": request.provider,
                "connectionId": str(request.connection_id),
            }

        if data.action in ("map-entity", "unmap-entity"):
            if data.mapping_id is None:
                raise HTTPException(status_code=400, detail="mappingId is required")
            if data.action == "unmap-entity":
                mapping = await reconciler.unmap_entity(tenant.id, data.mapping_id)
            else:
                if data.internal_id is None:
                    raise HTTPException(status_code=400, detail="internalId is required")
                mapping = await reconciler.map_entity(tenant.id, data.mapping_id, data.internal_id)
            return {"success": True, "mapping": serialize_mapping(mapping)}

        if data.connection_id is None:
            raise HTTPException(status_code=400, detail="connectionId is required")

        if data.action == "verify":
            result = await manager.verify_connection(tenant.id, data.connection_id)
            return {
                "valid": result.valid,
                "status": result.status,
                "accountName": result.account_name,
                "error": result.error,
            }

        # auto-match
        connection = await manager.get_connection(tenant.id, data.connection_id)
        response = {"success": True}
        if data.entity_type in (None, EntityType.VEHICLE):
            response["vehicles"] = (await reconciler.auto_match_vehicles(tenant.id, connection.id)).to_dict()
        if data.entity_type in (None, EntityType.DRIVER):
            response["drivers"] = (await reconciler.auto_match_drivers(tenant.id, connection.id)).to_dict()
        await db.commit()
        return response
    except (EldError, ProviderError, UnsupportedProviderError) as exc:
        raise http_error(exc) from exc


@router.delete("/connections")
async def remove_connection(
    data: ConnectionDelete,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    manager = ConnectionManager(db, provider_factory=provider_factory)
    try:
        if data.permanent:
            await manager.delete_connection(tenant.id, data.connection_id)
            return {"success": True, "deleted": True}
        connection = await manager.disconnect_connection(tenant.id, data.connection_id, data.reason)
    except EldError as exc:
        raise http_error(exc) from exc
    return {"success": True, "deleted": False, "connection": serialize_connection(connection)}


@router.get("/callback")
async def oauth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization was not granted: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="code and state are required")

    manager = ConnectionManager(db, provider_factory=provider_factory)
    try:
        connection = await manager.complete_authorization(code, state, settings.oauth_redirect_uri)
    except (EldError, ProviderError, UnsupportedProviderError) as exc:
        raise http_error(exc) from exc
    return {"success": True, "connection": serialize_connection(connection)}
