"""FastAPI dependencies for tenant resolution."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models.tenant import Tenant


async def get_current_tenant(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Tenant:
    """Resolve the tenant slug header to a Tenant, checking its access token if one is configured."""
    slug = request.headers.get(settings.tenant_header, "").strip()
    if not slug:
        raise HTTPException(status_code=400, detail=f"{settings.tenant_header} header required")

    tenant = (await db.execute(select(Tenant).where(Tenant.slug == slug))).scalar_one_or_none()
    if not tenant:
        raise HTTPException(status_code=404, detail=f"Tenant '{slug}' not found")

    expected_token = settings.tenant_access_tokens_map.get(slug)
    provided_token = request.headers.get(settings.tenant_token_header, "").strip()
    if expected_token:
        if not provided_token or not hmac.compare_digest(provided_token, expected_token):
            raise HTTPException(status_code=403, detail="Tenant access token required")
    elif settings.tenant_auth_required:
        raise HTTPException(status_code=403, detail="Tenant authorization required")

    return tenant
