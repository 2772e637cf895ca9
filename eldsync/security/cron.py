"""Bearer-secret guard for the scheduler endpoint."""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from ..config import settings


def require_cron_secret(request: Request) -> None:
    """401 on a missing or wrong bearer token; 500 when no secret is configured."""
    expected = settings.cron_secret.strip()
    if not expected:
        raise HTTPException(status_code=500, detail="Cron secret is not configured")

    auth = request.headers.get("authorization", "")
    provided = auth[7:].strip() if auth.lower().startswith("bearer ") else ""
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
