"""Inbound vendor webhook signature verification."""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException, Request

from ..config import settings
from ..errors import InvalidSignature

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-terminal-signature", "x-webhook-signature")


def expected_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def check_signature(body: bytes, provided: str, secret: str) -> None:
    """Raise ``InvalidSignature`` unless ``provided`` is the body's HMAC-SHA256."""
    provided = provided.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    if not provided or not hmac.compare_digest(provided, expected_signature(body, secret)):
        raise InvalidSignature("Invalid webhook signature")


def verify_webhook_signature(request: Request, body: bytes) -> None:
    """Verify the raw body against the shared secret.

    Without a configured secret, requests are refused when the deployment
    is production or fail-closed, and let through with a warning otherwise.
    """
    secret = settings.webhook_secret.strip()
    if not secret:
        if settings.security_fail_closed or settings.is_production:
            raise HTTPException(status_code=503, detail="Webhook verification is not configured")
        logger.warning("ELD_WEBHOOK_SECRET is not set; accepting unsigned webhook")
        return

    provided = ""
    for header in SIGNATURE_HEADERS:
        provided = request.headers.get(header, "").strip()
        if provided:
            break
    try:
        check_signature(body, provided, secret)
    except InvalidSignature as exc:
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail=exc.message) from exc
