"""Signed OAuth ``state`` parameter.

The state is ``base64url(json).hex_hmac``; the JSON carries the tenant, the
provider, the connection being (re)authorized and the issue time.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass

from ..config import settings
from ..errors import InvalidOAuthState


@dataclass(frozen=True)
class OAuthState:
    tenant_id: str
    provider: str
    connection_id: str | None
    issued_at: int
    reconnect: bool = False


def _sign(payload: bytes) -> str:
    return hmac.new(settings.signing_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def encode_state(
    tenant_id: str,
    provider: str,
    connection_id: str | None = None,
    reconnect: bool = False,
) -> str:
    body = {
        "tenant": tenant_id,
        "provider": provider,
        "connection": connection_id,
        "reconnect": reconnect,
        "timestamp": int(time.time()),
        "nonce": secrets.token_urlsafe(8),
    }
    payload = base64.urlsafe_b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
    return f"{payload.decode('ascii')}.{_sign(payload)}"


def decode_state(state: str, max_age_seconds: int | None = None) -> OAuthState:
    """Verify and decode a state value; raises ``InvalidOAuthState``."""
    max_age = settings.oauth_state_max_age_seconds if max_age_seconds is None else max_age_seconds
    payload_text, _, signature = (state or "").partition(".")
    if not payload_text or not signature:
        raise InvalidOAuthState("Malformed OAuth state")

    payload = payload_text.encode("ascii", errors="replace")
    if not hmac.compare_digest(signature, _sign(payload)):
        raise InvalidOAuthState("OAuth state signature mismatch")

    try:
        body = json.loads(base64.urlsafe_b64decode(payload))
        issued_at = int(body["timestamp"])
        tenant_id = str(body["tenant"])
        provider = str(body["provider"])
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidOAuthState("Malformed OAuth state") from exc

    if time.time() - issued_at > max_age:
        raise InvalidOAuthState("OAuth state expired")

    return OAuthState(
        tenant_id=tenant_id,
        provider=provider,
        connection_id=body.get("connection"),
        issued_at=issued_at,
        reconnect=bool(body.get("reconnect")),
    )
