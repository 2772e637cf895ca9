"""Typed provider call failures.

The sync engine decides retry vs propagate by ``kind``; raw vendor payloads
stay on the exception and are never shown to API callers.
"""

from __future__ import annotations


class ProviderError(Exception):
    """Base exception for ELD vendor API errors."""

    kind = "unknown"

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Sanitized message safe to persist and show on a dashboard."""
        return _PUBLIC_MESSAGES.get(self.kind, "Provider request failed")


class AuthExpiredError(ProviderError):
    """Credential rejected; needs a token refresh or a reconnect."""

    kind = "auth_expired"


class RateLimitedError(ProviderError):
    kind = "rate_limited"


class NotFoundError(ProviderError):
    kind = "not_found"


class TransientError(ProviderError):
    """Network failure, timeout or vendor 5xx."""

    kind = "transient"


class UnknownProviderError(ProviderError):
    kind = "unknown"


class UnsupportedProviderError(Exception):
    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unsupported ELD provider: {provider_id}")


_PUBLIC_MESSAGES = {
    "auth_expired": "Provider authorization expired; reconnect the integration",
    "rate_limited": "Provider rate limit reached; will retry on the next cycle",
    "not_found": "Provider resource not found",
    "transient": "Provider temporarily unavailable; will retry on the next cycle",
    "unknown": "Provider request failed",
}
