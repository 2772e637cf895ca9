"""ELD vendor adapters behind one capability interface."""

from .base import (
    AccountInfo, BaseProvider, ExternalDriver, ExternalVehicle, FaultCodeRecord, FetchResult,
    HosLogEntry, JurisdictionMileage, LocationSnapshot, TokenSet,
)
from .errors import (
    AuthExpiredError, NotFoundError, ProviderError, RateLimitedError, TransientError,
    UnknownProviderError, UnsupportedProviderError,
)
from .registry import (
    ProviderFactory, ProviderInfo, create_provider, get_provider_info, is_supported,
    list_providers, register_provider,
)

__all__ = [
    "AccountInfo", "BaseProvider", "ExternalDriver", "ExternalVehicle", "FaultCodeRecord",
    "FetchResult", "HosLogEntry", "JurisdictionMileage", "LocationSnapshot", "TokenSet",
    "AuthExpiredError", "NotFoundError", "ProviderError", "RateLimitedError", "TransientError",
    "UnknownProviderError", "UnsupportedProviderError",
    "ProviderFactory", "ProviderInfo", "create_provider", "get_provider_info", "is_supported",
    "list_providers", "register_provider",
]
