"""Shared router dependencies and domain error translation."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from ..errors import (
    ConnectionNotActive, ConnectionNotFound, EldError, FeatureNotEntitled, IllegalTransition,
    InvalidOAuthState, InvalidSyncWindow, InvalidSignature, MappingConflict, SyncInProgress,
)
from ..models.enums import DataType
from ..providers import ProviderError, ProviderFactory, UnsupportedProviderError, create_provider
from ..services.entitlements import required_tier

logger = logging.getLogger(__name__)

_STATUS = (
    (ConnectionNotFound, 404),
    (ConnectionNotActive, 400),
    (InvalidOAuthState, 400),
    (InvalidSyncWindow, 400),
    (FeatureNotEntitled, 403),
    (SyncInProgress, 429),
    (IllegalTransition, 409),
    (MappingConflict, 409),
    (InvalidSignature, 401),
)


def get_provider_factory() -> ProviderFactory:
    """Overridden in tests to inject fake adapters."""
    return create_provider


def http_error(exc: Exception) -> HTTPException:
    """HTTPException for a domain or provider error; provider payloads never leak."""
    if isinstance(exc, SyncInProgress):
        return HTTPException(
            status_code=429,
            detail={
                "error": exc.message,
                "syncJobId": str(exc.job_id) if exc.job_id else None,
                "dataType": exc.data_type,
            },
        )
    if isinstance(exc, FeatureNotEntitled):
        detail = {"error": exc.message, "dataType": exc.data_type, "tier": exc.tier}
        if exc.data_type in {d.value for d in DataType if d != DataType.ALL}:
            detail["requiredTier"] = required_tier(DataType(exc.data_type)).value
        return HTTPException(status_code=403, detail=detail)
    if isinstance(exc, UnsupportedProviderError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderError):
        logger.warning("Provider error surfaced to caller: %s", exc)
        return HTTPException(status_code=502, detail=exc.public_message)
    if isinstance(exc, EldError):
        for error_cls, status_code in _STATUS:
            if isinstance(exc, error_cls):
                return HTTPException(status_code=status_code, detail=exc.message)
    raise exc
