"""Provider registry: the set of supported vendors and how to build them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ..config import settings
from .base import BaseProvider
from .errors import UnsupportedProviderError
from .motive import MotiveProvider
from .samsara import SamsaraProvider

ProviderFactory = Callable[..., BaseProvider]

_REGISTRY: dict[str, type[BaseProvider]] = {}


@dataclass(frozen=True)
class ProviderInfo:
    id: str
    name: str
    features: tuple[str, ...]
    configured: bool


def register_provider(provider_cls: type[BaseProvider]) -> type[BaseProvider]:
    """Add a vendor adapter; callers never branch on provider ids."""
    _REGISTRY[provider_cls.provider_id] = provider_cls
    return provider_cls


register_provider(MotiveProvider)
register_provider(SamsaraProvider)


def is_supported(provider_id: str) -> bool:
    return provider_id in _REGISTRY


def get_provider_class(provider_id: str) -> type[BaseProvider]:
    try:
        return _REGISTRY[provider_id]
    except KeyError:
        raise UnsupportedProviderError(provider_id) from None


def _credentials(provider_id: str) -> tuple[str | None, str | None]:
    return (
        getattr(settings, f"{provider_id}_client_id", None),
        getattr(settings, f"{provider_id}_client_secret", None),
    )


def get_provider_info(provider_id: str) -> ProviderInfo:
    provider_cls = get_provider_class(provider_id)
    client_id, client_secret = _credentials(provider_id)
    return ProviderInfo(
        id=provider_cls.provider_id,
        name=provider_cls.display_name,
        features=provider_cls.features,
        configured=bool(client_id and client_secret),
    )


def list_providers() -> list[ProviderInfo]:
    return [get_provider_info(provider_id) for provider_id in sorted(_REGISTRY)]


def create_provider(provider_id: str, *, access_token: str | None = None, **kwargs) -> BaseProvider:
    """Build an adapter with the app's OAuth client credentials."""
    provider_cls = get_provider_class(provider_id)
    client_id, client_secret = _credentials(provider_id)
    return provider_cls(
        access_token=access_token,
        client_id=kwargs.pop("client_id", None) or client_id,
        client_secret=kwargs.pop("client_secret", None) or client_secret,
        **kwargs,
    )
