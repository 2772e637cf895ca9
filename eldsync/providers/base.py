"""Uniform capability interface over ELD vendor REST APIs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar
from urllib.parse import urlencode

import httpx

from ..config import settings
from ..timeutil import utcnow
from .errors import (
    AuthExpiredError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None  # seconds
    token_type: str = "Bearer"
    scope: str = ""
    _created_at: datetime = field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime | None:
        if self.expires_in is None:
            return None
        return self._created_at + timedelta(seconds=self.expires_in)


@dataclass
class AccountInfo:
    account_id: str | None
    name: str | None = None


@dataclass
class ExternalVehicle:
    external_id: str
    name: str | None = None
    vin: str | None = None
    license_plate: str | None = None
    make: str | None = None
    model: str | None = None
    year: int | None = None
    odometer_miles: float | None = None
    engine_hours: float | None = None


@dataclass
class ExternalDriver:
    external_id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    license_number: str | None = None
    license_state: str | None = None

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass
class HosLogEntry:
    external_driver_id: str
    duty_status: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    external_vehicle_id: str | None = None
    location: str | None = None
    violations: list[str] = field(default_factory=list)


@dataclass
class JurisdictionMileage:
    """Miles driven in one jurisdiction over the requested period.

    ``year``/``month`` are set when the vendor reports per month; otherwise the
    sync engine spreads the miles evenly across the requested months.
    """

    external_vehicle_id: str
    jurisdiction: str
    miles: float
    fuel_gallons: float | None = None
    year: int | None = None
    month: int | None = None


@dataclass
class LocationSnapshot:
    external_vehicle_id: str
    latitude: float
    longitude: float
    recorded_at: datetime
    speed_mph: float | None = None
    heading: float | None = None
    odometer_miles: float | None = None
    address: str | None = None


@dataclass
class FaultCodeRecord:
    external_vehicle_id: str
    code: str
    first_observed_at: datetime
    description: str | None = None
    severity: str = "info"
    source: str | None = None
    last_observed_at: datetime | None = None
    is_active: bool = True


@dataclass
class FetchResult(Generic[T]):
    records: list[T]

    @property
    def count(self) -> int:
        return len(self.records)


DUTY_STATUS_MAP = {
    # Motive
    "d": "driving",
    "on": "on_duty",
    "off": "off_duty",
    "sb": "sleeper",
    "driving": "driving",
    "on_duty_not_driving": "on_duty",
    "on_duty": "on_duty",
    "off_duty": "off_duty",
    "sleeper_berth": "sleeper",
    "sleeper": "sleeper",
    # Samsara
    "ondutydriving": "driving",
    "ondutynotdriving": "on_duty",
    "offduty": "off_duty",
    "sleeperberth": "sleeper",
}

FAULT_SEVERITY_MAP = {
    "critical": "critical",
    "mil": "critical",
    "red": "critical",
    "high": "high",
    "medium": "warning",
    "warning": "warning",
    "amber": "warning",
    "low": "info",
    "info": "info",
    "white": "info",
}


def normalize_duty_status(raw: str | None) -> str:
    return DUTY_STATUS_MAP.get((raw or "").strip().lower(), "unknown")


def normalize_severity(raw: str | None) -> str:
    return FAULT_SEVERITY_MAP.get((raw or "").strip().lower(), "info")


def _as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class BaseProvider(ABC):
    """One vendor adapter.

    Subclasses declare ``provider_id``, ``display_name``, ``features`` and the
    OAuth endpoints, and implement the fetch capabilities. Calls that fail
    raise a ``ProviderError`` subclass.
    """

    provider_id: str = ""
    display_name: str = ""
    features: tuple[str, ...] = ()
    auth_url: str = ""
    token_url: str = ""
    scopes: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        access_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self.access_token = access_token
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.base_url = base_url or self.default_base_url()
        self._client = httpx.AsyncClient(
            headers={"Accept": "application/json"},
            timeout=timeout if timeout is not None else settings.provider_timeout_seconds,
            transport=transport,
        )

    @classmethod
    @abstractmethod
    def default_base_url(cls) -> str:
        """API root for this vendor."""

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    # -- OAuth -----------------------------------------------------------

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        if not refresh_token:
            raise AuthExpiredError("No refresh token available")
        tokens = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def _token_request(self, data: dict[str, str]) -> TokenSet:
        try:
            response = await self._client.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Token request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientError(f"Token request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise AuthExpiredError("Token request rejected", response.status_code, _json_or_none(response))
        self._raise_for_status(response)

        payload = response.json()
        if not payload.get("access_token"):
            raise AuthExpiredError("Token response missing access_token", response.status_code, payload)
        self.access_token = payload["access_token"]
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=_as_int(payload.get("expires_in")),
            token_type=payload.get("token_type", "Bearer"),
            scope=payload.get("scope", ""),
        )

    # -- HTTP ------------------------------------------------------------

    async def _request(self, method: str, path: str, params: dict | None = None) -> dict[str, Any]:
        """Make an authenticated API request with typed error mapping."""
        if not self.access_token:
            raise AuthExpiredError("No access token for provider request")
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.provider_id} request timed out: {path}") from e
        except httpx.RequestError as e:
            raise TransientError(f"{self.provider_id} request failed: {e}") from e

        self._raise_for_status(response)
        return response.json() if response.content else {}

    async def _get(self, path: str, params: dict | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        body = _json_or_none(response)
        logger.warning("%s API %s returned %s", self.provider_id, response.request.url.path, status)
        if status in (401, 403):
            raise AuthExpiredError("Invalid or expired access token", status, body)
        if status == 404:
            raise NotFoundError("Resource not found", status, body)
        if status == 429:
            raise RateLimitedError("Rate limit exceeded. Wait and retry.", status, body)
        if status >= 500:
            raise TransientError(f"{self.provider_id} server error", status, body)
        raise UnknownProviderError(f"{self.provider_id} API error: {status}", status, body)

    # -- Capabilities ----------------------------------------------------

    def supports(self, feature: str) -> bool:
        return feature in self.features

    @abstractmethod
    async def fetch_account(self) -> AccountInfo:
        """Cheap read-only call used to verify credentials."""

    @abstractmethod
    async def fetch_vehicles(self) -> FetchResult[ExternalVehicle]: ...

    @abstractmethod
    async def fetch_drivers(self) -> FetchResult[ExternalDriver]: ...

    @abstractmethod
    async def fetch_hos_logs(self, start: str, end: str) -> FetchResult[HosLogEntry]: ...

    @abstractmethod
    async def fetch_jurisdiction_mileage(
        self, start_month: str, end_month: str
    ) -> FetchResult[JurisdictionMileage]: ...

    @abstractmethod
    async def fetch_vehicle_locations(self) -> FetchResult[LocationSnapshot]: ...

    @abstractmethod
    async def fetch_fault_codes(self) -> FetchResult[FaultCodeRecord]: ...


def _json_or_none(response: httpx.Response) -> dict | None:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None
