"""Vendor adapter tests against mocked HTTP transports."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from eldsync.providers import (
    AuthExpiredError, NotFoundError, RateLimitedError, TransientError, UnknownProviderError,
    UnsupportedProviderError, create_provider, get_provider_info, list_providers,
)
from eldsync.providers.base import normalize_duty_status, normalize_severity
from eldsync.providers.motive import MotiveProvider
from eldsync.providers.samsara import METERS_TO_MILES, SamsaraProvider


def _motive(handler, **kwargs) -> MotiveProvider:
    return MotiveProvider(
        access_token="tok",
        base_url="https://motive.test/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _samsara(handler) -> SamsaraProvider:
    return SamsaraProvider(
        access_token="tok",
        base_url="https://samsara.test",
        transport=httpx.MockTransport(handler),
    )


# -- Motive ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_motive_vehicles_follow_page_numbers_until_short_page():
    pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer tok"
        page = request.url.params["page_no"]
        pages.append(page)
        if page == "1":
            rows = [{"vehicle": {"id": i, "number": f"T{i}"}} for i in range(100)]
        else:
            rows = [
                {
                    "vehicle": {
                        "id": 500,
                        "number": "Truck 500",
                        "vin": "1FUJGLDR5CLBP8834",
                        "license_plate_number": "TX-500",
                        "year": "2021",
                        "current_odometer": 88000.5,
                    }
                }
            ]
        return httpx.Response(200, json={"vehicles": rows})

    provider = _motive(handler)
    try:
        result = await provider.fetch_vehicles()
    finally:
        await provider.aclose()

    assert pages == ["1", "2"]
    assert result.count == 101
    last = result.records[-1]
    assert last.external_id == "500"
    assert last.name == "Truck 500"
    assert last.license_plate == "TX-500"
    assert last.year == 2021
    assert last.odometer_miles == 88000.5


@pytest.mark.asyncio
async def test_motive_hos_logs_normalize_status_and_duration():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/hos_logs"
        assert request.url.params["start_date"] == "2026-05-01"
        return httpx.Response(
            200,
            json={
                "hos_logs": [
                    {
                        "hos_log": {
                            "driver": {"id": 7},
                            "vehicle": {"id": 9},
                            "status": "D",
                            "start_time": "2026-05-01T08:00:00Z",
                            "duration": 5400,
                            "violations": [{"type": "11_hour"}],
                        }
                    },
                    {"hos_log": {"driver": {}, "status": "on", "start_time": "2026-05-01T10:00:00Z"}},
                ]
            },
        )

    provider = _motive(handler)
    try:
        result = await provider.fetch_hos_logs("2026-05-01", "2026-05-02")
    finally:
        await provider.aclose()

    assert result.count == 1
    entry = result.records[0]
    assert entry.external_driver_id == "7"
    assert entry.external_vehicle_id == "9"
    assert entry.duty_status == "driving"
    assert entry.start_time == datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)
    assert entry.duration_minutes == 90
    assert entry.violations == ["11_hour"]


@pytest.mark.asyncio
async def test_motive_ifta_summary_queries_month_bounds():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["start_date"] == "2026-04-01"
        assert request.url.params["end_date"] == "2026-06-30"
        return httpx.Response(
            200,
            json={
                "ifta_summary": [
                    {
                        "vehicle": {"id": 3},
                        "jurisdiction_breakdown": [
                            {"jurisdiction": "tx", "distance": 300, "fuel": 40.5},
                            {"jurisdiction": None, "distance": 10},
                        ],
                    }
                ]
            },
        )

    provider = _motive(handler)
    try:
        result = await provider.fetch_jurisdiction_mileage("2026-04", "2026-06")
    finally:
        await provider.aclose()

    assert [(r.external_vehicle_id, r.jurisdiction, r.miles, r.fuel_gallons) for r in result.records] == [
        ("3", "TX", 300.0, 40.5)
    ]


@pytest.mark.asyncio
async def test_motive_fault_codes_map_severity_and_activity():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "fault_codes": [
                    {
                        "fault_code": {
                            "vehicle": {"id": 4},
                            "code": "SPN 100",
                            "severity": "MIL",
                            "first_observed_at": "2026-05-01T00:00:00Z",
                            "is_active": False,
                        }
                    }
                ]
            },
        )

    provider = _motive(handler)
    try:
        result = await provider.fetch_fault_codes()
    finally:
        await provider.aclose()

    fault = result.records[0]
    assert fault.severity == "critical"
    assert fault.is_active is False
    assert fault.last_observed_at == fault.first_observed_at


@pytest.mark.asyncio
async def test_motive_account_comes_from_company():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user": {"company": {"id": 42, "name": "Acme Freight"}}})

    provider = _motive(handler)
    try:
        account = await provider.fetch_account()
    finally:
        await provider.aclose()

    assert account.account_id == "42"
    assert account.name == "Acme Freight"


@pytest.mark.parametrize(
    ("status", "error_cls", "kind"),
    [
        (401, AuthExpiredError, "auth_expired"),
        (403, AuthExpiredError, "auth_expired"),
        (404, NotFoundError, "not_found"),
        (429, RateLimitedError, "rate_limited"),
        (503, TransientError, "transient"),
        (418, UnknownProviderError, "unknown"),
    ],
)
@pytest.mark.asyncio
async def test_http_status_maps_to_typed_error(status, error_cls, kind):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error_message": "vendor internals"})

    provider = _motive(handler)
    try:
        with pytest.raises(error_cls) as excinfo:
            await provider.fetch_account()
    finally:
        await provider.aclose()

    assert excinfo.value.kind == kind
    assert excinfo.value.status_code == status
    assert "vendor internals" not in excinfo.value.public_message


@pytest.mark.asyncio
async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _motive(handler)
    try:
        with pytest.raises(TransientError):
            await provider.fetch_vehicles()
    finally:
        await provider.aclose()


@pytest.mark.asyncio
async def test_missing_access_token_is_auth_expired():
    provider = MotiveProvider(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    try:
        with pytest.raises(AuthExpiredError):
            await provider.fetch_account()
    finally:
        await provider.aclose()


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_vendor_omits_it():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 7200})

    provider = _motive(handler, client_id="cid", client_secret="secret")
    try:
        tokens = await provider.refresh_token("old-refresh")
    finally:
        await provider.aclose()

    assert seen["grant_type"] == "refresh_token"
    assert seen["refresh_token"] == "old-refresh"
    assert seen["client_id"] == "cid"
    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "old-refresh"
    assert tokens.expires_at is not None
    assert provider.access_token == "new-access"


@pytest.mark.asyncio
async def test_rejected_token_exchange_is_auth_expired():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    provider = _motive(handler)
    try:
        with pytest.raises(AuthExpiredError):
            await provider.exchange_authorization_code("bad-code", "http://localhost/callback")
    finally:
        await provider.aclose()


def test_authorization_url_carries_state_and_scopes():
    provider = MotiveProvider(client_id="cid")
    url = httpx.URL(provider.authorization_url("http://localhost/callback", "state-123"))

    assert url.host == "api.gomotive.com"
    assert url.params["client_id"] == "cid"
    assert url.params["state"] == "state-123"
    assert url.params["response_type"] == "code"
    assert "vehicles.read" in url.params["scope"]


# -- Samsara ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_samsara_follows_cursor_pagination():
    cursors: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = request.url.params.get("after")
        cursors.append(cursor)
        if cursor is None:
            return httpx.Response(
                200,
                json={
                    "data": [{"id": "11", "name": "Jane Q Public", "licenseNumber": "S99"}],
                    "pagination": {"endCursor": "c1", "hasNextPage": True},
                },
            )
        return httpx.Response(
            200,
            json={
                "data": [{"id": "12", "name": "Cher"}],
                "pagination": {"endCursor": "", "hasNextPage": False},
            },
        )

    provider = _samsara(handler)
    try:
        result = await provider.fetch_drivers()
    finally:
        await provider.aclose()

    assert cursors == [None, "c1"]
    jane, cher = result.records
    assert (jane.first_name, jane.last_name, jane.license_number) == ("Jane", "Q Public", "S99")
    assert (cher.first_name, cher.last_name) == ("Cher", None)


@pytest.mark.asyncio
async def test_samsara_converts_meters_to_miles():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [{"id": 5, "name": "Rig 5", "odometerMeters": 1000000}],
                "pagination": {"hasNextPage": False},
            },
        )

    provider = _samsara(handler)
    try:
        result = await provider.fetch_vehicles()
    finally:
        await provider.aclose()

    assert result.records[0].odometer_miles == pytest.approx(1000000 * METERS_TO_MILES)


@pytest.mark.asyncio
async def test_samsara_locations_accept_list_or_single_gps_point():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["types"] == "gps"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "1", "gps": {"time": "2026-05-01T12:00:00Z", "latitude": 30.1, "longitude": -97.7}},
                    {"id": "2", "gps": [{"time": "2026-05-01T12:05:00Z", "latitude": 31.0, "longitude": -96.0,
                                         "reverseGeo": {"formattedLocation": "Waco, TX"}}]},
                    {"id": "3", "gps": []},
                ],
                "pagination": {"hasNextPage": False},
            },
        )

    provider = _samsara(handler)
    try:
        result = await provider.fetch_vehicle_locations()
    finally:
        await provider.aclose()

    assert [s.external_vehicle_id for s in result.records] == ["1", "2"]
    assert result.records[1].address == "Waco, TX"


@pytest.mark.asyncio
async def test_samsara_fault_codes_flatten_readings():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "8",
                        "faultCodes": {
                            "time": "2026-05-02T09:00:00Z",
                            "faultCodes": [
                                {"faultCode": "P0420", "severity": "amber"},
                                {"dtcShortCode": "P0300", "severity": "red", "isActive": True},
                                {"description": "no code"},
                            ],
                        },
                    }
                ],
                "pagination": {"hasNextPage": False},
            },
        )

    provider = _samsara(handler)
    try:
        result = await provider.fetch_fault_codes()
    finally:
        await provider.aclose()

    assert [(f.code, f.severity) for f in result.records] == [("P0420", "warning"), ("P0300", "critical")]


# -- Registry and normalization --------------------------------------------


def test_registry_lists_supported_providers(monkeypatch):
    from eldsync.config import settings

    monkeypatch.setattr(settings, "motive_client_id", "cid")
    monkeypatch.setattr(settings, "motive_client_secret", "secret")
    monkeypatch.setattr(settings, "samsara_client_id", None)

    providers = {p.id: p for p in list_providers()}
    assert set(providers) == {"motive", "samsara"}
    assert providers["motive"].configured is True
    assert providers["samsara"].configured is False
    assert get_provider_info("samsara").name == "Samsara"


def test_unknown_provider_is_rejected():
    with pytest.raises(UnsupportedProviderError):
        create_provider("geotab")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("D", "driving"), ("ON", "on_duty"), ("sleeperBerth", "sleeper"), ("offDuty", "off_duty"), ("yard", "unknown")],
)
def test_duty_status_normalization(raw, expected):
    assert normalize_duty_status(raw) == expected


def test_unknown_severity_defaults_to_info():
    assert normalize_severity("purple") == "info"
    assert normalize_severity(None) == "info"
