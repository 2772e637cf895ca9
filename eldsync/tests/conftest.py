"""Async test fixtures for ELD sync tests using SQLite and a fake vendor."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from eldsync.config import settings
from eldsync.database import get_db, get_session_factory
from eldsync.models import Base, Driver, EldConnection, Tenant, Vehicle
from eldsync.providers import (
    AccountInfo, BaseProvider, ExternalDriver, ExternalVehicle, FaultCodeRecord, FetchResult,
    HosLogEntry, JurisdictionMileage, LocationSnapshot, TokenSet,
)
from eldsync.routers.deps import get_provider_factory


@dataclass
class FakeVendor:
    """Canned vendor state shared by every adapter the fake factory builds."""

    account: AccountInfo = field(default_factory=lambda: AccountInfo("acct-1", "Acme Trucking"))
    vehicles: list[ExternalVehicle] = field(default_factory=list)
    drivers: list[ExternalDriver] = field(default_factory=list)
    hos_logs: list[HosLogEntry] = field(default_factory=list)
    mileage: list[JurisdictionMileage] = field(default_factory=list)
    # Per-(start_month, end_month) answers; falls back to ``mileage``.
    mileage_by_period: dict[tuple[str, str], list[JurisdictionMileage]] = field(default_factory=dict)
    mileage_requests: list[tuple[str, str]] = field(default_factory=list)
    locations: list[LocationSnapshot] = field(default_factory=list)
    faults: list[FaultCodeRecord] = field(default_factory=list)
    failures: dict[str, list[Exception]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    access_tokens: list[str | None] = field(default_factory=list)
    opened: int = 0
    closed: int = 0

    def fail(self, method: str, *errors: Exception) -> None:
        """Raise ``errors`` from ``method``, one per call, then succeed."""
        self.failures.setdefault(method, []).extend(errors)


class FakeProvider(BaseProvider):
    provider_id = "motive"
    display_name = "Fake ELD"
    features = ("vehicles", "drivers", "hos", "ifta", "locations", "faults")
    auth_url = "https://vendor.test/oauth/authorize"
    token_url = "https://vendor.test/oauth/token"

    def __init__(self, vendor: FakeVendor, provider_id: str, **kwargs):
        super().__init__(**kwargs)
        self.vendor = vendor
        self.provider_id = provider_id
        vendor.opened += 1

    @classmethod
    def default_base_url(cls) -> str:
        return "https://vendor.test"

    async def aclose(self) -> None:
        self.vendor.closed += 1
        await super().aclose()

    async def _call(self, method: str, value):
        self.vendor.calls.append(method)
        self.vendor.access_tokens.append(self.access_token)
        pending = self.vendor.failures.get(method)
        if pending:
            raise pending.pop(0)
        return value

    async def exchange_authorization_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._call("exchange_authorization_code", TokenSet("access-1", "refresh-1", 3600))

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        tokens = await self._call("refresh_token", TokenSet("access-2", None, 3600))
        self.access_token = tokens.access_token
        return tokens

    async def fetch_account(self) -> AccountInfo:
        return await self._call("fetch_account", self.vendor.account)

    async def fetch_vehicles(self):
        return await self._call("fetch_vehicles", FetchResult(list(self.vendor.vehicles)))

    async def fetch_drivers(self):
        return await self._call("fetch_drivers", FetchResult(list(self.vendor.drivers)))

    async def fetch_hos_logs(self, start: str, end: str):
        return await self._call("fetch_hos_logs", FetchResult(list(self.vendor.hos_logs)))

    async def fetch_jurisdiction_mileage(self, start_month: str, end_month: str):
        self.vendor.mileage_requests.append((start_month, end_month))
        records = self.vendor.mileage_by_period.get((start_month, end_month), self.vendor.mileage)
        return await self._call("fetch_jurisdiction_mileage", FetchResult(list(records)))

    async def fetch_vehicle_locations(self):
        return await self._call("fetch_vehicle_locations", FetchResult(list(self.vendor.locations)))

    async def fetch_fault_codes(self):
        return await self._call("fetch_fault_codes", FetchResult(list(self.vendor.faults)))


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest.fixture
def provider_factory(vendor: FakeVendor):
    def factory(provider_id: str, *, access_token: str | None = None, **kwargs) -> FakeProvider:
        return FakeProvider(vendor, provider_id, access_token=access_token, **kwargs)

    return factory


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "environment", "test")
    monkeypatch.setattr(settings, "security_fail_closed", False)
    monkeypatch.setattr(settings, "webhook_secret", "")
    monkeypatch.setattr(settings, "cron_secret", "")
    monkeypatch.setattr(settings, "oauth_state_secret", "test-state-secret")
    monkeypatch.setattr(settings, "tenant_access_tokens", "")
    monkeypatch.setattr(settings, "tenant_auth_required", False)


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so each session gets its own connection, as in production.
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'eld.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _create_tenant(db: AsyncSession, slug: str = "acme", plan: str = "enterprise", **kwargs) -> Tenant:
    tenant = Tenant(id=uuid.uuid4(), name=slug.title(), slug=slug, plan=plan, **kwargs)
    db.add(tenant)
    await db.commit()
    return tenant


async def _create_connection(
    db: AsyncSession,
    tenant: Tenant,
    provider: str = "motive",
    status: str = "active",
    **kwargs,
) -> EldConnection:
    values = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_expires_at": datetime.now(timezone.utc) + timedelta(hours=2),
        "external_connection_id": f"ext-{uuid.uuid4().hex[:8]}",
    }
    values.update(kwargs)
    connection = EldConnection(tenant_id=tenant.id, provider=provider, status=status, **values)
    db.add(connection)
    await db.commit()
    return connection


@pytest.fixture
def make_tenant(db: AsyncSession):
    async def factory(slug: str = "acme", plan: str = "enterprise", **kwargs) -> Tenant:
        return await _create_tenant(db, slug, plan, **kwargs)

    return factory


@pytest.fixture
def make_connection(db: AsyncSession):
    async def factory(tenant: Tenant, provider: str = "motive", status: str = "active", **kwargs):
        return await _create_connection(db, tenant, provider, status, **kwargs)

    return factory


@pytest_asyncio.fixture
async def tenant(db: AsyncSession) -> Tenant:
    return await _create_tenant(db)


@pytest_asyncio.fixture
async def connection(db: AsyncSession, tenant: Tenant) -> EldConnection:
    return await _create_connection(db, tenant)


@pytest_asyncio.fixture
async def fleet(db: AsyncSession, tenant: Tenant) -> dict:
    """Two internal trucks and two drivers that line up with ``stocked_vendor``."""
    truck_1 = Vehicle(tenant_id=tenant.id, name="Truck 101", vin="1FUJGLDR5CLBP8834", license_plate="TX-1001")
    truck_2 = Vehicle(tenant_id=tenant.id, name="Truck 202", license_plate="TX-2002")
    alice = Driver(tenant_id=tenant.id, first_name="Alice", last_name="Nguyen", license_number="D1234567")
    bob = Driver(tenant_id=tenant.id, first_name="Bob", last_name="Okafor", email="bob@acme.test")
    db.add_all([truck_1, truck_2, alice, bob])
    await db.commit()
    return {"truck_1": truck_1, "truck_2": truck_2, "alice": alice, "bob": bob}


@pytest.fixture
def stocked_vendor(vendor: FakeVendor) -> FakeVendor:
    vendor.vehicles = [
        ExternalVehicle("v-1", name="Unit 101", vin="1FUJGLDR5CLBP8834", license_plate="TX1001"),
        ExternalVehicle("v-2", name="Truck 202", license_plate="TX-2002", odometer_miles=120500.0),
    ]
    vendor.drivers = [
        ExternalDriver("d-1", first_name="Alice", last_name="Nguyen", license_number="d1234567"),
        ExternalDriver("d-2", first_name="Robert", last_name="Okafor", email="BOB@acme.test"),
    ]
    return vendor


@pytest_asyncio.fixture
async def client(engine, provider_factory):
    """HTTPX async test client against the ELD app."""
    from eldsync.app import app

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: factory
    app.dependency_overrides[get_provider_factory] = lambda: provider_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
