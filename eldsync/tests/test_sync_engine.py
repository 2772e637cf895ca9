"""Sync engine tests: job locking, entitlements, failure isolation and data upserts."""

from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from eldsync.errors import ConnectionNotActive, FeatureNotEntitled, InvalidSyncWindow, SyncInProgress
from eldsync.models import (
    EldConnection, EntityMapping, FaultCode, HosDailyLog, IftaMileage, Notification, SyncJob, VehicleLocation,
)
from eldsync.models.enums import DataType, NotificationType, SyncTrigger
from eldsync.providers import (
    AuthExpiredError, FaultCodeRecord, HosLogEntry, JurisdictionMileage, LocationSnapshot,
    RateLimitedError, TransientError,
)
from eldsync.services.entitlements import effective_tier, entitled_data_types
from eldsync.sync import jobs, records
from eldsync.sync.engine import SyncEngine, SyncWindow
from eldsync.sync.jobs import claim_sync_job, get_sync_job, list_sync_jobs, reap_stuck_jobs
from eldsync.timeutil import quarter_ranges

WINDOW = SyncWindow("2026-05-01", "2026-05-02", "2026-04", "2026-06")
T0 = datetime(2026, 5, 1, 6, 0, tzinfo=timezone.utc)


async def _count(db, model, *where) -> int:
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def _notifications(db, tenant_id, notification_type) -> list[Notification]:
    stmt = select(Notification).where(
        Notification.tenant_id == tenant_id, Notification.notification_type == notification_type
    )
    return list((await db.execute(stmt)).scalars().all())


# -- Windows and entitlements ----------------------------------------------


def test_sync_all_window_covers_two_weeks_and_two_quarters():
    window = SyncWindow.for_sync_all(date(2026, 5, 14))
    assert (window.hos_start, window.hos_end) == ("2026-04-30", "2026-05-14")
    assert (window.ifta_start_month, window.ifta_end_month) == ("2026-01", "2026-06")


def test_scheduler_window_covers_one_day_and_current_quarter():
    window = SyncWindow.for_scheduler(date(2026, 1, 1))
    assert (window.hos_start, window.hos_end) == ("2025-12-31", "2026-01-01")
    assert (window.ifta_start_month, window.ifta_end_month) == ("2026-01", "2026-03")


@pytest.mark.asyncio
async def test_entitlements_follow_plan_and_subscription(make_tenant):
    basic = await make_tenant("basic-co", plan="basic")
    premium = await make_tenant("premium-co", plan="premium")
    trial = await make_tenant("trial-co", plan="fleet", subscription_status="trialing")
    lapsed = await make_tenant("lapsed-co", plan="enterprise", subscription_status="canceled")

    assert entitled_data_types(basic) == [DataType.VEHICLES, DataType.DRIVERS]
    assert DataType.IFTA in entitled_data_types(premium)
    assert DataType.LOCATIONS not in entitled_data_types(premium)
    assert entitled_data_types(trial) == [DataType.VEHICLES, DataType.DRIVERS]
    assert effective_tier(lapsed) is None
    assert entitled_data_types(lapsed) == []


# -- Narrow syncs ------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_vehicles_matches_and_applies_readings(db, tenant, connection, fleet, stocked_vendor, provider_factory):
    tenant_id, connection_id = tenant.id, connection.id
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_vehicles(tenant_id, connection_id)

    assert outcome.ok
    assert outcome.counts == {"fetched": 2, "created": 2, "updated": 0, "matched": 2, "ambiguous": 0}
    job = await get_sync_job(db, outcome.job_id)
    assert job.status == "completed"
    assert job.record_counts["fetched"] == 2
    truck = fleet["truck_2"]
    await db.refresh(truck)
    assert truck.odometer_miles == 120500.0
    assert truck.eld_external_id == "v-2"
    assert truck.eld_connection_id == connection_id
    await db.refresh(connection)
    assert connection.last_sync_at is not None
    assert stocked_vendor.closed == stocked_vendor.opened

    replay = await engine.sync_vehicles(tenant_id, connection_id)

    assert (replay.counts["created"], replay.counts["updated"]) == (0, 2)
    assert await _count(db, EntityMapping, EntityMapping.entity_type == "vehicle") == 2
    assert await _count(db, SyncJob, SyncJob.status == "completed") == 2


@pytest.mark.asyncio
async def test_provider_failure_fails_job_with_public_message(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.fail("fetch_vehicles", RateLimitedError("429 from vendor", 429, {"trace": "internal-id"}))
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_vehicles(tenant_id, connection_id)

    assert outcome.status == "failed"
    assert outcome.error_kind == "rate_limited"
    job = await get_sync_job(db, outcome.job_id)
    assert job.status == "failed"
    assert "internal-id" not in job.error_message
    assert job.error_message == outcome.error
    await db.refresh(connection)
    assert connection.status == "error"
    assert connection.error_message.startswith("vehicles:")
    assert len(await _notifications(db, tenant_id, NotificationType.ELD_CONNECTION_ERROR)) == 1


@pytest.mark.asyncio
async def test_auth_expired_refreshes_once_and_retries(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.fail("fetch_vehicles", AuthExpiredError("401", 401))
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_vehicles(tenant_id, connection_id)

    assert outcome.ok
    assert vendor.calls == ["fetch_vehicles", "refresh_token", "fetch_vehicles"]
    assert vendor.access_tokens[-1] == "access-2"
    await db.refresh(connection)
    assert connection.access_token == "access-2"
    assert connection.status == "active"


@pytest.mark.asyncio
async def test_second_auth_failure_is_not_retried_again(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.fail("fetch_vehicles", AuthExpiredError("401", 401), AuthExpiredError("401", 401))
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_vehicles(tenant_id, connection_id)

    assert outcome.status == "failed"
    assert outcome.error_kind == "auth_expired"
    assert vendor.calls.count("fetch_vehicles") == 2


@pytest.mark.asyncio
async def test_running_job_blocks_second_claim(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    running = SyncJob(
        tenant_id=tenant_id,
        connection_id=connection_id,
        data_type="vehicles",
        status="running",
        started_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    db.add(running)
    await db.commit()
    engine = SyncEngine(db, provider_factory=provider_factory)

    with pytest.raises(SyncInProgress) as excinfo:
        await engine.sync_vehicles(tenant_id, connection_id)

    assert excinfo.value.job_id == running.id
    assert vendor.calls == []
    assert await _count(db, SyncJob) == 1


@pytest.mark.asyncio
async def test_abandoned_running_job_is_superseded(db, tenant, connection, provider_factory):
    tenant_id, connection_id = tenant.id, connection.id
    stale = SyncJob(
        tenant_id=tenant_id,
        connection_id=connection_id,
        data_type="drivers",
        status="running",
        started_at=datetime.now(timezone.utc) - timedelta(minutes=20),
    )
    db.add(stale)
    await db.commit()
    stale_id = stale.id
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_drivers(tenant_id, connection_id)

    assert outcome.ok
    old = await get_sync_job(db, stale_id)
    assert old.status == "failed"
    assert "Abandoned" in old.error_message


@pytest.mark.asyncio
async def test_data_type_above_plan_creates_no_job(db, make_tenant, make_connection, provider_factory, vendor):
    small = await make_tenant("small-co", plan="basic")
    connection = await make_connection(small)
    engine = SyncEngine(db, provider_factory=provider_factory)

    with pytest.raises(FeatureNotEntitled) as excinfo:
        await engine.sync_hos_logs(small.id, connection.id, "2026-05-01", "2026-05-02")

    assert excinfo.value.data_type == "hos"
    assert excinfo.value.tier == "basic"
    assert await _count(db, SyncJob) == 0
    assert vendor.opened == 0


@pytest.mark.asyncio
async def test_disconnected_connection_is_not_synced(db, tenant, make_connection, provider_factory):
    connection = await make_connection(tenant, status="disconnected")
    engine = SyncEngine(db, provider_factory=provider_factory)

    with pytest.raises(ConnectionNotActive):
        await engine.sync_vehicles(tenant.id, connection.id)


# -- Hours of service --------------------------------------------------------


@pytest.mark.asyncio
async def test_hos_sync_builds_daily_logs_and_flags_violations(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.hos_logs = [
        HosLogEntry("d-1", "on_duty", T0, duration_minutes=200),
        HosLogEntry("d-1", "driving", T0 + timedelta(hours=4), duration_minutes=700, external_vehicle_id="v-1"),
        HosLogEntry("d-1", "off_duty", T0 + timedelta(hours=16), end_time=T0 + timedelta(hours=17)),
        HosLogEntry("d-2", "driving", T0, duration_minutes=300),
    ]
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_hos_logs(tenant_id, connection_id, "2026-05-01", "2026-05-02")

    assert outcome.ok
    assert outcome.counts == {
        "fetched": 4, "created": 4, "updated": 0, "daily_logs": 2, "violations": 1, "notifications": 1,
    }
    daily = (
        await db.execute(select(HosDailyLog).where(HosDailyLog.external_driver_id == "d-1"))
    ).scalar_one()
    assert (daily.driving_minutes, daily.on_duty_minutes, daily.off_duty_minutes) == (700, 200, 60)
    assert daily.has_violation is True
    assert daily.violations == ["11-hour driving limit exceeded", "14-hour on-duty limit exceeded"]
    notes = await _notifications(db, tenant_id, NotificationType.HOS_VIOLATION_OCCURRED)
    assert [n.entity_id for n in notes] == [str(daily.id)]

    replay = await engine.sync_hos_logs(tenant_id, connection_id, "2026-05-01", "2026-05-02")

    assert replay.counts["created"] == 0
    assert replay.counts["updated"] == 4
    assert replay.counts["notifications"] == 0
    assert await _count(db, HosDailyLog) == 2


@pytest.mark.asyncio
async def test_vendor_reported_violations_are_kept(db, tenant, connection, provider_factory, vendor):
    vendor.hos_logs = [HosLogEntry("d-3", "driving", T0, duration_minutes=60, violations=["30_minute_break"])]
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_hos_logs(tenant.id, connection.id, "2026-05-01", "2026-05-02")

    assert outcome.counts["violations"] == 1
    daily = (await db.execute(select(HosDailyLog))).scalar_one()
    assert daily.violations == ["30_minute_break"]


# -- IFTA ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ifta_period_totals_spread_over_months(db, tenant, connection, provider_factory, vendor):
    vendor.mileage = [
        JurisdictionMileage("v-1", "TX", 300.0, fuel_gallons=30.0),
        JurisdictionMileage("v-1", "OK", 50.0, year=2026, month=5),
    ]
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_ifta_mileage(tenant.id, connection.id, "2026-04", "2026-06")

    assert outcome.counts == {"fetched": 2, "created": 4, "updated": 0}
    rows = (
        await db.execute(select(IftaMileage).order_by(IftaMileage.jurisdiction, IftaMileage.month))
    ).scalars().all()
    assert [(r.jurisdiction, r.month, r.miles, r.quarter) for r in rows] == [
        ("OK", 5, 50.0, 2),
        ("TX", 4, 100.0, 2),
        ("TX", 5, 100.0, 2),
        ("TX", 6, 100.0, 2),
    ]
    assert rows[1].fuel_gallons == 10.0

    replay = await engine.sync_ifta_mileage(tenant.id, connection.id, "2026-04", "2026-06")

    assert replay.counts == {"fetched": 2, "created": 0, "updated": 4}
    assert await _count(db, IftaMileage) == 4


# -- Locations and fault codes -----------------------------------------------


@pytest.mark.asyncio
async def test_locations_update_latest_vehicle_position(db, tenant, connection, fleet, stocked_vendor, provider_factory):
    tenant_id, connection_id = tenant.id, connection.id
    engine = SyncEngine(db, provider_factory=provider_factory)
    await engine.sync_vehicles(tenant_id, connection_id)
    stocked_vendor.locations = [
        LocationSnapshot("v-2", 32.7, -97.3, T0 + timedelta(minutes=5), speed_mph=61.0),
        LocationSnapshot("v-2", 32.5, -97.1, T0),
    ]

    outcome = await engine.sync_vehicle_locations(tenant_id, connection_id)

    assert outcome.counts == {"fetched": 2, "created": 2, "updated": 0}
    truck = fleet["truck_2"]
    await db.refresh(truck)
    assert truck.last_location["latitude"] == 32.7
    assert truck.last_location["speedMph"] == 61.0

    replay = await engine.sync_vehicle_locations(tenant_id, connection_id)

    assert replay.counts == {"fetched": 2, "created": 0, "updated": 2}
    assert await _count(db, VehicleLocation) == 2


@pytest.mark.asyncio
async def test_fault_codes_notify_once_and_count_recurrences(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.faults = [
        FaultCodeRecord("v-1", "P0300", T0, description="Misfire", severity="critical"),
        FaultCodeRecord("v-1", "P0420", T0, severity="warning"),
    ]
    engine = SyncEngine(db, provider_factory=provider_factory)

    first = await engine.sync_fault_codes(tenant_id, connection_id)

    assert first.counts == {"fetched": 2, "created": 2, "updated": 0, "notifications": 1}

    vendor.faults[0] = FaultCodeRecord(
        "v-1", "P0300", T0, description="Misfire", severity="critical", last_observed_at=T0 + timedelta(hours=3)
    )
    second = await engine.sync_fault_codes(tenant_id, connection_id)

    assert second.counts == {"fetched": 2, "created": 0, "updated": 2, "notifications": 0}
    misfire = (
        await db.execute(
            select(FaultCode).where(FaultCode.code == "P0300").execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert misfire.occurrence_count == 2
    assert misfire.notified_at is not None
    notes = await _notifications(db, tenant_id, NotificationType.VEHICLE_FAULT_CODE)
    assert len(notes) == 1
    assert notes[0].urgency == "critical"


# -- sync_all ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_all_skips_types_above_plan(db, make_tenant, make_connection, provider_factory, vendor):
    small = await make_tenant("small-co", plan="basic")
    connection = await make_connection(small)
    engine = SyncEngine(db, provider_factory=provider_factory)

    result = await engine.sync_all(small.id, connection.id, window=WINDOW)

    assert [o.data_type for o in result.outcomes] == [DataType.VEHICLES, DataType.DRIVERS]
    assert result.skipped == [DataType.HOS, DataType.IFTA, DataType.LOCATIONS, DataType.FAULTS]
    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["partial"] is False
    assert set(payload["results"]) == {"vehicles", "drivers"}
    umbrella = await get_sync_job(db, result.job_id)
    assert (umbrella.data_type, umbrella.status) == ("all", "completed")


@pytest.mark.asyncio
async def test_sync_all_isolates_a_failing_type(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.fail("fetch_vehicle_locations", TransientError("gateway timeout", 504))
    engine = SyncEngine(db, provider_factory=provider_factory)

    result = await engine.sync_all(tenant_id, connection_id, SyncTrigger.SCHEDULER, WINDOW)

    statuses = {o.data_type.value: o.status for o in result.outcomes}
    assert statuses == {
        "vehicles": "completed",
        "drivers": "completed",
        "hos": "completed",
        "ifta": "completed",
        "locations": "failed",
        "faults": "completed",
    }
    assert result.partial is True
    assert result.success is True
    assert "fetch_fault_codes" in vendor.calls
    await db.refresh(connection)
    assert connection.status == "error"
    assert connection.error_message.startswith("locations:")
    umbrella = await get_sync_job(db, result.job_id)
    assert umbrella.status == "completed"
    assert umbrella.trigger == "scheduler"
    jobs = await list_sync_jobs(db, tenant_id, connection_id=connection_id)
    assert len(jobs) == 7


@pytest.mark.asyncio
async def test_sync_all_fails_umbrella_when_everything_fails(db, make_tenant, make_connection, provider_factory, vendor):
    small = await make_tenant("small-co", plan="basic")
    connection = await make_connection(small)
    tenant_id, connection_id = small.id, connection.id
    vendor.fail("fetch_vehicles", TransientError("down"))
    vendor.fail("fetch_drivers", TransientError("down"))
    engine = SyncEngine(db, provider_factory=provider_factory)

    result = await engine.sync_all(tenant_id, connection_id, window=WINDOW)

    assert result.success is False
    umbrella = await get_sync_job(db, result.job_id)
    assert umbrella.status == "failed"
    assert "vehicles:" in umbrella.error_message and "drivers:" in umbrella.error_message


@pytest.mark.asyncio
async def test_clean_sync_all_recovers_errored_connection(db, tenant, make_connection, provider_factory):
    connection = await make_connection(tenant, status="error", error_message="old failure")
    engine = SyncEngine(db, provider_factory=provider_factory)

    result = await engine.sync_all(tenant.id, connection.id, window=WINDOW)

    assert not result.failed
    await db.refresh(connection)
    assert connection.status == "active"
    assert connection.error_message is None


@pytest.mark.asyncio
async def test_sync_all_requires_an_active_subscription(db, make_tenant, make_connection, provider_factory):
    lapsed = await make_tenant("lapsed-co", subscription_status="unpaid")
    connection = await make_connection(lapsed)
    engine = SyncEngine(db, provider_factory=provider_factory)

    with pytest.raises(FeatureNotEntitled):
        await engine.sync_all(lapsed.id, connection.id, window=WINDOW)
    assert await _count(db, SyncJob) == 0


@pytest.mark.asyncio
async def test_reap_fails_only_overdue_jobs(db, tenant, connection):
    now = datetime.now(timezone.utc)
    db.add_all(
        [
            SyncJob(tenant_id=tenant.id, connection_id=connection.id, data_type="hos",
                    status="running", started_at=now - timedelta(hours=2)),
            SyncJob(tenant_id=tenant.id, connection_id=connection.id, data_type="ifta",
                    status="running", started_at=now - timedelta(minutes=2)),
        ]
    )
    await db.commit()

    assert await reap_stuck_jobs(db, timedelta(minutes=30), now) == 1
    assert await _count(db, SyncJob, SyncJob.status == "running") == 1


# -- Window validation -------------------------------------------------------


def test_quarter_ranges_split_on_calendar_quarters():
    assert quarter_ranges("2025-11", "2026-04") == [
        ("2025-11", "2025-12"),
        ("2026-01", "2026-03"),
        ("2026-04", "2026-04"),
    ]
    assert quarter_ranges("2026-06", "2026-04") == []


@pytest.mark.asyncio
async def test_malformed_windows_are_rejected_before_any_job(db, tenant, connection, provider_factory, vendor):
    tenant_id, connection_id = tenant.id, connection.id
    engine = SyncEngine(db, provider_factory=provider_factory)

    with pytest.raises(InvalidSyncWindow):
        await engine.sync_ifta_mileage(tenant_id, connection_id, "2026-06", "2026-04")
    with pytest.raises(InvalidSyncWindow):
        await engine.sync_ifta_mileage(tenant_id, connection_id, "2026-13", "2026-12")
    with pytest.raises(InvalidSyncWindow):
        await engine.sync_hos_logs(tenant_id, connection_id, "2026-05-03", "2026-05-01")
    with pytest.raises(InvalidSyncWindow):
        await engine.sync_hos_logs(tenant_id, connection_id, "2026-02-30", "2026-03-01")
    with pytest.raises(InvalidSyncWindow):
        await engine.sync_all(tenant_id, connection_id, window=SyncWindow("2026-05-01", "2026-05-02", "2026-06", "2026-04"))

    assert await _count(db, SyncJob) == 0
    assert vendor.opened == 0
    await db.refresh(connection)
    assert connection.status == "active"


@pytest.mark.asyncio
async def test_internal_error_fails_job_without_flagging_connection(
    db, tenant, connection, provider_factory, vendor, monkeypatch
):
    tenant_id, connection_id = tenant.id, connection.id
    vendor.locations = [LocationSnapshot("v-1", 32.5, -97.1, T0)]

    async def broken(*args, **kwargs):
        raise RuntimeError("constraint violated")

    monkeypatch.setattr(records, "upsert_locations", broken)
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_vehicle_locations(tenant_id, connection_id)

    assert (outcome.status, outcome.error_kind) == ("failed", "internal")
    job = await get_sync_job(db, outcome.job_id)
    assert job.status == "failed"
    assert job.error_message == "Internal error while storing synced data"
    await db.refresh(connection)
    assert connection.status == "active"
    assert connection.error_message is None
    assert await _notifications(db, tenant_id, NotificationType.ELD_CONNECTION_ERROR) == []


# -- IFTA quarters -------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_all_spreads_ifta_totals_within_each_quarter(db, tenant, connection, provider_factory, vendor):
    vendor.mileage_by_period = {
        ("2026-01", "2026-03"): [JurisdictionMileage("v-1", "TX", 300.0)],
        ("2026-04", "2026-06"): [JurisdictionMileage("v-1", "TX", 600.0)],
    }
    engine = SyncEngine(db, provider_factory=provider_factory)

    result = await engine.sync_all(tenant.id, connection.id, window=SyncWindow.for_sync_all(date(2026, 5, 15)))

    assert vendor.mileage_requests == [("2026-01", "2026-03"), ("2026-04", "2026-06")]
    ifta = next(o for o in result.outcomes if o.data_type == DataType.IFTA)
    assert ifta.counts == {"fetched": 2, "created": 6, "updated": 0}
    rows = (await db.execute(select(IftaMileage).order_by(IftaMileage.month))).scalars().all()
    assert [(r.quarter, r.month, r.miles) for r in rows] == [
        (1, 1, pytest.approx(100.0)),
        (1, 2, pytest.approx(100.0)),
        (1, 3, pytest.approx(100.0)),
        (2, 4, pytest.approx(200.0)),
        (2, 5, pytest.approx(200.0)),
        (2, 6, pytest.approx(200.0)),
    ]


@pytest.mark.asyncio
async def test_narrow_ifta_range_across_quarters_is_fetched_per_quarter(db, tenant, connection, provider_factory, vendor):
    vendor.mileage = [JurisdictionMileage("v-1", "NM", 90.0)]
    engine = SyncEngine(db, provider_factory=provider_factory)

    outcome = await engine.sync_ifta_mileage(tenant.id, connection.id, "2026-03", "2026-04")

    assert outcome.ok
    assert vendor.mileage_requests == [("2026-03", "2026-03"), ("2026-04", "2026-04")]
    rows = (await db.execute(select(IftaMileage).order_by(IftaMileage.month))).scalars().all()
    assert [(r.quarter, r.month, r.miles) for r in rows] == [(1, 3, 90.0), (2, 4, 90.0)]


# -- Claims under contention -----------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_claims_create_exactly_one_job(db, session_factory, tenant, connection):
    connection_id = connection.id

    async def claim():
        async with session_factory() as session:
            row = await session.get(EldConnection, connection_id)
            return await claim_sync_job(session, row, DataType.VEHICLES)

    results = await asyncio.gather(*(claim() for _ in range(5)), return_exceptions=True)

    claimed = [r for r in results if isinstance(r, uuid.UUID)]
    blocked = [r for r in results if isinstance(r, SyncInProgress)]
    assert len(claimed) == 1
    assert len(blocked) == 4
    assert {b.job_id for b in blocked} == {claimed[0]}
    assert await _count(db, SyncJob) == 1


@pytest.mark.asyncio
async def test_claim_retries_when_competing_job_already_finished(db, tenant, connection, monkeypatch):
    running = SyncJob(
        tenant_id=tenant.id,
        connection_id=connection.id,
        data_type="faults",
        status="running",
        started_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    db.add(running)
    await db.commit()
    running_id = running.id

    async def finished_meanwhile(session, connection_id, data_type):
        await session.execute(
            update(SyncJob)
            .where(SyncJob.id == running_id)
            .values(status="completed")
            .execution_options(synchronize_session=False)
        )
        return None

    monkeypatch.setattr(jobs, "get_running_job", finished_meanwhile)

    job_id = await claim_sync_job(db, connection, DataType.FAULTS)

    assert job_id != running_id
    assert (await get_sync_job(db, job_id)).status == "running"
    assert (await get_sync_job(db, running_id)).status == "completed"


@pytest.mark.asyncio
async def test_claim_without_a_visible_winner_reports_no_job_id(db, tenant, connection, monkeypatch):
    db.add(
        SyncJob(
            tenant_id=tenant.id,
            connection_id=connection.id,
            data_type="faults",
            status="running",
            started_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
    )
    await db.commit()

    async def never_found(*args, **kwargs):
        return None

    monkeypatch.setattr(jobs, "get_running_job", never_found)

    with pytest.raises(SyncInProgress) as excinfo:
        await claim_sync_job(db, connection, DataType.FAULTS)

    assert excinfo.value.job_id is None
    assert await _count(db, SyncJob) == 1


@pytest.mark.asyncio
async def test_driver_sync_replay_keeps_one_mapping_per_driver(db, tenant, connection, fleet, stocked_vendor, provider_factory):
    tenant_id, connection_id = tenant.id, connection.id
    engine = SyncEngine(db, provider_factory=provider_factory)

    first = await engine.sync_drivers(tenant_id, connection_id)
    replay = await engine.sync_drivers(tenant_id, connection_id)

    assert (first.counts["created"], first.counts["matched"]) == (2, 2)
    assert (replay.counts["created"], replay.counts["updated"], replay.counts["matched"]) == (0, 2, 0)
    mappings = (
        await db.execute(select(EntityMapping).where(EntityMapping.entity_type == "driver"))
    ).scalars().all()
    assert {m.internal_id for m in mappings} == {fleet["alice"].id, fleet["bob"].id}
