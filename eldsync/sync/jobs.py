"""SyncJob bookkeeping: atomic claim, completion, failure and reaping."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import DateTime, String, Uuid, insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import SyncInProgress
from ..models.eld import EldConnection, SyncJob
from ..models.enums import DataType, JobStatus, SyncTrigger
from ..timeutil import utcnow

logger = logging.getLogger(__name__)


async def get_running_job(
    db: AsyncSession, connection_id: uuid.UUID, data_type: DataType
) -> SyncJob | None:
    stmt = (
        select(SyncJob)
        .where(
            SyncJob.connection_id == connection_id,
            SyncJob.data_type == data_type.value,
            SyncJob.status == JobStatus.RUNNING.value,
        )
        .order_by(SyncJob.started_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def claim_sync_job(
    db: AsyncSession,
    connection: EldConnection,
    data_type: DataType,
    trigger: SyncTrigger = SyncTrigger.MANUAL,
    now: datetime | None = None,
) -> uuid.UUID:
    """Insert a ``running`` job unless one is already running for (connection, data type).

    The existence check and the insert are one ``INSERT ... SELECT ... WHERE NOT
    EXISTS`` statement, backed by the partial unique index on running jobs, so
    two racing triggers cannot both pass. A running job older than the lock
    window is treated as abandoned and failed first.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.sync_lock_minutes)

    superseded = await db.execute(
        update(SyncJob)
        .where(
            SyncJob.connection_id == connection.id,
            SyncJob.data_type == data_type.value,
            SyncJob.status == JobStatus.RUNNING.value,
            SyncJob.started_at < cutoff,
        )
        .values(
            status=JobStatus.FAILED.value,
            error_message="Abandoned: still running after the lock window",
            completed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if superseded.rowcount:
        logger.warning(
            "Failed %d abandoned %s job(s) on connection %s", superseded.rowcount, data_type, connection.id
        )

    connection_id = connection.id
    # A lost insert whose winner has already finished leaves nothing to
    # report, so the claim is tried once more before giving up.
    for _ in range(2):
        job_id = uuid.uuid4()
        if await _insert_running_job(db, connection, data_type, trigger, job_id, now):
            logger.debug("Claimed %s job %s on connection %s", data_type, job_id, connection_id)
            return job_id

        existing = await get_running_job(db, connection_id, data_type)
        await db.commit()
        if existing is not None:
            logger.info(
                "%s sync already running on connection %s (job %s)", data_type, connection_id, existing.id
            )
            raise SyncInProgress(existing.id, data_type.value)

    raise SyncInProgress(None, data_type.value)


async def _insert_running_job(
    db: AsyncSession,
    connection: EldConnection,
    data_type: DataType,
    trigger: SyncTrigger,
    job_id: uuid.UUID,
    now: datetime,
) -> bool:
    already_running = (
        select(SyncJob.id)
        .where(
            SyncJob.connection_id == connection.id,
            SyncJob.data_type == data_type.value,
            SyncJob.status == JobStatus.RUNNING.value,
        )
        .exists()
    )
    stmt = insert(SyncJob).from_select(
        [
            "id", "tenant_id", "connection_id", "data_type", "status", "trigger",
            "started_at", "created_at", "updated_at",
        ],
        select(
            literal(job_id, Uuid),
            literal(connection.tenant_id, Uuid),
            literal(connection.id, Uuid),
            literal(data_type.value, String),
            literal(JobStatus.RUNNING.value, String),
            literal(trigger.value, String),
            literal(now, DateTime(timezone=True)),
            literal(now, DateTime(timezone=True)),
            literal(now, DateTime(timezone=True)),
        ).where(~already_running),
    )
    try:
        inserted = (await db.execute(stmt)).rowcount
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent insert that the index caught.
        await db.rollback()
        await db.refresh(connection)
        return False
    return bool(inserted)


async def complete_sync_job(db: AsyncSession, job_id: uuid.UUID, counts: dict) -> None:
    await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id)
        .values(
            status=JobStatus.COMPLETED.value,
            record_counts=counts,
            error_message=None,
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def fail_sync_job(
    db: AsyncSession, job_id: uuid.UUID, message: str, counts: dict | None = None
) -> None:
    await db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id)
        .values(
            status=JobStatus.FAILED.value,
            error_message=message,
            record_counts=counts,
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def reap_stuck_jobs(db: AsyncSession, older_than: timedelta, now: datetime | None = None) -> int:
    """Fail every job still ``running`` after ``older_than``; returns how many."""
    now = now or utcnow()
    result = await db.execute(
        update(SyncJob)
        .where(
            SyncJob.status == JobStatus.RUNNING.value,
            SyncJob.started_at < now - older_than,
        )
        .values(
            status=JobStatus.FAILED.value,
            error_message="Timed out: no result before the job deadline",
            completed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("Reaped %d stuck sync job(s)", result.rowcount)
    return result.rowcount or 0


async def get_sync_job(db: AsyncSession, job_id: uuid.UUID) -> SyncJob | None:
    return (
        await db.execute(select(SyncJob).where(SyncJob.id == job_id).execution_options(populate_existing=True))
    ).scalar_one_or_none()


async def find_job_by_external_id(
    db: AsyncSession, connection_id: uuid.UUID, external_job_id: str
) -> SyncJob | None:
    stmt = select(SyncJob).where(
        SyncJob.connection_id == connection_id,
        SyncJob.external_job_id == external_job_id,
    )
    return (await db.execute(stmt.limit(1))).scalar_one_or_none()


async def list_sync_jobs(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    connection_id: uuid.UUID | None = None,
    limit: int = 20,
) -> list[SyncJob]:
    stmt = select(SyncJob).where(SyncJob.tenant_id == tenant_id)
    if connection_id is not None:
        stmt = stmt.where(SyncJob.connection_id == connection_id)
    stmt = stmt.order_by(SyncJob.started_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


def serialize_job(job: SyncJob) -> dict:
    return {
        "id": str(job.id),
        "connectionId": str(job.connection_id),
        "dataType": job.data_type,
        "status": job.status,
        "trigger": job.trigger,
        "externalJobId": job.external_job_id,
        "recordCounts": job.record_counts or {},
        "errorMessage": job.error_message,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }
