import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import JOB_CLAIM_TOTAL, JOB_START_DELAY, QUEUE_DEPTH
from canvascast.db.models import Job, JobEventLog, JobLease
from canvascast.domain.states import JobEvent, JobStatus
from canvascast.settings import settings
from canvascast.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

async def claim_job(
    session: AsyncSession,
    worker_id: str,
    lease_duration: Optional[int] = None
) -> Optional[tuple[Job, JobLease]]:
    """
    Atomically claims the oldest eligible QUEUED job for the given worker.

    The candidate row is locked with SKIP LOCKED, then moved QUEUED -> CLAIMED
    with a conditional update, so only one claimant can ever win a job.
    """
    duration = lease_duration if lease_duration is not None else settings.DEFAULT_LEASE_TIMEOUT_SECONDS
    now = utcnow()
    expires_at = now + timedelta(seconds=duration)
    lease_token = uuid4()

    candidate = (
        select(Job.id)
        .where(
            Job.status == JobStatus.QUEUED,
            Job.available_at <= now
        )
        .order_by(Job.available_at.asc(), Job.created_at.asc())
        .with_for_update(skip_locked=True)
        .limit(1)
    )
    job_id = (await session.execute(candidate)).scalar_one_or_none()
    if job_id is None:
        return None

    # UPDATE jobs SET status='CLAIMED' WHERE id = :id AND status = 'QUEUED' RETURNING *
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.QUEUED)
        .values(
            status=JobStatus.CLAIMED,
            claimed_by=worker_id,
            claimed_at=now,
            started_at=now,  # Reset execution timer
            updated_at=now
        )
        .returning(Job)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None:
        logger.info(f"Worker {worker_id} lost the claim race for job {job_id}")
        return None

    lease = JobLease(
        job_id=job.id,
        worker_id=worker_id,
        lease_token=lease_token,
        expires_at=expires_at,
        last_heartbeat_at=now
    )
    session.add(lease)

    QUEUE_DEPTH.dec()
    JOB_CLAIM_TOTAL.inc()
    available_at = ensure_utc(job.available_at)
    if available_at:
        delay = (now - available_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CLAIMED,
        timestamp=now,
        meta={
            "worker_id": worker_id,
            "lease_token": str(lease_token),
            "expires_at": expires_at.isoformat(),
            "retry_count": job.retry_count
        }
    ))

    await session.flush()
    return job, lease
