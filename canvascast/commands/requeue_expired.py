import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import REAPER_RECOVERED_JOBS
from canvascast.commands.fail_job import fail_job
from canvascast.db.models import JobLease
from canvascast.domain.states import ErrorCode
from canvascast.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

async def requeue_expired_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Finds expired leases and treats each as a failed attempt (worker crash),
    so the usual refund / retry / DLQ rules apply.
    Returns number of jobs recovered.
    """
    now = utcnow()

    # Lock the expired leases so two reapers never handle the same one
    stmt = select(JobLease).where(
        JobLease.expires_at < now
    ).limit(limit).with_for_update(skip_locked=True)

    expired_leases = (await session.execute(stmt)).scalars().all()
    if not expired_leases:
        return 0

    count = 0
    for lease in expired_leases:
        job_id = lease.job_id
        worker_id = lease.worker_id
        logger.warning(f"Lease for job {job_id} held by {worker_id} expired, recovering")
        await fail_job(
            session,
            job_id,
            ErrorCode.UNKNOWN,
            f"Lease expired (worker {worker_id} crashed?)"
        )
        count += 1

    REAPER_RECOVERED_JOBS.inc(count)

    await session.flush()
    return count
