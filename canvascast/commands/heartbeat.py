from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.db.models import JobLease
from canvascast.domain.errors import LeaseNotFoundError, LeaseExpiredError
from canvascast.utils.timeutil import ensure_utc, utcnow

async def get_active_lease(session: AsyncSession, job_id: UUID, lease_token: UUID) -> JobLease:
    """Returns the lease held with `lease_token`, or raises if it was lost or has expired."""
    stmt = select(JobLease).where(
        JobLease.job_id == job_id,
        JobLease.lease_token == lease_token
    )
    lease = (await session.execute(stmt)).scalar_one_or_none()

    if not lease:
        # Requeued by the reaper, completed, or claimed by someone else
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    expires_at = ensure_utc(lease.expires_at)
    if expires_at < utcnow():
        # Expired leases belong to the reaper even if it has not swept yet
        raise LeaseExpiredError(f"Lease for job {job_id} expired at {expires_at}")

    return lease

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: int = 60
) -> datetime:
    """
    Renews the lease for a job.
    Throws error if lease not found or token mismatch or already expired.
    Returns new expires_at.
    """
    lease = await get_active_lease(session, job_id, lease_token)

    now = utcnow()
    new_expires_at = now + timedelta(seconds=extend_seconds)

    lease.last_heartbeat_at = now
    lease.expires_at = new_expires_at

    await session.flush()
    return new_expires_at
