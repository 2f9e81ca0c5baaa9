from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import DLQ_SIZE, JOBS_INFLIGHT, QUEUE_DEPTH
from canvascast.commands.requeue_expired import requeue_expired_jobs
from canvascast.db.models import Job, JobLease
from canvascast.domain.states import JobStatus
from canvascast.utils.timeutil import utcnow

async def run_leader_tasks(session: AsyncSession) -> int:
    """
    Periodic maintenance that must run on exactly one instance:
    requeue or park jobs whose worker stopped heartbeating.
    """
    recovered = await requeue_expired_jobs(session)
    await session.commit()
    return recovered

async def run_metrics_tasks(session: AsyncSession) -> None:
    """Refreshes gauges from the database so every instance reports the same numbers."""
    now = utcnow()

    q_inflight = select(func.count()).select_from(JobLease).where(JobLease.expires_at > now)
    JOBS_INFLIGHT.set((await session.execute(q_inflight)).scalar() or 0)

    q_depth = select(func.count()).select_from(Job).where(Job.status == JobStatus.QUEUED)
    QUEUE_DEPTH.set((await session.execute(q_depth)).scalar() or 0)

    q_dlq = select(func.count()).select_from(Job).where(Job.dlq_at.is_not(None))
    DLQ_SIZE.set((await session.execute(q_dlq)).scalar() or 0)

    await session.commit()
