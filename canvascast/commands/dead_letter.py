import logging
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import DLQ_RETRIED_TOTAL, QUEUE_DEPTH
from canvascast.db.models import Job, JobEventLog, Project
from canvascast.domain.errors import JobNotFoundError, JobNotInDeadLetterQueueError
from canvascast.domain.states import JobEvent, JobStatus, ProjectStatus
from canvascast.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

async def list_dead_letter_jobs(
    session: AsyncSession,
    limit: Optional[int] = None,
    offset: int = 0
) -> Sequence[Job]:
    """Jobs parked in the DLQ, most recently parked first. All of them unless `limit` is given."""
    stmt = (
        select(Job)
        .where(Job.dlq_at.is_not(None))
        .order_by(Job.dlq_at.desc(), Job.id)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return (await session.execute(stmt)).scalars().all()

async def get_dead_letter_job(session: AsyncSession, job_id: UUID) -> Job:
    job = await session.get(Job, job_id)
    if not job or job.dlq_at is None:
        raise JobNotFoundError(job_id)
    return job

async def retry_from_dead_letter_queue(session: AsyncSession, job_id: UUID) -> Job:
    """
    Manually requeues a parked job with a fresh retry budget.

    Failure markers and timing fields are cleared. The checkpoint is left as
    is: the next run decides from it whether to resume or start over.
    """
    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)
    if job.dlq_at is None:
        raise JobNotInDeadLetterQueueError(job_id)

    now = utcnow()
    previous_error = job.error_code

    job.status = JobStatus.QUEUED
    job.retry_count = 0
    job.dlq_at = None
    job.dlq_reason = None
    job.error_code = None
    job.error_message = None
    job.failed_step = None
    job.started_at = None
    job.finished_at = None
    job.cancel_requested_at = None
    job.claimed_by = None
    job.claimed_at = None
    job.available_at = now

    project = await session.get(Project, job.project_id)
    if project:
        project.status = ProjectStatus.GENERATING

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.DLQ_RETRIED,
        timestamp=now,
        meta={"previous_error_code": previous_error}
    ))

    QUEUE_DEPTH.inc()
    DLQ_RETRIED_TOTAL.inc()
    logger.info(f"Job {job.id} requeued from the dead letter queue")

    await session.flush()
    return job
