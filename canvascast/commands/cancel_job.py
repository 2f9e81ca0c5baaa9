import logging
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import JOB_COMPLETE_TOTAL, QUEUE_DEPTH
from canvascast.commands.credits import settle_credits
from canvascast.db.models import Job, JobEventLog, JobLease, Project
from canvascast.domain.errors import JobNotFoundError
from canvascast.domain.states import JobEvent, JobStatus, ProjectStatus, TERMINAL_STATUSES
from canvascast.settings import settings
from canvascast.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

async def cancel_job(session: AsyncSession, job_id: UUID) -> Job:
    """
    User-initiated cancellation.

    A QUEUED job has no worker and is canceled right away. A running job only
    gets `cancel_requested_at`; the runner honours it between stages.
    Terminal jobs are returned unchanged.
    """
    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if JobStatus(job.status) in TERMINAL_STATUSES:
        return job

    if job.status == JobStatus.QUEUED:
        QUEUE_DEPTH.dec()
        return await finalize_cancellation(session, job)

    if job.cancel_requested_at is None:
        job.cancel_requested_at = utcnow()
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.CANCEL_REQUESTED,
            stage=job.status
        ))
        await session.flush()
    return job

async def finalize_cancellation(session: AsyncSession, job: Job) -> Job:
    """Moves the job to CANCELED, settling credits at the progress it reached."""
    now = utcnow()

    refunded = await settle_credits(
        session, job, reason="canceled", threshold=settings.REFUND_THRESHOLD_PROGRESS
    )

    last_stage = job.status
    job.status = JobStatus.CANCELED
    job.finished_at = now
    job.cancel_requested_at = job.cancel_requested_at or now

    await session.execute(delete(JobLease).where(JobLease.job_id == job.id))

    project = await session.get(Project, job.project_id)
    if project:
        project.status = ProjectStatus.DRAFT

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CANCELED,
        stage=last_stage,
        timestamp=now,
        meta={"progress": job.progress, "refunded": refunded}
    ))
    JOB_COMPLETE_TOTAL.labels(result="canceled").inc()
    logger.info(f"Job {job.id} canceled at {last_stage} ({job.progress}%), refunded {refunded} credits")

    await session.flush()
    return job
