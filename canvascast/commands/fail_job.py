import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import DLQ_ROUTED_TOTAL, JOB_FAILURES, QUEUE_DEPTH
from canvascast.commands.cancel_job import finalize_cancellation
from canvascast.commands.credits import settle_credits
from canvascast.commands.heartbeat import get_active_lease
from canvascast.db.models import Job, JobEventLog, JobLease, Project
from canvascast.domain.errors import JobNotFoundError
from canvascast.domain.retry import calculate_next_run, should_move_to_dead_letter_queue
from canvascast.domain.stages import next_stage
from canvascast.domain.states import ErrorCode, JobEvent, JobStatus, ProjectStatus, TERMINAL_STATUSES
from canvascast.settings import settings
from canvascast.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error_code: ErrorCode | str,
    error_message: str,
    failed_step: Optional[JobStatus] = None,
    lease_token: Optional[UUID] = None,
    retryable: bool = True
) -> Job:
    """
    Records a failed attempt.

    Credits are settled by the refund policy at the progress reached, then the
    job is either requeued with backoff (retry_count + 1) or parked in the DLQ
    once retries are exhausted or the error is not retryable.
    A pending cancellation wins over both.
    """
    if lease_token is not None:
        await get_active_lease(session, job_id, lease_token)

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if JobStatus(job.status) in TERMINAL_STATUSES:
        logger.warning(f"Ignoring failure for job {job_id}: already {job.status}")
        await session.execute(delete(JobLease).where(JobLease.job_id == job_id))
        await session.flush()
        return job

    now = utcnow()
    step = failed_step or next_stage(job.status)

    job.error_code = str(error_code)
    job.error_message = error_message
    job.failed_step = step
    job.claimed_by = None
    job.claimed_at = None

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.FAILED,
        stage=step,
        message=error_message,
        timestamp=now,
        meta={
            "error_code": str(error_code),
            "progress": job.progress,
            "retry_count": job.retry_count,
            "retryable": retryable,
            "lease_token": str(lease_token) if lease_token else None
        }
    ))

    if job.cancel_requested_at is not None:
        return await finalize_cancellation(session, job)

    refunded = await settle_credits(
        session, job, reason=f"{error_code} in {step}", threshold=settings.REFUND_THRESHOLD_PROGRESS
    )

    if not retryable or should_move_to_dead_letter_queue(job.retry_count, job.max_retries):
        job.status = JobStatus.FAILED
        job.dlq_at = now
        job.dlq_reason = (
            f"{error_code}: {error_message}" if retryable
            else f"Non-retryable {error_code}: {error_message}"
        )
        job.finished_at = now

        project = await session.get(Project, job.project_id)
        if project:
            project.status = ProjectStatus.FAILED

        JOB_FAILURES.labels(type="final").inc()
        DLQ_ROUTED_TOTAL.inc()
        next_event = JobEvent.DLQ_ROUTED
        logger.error(f"Job {job.id} moved to DLQ after {job.retry_count} retries: {job.dlq_reason}")
    else:
        job.retry_count += 1
        job.status = JobStatus.QUEUED
        job.available_at = calculate_next_run(
            job.retry_count,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS
        )

        JOB_FAILURES.labels(type="retryable").inc()
        QUEUE_DEPTH.inc()  # Back to QUEUED
        next_event = JobEvent.RETRIED
        logger.warning(
            "Job %s failed at %s (%s), retry %s/%s scheduled",
            job.id, step, error_code, job.retry_count, job.max_retries
        )

    await session.execute(delete(JobLease).where(JobLease.job_id == job_id))

    session.add(JobEventLog(
        job_id=job.id,
        event_type=next_event,
        stage=step,
        timestamp=now,
        meta={
            "error_code": str(error_code),
            "retry_count": job.retry_count,
            "max": job.max_retries,
            "refunded": refunded
        }
    ))

    await session.flush()
    return job
