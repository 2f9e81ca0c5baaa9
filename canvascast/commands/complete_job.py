from typing import Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import JOB_COMPLETE_TOTAL, JOB_DURATION
from canvascast.commands.credits import spend_reserved_credits
from canvascast.commands.heartbeat import get_active_lease
from canvascast.db.models import Job, JobEventLog, JobLease, Project
from canvascast.domain.errors import InvalidJobStateError, JobNotFoundError
from canvascast.domain.stages import PIPELINE_STAGES
from canvascast.domain.states import CreditState, JobEvent, JobStatus, ProjectStatus
from canvascast.utils.timeutil import ensure_utc, utcnow

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    final_credits: int,
    timeline_path: Optional[str] = None
) -> Job:
    """
    Marks a job READY once its last stage has completed.
    Converts the reservation into the final spend, marks the project ready,
    and releases the lease.
    """
    lease = await get_active_lease(session, job_id, lease_token)

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status == JobStatus.READY:
        return job
    if job.status != PIPELINE_STAGES[-1]:
        raise InvalidJobStateError(job.status, JobStatus.READY)

    now = utcnow()

    if job.credit_state == CreditState.RESERVED:
        await spend_reserved_credits(
            session, job, final_credits, note=f"Video generation for job {job.id}"
        )

    job.status = JobStatus.READY
    job.progress = 100
    job.finished_at = now

    project = await session.get(Project, job.project_id)
    if project:
        project.status = ProjectStatus.READY
        if timeline_path:
            project.timeline_path = timeline_path

    await session.execute(delete(JobLease).where(JobLease.job_id == job_id))

    started_at = ensure_utc(job.started_at)
    if started_at:
        duration = (now - started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.observe(duration)
    JOB_COMPLETE_TOTAL.labels(result="success").inc()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.COMPLETED,
        stage=JobStatus.READY,
        timestamp=now,
        meta={
            "lease_token": str(lease.lease_token),
            "cost_credits_final": job.cost_credits_final
        }
    ))

    await session.flush()
    return job
