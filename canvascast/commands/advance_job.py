from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.commands.heartbeat import get_active_lease
from canvascast.db.models import Job, JobEventLog
from canvascast.domain.errors import InvalidJobStateError, JobNotFoundError
from canvascast.domain.stages import stage_index
from canvascast.domain.states import JobEvent, JobStatus, TERMINAL_STATUSES
from canvascast.utils.timeutil import utcnow

async def advance_job(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    status: JobStatus,
    progress: int,
    event: JobEvent = JobEvent.STEP_COMPLETED
) -> Job:
    """
    Records that `status` just completed.

    Only the current lease holder may advance, status only moves forward in
    the canonical order, and progress never decreases. The write is a
    compare-and-set on the status read here.
    """
    await get_active_lease(session, job_id, lease_token)

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    current = JobStatus(job.status)
    if current in TERMINAL_STATUSES or stage_index(status) <= stage_index(current):
        raise InvalidJobStateError(current, status)

    new_progress = max(job.progress, progress)
    now = utcnow()

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == current)
        .values(status=status, progress=new_progress, updated_at=now)
        .returning(Job)
    )
    updated = (await session.execute(stmt)).scalar_one_or_none()
    if updated is None:
        # Someone else moved the job between our read and write
        raise InvalidJobStateError(current, status)

    session.add(JobEventLog(
        job_id=job_id,
        event_type=event,
        stage=status,
        timestamp=now,
        meta={"progress": new_progress}
    ))

    await session.flush()
    return updated
