from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.db.models import Job, JobCheckpoint, JobCheckpointHistory
from canvascast.domain.models import CheckpointState
from canvascast.domain.states import JobStatus
from canvascast.utils.timeutil import ensure_utc, utcnow

def _to_state(row: JobCheckpoint) -> CheckpointState:
    return CheckpointState(
        job_id=row.job_id,
        last_completed_step=JobStatus(row.last_completed_step),
        artifacts=dict(row.artifacts or {}),
        progress=row.progress,
        saved_at=ensure_utc(row.saved_at)
    )

async def save_checkpoint(
    session: AsyncSession,
    job_id: UUID,
    completed_step: JobStatus,
    artifacts: dict[str, Any],
    progress: int
) -> CheckpointState:
    """Overwrites the job's latest checkpoint and appends a history row."""
    now = utcnow()

    row = await session.get(JobCheckpoint, job_id)
    if row:
        row.last_completed_step = completed_step
        row.artifacts = artifacts
        row.progress = progress
        row.saved_at = now
    else:
        row = JobCheckpoint(
            job_id=job_id,
            last_completed_step=completed_step,
            artifacts=artifacts,
            progress=progress,
            saved_at=now
        )
        session.add(row)

    session.add(JobCheckpointHistory(
        job_id=job_id,
        step=completed_step,
        artifacts=artifacts,
        progress=progress,
        saved_at=now
    ))

    await session.flush()
    return _to_state(row)

async def load_checkpoint(session: AsyncSession, job_id: UUID) -> Optional[CheckpointState]:
    """
    None when the job does not exist. A job that has not completed any stage
    gets an empty checkpoint (no last step, no artifacts) rather than None.
    """
    row = await session.get(JobCheckpoint, job_id)
    if row:
        return _to_state(row)

    exists = await session.scalar(select(Job.id).where(Job.id == job_id))
    if exists is None:
        return None
    return CheckpointState(job_id=job_id, last_completed_step=None, artifacts={}, progress=0)

async def clear_checkpoint(session: AsyncSession, job_id: UUID) -> None:
    """Drops the latest checkpoint. History rows are kept."""
    await session.execute(delete(JobCheckpoint).where(JobCheckpoint.job_id == job_id))
    await session.flush()

async def list_checkpoint_history(session: AsyncSession, job_id: UUID) -> list[JobCheckpointHistory]:
    stmt = (
        select(JobCheckpointHistory)
        .where(JobCheckpointHistory.job_id == job_id)
        .order_by(JobCheckpointHistory.id.asc())
    )
    return list((await session.execute(stmt)).scalars().all())
