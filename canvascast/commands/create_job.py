from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import QUEUE_DEPTH
from canvascast.commands.credits import reserve_credits
from canvascast.db.models import Job, JobEventLog, Project, ProjectInput
from canvascast.domain.errors import ProjectNotFoundError
from canvascast.domain.retry import MAX_RETRY_COUNT
from canvascast.domain.states import JobEvent, JobStatus, ProjectStatus

async def create_project(
    session: AsyncSession,
    user_id: str,
    title: str,
    inputs: Optional[list[dict[str, Any]]] = None,
    **preferences: Any
) -> Project:
    project = Project(user_id=user_id, title=title, **preferences)
    session.add(project)
    await session.flush()

    for item in inputs or []:
        session.add(ProjectInput(
            project_id=project.id,
            type=item.get("type", "text"),
            title=item.get("title"),
            content_text=item.get("content_text"),
            storage_path=item.get("storage_path"),
            meta=item.get("meta") or {}
        ))

    await session.flush()
    return project

async def list_project_inputs(session: AsyncSession, project_id: UUID) -> list[ProjectInput]:
    stmt = (
        select(ProjectInput)
        .where(ProjectInput.project_id == project_id)
        .order_by(ProjectInput.created_at.asc())
    )
    return list((await session.execute(stmt)).scalars().all())

async def create_job(
    session: AsyncSession,
    project_id: UUID,
    user_id: str,
    cost_credits_reserved: int,
    max_retries: int = MAX_RETRY_COUNT
) -> Job:
    """
    Enqueues a generation job in QUEUED at progress 0 and reserves its credits
    in the same transaction. Raises InsufficientCreditsError when the user
    cannot cover the reservation; the caller rolls the transaction back.
    """
    project = await session.get(Project, project_id)
    if not project or project.user_id != user_id:
        raise ProjectNotFoundError(project_id)

    job = Job(
        project_id=project_id,
        user_id=user_id,
        status=JobStatus.QUEUED,
        progress=0,
        cost_credits_reserved=cost_credits_reserved,
        max_retries=max_retries
    )
    session.add(job)
    await session.flush()

    await reserve_credits(session, job)

    project.status = ProjectStatus.GENERATING
    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        meta={"cost_credits_reserved": cost_credits_reserved}
    ))

    await session.flush()
    QUEUE_DEPTH.inc()
    return job
