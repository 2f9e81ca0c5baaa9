from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from canvascast.api.deps import DbSession
from canvascast.commands.assets import list_job_assets
from canvascast.commands.cancel_job import cancel_job as cancel_job_command
from canvascast.commands.checkpoint import load_checkpoint
from canvascast.commands.create_job import create_job as create_job_command
from canvascast.db.models import Job, JobEventLog
from canvascast.domain.errors import InsufficientCreditsError, JobNotFoundError, ProjectNotFoundError
from canvascast.domain.recovery import get_retry_options
from canvascast.domain.retry import MAX_RETRY_COUNT
from canvascast.domain.states import CreditState, JobStatus
from canvascast.settings import settings

router = APIRouter()

class JobCreate(BaseModel):
    project_id: UUID
    user_id: str
    cost_credits_reserved: int = Field(ge=0)
    max_retries: int = Field(default=MAX_RETRY_COUNT, ge=0)

class JobResponse(BaseModel):
    id: UUID
    project_id: UUID
    user_id: str
    status: JobStatus
    progress: int
    cost_credits_reserved: int
    cost_credits_final: Optional[int] = None
    credit_state: CreditState
    retry_count: int
    max_retries: int
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    failed_step: Optional[str] = None
    dlq_at: Optional[datetime] = None
    dlq_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class RetryOptionsResponse(BaseModel):
    job_id: UUID
    can_retry_from_checkpoint: bool
    next_step: Optional[JobStatus] = None
    last_completed_step: Optional[JobStatus] = None
    message: str

class JobEventResponse(BaseModel):
    event_type: str
    stage: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime
    meta: dict[str, Any]
    model_config = ConfigDict(from_attributes=True)

class AssetResponse(BaseModel):
    kind: str
    path: str
    meta: dict[str, Any]
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, session: DbSession):
    try:
        job = await create_job_command(
            session,
            project_id=payload.project_id,
            user_id=payload.user_id,
            cost_credits_reserved=payload.cost_credits_reserved,
            max_retries=payload.max_retries
        )
    except ProjectNotFoundError as e:
        await session.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except InsufficientCreditsError as e:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))

    await session.commit()
    return job

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: UUID, session: DbSession):
    try:
        job = await cancel_job_command(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    await session.commit()
    return job

@router.get("/{job_id}/retry-options", response_model=RetryOptionsResponse)
async def retry_options(job_id: UUID, session: DbSession):
    checkpoint = await load_checkpoint(session, job_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail="Job not found")

    options = get_retry_options(checkpoint, JobStatus(settings.CHECKPOINT_THRESHOLD_STEP))
    return RetryOptionsResponse(
        job_id=job_id,
        can_retry_from_checkpoint=options.can_retry_from_checkpoint,
        next_step=options.next_step,
        last_completed_step=checkpoint.last_completed_step,
        message=options.message
    )

@router.get("/{job_id}/events", response_model=list[JobEventResponse])
async def list_job_events(job_id: UUID, session: DbSession):
    if not await session.get(Job, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    stmt = (
        select(JobEventLog)
        .where(JobEventLog.job_id == job_id)
        .order_by(JobEventLog.id.asc())
    )
    return (await session.execute(stmt)).scalars().all()

@router.get("/{job_id}/assets", response_model=list[AssetResponse])
async def list_assets(job_id: UUID, session: DbSession):
    if not await session.get(Job, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return await list_job_assets(session, job_id)
