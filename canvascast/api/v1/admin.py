import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from canvascast.api.deps import DbSession
from canvascast.api.v1.jobs import JobResponse
from canvascast.auth.security import require_admin_key
from canvascast.commands.credits import get_credit_balance, grant_credits
from canvascast.commands.dead_letter import (
    get_dead_letter_job,
    list_dead_letter_jobs,
    retry_from_dead_letter_queue,
)
from canvascast.commands.requeue_expired import requeue_expired_jobs
from canvascast.domain.errors import JobNotFoundError, JobNotInDeadLetterQueueError
from canvascast.domain.states import LedgerType

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_key)])

@router.get("/dlq", response_model=list[JobResponse])
async def list_dlq(
    session: DbSession,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0)
):
    return await list_dead_letter_jobs(session, limit=limit, offset=offset)

@router.get("/dlq/{job_id}", response_model=JobResponse)
async def get_dlq_job(job_id: UUID, session: DbSession):
    try:
        return await get_dead_letter_job(session, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": str(e)})

@router.post("/dlq/{job_id}/retry", response_model=JobResponse)
async def retry_dlq_job(job_id: UUID, session: DbSession):
    try:
        job = await retry_from_dead_letter_queue(session, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": str(e)})
    except JobNotInDeadLetterQueueError as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
    await session.commit()
    return job

@router.post("/requeue_expired")
async def trigger_requeue_expired(session: DbSession):
    count = await requeue_expired_jobs(session)
    await session.commit()
    return {"requeued_count": count}

class CreditGrant(BaseModel):
    amount: int
    note: Optional[str] = None
    type: LedgerType = LedgerType.ADMIN_ADJUST

@router.post("/users/{user_id}/credits", status_code=status.HTTP_201_CREATED)
async def grant_user_credits(user_id: str, payload: CreditGrant, session: DbSession):
    if payload.type not in (LedgerType.PURCHASE, LedgerType.ADMIN_ADJUST):
        raise HTTPException(status_code=400, detail="Only purchase and admin_adjust entries can be granted")
    entry = await grant_credits(session, user_id, payload.amount, note=payload.note, type=payload.type)
    await session.commit()
    balance = await get_credit_balance(session, user_id)
    logger.info(f"Granted {payload.amount} credits to user {user_id} ({payload.type})")
    return {"id": entry.id, "user_id": user_id, "amount": entry.amount, "balance": balance}
