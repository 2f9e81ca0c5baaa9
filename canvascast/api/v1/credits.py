from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict

from canvascast.api.deps import DbSession
from canvascast.commands.credits import get_credit_balance, list_ledger_entries

router = APIRouter()

class LedgerEntryResponse(BaseModel):
    id: int
    job_id: Optional[UUID] = None
    type: str
    amount: int
    note: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class CreditsResponse(BaseModel):
    user_id: str
    balance: int
    ledger: list[LedgerEntryResponse]

@router.get("/{user_id}/credits", response_model=CreditsResponse)
async def get_credits(user_id: str, session: DbSession, limit: int = 100):
    balance = await get_credit_balance(session, user_id)
    entries = await list_ledger_entries(session, user_id, limit=limit)
    return CreditsResponse(
        user_id=user_id,
        balance=balance,
        ledger=[LedgerEntryResponse.model_validate(e) for e in entries]
    )
