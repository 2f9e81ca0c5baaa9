import logging
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import CREDITS_TOTAL
from canvascast.db.models import CreditLedgerEntry, Job, JobEventLog
from canvascast.domain.errors import InsufficientCreditsError
from canvascast.domain.refund import REFUND_THRESHOLD_PROGRESS, calculate_refund_amount
from canvascast.domain.states import CreditState, JobEvent, LedgerType

logger = logging.getLogger(__name__)

async def get_credit_balance(session: AsyncSession, user_id: str) -> int:
    stmt = select(func.coalesce(func.sum(CreditLedgerEntry.amount), 0)).where(
        CreditLedgerEntry.user_id == user_id
    )
    return int((await session.execute(stmt)).scalar_one())

async def insert_ledger_entry(
    session: AsyncSession,
    user_id: str,
    type: LedgerType,
    amount: int,
    job_id=None,
    note: Optional[str] = None
) -> CreditLedgerEntry:
    entry = CreditLedgerEntry(user_id=user_id, job_id=job_id, type=type, amount=amount, note=note)
    session.add(entry)
    await session.flush()
    return entry

async def grant_credits(
    session: AsyncSession,
    user_id: str,
    amount: int,
    note: Optional[str] = None,
    type: LedgerType = LedgerType.PURCHASE
) -> CreditLedgerEntry:
    """Purchases and admin adjustments. Not tied to a job."""
    return await insert_ledger_entry(session, user_id, type, amount, note=note)

async def list_ledger_entries(session: AsyncSession, user_id: str, limit: int = 100) -> Sequence[CreditLedgerEntry]:
    stmt = (
        select(CreditLedgerEntry)
        .where(CreditLedgerEntry.user_id == user_id)
        .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
        .limit(limit)
    )
    return (await session.execute(stmt)).scalars().all()

async def reserve_credits(session: AsyncSession, job: Job) -> None:
    """
    Holds `job.cost_credits_reserved` against the user's balance.
    Raises InsufficientCreditsError without writing anything when the balance is short.
    """
    amount = job.cost_credits_reserved
    if amount <= 0:
        job.credit_state = CreditState.NONE
        return

    balance = await get_credit_balance(session, job.user_id)
    if balance < amount:
        raise InsufficientCreditsError(job.user_id, amount, balance)

    await insert_ledger_entry(
        session, job.user_id, LedgerType.RESERVE, -amount, job_id=job.id,
        note=f"Reserved for job {job.id}"
    )
    job.credit_state = CreditState.RESERVED
    session.add(JobEventLog(job_id=job.id, event_type=JobEvent.CREDITS_RESERVED, meta={"amount": amount}))
    CREDITS_TOTAL.labels(type="reserve").inc(amount)

async def refund_reserved_credits(session: AsyncSession, job: Job, note: Optional[str] = None) -> int:
    amount = job.cost_credits_reserved
    await insert_ledger_entry(
        session, job.user_id, LedgerType.REFUND, amount, job_id=job.id,
        note=note or f"Refund for job {job.id}"
    )
    job.credit_state = CreditState.REFUNDED
    job.cost_credits_final = 0
    session.add(JobEventLog(job_id=job.id, event_type=JobEvent.CREDITS_REFUNDED, meta={"amount": amount}))
    CREDITS_TOTAL.labels(type="refund").inc(amount)
    logger.info(f"Refunded {amount} credits to user {job.user_id} for job {job.id}")
    return amount

async def spend_reserved_credits(session: AsyncSession, job: Job, amount: int, note: Optional[str] = None) -> int:
    """Releases the reservation and records what was actually consumed (never more than reserved)."""
    reserved = job.cost_credits_reserved
    spent = max(0, min(amount, reserved))
    if reserved > 0:
        await insert_ledger_entry(
            session, job.user_id, LedgerType.RELEASE, reserved, job_id=job.id,
            note=f"Release reservation for job {job.id}"
        )
        await insert_ledger_entry(
            session, job.user_id, LedgerType.SPEND, -spent, job_id=job.id,
            note=note or f"Spend for job {job.id}"
        )
        CREDITS_TOTAL.labels(type="spend").inc(spent)
    job.credit_state = CreditState.SPENT
    job.cost_credits_final = spent
    session.add(JobEventLog(job_id=job.id, event_type=JobEvent.CREDITS_SPENT, meta={"amount": spent}))
    return spent

async def settle_credits(
    session: AsyncSession,
    job: Job,
    reason: str,
    threshold: int = REFUND_THRESHOLD_PROGRESS
) -> int:
    """
    Applies the refund policy to an outstanding reservation.

    Refund-eligible jobs get the whole reservation back; the rest convert it to
    spend. Only a RESERVED job is touched, so each reservation settles once.
    Returns the refunded amount.
    """
    if job.credit_state != CreditState.RESERVED:
        return 0

    refund = calculate_refund_amount(job.cost_credits_reserved, job.status, job.progress, threshold)
    if refund > 0:
        return await refund_reserved_credits(
            session, job, note=f"Refund for job {job.id}: {reason} at {job.progress}%"
        )

    await spend_reserved_credits(
        session, job, job.cost_credits_reserved,
        note=f"Spend for job {job.id}: {reason} at {job.progress}%"
    )
    return 0
