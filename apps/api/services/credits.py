"""Credit ledger and per-image billing helpers.

The account row's ``credits`` column is the spendable balance; every change to it
goes through a single conditional UPDATE and is paired with an appended
``credit_ledger`` row in the same transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_ledger import CreditLedger
from services.errors import InsufficientCredits, StorageUnavailable

logger = logging.getLogger(__name__)


class LedgerKind:
    """Valid ledger entry kinds."""
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    GENERATION = "generation"
    REFUND = "refund"
    BONUS = "bonus"

    CREDIT_KINDS = (PURCHASE, SUBSCRIPTION, REFUND, BONUS)


async def get_balance(account_id: str, db: AsyncSession) -> int:
    try:
        result = await db.execute(select(Account.credits).where(Account.id == account_id))
    except SQLAlchemyError as exc:
        raise StorageUnavailable("Could not read credit balance", exc) from exc
    return int(result.scalar() or 0)


async def ensure_account(
    account_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
) -> Account:
    """Return the account row, creating it with the signup grant on first sight."""
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account:
        return account

    account = Account(
        id=account_id,
        email=email or f"{account_id}@local.invalid",
        credits=0,
    )
    db.add(account)
    try:
        await db.flush()
    except IntegrityError:
        # Created by a concurrent first request.
        await db.rollback()
        result = await db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one()

    signup_credits = max(int(settings.SIGNUP_CREDITS), 0)
    if signup_credits:
        await _apply_credit(
            account_id,
            db,
            amount=signup_credits,
            kind=LedgerKind.BONUS,
            description="Signup credits",
        )
    await db.commit()
    await db.refresh(account)
    return account


async def _apply_credit(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: Optional[str],
    related_job_id: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> CreditLedger:
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(credits=Account.credits + amount)
        .returning(Account.credits)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise StorageUnavailable(f"Account {account_id} does not exist")

    entry = CreditLedger(
        account_id=account_id,
        amount=amount,
        kind=kind,
        description=description or f"Added {amount} credits",
        related_job_id=related_job_id,
        billing_reference=billing_reference,
        balance_after=int(new_balance),
    )
    db.add(entry)
    await db.flush()
    return entry


async def reserve_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    related_job_id: str,
    description: Optional[str] = None,
) -> CreditLedger:
    """Atomically debit ``amount`` credits for a generation job.

    The balance check and decrement are one conditional UPDATE, so concurrent
    reservations against the same account serialize on the row and can never
    jointly overdraw it. The caller owns the transaction and must commit.
    """
    debit = int(amount)
    if debit <= 0:
        raise ValueError("reservation amount must be greater than 0")

    try:
        result = await db.execute(
            update(Account)
            .where(Account.id == account_id, Account.credits >= debit)
            .values(credits=Account.credits - debit)
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            available = await get_balance(account_id, db)
            raise InsufficientCredits(required=debit, available=available)

        entry = CreditLedger(
            account_id=account_id,
            amount=-debit,
            kind=LedgerKind.GENERATION,
            description=description or f"Generated {debit} image(s)",
            related_job_id=related_job_id,
            balance_after=int(new_balance),
        )
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as exc:
        raise StorageUnavailable("Could not reserve credits", exc) from exc
    return entry


async def add_credits(
    account_id: str,
    db: AsyncSession,
    *,
    amount: int,
    kind: str,
    description: Optional[str] = None,
    related_job_id: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> CreditLedger:
    """Unconditionally credit an account and commit.

    Idempotency is the caller's responsibility; use ``refund_job`` for refunds.
    """
    grant = int(amount)
    if grant <= 0:
        raise ValueError("credit amount must be greater than 0")
    if kind not in LedgerKind.CREDIT_KINDS:
        raise ValueError(f"unsupported credit kind: {kind}")

    try:
        entry = await _apply_credit(
            account_id,
            db,
            amount=grant,
            kind=kind,
            description=description,
            related_job_id=related_job_id,
            billing_reference=billing_reference,
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable(f"Could not record {kind} credit", exc) from exc
    return entry


async def find_purchase(billing_reference: str, db: AsyncSession) -> Optional[CreditLedger]:
    result = await db.execute(
        select(CreditLedger).where(CreditLedger.billing_reference == billing_reference)
    )
    return result.scalar_one_or_none()


async def find_job_entry(job_id: str, kind: str, db: AsyncSession) -> Optional[CreditLedger]:
    result = await db.execute(
        select(CreditLedger).where(
            CreditLedger.related_job_id == job_id,
            CreditLedger.kind == kind,
        )
    )
    return result.scalar_one_or_none()


async def stage_job_refund(
    account_id: str,
    db: AsyncSession,
    *,
    job_id: str,
    amount: int,
    reason: str,
) -> Optional[CreditLedger]:
    """Add the job's refund to the caller's transaction without committing.

    Returns ``None`` when a refund for the job is already recorded.
    """
    existing = await find_job_entry(job_id, LedgerKind.REFUND, db)
    if existing:
        logger.info("Refund for job %s already recorded (entry %s)", job_id, existing.id)
        return None
    return await _apply_credit(
        account_id,
        db,
        amount=int(amount),
        kind=LedgerKind.REFUND,
        description=f"Refund for failed generation: {reason}"[:500],
        related_job_id=job_id,
    )


async def refund_job(
    account_id: str,
    db: AsyncSession,
    *,
    job_id: str,
    amount: int,
    reason: str,
) -> Optional[CreditLedger]:
    """Issue the compensating refund for a job exactly once and commit.

    Returns ``None`` when a refund for the job is already recorded. The
    ``(kind, related_job_id)`` unique constraint backs up the lookup against a
    concurrent second refund.
    """
    try:
        entry = await stage_job_refund(account_id, db, job_id=job_id, amount=amount, reason=reason)
        if entry is None:
            return None
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Concurrent refund for job %s already recorded", job_id)
        return None
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable(f"Could not refund job {job_id}", exc) from exc
    return entry


async def list_entries(account_id: str, db: AsyncSession, *, limit: Optional[int] = None) -> List[CreditLedger]:
    stmt = select(CreditLedger).where(CreditLedger.account_id == account_id).order_by(CreditLedger.id.desc())
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def verify_ledger(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Recompute the running sum and compare it with stored balances."""
    entries = list(reversed(await list_entries(account_id, db)))
    balance = await get_balance(account_id, db)

    running = 0
    mismatched_entry_ids: List[int] = []
    for entry in entries:
        running += int(entry.amount)
        if int(entry.balance_after) != running:
            mismatched_entry_ids.append(entry.id)

    if mismatched_entry_ids or running != balance:
        logger.error(
            "Ledger drift for account %s: balance=%s recomputed=%s mismatched=%s",
            account_id,
            balance,
            running,
            mismatched_entry_ids,
        )
    return {
        "ok": not mismatched_entry_ids and running == balance,
        "balance": balance,
        "recomputed_balance": running,
        "entry_count": len(entries),
        "mismatched_entry_ids": mismatched_entry_ids,
    }


async def get_credit_summary(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(account_id, db)
    entries = await list_entries(account_id, db, limit=30)
    return {
        "balance": balance,
        "signup_credits": max(int(settings.SIGNUP_CREDITS), 0),
        "costs": {
            "per_image": max(int(settings.CREDIT_COST_PER_IMAGE), 1),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "description": entry.description,
                "related_job_id": entry.related_job_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
