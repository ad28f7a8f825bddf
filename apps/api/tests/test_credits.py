import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.account import Account
from models.credit_ledger import CreditLedger
from services.credits import (
    LedgerKind,
    add_credits,
    ensure_account,
    get_balance,
    list_entries,
    refund_job,
    reserve_credits,
    verify_ledger,
)
from services.errors import InsufficientCredits


ACCOUNT_ID = "ledger-account"


async def _seed_account(session_maker, signup_credits: int) -> None:
    with patch("services.credits.settings.SIGNUP_CREDITS", signup_credits):
        async with session_maker() as db:
            await ensure_account(ACCOUNT_ID, db)


@pytest.mark.asyncio
async def test_signup_grant_is_recorded_once_in_the_ledger(session_maker):
    await _seed_account(session_maker, 10)
    async with session_maker() as db:
        await ensure_account(ACCOUNT_ID, db)
        assert await get_balance(ACCOUNT_ID, db) == 10
        entries = await list_entries(ACCOUNT_ID, db)

    assert len(entries) == 1
    assert entries[0].kind == LedgerKind.BONUS
    assert entries[0].balance_after == 10


@pytest.mark.asyncio
async def test_balance_equals_sum_of_entries_after_mixed_activity(session_maker):
    await _seed_account(session_maker, 5)
    async with session_maker() as db:
        await add_credits(ACCOUNT_ID, db, amount=20, kind=LedgerKind.PURCHASE, billing_reference="inv-1")
        await reserve_credits(ACCOUNT_ID, db, amount=4, related_job_id="job-a")
        await db.commit()
        await reserve_credits(ACCOUNT_ID, db, amount=3, related_job_id="job-b")
        await db.commit()
        await refund_job(ACCOUNT_ID, db, job_id="job-b", amount=3, reason="provider down")

        report = await verify_ledger(ACCOUNT_ID, db)
        entries = await list_entries(ACCOUNT_ID, db)

    assert report["ok"] is True
    assert report["balance"] == 5 + 20 - 4 - 3 + 3
    assert report["recomputed_balance"] == report["balance"]
    assert report["entry_count"] == 5
    assert entries[0].kind == LedgerKind.REFUND
    assert [entry.id for entry in entries] == sorted((entry.id for entry in entries), reverse=True)


@pytest.mark.asyncio
async def test_insufficient_reservation_has_no_side_effects(session_maker):
    await _seed_account(session_maker, 1)
    async with session_maker() as db:
        with pytest.raises(InsufficientCredits) as exc_info:
            await reserve_credits(ACCOUNT_ID, db, amount=2, related_job_id="job-too-big")
        await db.rollback()

        assert exc_info.value.required == 2
        assert exc_info.value.available == 1
        assert await get_balance(ACCOUNT_ID, db) == 1
        entries = await list_entries(ACCOUNT_ID, db)

    assert [entry.kind for entry in entries] == [LedgerKind.BONUS]


@pytest.mark.asyncio
async def test_reservation_rejects_non_positive_amounts(session_maker):
    await _seed_account(session_maker, 3)
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await reserve_credits(ACCOUNT_ID, db, amount=0, related_job_id="job-zero")


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(session_maker):
    await _seed_account(session_maker, 5)

    async def _reserve(index: int) -> bool:
        async with session_maker() as db:
            try:
                await reserve_credits(ACCOUNT_ID, db, amount=1, related_job_id=f"burst-{index}")
                await db.commit()
                return True
            except InsufficientCredits:
                await db.rollback()
                return False

    outcomes = await asyncio.gather(*[_reserve(index) for index in range(8)])

    assert outcomes.count(True) == 5
    assert outcomes.count(False) == 3
    async with session_maker() as db:
        assert await get_balance(ACCOUNT_ID, db) == 0
        report = await verify_ledger(ACCOUNT_ID, db)
    assert report["ok"] is True
    assert report["entry_count"] == 6


@pytest.mark.asyncio
async def test_refund_is_issued_at_most_once_per_job(session_maker):
    await _seed_account(session_maker, 4)
    async with session_maker() as db:
        await reserve_credits(ACCOUNT_ID, db, amount=4, related_job_id="job-refund")
        await db.commit()

        first = await refund_job(ACCOUNT_ID, db, job_id="job-refund", amount=4, reason="unreadable")
        second = await refund_job(ACCOUNT_ID, db, job_id="job-refund", amount=4, reason="unreadable")

        assert first is not None
        assert first.balance_after == 4
        assert second is None
        assert await get_balance(ACCOUNT_ID, db) == 4

        refunds = (
            await db.execute(
                select(CreditLedger).where(
                    CreditLedger.related_job_id == "job-refund",
                    CreditLedger.kind == LedgerKind.REFUND,
                )
            )
        ).scalars().all()
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_add_credits_rejects_debit_kinds(session_maker):
    await _seed_account(session_maker, 0)
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await add_credits(ACCOUNT_ID, db, amount=3, kind=LedgerKind.GENERATION)
        assert await get_balance(ACCOUNT_ID, db) == 0


@pytest.mark.asyncio
async def test_verify_ledger_flags_tampered_balance(session_maker):
    await _seed_account(session_maker, 3)
    async with session_maker() as db:
        account = (await db.execute(select(Account).where(Account.id == ACCOUNT_ID))).scalar_one()
        account.credits = 99
        await db.commit()

        report = await verify_ledger(ACCOUNT_ID, db)

    assert report["ok"] is False
    assert report["balance"] == 99
    assert report["recomputed_balance"] == 3
