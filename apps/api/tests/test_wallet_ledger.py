import asyncio

import pytest
from sqlalchemy import func, select

from models.user import User
from models.wallet_transaction import WalletTransaction
from services.ledger_types import ActionType, LedgerErrorCode, LedgerUnavailableError
from services.wallet import (
    clear_wallet_balance,
    credit,
    debit,
    get_wallet_status,
    get_wallet_transactions,
    has_enough_credits,
    refund_debit,
    reset_wallet_for_cycle,
)


async def _balance(session_maker, user_id: str) -> int:
    async with session_maker() as session:
        return await session.scalar(select(User.wallet_balance).where(User.id == user_id))


async def _transactions(session_maker, user_id: str):
    async with session_maker() as session:
        result = await session.execute(
            select(WalletTransaction).where(WalletTransaction.user_id == user_id).order_by(WalletTransaction.id)
        )
        return list(result.scalars().all())


async def _debit(session_maker, user_id: str, amount: int, reason: str = "Post analysis"):
    async with session_maker() as session:
        return await debit(user_id, session, amount=amount, action_type=ActionType.POST_ANALYSIS, reason=reason)


@pytest.mark.asyncio
async def test_debit_deducts_and_logs_transaction(session_maker, create_account):
    user_id = await create_account("pro-user", plan="pro", wallet_balance=10000)

    async with session_maker() as session:
        result = await debit(
            user_id,
            session,
            amount=1000,
            action_type="post_analysis",
            reason="Post analysis: 500 reactions",
            metadata={"post_url": "https://example.com/post/1"},
        )

    assert result.success is True
    assert result.new_balance == 9000
    assert result.error_code is None
    assert await _balance(session_maker, user_id) == 9000

    entries = await _transactions(session_maker, user_id)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.amount == -1000
    assert entry.type == "debit"
    assert entry.action_type == "post_analysis"
    assert entry.balance_after == 9000
    assert entry.metadata_json == {"post_url": "https://example.com/post/1"}
    assert result.transaction_id == entry.id


@pytest.mark.asyncio
async def test_debit_refuses_insufficient_credits_without_writing(session_maker, create_account):
    user_id = await create_account("short-user", plan="pro", wallet_balance=9500)

    result = await _debit(session_maker, user_id, 20000)

    assert result.success is False
    assert result.error_code is LedgerErrorCode.INSUFFICIENT_CREDITS
    assert "Insufficient credits" in result.error_message
    assert "$200.00" in result.error_message
    assert "$95.00" in result.error_message
    assert await _balance(session_maker, user_id) == 9500
    assert await _transactions(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_debit_refuses_free_plan_regardless_of_balance(session_maker, create_account):
    user_id = await create_account("free-user", plan="free", wallet_balance=5000)

    result = await _debit(session_maker, user_id, 100)

    assert result.success is False
    assert result.error_code is LedgerErrorCode.FREE_PLAN
    assert "Free plan" in result.error_message
    assert await _balance(session_maker, user_id) == 5000
    assert await _transactions(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_debit_unknown_account(session_maker):
    result = await _debit(session_maker, "missing-user", 100)

    assert result.success is False
    assert result.error_code is LedgerErrorCode.ACCOUNT_NOT_FOUND
    assert result.error_message == "Account not found"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -50, 10.9, True, "10"])
async def test_invalid_amounts_are_rejected(session_maker, create_account, amount):
    user_id = await create_account("amount-user", plan="growth", wallet_balance=1000)

    async with session_maker() as session:
        debit_result = await debit(user_id, session, amount=amount, action_type="ai_search", reason="Search")
        credit_result = await credit(user_id, session, amount=amount, action_type="refund", reason="Refund")

    assert debit_result.error_code is LedgerErrorCode.INVALID_AMOUNT
    assert credit_result.error_code is LedgerErrorCode.INVALID_AMOUNT
    assert await _balance(session_maker, user_id) == 1000
    assert await _transactions(session_maker, user_id) == []


@pytest.mark.asyncio
async def test_debit_of_exact_balance_reaches_zero(session_maker, create_account):
    user_id = await create_account("exact-user", plan="scale", wallet_balance=750)

    result = await _debit(session_maker, user_id, 750)

    assert result.success is True
    assert result.new_balance == 0


@pytest.mark.asyncio
async def test_unknown_action_type_raises_value_error(session_maker, create_account):
    user_id = await create_account("typo-user", plan="pro", wallet_balance=1000)

    async with session_maker() as session:
        with pytest.raises(ValueError):
            await debit(user_id, session, amount=10, action_type="teleport", reason="Nope")

    assert await _balance(session_maker, user_id) == 1000


@pytest.mark.asyncio
async def test_credit_applies_to_any_plan(session_maker, create_account):
    user_id = await create_account("credited-free-user", plan="free", wallet_balance=0)

    async with session_maker() as session:
        result = await credit(
            user_id,
            session,
            amount=2500,
            action_type=ActionType.MANUAL_GRANT,
            reason="Support goodwill",
            metadata={"ticket": "42"},
        )

    assert result.success is True
    assert result.new_balance == 2500
    entries = await _transactions(session_maker, user_id)
    assert [(e.amount, e.type, e.balance_after) for e in entries] == [(2500, "credit", 2500)]


@pytest.mark.asyncio
async def test_credit_unknown_account(session_maker):
    async with session_maker() as session:
        result = await credit("ghost", session, amount=10, action_type="refund", reason="Refund")

    assert result.error_code is LedgerErrorCode.ACCOUNT_NOT_FOUND


async def _refund(session_maker, user_id: str, debit_id: int, amount: int):
    async with session_maker() as session:
        return await refund_debit(
            user_id, session, debit_transaction_id=debit_id, amount=amount, reason="Scrape failed"
        )


@pytest.mark.asyncio
async def test_refund_debit_links_refund_to_debit(session_maker, create_account):
    user_id = await create_account("refunded-user", plan="pro", wallet_balance=1000)
    charged = await _debit(session_maker, user_id, 400)

    refund = await _refund(session_maker, user_id, charged.transaction_id, 400)
    again = await _refund(session_maker, user_id, charged.transaction_id, 400)

    assert refund.success is True
    assert refund.new_balance == 1000
    assert again.error_code is LedgerErrorCode.ALREADY_REFUNDED
    entries = await _transactions(session_maker, user_id)
    assert [(e.action_type, e.amount, e.refund_of_id) for e in entries] == [
        ("post_analysis", -400, None),
        ("refund", 400, charged.transaction_id),
    ]
    assert await _balance(session_maker, user_id) == 1000


@pytest.mark.asyncio
async def test_refund_debit_rejects_ineligible_transactions(session_maker, create_account):
    user_id = await create_account("owner", plan="pro", wallet_balance=1000)
    other_id = await create_account("other", plan="pro", wallet_balance=1000)
    charged = await _debit(session_maker, user_id, 300)
    async with session_maker() as session:
        granted = await credit(user_id, session, amount=50, action_type="manual_grant", reason="Goodwill")
        forfeited = await clear_wallet_balance(other_id, session)
    forfeiture_id = (await _transactions(session_maker, other_id))[0].id

    too_much = await _refund(session_maker, user_id, charged.transaction_id, 301)
    wrong_account = await _refund(session_maker, other_id, charged.transaction_id, 300)
    not_a_debit = await _refund(session_maker, user_id, granted.transaction_id, 50)
    forfeiture = await _refund(session_maker, other_id, forfeiture_id, 100)
    fractional = await _refund(session_maker, user_id, charged.transaction_id, 99.5)

    assert forfeited.success is True
    for result in (too_much, wrong_account, not_a_debit, forfeiture):
        assert result.error_code is LedgerErrorCode.REFUND_NOT_ALLOWED
    assert fractional.error_code is LedgerErrorCode.INVALID_AMOUNT
    assert await _balance(session_maker, user_id) == 750
    assert await _balance(session_maker, other_id) == 0


@pytest.mark.asyncio
async def test_concurrent_refunds_of_one_debit_allow_one(session_maker, create_account):
    user_id = await create_account("racing-refunds", plan="scale", wallet_balance=1000)
    charged = await _debit(session_maker, user_id, 500)

    results = await asyncio.gather(
        *[_refund(session_maker, user_id, charged.transaction_id, 500) for _ in range(4)]
    )

    assert sum(1 for r in results if r.success) == 1
    assert all(r.error_code is LedgerErrorCode.ALREADY_REFUNDED for r in results if not r.success)
    assert await _balance(session_maker, user_id) == 1000


@pytest.mark.asyncio
async def test_transaction_log_sums_to_balance(session_maker, create_account):
    user_id = await create_account("audit-user", plan="pro", wallet_balance=0)

    async with session_maker() as session:
        await credit(user_id, session, amount=15000, action_type="subscription_renewal", reason="Allocation")
    await _debit(session_maker, user_id, 1200)
    await _debit(session_maker, user_id, 99999)
    async with session_maker() as session:
        await debit(user_id, session, amount=500, action_type="profile_enrichment", reason="Enrichment")
        await credit(user_id, session, amount=500, action_type="refund", reason="Enrichment failed")

    entries = await _transactions(session_maker, user_id)
    balance = await _balance(session_maker, user_id)
    assert len(entries) == 4
    assert sum(entry.amount for entry in entries) == balance == 13800
    assert entries[-1].balance_after == balance

    running = 0
    for entry in entries:
        running += entry.amount
        assert entry.balance_after == running


@pytest.mark.asyncio
async def test_concurrent_debits_on_exact_balance_allow_one(session_maker, create_account):
    user_id = await create_account("race-user", plan="pro", wallet_balance=1000)

    results = await asyncio.gather(
        _debit(session_maker, user_id, 1000, "Race A"),
        _debit(session_maker, user_id, 1000, "Race B"),
    )

    successes = [r for r in results if r.success]
    failures = [r for r in results if not r.success]
    assert len(successes) == 1
    assert successes[0].new_balance == 0
    assert failures[0].error_code is LedgerErrorCode.INSUFFICIENT_CREDITS
    assert await _balance(session_maker, user_id) == 0
    assert len(await _transactions(session_maker, user_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_maker, create_account):
    user_id = await create_account("burst-user", plan="growth", wallet_balance=1000)

    results = await asyncio.gather(*[_debit(session_maker, user_id, 300, f"Burst {i}") for i in range(8)])

    successes = [r for r in results if r.success]
    assert len(successes) == 3
    assert sorted(r.new_balance for r in successes) == [100, 400, 700]
    assert await _balance(session_maker, user_id) == 100

    entries = await _transactions(session_maker, user_id)
    assert 1000 + sum(entry.amount for entry in entries) == 100


@pytest.mark.asyncio
async def test_debit_storage_failure_raises(session_maker, create_account):
    user_id = await create_account("broken-user", plan="pro", wallet_balance=1000)

    async with session_maker() as session:
        await session.run_sync(lambda sync_session: WalletTransaction.__table__.drop(sync_session.connection()))
        await session.commit()

    with pytest.raises(LedgerUnavailableError):
        await _debit(session_maker, user_id, 100)

    assert await _balance(session_maker, user_id) == 1000


@pytest.mark.asyncio
async def test_reset_wallet_forfeits_and_allocates(session_maker, create_account):
    user_id = await create_account("renewing-user", plan="pro", wallet_balance=1234)

    async with session_maker() as session:
        result = await reset_wallet_for_cycle(user_id, session, plan="growth", metadata={"invoice": "in_1"})

    assert result.success is True
    assert result.new_balance == 30000
    async with session_maker() as session:
        row = (await session.execute(select(User.plan, User.wallet_reset_at).where(User.id == user_id))).one()
    assert row.plan == "growth"
    assert row.wallet_reset_at is not None

    entries = await _transactions(session_maker, user_id)
    assert [(e.action_type, e.amount, e.balance_after) for e in entries] == [
        ("forfeiture", -1234, 0),
        ("subscription_renewal", 30000, 30000),
    ]
    assert entries[1].metadata_json["invoice"] == "in_1"
    assert entries[1].metadata_json["total_credits"] == 30000


@pytest.mark.asyncio
async def test_reset_wallet_skips_forfeiture_on_empty_wallet(session_maker, create_account):
    user_id = await create_account("new-subscriber", plan="free", wallet_balance=0)

    async with session_maker() as session:
        result = await reset_wallet_for_cycle(user_id, session, plan="pro")

    assert result.new_balance == 15000
    entries = await _transactions(session_maker, user_id)
    assert [e.action_type for e in entries] == ["subscription_renewal"]


@pytest.mark.asyncio
async def test_reset_wallet_rejects_free_plan(session_maker, create_account):
    user_id = await create_account("downgrading-user", plan="pro", wallet_balance=100)

    async with session_maker() as session:
        result = await reset_wallet_for_cycle(user_id, session, plan="free")

    assert result.error_code is LedgerErrorCode.INVALID_PLAN
    assert await _balance(session_maker, user_id) == 100


@pytest.mark.asyncio
async def test_clear_wallet_balance_moves_to_free(session_maker, create_account):
    user_id = await create_account("cancelled-user", plan="scale", wallet_balance=4200)

    async with session_maker() as session:
        result = await clear_wallet_balance(user_id, session)

    assert result.success is True
    assert result.new_balance == 0
    async with session_maker() as session:
        plan = await session.scalar(select(User.plan).where(User.id == user_id))
        total = await session.scalar(
            select(func.sum(WalletTransaction.amount)).where(WalletTransaction.user_id == user_id)
        )
    assert plan == "free"
    assert total == -4200


@pytest.mark.asyncio
async def test_wallet_status_and_history(session_maker, create_account):
    user_id = await create_account("status-user", plan="pro", wallet_balance=0)
    async with session_maker() as session:
        await reset_wallet_for_cycle(user_id, session, plan="pro")
    await _debit(session_maker, user_id, 550)

    async with session_maker() as session:
        status = await get_wallet_status(user_id, session)
        history = await get_wallet_transactions(user_id, session, limit=10)
        assert await has_enough_credits(user_id, session, 14450) is True
        assert await has_enough_credits(user_id, session, 14451) is False
        assert await get_wallet_status("nobody", session) is None

    assert status["balance"] == 14450
    assert status["balance_formatted"] == "$144.50"
    assert status["plan"] == "pro"
    assert (status["next_reset_at"] - status["last_reset_at"]).days == 30
    assert [item["action_type"] for item in history] == ["post_analysis", "subscription_renewal"]
    assert history[0]["amount"] == -550
