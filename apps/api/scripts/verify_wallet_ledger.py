"""Verify wallet ledger and free-tier counters against the configured database.

Run from apps/api with DATABASE_URL pointing at a disposable database:

    python scripts/verify_wallet_ledger.py
"""

import asyncio
import os
import sys
import time
import uuid

# Add parent dir to path to find app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import delete, func, select, update

from database import Base, async_session_maker, engine
from models.user import User
from models.wallet_transaction import WalletTransaction
from services.ledger_types import ActionType, LedgerErrorCode, UsageType
from services.usage import increment_if_under_limit
from services.wallet import credit, debit


TEST_USER_ID = f"verify_{int(time.time())}_{uuid.uuid4().hex[:8]}"


async def _reset_user(plan: str, wallet_balance: int = 0) -> None:
    async with async_session_maker() as session:
        await session.execute(delete(WalletTransaction).where(WalletTransaction.user_id == TEST_USER_ID))
        await session.execute(delete(User).where(User.id == TEST_USER_ID))
        session.add(
            User(
                id=TEST_USER_ID,
                email=f"{TEST_USER_ID}@verification.test",
                plan=plan,
                wallet_balance=wallet_balance,
            )
        )
        await session.commit()
    print(f"ℹ️ Test user reset: plan={plan} wallet={wallet_balance}")


async def _delete_user() -> None:
    async with async_session_maker() as session:
        await session.execute(delete(WalletTransaction).where(WalletTransaction.user_id == TEST_USER_ID))
        await session.execute(delete(User).where(User.id == TEST_USER_ID))
        await session.commit()


async def _balance() -> int:
    async with async_session_maker() as session:
        return int(await session.scalar(select(User.wallet_balance).where(User.id == TEST_USER_ID)))


async def _debit(amount: int, reason: str):
    async with async_session_maker() as session:
        return await debit(
            TEST_USER_ID,
            session,
            amount=amount,
            action_type=ActionType.POST_ANALYSIS,
            reason=reason,
            metadata={"verification": True},
        )


async def _increment(usage_type: UsageType, limit: int):
    async with async_session_maker() as session:
        return await increment_if_under_limit(TEST_USER_ID, session, usage_type=usage_type, limit=limit)


async def verify_unknown_account() -> bool:
    print("\n🔍 Unknown account handling")
    async with async_session_maker() as session:
        result = await debit("nonexistent_user_000", session, amount=1, action_type="post_analysis", reason="Unknown account check")
    if result.error_code is not LedgerErrorCode.ACCOUNT_NOT_FOUND:
        print(f"❌ Expected account-not-found, got {result}")
        return False
    result = await _increment_unknown()
    if result.error_code is not LedgerErrorCode.ACCOUNT_NOT_FOUND:
        print(f"❌ Expected user-not-found from counter, got {result}")
        return False
    print("✅ Both primitives report missing accounts as results")
    return True


async def _increment_unknown():
    async with async_session_maker() as session:
        return await increment_if_under_limit("nonexistent_user_000", session, usage_type="analyses", limit=5)


async def verify_atomic_debit() -> bool:
    print("\n🔍 Atomic credit deduction")
    await _reset_user("pro", 10000)

    result = await _debit(500, "Verification debit")
    if not result.success or result.new_balance != 9500:
        print(f"❌ Expected success with balance 9500, got {result}")
        return False
    print("✅ Debit of $5.00 succeeded, balance $95.00")

    result = await _debit(20000, "Should fail")
    if result.success or result.error_code is not LedgerErrorCode.INSUFFICIENT_CREDITS:
        print(f"❌ Expected insufficient credits, got {result}")
        return False
    if await _balance() != 9500:
        print("❌ Balance changed after refused debit")
        return False
    print(f"✅ Refused: {result.error_message}")

    await _reset_user("free", 5000)
    result = await _debit(100, "Free plan check")
    if result.success or result.error_code is not LedgerErrorCode.FREE_PLAN:
        print(f"❌ Expected free plan refusal, got {result}")
        return False
    print(f"✅ Free plan refused: {result.error_message}")
    return True


async def verify_free_limits() -> bool:
    print("\n🔍 Atomic free-tier limits")
    await _reset_user("free")

    for attempt in range(1, 7):
        result = await _increment(UsageType.ANALYSES, 5)
        if attempt <= 5 and not result.success:
            print(f"❌ Increment {attempt} should succeed: {result}")
            return False
        if attempt > 5 and result.success:
            print(f"❌ Increment {attempt} should be refused")
            return False
    print("✅ Analyses capped at 5")

    async with async_session_maker() as session:
        await session.execute(update(User).where(User.id == TEST_USER_ID).values(enrichments_used=9))
        await session.commit()
    first = await _increment(UsageType.ENRICHMENTS, 10)
    second = await _increment(UsageType.ENRICHMENTS, 10)
    if not first.success or second.success:
        print(f"❌ Enrichment 10/10 then 11/10 expected success then refusal, got {first} / {second}")
        return False
    print("✅ Enrichments capped at 10")
    return True


async def verify_transaction_log() -> bool:
    print("\n🔍 Wallet transaction logging")
    await _reset_user("growth", 0)
    async with async_session_maker() as session:
        await credit(TEST_USER_ID, session, amount=30000, action_type="subscription_renewal", reason="Seed")
    await _debit(1000, "Logged debit")

    async with async_session_maker() as session:
        latest = (
            await session.execute(
                select(WalletTransaction)
                .where(WalletTransaction.user_id == TEST_USER_ID)
                .order_by(WalletTransaction.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        total = await session.scalar(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.user_id == TEST_USER_ID
            )
        )

    if latest is None or latest.amount != -1000 or latest.type != "debit" or latest.balance_after != 29000:
        print(f"❌ Transaction data incorrect: {latest}")
        return False
    if int(total) != await _balance():
        print(f"❌ Transaction sum {total} does not match balance")
        return False
    print("✅ Transaction logged and log sums to balance")
    return True


async def verify_race_conditions() -> bool:
    print("\n🔍 Race condition prevention")
    await _reset_user("scale", 1000)
    results = await asyncio.gather(*[_debit(500, f"Race {i}") for i in range(5)])
    successes = [r for r in results if r.success]
    balance = await _balance()
    if len(successes) != 2 or balance != 0:
        print(f"❌ Expected 2 successful debits and balance 0, got {len(successes)} / {balance}")
        return False
    print("✅ 5 parallel $5.00 debits on $10.00: exactly 2 succeeded")

    await _reset_user("free")
    results = await asyncio.gather(*[_increment(UsageType.ANALYSES, 5) for _ in range(10)])
    if sum(1 for r in results if r.success) != 5:
        print("❌ Parallel increments exceeded the limit")
        return False
    print("✅ 10 parallel increments with limit 5: exactly 5 succeeded")
    return True


async def main() -> int:
    print("🚀 Wallet ledger verification")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    checks = [
        ("Unknown account handling", verify_unknown_account),
        ("Atomic credit deduction", verify_atomic_debit),
        ("Atomic free user limits", verify_free_limits),
        ("Wallet transaction logging", verify_transaction_log),
        ("Race condition prevention", verify_race_conditions),
    ]
    results = []
    try:
        for name, check in checks:
            results.append((name, await check()))
    finally:
        await _delete_user()
        await engine.dispose()

    print("\n📊 Summary")
    for name, passed in results:
        print(f"{'✅' if passed else '❌'} {name}: {'PASSED' if passed else 'FAILED'}")
    return 0 if all(passed for _, passed in results) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
