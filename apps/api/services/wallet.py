"""Wallet ledger: atomic debits and credits with an append-only audit trail.

Every balance mutation is a single guarded UPDATE ... RETURNING evaluated by
the database, followed by the transaction-log insert in the same database
transaction. The balance is never read into Python, compared, and written
back, so two concurrent callers on one account cannot both spend the same
credits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from models.wallet_transaction import WalletTransaction
from services.ledger_types import (
    ActionType,
    LedgerErrorCode,
    LedgerResult,
    LedgerUnavailableError,
    Plan,
    TransactionType,
    coerce_action_type,
)
from services.plans import PLANS, format_credits, resolve_plan


logger = logging.getLogger(__name__)

WALLET_PLAN_IDS = [plan.value for plan in Plan if plan is not Plan.FREE]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_positive_amount(amount: Any) -> bool:
    """Whole cents only: floats, strings and bools are rejected, not converted."""
    return isinstance(amount, int) and not isinstance(amount, bool) and amount > 0


def _invalid_amount() -> LedgerResult:
    return LedgerResult.failure(LedgerErrorCode.INVALID_AMOUNT, "Amount must be a positive whole number of cents")


def _account_not_found(user_id: str, operation: str) -> LedgerResult:
    logger.error("Wallet %s for unknown account %s", operation, user_id)
    return LedgerResult.failure(LedgerErrorCode.ACCOUNT_NOT_FOUND, "Account not found")


async def _append_transaction(
    db: AsyncSession,
    *,
    user_id: str,
    amount: int,
    tx_type: TransactionType,
    action_type: ActionType,
    reason: str,
    balance_after: int,
    metadata: Optional[Dict[str, Any]] = None,
    refund_of_id: Optional[int] = None,
) -> WalletTransaction:
    entry = WalletTransaction(
        user_id=user_id,
        amount=int(amount),
        type=tx_type.value,
        action_type=action_type.value,
        reason=reason,
        balance_after=int(balance_after),
        refund_of_id=refund_of_id,
        metadata_json=dict(metadata) if metadata else None,
    )
    db.add(entry)
    await db.flush()
    return entry


async def _classify_debit_refusal(user_id: str, db: AsyncSession, amount: int) -> LedgerResult:
    row = (
        await db.execute(select(User.plan, User.wallet_balance).where(User.id == user_id))
    ).first()
    if row is None:
        return _account_not_found(user_id, "debit")
    if row.plan not in WALLET_PLAN_IDS:
        return LedgerResult.failure(
            LedgerErrorCode.FREE_PLAN,
            "Free plan not eligible for wallet debits. Upgrade to a paid plan to use credits.",
        )
    return LedgerResult.failure(
        LedgerErrorCode.INSUFFICIENT_CREDITS,
        (
            f"Insufficient credits. Required: {format_credits(amount)}, "
            f"available: {format_credits(int(row.wallet_balance or 0))}."
        ),
    )


async def debit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    action_type: ActionType | str,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Deduct ``amount`` cents if the account is on a paid plan and can afford it.

    On success exactly one debit transaction is appended with
    ``balance_after`` taken from the same statement that changed the balance.
    On refusal nothing is written.

    Raises:
        LedgerUnavailableError: the database could not run the operation.
    """
    action = coerce_action_type(action_type)
    if not _is_positive_amount(amount):
        return _invalid_amount()
    cost = amount

    try:
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.plan.in_(WALLET_PLAN_IDS),
                User.wallet_balance >= cost,
            )
            .values(wallet_balance=User.wallet_balance - cost, updated_at=_utcnow())
            .returning(User.wallet_balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            refusal = await _classify_debit_refusal(user_id, db, cost)
            await db.rollback()
            if refusal.error_code is not LedgerErrorCode.ACCOUNT_NOT_FOUND:
                logger.warning(
                    "Wallet debit refused for user %s: amount=%s action=%s code=%s",
                    user_id,
                    cost,
                    action.value,
                    refusal.error_code.value,
                )
            return refusal

        entry = await _append_transaction(
            db,
            user_id=user_id,
            amount=-cost,
            tx_type=TransactionType.DEBIT,
            action_type=action,
            reason=reason,
            balance_after=new_balance,
            metadata=metadata,
        )
        transaction_id = entry.id
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Wallet debit failed for user %s", user_id)
        raise LedgerUnavailableError("Wallet debit could not be completed.") from exc

    logger.info(
        "Wallet debited: user=%s amount=%s new_balance=%s action=%s",
        user_id,
        format_credits(cost),
        format_credits(new_balance),
        action.value,
    )
    return LedgerResult.ok_balance(new_balance, transaction_id)


async def credit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    action_type: ActionType | str,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Add ``amount`` cents to the wallet. Any plan may receive credits.

    Raises:
        LedgerUnavailableError: the database could not run the operation.
    """
    action = coerce_action_type(action_type)
    if not _is_positive_amount(amount):
        return _invalid_amount()
    grant = amount

    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(wallet_balance=User.wallet_balance + grant, updated_at=_utcnow())
            .returning(User.wallet_balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            await db.rollback()
            return _account_not_found(user_id, "credit")

        entry = await _append_transaction(
            db,
            user_id=user_id,
            amount=grant,
            tx_type=TransactionType.CREDIT,
            action_type=action,
            reason=reason,
            balance_after=new_balance,
            metadata=metadata,
        )
        transaction_id = entry.id
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Wallet credit failed for user %s", user_id)
        raise LedgerUnavailableError("Wallet credit could not be completed.") from exc

    logger.info(
        "Wallet credited: user=%s amount=%s new_balance=%s action=%s",
        user_id,
        format_credits(grant),
        format_credits(new_balance),
        action.value,
    )
    return LedgerResult.ok_balance(new_balance, transaction_id)


async def _classify_refund_refusal(
    user_id: str,
    db: AsyncSession,
    debit_transaction_id: int,
    amount: int,
) -> LedgerResult:
    if await db.scalar(select(User.id).where(User.id == user_id)) is None:
        return _account_not_found(user_id, "refund")
    refunded_by = await db.scalar(
        select(WalletTransaction.id).where(WalletTransaction.refund_of_id == debit_transaction_id)
    )
    if refunded_by is not None:
        return LedgerResult.failure(
            LedgerErrorCode.ALREADY_REFUNDED,
            f"Transaction {debit_transaction_id} was already refunded.",
        )
    return LedgerResult.failure(
        LedgerErrorCode.REFUND_NOT_ALLOWED,
        f"Transaction {debit_transaction_id} is not a debit of at least {format_credits(amount)} on this account.",
    )


async def refund_debit(
    user_id: str,
    db: AsyncSession,
    *,
    debit_transaction_id: int,
    amount: int,
    reason: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Credit back up to the amount of one metered debit, once.

    The eligibility rules (the debit belongs to this account, covers
    ``amount`` and has no refund yet) are part of the balance UPDATE. The
    unique ``refund_of_id`` column rejects a second refund that commits
    concurrently.

    Raises:
        LedgerUnavailableError: the database could not run the operation.
    """
    if not _is_positive_amount(amount):
        return _invalid_amount()

    refundable = (
        select(WalletTransaction.id)
        .where(
            WalletTransaction.id == debit_transaction_id,
            WalletTransaction.user_id == user_id,
            WalletTransaction.type == TransactionType.DEBIT.value,
            WalletTransaction.action_type != ActionType.FORFEITURE.value,
            WalletTransaction.amount <= -amount,
        )
        .exists()
    )
    already_refunded = (
        select(WalletTransaction.id).where(WalletTransaction.refund_of_id == debit_transaction_id).exists()
    )

    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id, refundable, ~already_refunded)
            .values(wallet_balance=User.wallet_balance + amount, updated_at=_utcnow())
            .returning(User.wallet_balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()

        if new_balance is None:
            refusal = await _classify_refund_refusal(user_id, db, debit_transaction_id, amount)
            await db.rollback()
            if refusal.error_code is not LedgerErrorCode.ACCOUNT_NOT_FOUND:
                logger.warning(
                    "Wallet refund refused for user %s: debit=%s amount=%s code=%s",
                    user_id,
                    debit_transaction_id,
                    amount,
                    refusal.error_code.value,
                )
            return refusal

        entry = await _append_transaction(
            db,
            user_id=user_id,
            amount=amount,
            tx_type=TransactionType.CREDIT,
            action_type=ActionType.REFUND,
            reason=reason,
            balance_after=new_balance,
            metadata=metadata,
            refund_of_id=debit_transaction_id,
        )
        transaction_id = entry.id
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Concurrent refund of debit %s for user %s rejected", debit_transaction_id, user_id)
        return LedgerResult.failure(
            LedgerErrorCode.ALREADY_REFUNDED,
            f"Transaction {debit_transaction_id} was already refunded.",
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Wallet refund failed for user %s", user_id)
        raise LedgerUnavailableError("Wallet refund could not be completed.") from exc

    logger.info(
        "Wallet refunded: user=%s debit=%s amount=%s new_balance=%s",
        user_id,
        debit_transaction_id,
        format_credits(amount),
        format_credits(new_balance),
    )
    return LedgerResult.ok_balance(new_balance, transaction_id)


async def _swap_balance(
    user_id: str,
    db: AsyncSession,
    *,
    observed: int,
    new_balance: int,
    values: Dict[str, Any],
) -> Optional[int]:
    """Set the balance only if it still equals ``observed``."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.wallet_balance == observed)
        .values(wallet_balance=new_balance, **values)
        .returning(User.wallet_balance)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def reset_wallet_for_cycle(
    user_id: str,
    db: AsyncSession,
    *,
    plan: Plan | str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Replace the balance with ``plan``'s allocation for a new billing cycle.

    Unused credits are forfeited, not rolled over. The forfeiture and the
    allocation are logged in the same database transaction as the swap, so
    the transaction log still sums to the balance.
    """
    target = resolve_plan(plan.value if isinstance(plan, Plan) else plan)
    if target is Plan.FREE:
        return LedgerResult.failure(LedgerErrorCode.INVALID_PLAN, f"Invalid plan for wallet allocation: {plan}")
    config = PLANS[target]
    max_attempts = max(int(settings.WALLET_CAS_MAX_ATTEMPTS), 1)

    try:
        for attempt in range(1, max_attempts + 1):
            observed = await db.scalar(select(User.wallet_balance).where(User.id == user_id))
            if observed is None:
                await db.rollback()
                return _account_not_found(user_id, "reset")

            now = _utcnow()
            swapped = await _swap_balance(
                user_id,
                db,
                observed=observed,
                new_balance=config.total_credits,
                values={"plan": target.value, "wallet_reset_at": now, "updated_at": now},
            )
            if swapped is None:
                await db.rollback()
                logger.warning(
                    "Wallet reset lost a race for user %s (attempt %s/%s)", user_id, attempt, max_attempts
                )
                continue

            if observed > 0:
                await _append_transaction(
                    db,
                    user_id=user_id,
                    amount=-observed,
                    tx_type=TransactionType.DEBIT,
                    action_type=ActionType.FORFEITURE,
                    reason=f"Credits forfeited at billing cycle end (unused: {format_credits(observed)})",
                    balance_after=0,
                    metadata={"forfeited": True, "previous_balance": observed},
                )
            await _append_transaction(
                db,
                user_id=user_id,
                amount=config.total_credits,
                tx_type=TransactionType.CREDIT,
                action_type=ActionType.SUBSCRIPTION_RENEWAL,
                reason=f"Billing cycle credit allocation for {config.name} plan",
                balance_after=swapped,
                metadata={
                    "plan": target.value,
                    "base_credits": config.base_credits,
                    "bonus_credits": config.bonus_credits,
                    "total_credits": config.total_credits,
                    **(metadata or {}),
                },
            )
            await db.commit()
            logger.info(
                "Wallet reset: user=%s plan=%s forfeited=%s new_balance=%s",
                user_id,
                target.value,
                format_credits(observed),
                format_credits(swapped),
            )
            return LedgerResult.ok_balance(swapped)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Wallet reset failed for user %s", user_id)
        raise LedgerUnavailableError("Wallet reset could not be completed.") from exc

    return LedgerResult.failure(
        LedgerErrorCode.CONCURRENT_UPDATE,
        "Wallet was updated concurrently. Please retry.",
    )


async def clear_wallet_balance(
    user_id: str,
    db: AsyncSession,
    *,
    reason: str = "Subscription ended",
) -> LedgerResult:
    """Forfeit the remaining balance and move the account to the free plan."""
    max_attempts = max(int(settings.WALLET_CAS_MAX_ATTEMPTS), 1)

    try:
        for attempt in range(1, max_attempts + 1):
            observed = await db.scalar(select(User.wallet_balance).where(User.id == user_id))
            if observed is None:
                await db.rollback()
                return _account_not_found(user_id, "clear")

            swapped = await _swap_balance(
                user_id,
                db,
                observed=observed,
                new_balance=0,
                values={"plan": Plan.FREE.value, "updated_at": _utcnow()},
            )
            if swapped is None:
                await db.rollback()
                logger.warning(
                    "Wallet clear lost a race for user %s (attempt %s/%s)", user_id, attempt, max_attempts
                )
                continue

            if observed > 0:
                await _append_transaction(
                    db,
                    user_id=user_id,
                    amount=-observed,
                    tx_type=TransactionType.DEBIT,
                    action_type=ActionType.FORFEITURE,
                    reason=reason,
                    balance_after=0,
                    metadata={"cleared": True, "previous_balance": observed},
                )
            await db.commit()
            logger.info("Wallet cleared: user=%s forfeited=%s", user_id, format_credits(observed))
            return LedgerResult.ok_balance(0)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Wallet clear failed for user %s", user_id)
        raise LedgerUnavailableError("Wallet clear could not be completed.") from exc

    return LedgerResult.failure(
        LedgerErrorCode.CONCURRENT_UPDATE,
        "Wallet was updated concurrently. Please retry.",
    )


def serialize_transaction(entry: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "amount": entry.amount,
        "type": entry.type,
        "action_type": entry.action_type,
        "reason": entry.reason,
        "balance_after": entry.balance_after,
        "refund_of_id": entry.refund_of_id,
        "metadata": entry.metadata_json,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_wallet_transactions(user_id: str, db: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    """Recent transactions, newest first."""
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.id.desc())
        .limit(max(int(limit), 1))
    )
    return [serialize_transaction(entry) for entry in result.scalars().all()]


async def get_wallet_status(user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    row = (
        await db.execute(
            select(User.plan, User.wallet_balance, User.wallet_reset_at).where(User.id == user_id)
        )
    ).first()
    if row is None:
        return None

    balance = int(row.wallet_balance or 0)
    last_reset: Optional[datetime] = row.wallet_reset_at
    next_reset = last_reset + timedelta(days=int(settings.BILLING_CYCLE_DAYS)) if last_reset else None
    return {
        "balance": balance,
        "balance_formatted": format_credits(balance),
        "plan": resolve_plan(row.plan).value,
        "last_reset_at": last_reset,
        "next_reset_at": next_reset,
    }


async def has_enough_credits(user_id: str, db: AsyncSession, required: int) -> bool:
    """Advisory read for UI hints. Authorization must go through ``debit``."""
    status = await get_wallet_status(user_id, db)
    if status is None:
        return False
    if status["plan"] == Plan.FREE.value:
        return True
    return status["balance"] >= int(required)
