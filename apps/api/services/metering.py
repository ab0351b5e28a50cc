"""Authorization of metered actions against the wallet or free-tier quota.

Request handlers call ``authorize_action`` before doing paid work (scrapes,
enrichments) and proceed only when ``decision.allowed`` is true. Storage
errors propagate as ``LedgerUnavailableError``; handlers must treat them as
a refusal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.ledger_types import (
    ActionType,
    LedgerErrorCode,
    LedgerResult,
    LedgerUnavailableError,
    Plan,
    UsageType,
    coerce_action_type,
)
from services.plans import FLAT_ACTION_COSTS, estimate_max_post_analysis_cost, free_usage_limit, resolve_plan
from services.usage import increment_if_under_limit, roll_usage_window
from services.wallet import debit, refund_debit


logger = logging.getLogger(__name__)

FREE_TIER_USAGE = {
    ActionType.POST_ANALYSIS: UsageType.ANALYSES,
    ActionType.PROFILE_ENRICHMENT: UsageType.ENRICHMENTS,
}

USER_MESSAGES = {
    LedgerErrorCode.INSUFFICIENT_CREDITS: "No credits remaining. Please upgrade your plan.",
    LedgerErrorCode.FREE_PLAN: "This feature requires a paid plan. Please upgrade to continue.",
    LedgerErrorCode.ACCOUNT_NOT_FOUND: "Account not found. Please sign in again.",
    LedgerErrorCode.INVALID_AMOUNT: "This action could not be priced. Please try again.",
}


@dataclass(frozen=True)
class MeteringDecision:
    allowed: bool
    action_type: ActionType
    plan: Optional[Plan] = None
    charged: int = 0
    new_balance: Optional[int] = None
    usage_count: Optional[int] = None
    transaction_id: Optional[int] = None
    error_code: Optional[LedgerErrorCode] = None
    user_message: Optional[str] = None


def _limit_message(usage_type: UsageType, limit: int) -> str:
    return f"You've used all {limit} free {usage_type.value} this month. Upgrade your plan for more."


def _refused(action: ActionType, plan: Optional[Plan], result: LedgerResult, message: Optional[str] = None) -> MeteringDecision:
    code = result.error_code
    return MeteringDecision(
        allowed=False,
        action_type=action,
        plan=plan,
        error_code=code,
        user_message=message or USER_MESSAGES.get(code, result.error_message),
    )


def action_cost(action: ActionType, plan: Plan) -> Optional[int]:
    """Default wallet price of ``action`` in cents for ``plan``."""
    if action is ActionType.POST_ANALYSIS:
        return estimate_max_post_analysis_cost(plan.value)
    return FLAT_ACTION_COSTS.get(action)


async def authorize_action(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: ActionType | str,
    cost: Optional[int] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> MeteringDecision:
    """Charge the wallet or consume free quota for one metered action."""
    action = coerce_action_type(action_type)
    try:
        stored_plan = await db.scalar(select(User.plan).where(User.id == user_id))
    except SQLAlchemyError as exc:
        await db.rollback()
        raise LedgerUnavailableError("Account plan could not be loaded.") from exc

    if stored_plan is None:
        logger.error("Metered action %s requested for unknown account %s", action.value, user_id)
        return _refused(
            action,
            None,
            LedgerResult.failure(LedgerErrorCode.ACCOUNT_NOT_FOUND, "Account not found"),
        )

    plan = resolve_plan(stored_plan)

    if plan is Plan.FREE:
        usage_type = FREE_TIER_USAGE.get(action)
        if usage_type is None:
            return _refused(
                action,
                plan,
                LedgerResult.failure(LedgerErrorCode.FREE_PLAN, "Free plan not eligible for this action"),
            )
        limit = free_usage_limit(usage_type)
        await roll_usage_window(user_id, db)
        result = await increment_if_under_limit(user_id, db, usage_type=usage_type, limit=limit)
        if not result.success:
            message = _limit_message(usage_type, limit) if result.error_code is LedgerErrorCode.LIMIT_REACHED else None
            return _refused(action, plan, result, message)
        return MeteringDecision(
            allowed=True,
            action_type=action,
            plan=plan,
            usage_count=result.new_count,
        )

    amount = cost if cost is not None else action_cost(action, plan)
    if amount is None:
        return _refused(
            action,
            plan,
            LedgerResult.failure(LedgerErrorCode.INVALID_AMOUNT, f"No price configured for {action.value}"),
        )

    result = await debit(
        user_id,
        db,
        amount=amount,
        action_type=action,
        reason=reason or action.value.replace("_", " ").capitalize(),
        metadata=metadata,
    )
    if not result.success:
        return _refused(action, plan, result)
    return MeteringDecision(
        allowed=True,
        action_type=action,
        plan=plan,
        charged=int(amount),
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
    )


async def refund_action(
    user_id: str,
    db: AsyncSession,
    decision: MeteringDecision,
    *,
    reason: str,
    amount: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[LedgerResult]:
    """Return credits for an authorized action whose work failed or was cheaper.

    ``amount`` defaults to the full charge and is capped at it. Each charge
    can be refunded once; a repeated call returns ``ALREADY_REFUNDED``.
    Free-tier quota is not returned.
    """
    if not decision.allowed or decision.charged <= 0 or decision.transaction_id is None:
        return None
    refund_amount = decision.charged if amount is None else min(amount, decision.charged)
    return await refund_debit(
        user_id,
        db,
        debit_transaction_id=decision.transaction_id,
        amount=refund_amount,
        reason=reason,
        metadata={"refunded_action": decision.action_type.value, **(metadata or {})},
    )
