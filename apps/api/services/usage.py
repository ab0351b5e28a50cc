"""Free-tier usage counters with atomic limit enforcement."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.ledger_types import (
    LedgerErrorCode,
    LedgerResult,
    LedgerUnavailableError,
    UsageType,
    coerce_usage_type,
)
from services.plans import (
    free_usage_limit,
    get_plan_config,
    get_usage_percentage,
    is_usage_warning,
    resolve_plan,
)


logger = logging.getLogger(__name__)


def _counter_column(usage_type: UsageType):
    if usage_type is UsageType.ANALYSES:
        return User.analyses_used
    return User.enrichments_used


async def increment_if_under_limit(
    user_id: str,
    db: AsyncSession,
    *,
    usage_type: UsageType | str,
    limit: int,
) -> LedgerResult:
    """Add one to the selected counter only while it is below ``limit``.

    The comparison and the increment are one UPDATE statement, so two
    callers racing at ``limit - 1`` get exactly one success.

    Raises:
        LedgerUnavailableError: the database could not run the operation.
    """
    kind = coerce_usage_type(usage_type)
    counter = _counter_column(kind)
    cap = int(limit)

    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id, counter < cap)
            .values({counter: counter + 1})
            .returning(counter)
            .execution_options(synchronize_session=False)
        )
        new_count = result.scalar_one_or_none()

        if new_count is None:
            current = await db.scalar(select(counter).where(User.id == user_id))
            await db.rollback()
            if current is None:
                logger.error("Usage increment for unknown account %s", user_id)
                return LedgerResult.failure(LedgerErrorCode.ACCOUNT_NOT_FOUND, "User not found")
            logger.warning(
                "Usage limit reached for user %s: %s=%s limit=%s", user_id, kind.value, current, cap
            )
            return LedgerResult.failure(
                LedgerErrorCode.LIMIT_REACHED,
                f"Usage limit reached: {current}/{cap} {kind.value} used.",
            )

        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Usage increment failed for user %s", user_id)
        raise LedgerUnavailableError("Usage counter could not be updated.") from exc

    return LedgerResult.ok_count(new_count)


async def roll_usage_window(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> bool:
    """Zero both counters if the current window has expired.

    Returns True when a new window was started.
    """
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(days=max(int(settings.FREE_USAGE_WINDOW_DAYS), 1))
    try:
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(User.usage_reset_at.is_(None), User.usage_reset_at < cutoff),
            )
            .values(analyses_used=0, enrichments_used=0, usage_reset_at=current)
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )
        rolled = result.scalar_one_or_none() is not None
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Usage window roll failed for user %s", user_id)
        raise LedgerUnavailableError("Usage window could not be checked.") from exc

    if rolled:
        logger.info("Started new free-tier usage window for user %s", user_id)
    return rolled


async def reset_usage_counters(user_id: str, db: AsyncSession) -> bool:
    """Unconditionally start a new usage window (e.g. on billing cycle reset)."""
    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(analyses_used=0, enrichments_used=0, usage_reset_at=datetime.now(timezone.utc))
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )
        found = result.scalar_one_or_none() is not None
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Usage reset failed for user %s", user_id)
        raise LedgerUnavailableError("Usage counters could not be reset.") from exc
    return found


async def get_usage_info(user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    row = (
        await db.execute(
            select(User.plan, User.analyses_used, User.enrichments_used, User.usage_reset_at).where(
                User.id == user_id
            )
        )
    ).first()
    if row is None:
        return None

    plan = resolve_plan(row.plan)
    analyses_used = int(row.analyses_used or 0)
    enrichments_used = int(row.enrichments_used or 0)
    analyses_limit = free_usage_limit(UsageType.ANALYSES)
    enrichments_limit = free_usage_limit(UsageType.ENRICHMENTS)
    window_start: Optional[datetime] = row.usage_reset_at

    return {
        "plan": plan.value,
        "plan_name": get_plan_config(plan.value).name,
        "analyses_used": analyses_used,
        "analyses_limit": analyses_limit,
        "analyses_percentage": get_usage_percentage(analyses_used, analyses_limit),
        "analyses_warning": is_usage_warning(analyses_used, analyses_limit),
        "enrichments_used": enrichments_used,
        "enrichments_limit": enrichments_limit,
        "enrichments_percentage": get_usage_percentage(enrichments_used, enrichments_limit),
        "enrichments_warning": is_usage_warning(enrichments_used, enrichments_limit),
        "usage_reset_at": window_start,
        "next_usage_reset_at": (
            window_start + timedelta(days=int(settings.FREE_USAGE_WINDOW_DAYS)) if window_start else None
        ),
    }
