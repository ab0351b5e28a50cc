"""Wallet, usage and transaction history router."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.ledger_types import ActionType, LedgerErrorCode, LedgerUnavailableError
from services.plans import estimate_max_post_analysis_cost, format_credits, get_plan_config
from services.usage import get_usage_info
from services.wallet import credit, get_wallet_status, get_wallet_transactions

router = APIRouter()
logger = logging.getLogger(__name__)


class ManualGrantRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=1_000_000, description="Credits to add, in cents")
    reason: str = Field(default="Manual credit grant", min_length=1, max_length=200)
    metadata: Optional[Dict[str, Any]] = None


def _ledger_unavailable(exc: LedgerUnavailableError) -> HTTPException:
    logger.error("Ledger unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Billing storage is temporarily unavailable. Please retry.")


def _days_until(moment: Optional[datetime]) -> Optional[int]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - datetime.now(timezone.utc)
    return max(delta.days, 0)


@router.get("/wallet")
async def wallet_summary(
    user_id: Optional[str] = Query(default=None),
    history: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    status = await get_wallet_status(scoped_user_id, db)
    if status is None:
        raise HTTPException(status_code=404, detail="Account not found.")

    config = get_plan_config(status["plan"])
    allocation = config.total_credits
    spent = max(allocation - status["balance"], 0)
    payload: Dict[str, Any] = {
        "balance": {
            "current": status["balance"],
            "formatted": status["balance_formatted"],
            "plan": status["plan"],
        },
        "allocation": {
            "plan_name": config.name,
            "base_credits": config.base_credits,
            "bonus_credits": config.bonus_credits,
            "total": allocation,
            "formatted": format_credits(allocation),
        },
        "usage": {
            "spent": spent,
            "spent_formatted": format_credits(spent),
            "percent_used": round(spent / allocation * 100) if allocation else 0,
            "last_reset": status["last_reset_at"],
            "next_reset": status["next_reset_at"],
            "days_until_reset": _days_until(status["next_reset_at"]),
        },
        "max_post_analysis_cost": estimate_max_post_analysis_cost(status["plan"]),
    }
    if history:
        payload["transactions"] = await get_wallet_transactions(scoped_user_id, db, limit=limit)
    return payload


@router.get("/usage")
async def usage_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    usage = await get_usage_info(scoped_user_id, db)
    if usage is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return usage


@router.get("/transactions")
async def transaction_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    items = await get_wallet_transactions(scoped_user_id, db, limit=limit)
    return {"items": items, "count": len(items)}


@router.post("/grant")
async def manual_grant(
    request: ManualGrantRequest,
    _rate_limit: None = Depends(rate_limit("billing_grant", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if not settings.ALLOW_MANUAL_GRANTS:
        raise HTTPException(status_code=503, detail="Manual grants are disabled. Enable ALLOW_MANUAL_GRANTS to use them.")

    try:
        result = await credit(
            request.user_id,
            db,
            amount=request.amount,
            action_type=ActionType.MANUAL_GRANT,
            reason=request.reason,
            metadata={"granted_by": auth.user_id, **(request.metadata or {})},
        )
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable(exc) from exc

    if not result.success:
        status_code = 404 if result.error_code is LedgerErrorCode.ACCOUNT_NOT_FOUND else 422
        raise HTTPException(status_code=status_code, detail=result.error_message)

    return {
        "ok": True,
        "credits_added": request.amount,
        "balance_after": result.new_balance,
        "balance_formatted": format_credits(result.new_balance),
    }
