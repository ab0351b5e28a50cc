"""Metered action authorization router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.ledger_types import ActionType, LedgerErrorCode, LedgerUnavailableError
from services.metering import authorize_action
from services.plans import calculate_post_analysis_cost, format_credits

router = APIRouter()
logger = logging.getLogger(__name__)


class AuthorizeRequest(BaseModel):
    action_type: ActionType
    reactions: Optional[int] = Field(default=None, ge=0, le=5000)
    comments: Optional[int] = Field(default=None, ge=0, le=5000)
    post_url: Optional[str] = Field(default=None, max_length=2048)
    metadata: Optional[Dict[str, Any]] = None


@router.post("/authorize")
async def authorize(
    request: AuthorizeRequest,
    _rate_limit: None = Depends(rate_limit("metering_authorize", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Charge for one metered action before the caller starts the work."""
    if request.action_type not in {
        ActionType.POST_ANALYSIS,
        ActionType.PROFILE_ENRICHMENT,
        ActionType.AI_SEARCH,
        ActionType.PROFILE_MONITORING,
        ActionType.EMAIL_LOOKUP,
    }:
        raise HTTPException(status_code=422, detail=f"{request.action_type.value} is not a metered action.")

    cost = None
    has_counts = request.reactions is not None or request.comments is not None
    if request.action_type is ActionType.POST_ANALYSIS and has_counts:
        cost = calculate_post_analysis_cost(request.reactions or 0, request.comments or 0)

    metadata = dict(request.metadata or {})
    if request.post_url:
        metadata["post_url"] = request.post_url

    try:
        decision = await authorize_action(
            auth.user_id,
            db,
            action_type=request.action_type,
            cost=cost,
            metadata=metadata or None,
        )
    except LedgerUnavailableError as exc:
        logger.error("Authorization failed closed for user %s: %s", auth.user_id, exc)
        raise HTTPException(
            status_code=503,
            detail="Billing storage is temporarily unavailable. The action was not started.",
        ) from exc

    if not decision.allowed:
        status_code = 404 if decision.error_code is LedgerErrorCode.ACCOUNT_NOT_FOUND else 402
        raise HTTPException(
            status_code=status_code,
            detail={
                "error_code": decision.error_code.value if decision.error_code else None,
                "message": decision.user_message,
                "upgrade_required": status_code == 402,
            },
        )

    return {
        "allowed": True,
        "action_type": decision.action_type.value,
        "plan": decision.plan.value if decision.plan else None,
        "charged": decision.charged,
        "charged_formatted": format_credits(decision.charged),
        "new_balance": decision.new_balance,
        "usage_count": decision.usage_count,
    }
