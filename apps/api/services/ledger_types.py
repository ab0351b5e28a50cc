"""Shared enums and result types for the wallet ledger and usage counters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    GROWTH = "growth"
    SCALE = "scale"


class ActionType(str, Enum):
    """Categories recorded on wallet transactions."""

    # Metered actions (debits)
    POST_ANALYSIS = "post_analysis"
    PROFILE_ENRICHMENT = "profile_enrichment"
    AI_SEARCH = "ai_search"
    PROFILE_MONITORING = "profile_monitoring"
    EMAIL_LOOKUP = "email_lookup"

    # Balance adjustments
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    REFUND = "refund"
    MANUAL_GRANT = "manual_grant"
    FORFEITURE = "forfeiture"


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class UsageType(str, Enum):
    ANALYSES = "analyses"
    ENRICHMENTS = "enrichments"


class LedgerErrorCode(str, Enum):
    FREE_PLAN = "FREE_PLAN"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    LIMIT_REACHED = "LIMIT_REACHED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PLAN = "INVALID_PLAN"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"
    REFUND_NOT_ALLOWED = "REFUND_NOT_ALLOWED"


class LedgerUnavailableError(RuntimeError):
    """The storage layer could not execute a ledger operation.

    Callers must treat the metered action as not authorized.
    """


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a wallet or usage-counter primitive.

    Refusals (free plan, insufficient credits, limit reached) are ordinary
    results, not exceptions.
    """

    success: bool
    new_balance: Optional[int] = None
    new_count: Optional[int] = None
    error_code: Optional[LedgerErrorCode] = None
    error_message: Optional[str] = None
    transaction_id: Optional[int] = None

    @classmethod
    def ok_balance(cls, new_balance: int, transaction_id: Optional[int] = None) -> "LedgerResult":
        return cls(success=True, new_balance=int(new_balance), transaction_id=transaction_id)

    @classmethod
    def ok_count(cls, new_count: int) -> "LedgerResult":
        return cls(success=True, new_count=int(new_count))

    @classmethod
    def failure(cls, code: LedgerErrorCode, message: str) -> "LedgerResult":
        return cls(success=False, error_code=code, error_message=message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            if self.new_balance is not None:
                payload["new_balance"] = self.new_balance
            if self.new_count is not None:
                payload["new_count"] = self.new_count
            if self.transaction_id is not None:
                payload["transaction_id"] = self.transaction_id
        else:
            payload["error_code"] = self.error_code.value if self.error_code else None
            payload["error_message"] = self.error_message
        return payload


def coerce_action_type(value: Any) -> ActionType:
    """Return ``value`` as an ``ActionType`` or raise ``ValueError``."""
    if isinstance(value, ActionType):
        return value
    try:
        return ActionType(str(value))
    except ValueError as exc:
        raise ValueError(f"Unknown wallet action type: {value!r}") from exc


def coerce_usage_type(value: Any) -> UsageType:
    if isinstance(value, UsageType):
        return value
    try:
        return UsageType(str(value))
    except ValueError as exc:
        raise ValueError(f"Unknown usage type: {value!r}") from exc
