"""Plan catalogue, wallet allocations and per-action credit costs.

All monetary amounts are integer cents (100 = $1.00).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from config import settings
from services.ledger_types import ActionType, Plan, UsageType


@dataclass(frozen=True)
class PlanConfig:
    name: str
    price_cents: int
    base_credits: int
    bonus_credits: int
    reactions_per_post: int
    comments_per_post: int

    @property
    def total_credits(self) -> int:
        return self.base_credits + self.bonus_credits


PLANS: Dict[Plan, PlanConfig] = {
    Plan.FREE: PlanConfig(
        name="Free",
        price_cents=0,
        base_credits=0,
        bonus_credits=0,
        reactions_per_post=100,
        comments_per_post=75,
    ),
    Plan.PRO: PlanConfig(
        name="Pro",
        price_cents=7900,
        base_credits=10000,
        bonus_credits=5000,
        reactions_per_post=300,
        comments_per_post=200,
    ),
    Plan.GROWTH: PlanConfig(
        name="Growth",
        price_cents=17900,
        base_credits=20000,
        bonus_credits=10000,
        reactions_per_post=600,
        comments_per_post=400,
    ),
    Plan.SCALE: PlanConfig(
        name="Scale",
        price_cents=27900,
        base_credits=30000,
        bonus_credits=20000,
        reactions_per_post=1000,
        comments_per_post=600,
    ),
}

CREDIT_COSTS = {
    "post_analysis_base": 1,
    "per_reaction": 1,
    "per_comment": 1,
    "profile_enrichment": 5,
    "email_lookup": 10,
    "ai_search": 10,
    "profile_monitoring_setup": 5,
    "profile_monitoring_check": 2,
}

# Flat prices for actions that are not sized by the scrape
FLAT_ACTION_COSTS = {
    ActionType.PROFILE_ENRICHMENT: CREDIT_COSTS["profile_enrichment"],
    ActionType.EMAIL_LOOKUP: CREDIT_COSTS["email_lookup"],
    ActionType.AI_SEARCH: CREDIT_COSTS["ai_search"],
    ActionType.PROFILE_MONITORING: CREDIT_COSTS["profile_monitoring_setup"],
}

USAGE_WARNING_PERCENT = 80


def resolve_plan(plan_id: Optional[str]) -> Plan:
    """Map a stored plan id to ``Plan``; unknown values fall back to free."""
    try:
        return Plan(str(plan_id or Plan.FREE.value))
    except ValueError:
        return Plan.FREE


def is_wallet_plan(plan_id: Optional[str]) -> bool:
    return resolve_plan(plan_id) is not Plan.FREE


def get_plan_config(plan_id: Optional[str]) -> PlanConfig:
    return PLANS[resolve_plan(plan_id)]


def format_credits(cents: int) -> str:
    """Format cents as a dollar string, e.g. ``1550 -> "$15.50"``."""
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(int(cents)) / 100:.2f}"


def calculate_post_analysis_cost(reaction_count: int, comment_count: int) -> int:
    return (
        CREDIT_COSTS["post_analysis_base"]
        + max(int(reaction_count), 0) * CREDIT_COSTS["per_reaction"]
        + max(int(comment_count), 0) * CREDIT_COSTS["per_comment"]
    )


def estimate_max_post_analysis_cost(plan_id: Optional[str]) -> Optional[int]:
    """Worst-case cost of one post analysis under the plan's scrape caps."""
    plan = resolve_plan(plan_id)
    if plan is Plan.FREE:
        return None
    config = PLANS[plan]
    return calculate_post_analysis_cost(config.reactions_per_post, config.comments_per_post)


def free_usage_limit(usage_type: UsageType) -> int:
    if usage_type is UsageType.ANALYSES:
        return max(int(settings.FREE_ANALYSES_LIMIT), 0)
    return max(int(settings.FREE_ENRICHMENTS_LIMIT), 0)


def get_usage_percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 100
    return min(round(used / limit * 100), 100)


def is_usage_warning(used: int, limit: int) -> bool:
    return get_usage_percentage(used, limit) >= USAGE_WARNING_PERCENT


def is_usage_limit_reached(used: int, limit: int) -> bool:
    return used >= limit
