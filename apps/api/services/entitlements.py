"""Entitlement resolution: plan credits, rollover and subscription expiry.

All plan credit/rollover lookups go through `load_plan_terms`; the
computation itself (`resolve_entitlement`) is pure so it can be exercised
without a database.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.plan import Plan

logger = logging.getLogger(__name__)


ONE_TIME_PLAN = "one-time"
EXTRA_CREDIT_PLAN = "extra_credit"
ENTERPRISE_PLAN = "enterprise"
MANAGED_SERVICE_PLAN = "managed_service"
MANAGED_SERVICE_SAVINGS_FEE_PLAN = "managed_service_savings_fee"
SUBSCRIPTION_PLAN_TYPES = (
    "starter_monthly",
    "starter_annual",
    "professional_monthly",
    "professional_annual",
)
PLAN_TYPES = (
    ONE_TIME_PLAN,
    *SUBSCRIPTION_PLAN_TYPES,
    ENTERPRISE_PLAN,
    MANAGED_SERVICE_PLAN,
    MANAGED_SERVICE_SAVINGS_FEE_PLAN,
    EXTRA_CREDIT_PLAN,
)


@dataclass(frozen=True)
class PlanTerms:
    credits_granted: int
    max_rollover: int
    source: str = "catalog"


@dataclass(frozen=True)
class Entitlement:
    new_balance: int
    new_expiry: Optional[datetime]
    credits_granted: int
    rollover_credits: int
    ledger_delta: int


# Used only when the catalog has no active row for a known plan family.
LEGACY_PLAN_DEFAULTS = {
    "basic": PlanTerms(credits_granted=1, max_rollover=0, source="default"),
    "starter": PlanTerms(credits_granted=5, max_rollover=0, source="default"),
    "professional": PlanTerms(credits_granted=15, max_rollover=3, source="default"),
}
NO_TERMS = PlanTerms(credits_granted=0, max_rollover=0, source="unknown")


def plan_family(plan_type: str) -> str:
    """`professional_annual` -> `professional`; `one-time` -> `basic`."""
    value = (plan_type or "").strip().lower()
    if value == ONE_TIME_PLAN:
        return "basic"
    return value.split("_", 1)[0]


def billing_interval(plan_type: str) -> Optional[str]:
    value = (plan_type or "").strip().lower()
    if value.endswith("_monthly"):
        return "month"
    if value.endswith("_annual"):
        return "year"
    return None


def is_subscription_plan(plan_type: Optional[str]) -> bool:
    return (plan_type or "") in SUBSCRIPTION_PLAN_TYPES


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_expiry(plan_type: str, now: datetime) -> Optional[datetime]:
    interval = billing_interval(plan_type)
    if interval == "month":
        return add_months(now, 1)
    if interval == "year":
        return add_months(now, 12)
    return None


def resolve_plan_terms(plan_type: str, catalog_plan: Optional[Plan]) -> PlanTerms:
    if catalog_plan is not None:
        return PlanTerms(
            credits_granted=max(int(catalog_plan.credits or 0), 0),
            max_rollover=max(int(catalog_plan.max_rollover_credits or 0), 0),
        )
    family = plan_family(plan_type)
    defaults = LEGACY_PLAN_DEFAULTS.get(family)
    if defaults is not None:
        logger.warning("Plan catalog has no active %s plan; using built-in defaults", family)
        return defaults
    logger.warning("Unrecognized plan type %r; granting zero credits", plan_type)
    return NO_TERMS


def resolve_entitlement(
    plan_type: str,
    current_balance: int,
    current_expiry: Optional[datetime],
    *,
    terms: PlanTerms,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Compute the balance and expiry a subscription allocation produces.

    Unused credits roll over up to the plan cap; expiry is always computed
    from `now`, so consecutive renewals do not stack periods.
    """
    current = max(int(current_balance or 0), 0)
    rollover = 0
    if terms.max_rollover > 0 and current > 0:
        rollover = min(current, terms.max_rollover)
    new_balance = terms.credits_granted + rollover

    moment = now or datetime.now(timezone.utc)
    new_expiry = next_expiry(plan_type, moment)
    if new_expiry is None:
        new_expiry = current_expiry

    return Entitlement(
        new_balance=new_balance,
        new_expiry=new_expiry,
        credits_granted=terms.credits_granted,
        rollover_credits=rollover,
        ledger_delta=new_balance - current,
    )


async def load_plan_terms(plan_type: str, db: AsyncSession) -> PlanTerms:
    result = await db.execute(
        select(Plan).where(Plan.plan_type == plan_family(plan_type), Plan.is_active.is_(True))
    )
    return resolve_plan_terms(plan_type, result.scalars().first())
