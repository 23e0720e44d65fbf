from datetime import datetime, timezone

import pytest

from models.plan import Plan
from services.entitlements import (
    LEGACY_PLAN_DEFAULTS,
    PlanTerms,
    add_months,
    billing_interval,
    is_subscription_plan,
    load_plan_terms,
    plan_family,
    resolve_entitlement,
    resolve_plan_terms,
)

NOW = datetime(2026, 3, 15, 9, 30, tzinfo=timezone.utc)
PROFESSIONAL = PlanTerms(credits_granted=15, max_rollover=3)
STARTER = PlanTerms(credits_granted=5, max_rollover=0)


def test_plan_family_and_interval():
    assert plan_family("professional_annual") == "professional"
    assert plan_family("starter_monthly") == "starter"
    assert plan_family("one-time") == "basic"
    assert billing_interval("starter_monthly") == "month"
    assert billing_interval("professional_annual") == "year"
    assert billing_interval("extra_credit") is None
    assert is_subscription_plan("professional_monthly")
    assert not is_subscription_plan("one-time")
    assert not is_subscription_plan(None)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2028, 1, 31, tzinfo=timezone.utc), 1) == datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 12, 15, tzinfo=timezone.utc), 1) == datetime(2027, 1, 15, tzinfo=timezone.utc)
    assert add_months(datetime(2028, 2, 29, tzinfo=timezone.utc), 12) == datetime(2029, 2, 28, tzinfo=timezone.utc)


def test_rollover_is_capped_by_plan():
    entitlement = resolve_entitlement("professional_monthly", 5, None, terms=PROFESSIONAL, now=NOW)
    assert entitlement.new_balance == 18
    assert entitlement.rollover_credits == 3
    assert entitlement.credits_granted == 15
    assert entitlement.ledger_delta == 13
    assert entitlement.new_expiry == datetime(2026, 4, 15, 9, 30, tzinfo=timezone.utc)


def test_rollover_keeps_smaller_remainder():
    entitlement = resolve_entitlement("professional_monthly", 2, None, terms=PROFESSIONAL, now=NOW)
    assert entitlement.new_balance == 17
    assert entitlement.rollover_credits == 2


def test_empty_balance_gets_plain_grant():
    entitlement = resolve_entitlement("professional_annual", 0, None, terms=PROFESSIONAL, now=NOW)
    assert entitlement.new_balance == 15
    assert entitlement.rollover_credits == 0
    assert entitlement.new_expiry == datetime(2027, 3, 15, 9, 30, tzinfo=timezone.utc)


def test_plan_without_rollover_resets_balance():
    entitlement = resolve_entitlement("starter_monthly", 9, None, terms=STARTER, now=NOW)
    assert entitlement.new_balance == 5
    assert entitlement.ledger_delta == -4


def test_expiry_computed_from_now_not_stacked():
    far_future = datetime(2027, 1, 1, tzinfo=timezone.utc)
    entitlement = resolve_entitlement("starter_monthly", 0, far_future, terms=STARTER, now=NOW)
    assert entitlement.new_expiry == datetime(2026, 4, 15, 9, 30, tzinfo=timezone.utc)


def test_one_time_plan_keeps_existing_expiry():
    current_expiry = datetime(2026, 5, 1, tzinfo=timezone.utc)
    entitlement = resolve_entitlement("one-time", 0, current_expiry, terms=LEGACY_PLAN_DEFAULTS["basic"], now=NOW)
    assert entitlement.new_expiry == current_expiry


def test_resolve_plan_terms_prefers_catalog_then_defaults():
    catalog = Plan(plan_type="starter", name="Starter", price_cents=7900, credits=6, max_rollover_credits=1)
    assert resolve_plan_terms("starter_monthly", catalog) == PlanTerms(credits_granted=6, max_rollover=1)
    assert resolve_plan_terms("professional_monthly", None).credits_granted == 15
    unknown = resolve_plan_terms("mystery_monthly", None)
    assert unknown.credits_granted == 0
    assert unknown.source == "unknown"


@pytest.mark.asyncio
async def test_load_plan_terms_reads_active_catalog(db):
    db.add(Plan(plan_type="professional", name="Professional", price_cents=19900, credits=20, max_rollover_credits=5))
    db.add(Plan(plan_type="starter", name="Starter", price_cents=7900, credits=50, is_active=False))
    await db.commit()

    professional = await load_plan_terms("professional_annual", db)
    assert professional.credits_granted == 20
    assert professional.max_rollover == 5

    starter = await load_plan_terms("starter_monthly", db)
    assert starter == LEGACY_PLAN_DEFAULTS["starter"]
