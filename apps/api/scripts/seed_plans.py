"""Seed the pricing plan catalog.

Usage: python scripts/seed_plans.py
"""

import asyncio
import os
import sys

# Add parent dir to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.future import select

from database import Base, async_session_maker, engine
import models  # noqa: F401
from models.plan import Plan

DEFAULT_PLANS = [
    {
        "plan_type": "basic",
        "name": "Basic",
        "description": "One-time unlock of a single supplier match report",
        "price_cents": 4900,
        "has_annual_pricing": False,
        "annual_price_cents": None,
        "credits": 1,
        "max_rollover_credits": 0,
        "display_order": 1,
    },
    {
        "plan_type": "starter",
        "name": "Starter",
        "description": "Five match reports per billing period",
        "price_cents": 7900,
        "has_annual_pricing": True,
        "annual_price_cents": 86900,
        "credits": 5,
        "max_rollover_credits": 0,
        "display_order": 2,
    },
    {
        "plan_type": "professional",
        "name": "Professional",
        "description": "Fifteen match reports per period with up to three rollover credits",
        "price_cents": 19900,
        "has_annual_pricing": True,
        "annual_price_cents": 218900,
        "credits": 15,
        "max_rollover_credits": 3,
        "display_order": 3,
    },
]


async def seed_plans() -> int:
    created = 0
    async with async_session_maker() as db:
        for plan_fields in DEFAULT_PLANS:
            result = await db.execute(select(Plan).where(Plan.plan_type == plan_fields["plan_type"]))
            if result.scalar_one_or_none() is not None:
                print(f"⏭️  Plan '{plan_fields['plan_type']}' already exists, skipping")
                continue
            db.add(Plan(**plan_fields))
            created += 1
            print(f"✅ Added plan '{plan_fields['plan_type']}' ({plan_fields['credits']} credits)")
        await db.commit()
    return created


async def main():
    print("🌱 Seeding pricing plans...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    created = await seed_plans()
    print(f"🎉 Done. {created} plan(s) created.")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
