"""Subscription plan catalog: default tiers, seeding and listing."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription_plan import SubscriptionPlan
from services.errors import StorageUnavailable

logger = logging.getLogger(__name__)


DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "id": "free",
        "name": "free",
        "display_name": "Free",
        "description": "Perfect for trying out Fashion Muse",
        "monthly_credits": 10,
        "price_monthly_cents": 0,
        "price_yearly_cents": 0,
        "features": ["10 credits/month", "Basic image generation", "Standard quality", "Community support"],
        "sort_order": 1,
    },
    {
        "id": "basic",
        "name": "basic",
        "display_name": "Basic",
        "description": "Great for casual creators",
        "monthly_credits": 100,
        "price_monthly_cents": 999,
        "price_yearly_cents": 9990,
        "features": [
            "100 credits/month",
            "All image styles",
            "High quality output",
            "Priority support",
            "Commercial use",
        ],
        "sort_order": 2,
    },
    {
        "id": "pro",
        "name": "pro",
        "display_name": "Pro",
        "description": "For professional photographers",
        "monthly_credits": 500,
        "price_monthly_cents": 2999,
        "price_yearly_cents": 29990,
        "features": [
            "500 credits/month",
            "All premium features",
            "Ultra HD quality",
            "Priority processing",
            "Dedicated support",
            "API access",
        ],
        "sort_order": 3,
    },
    {
        "id": "unlimited",
        "name": "unlimited",
        "display_name": "Unlimited",
        "description": "For agencies and power users",
        "monthly_credits": 999999,
        "price_monthly_cents": 9999,
        "price_yearly_cents": 99990,
        "features": [
            "Unlimited credits",
            "All features included",
            "Maximum priority",
            "White-label options",
            "Custom integrations",
            "24/7 premium support",
        ],
        "sort_order": 4,
    },
]


async def seed_subscription_plans(db: AsyncSession) -> int:
    """Insert any default plan that is not stored yet. Existing rows are left as edited.

    Returns the number of plans inserted.
    """
    try:
        result = await db.execute(select(SubscriptionPlan.id))
        existing = set(result.scalars().all())
        missing = [plan for plan in DEFAULT_PLANS if plan["id"] not in existing]
        for plan in missing:
            db.add(SubscriptionPlan(is_active=True, **plan))
        if missing:
            await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageUnavailable("Could not seed subscription plans", exc) from exc

    if missing:
        logger.info("Seeded %s subscription plan(s): %s", len(missing), ", ".join(p["id"] for p in missing))
    return len(missing)


async def list_active_plans(db: AsyncSession) -> List[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
    )
    return list(result.scalars().all())


def serialize_plan(plan: SubscriptionPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "display_name": plan.display_name,
        "description": plan.description,
        "monthly_credits": int(plan.monthly_credits),
        "price_monthly_cents": int(plan.price_monthly_cents or 0),
        "price_yearly_cents": int(plan.price_yearly_cents or 0),
        "features": list(plan.features or []),
        "sort_order": int(plan.sort_order or 0),
    }
