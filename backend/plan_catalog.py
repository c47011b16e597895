"""
Plan Catalog
Read access to subscription plans, billing-cycle pricing and the typed feature map
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import NotFoundError, ValidationError
from models import SubscriptionPlan

logger = logging.getLogger(__name__)


# Billing cycles: 1 = 1 month, 6 = 6 months, 12 = 1 year
BILLING_CYCLE_MONTHS = {
    'monthly': 1,
    'semi_annual': 6,
    'yearly': 12,
}

BILLING_CYCLE_NAMES = {
    1: 'Monthly',
    6: '6 Months',
    12: 'Yearly',
}

# Discount percentages for longer billing cycles
BILLING_CYCLE_DISCOUNTS = {
    1: 0,
    6: 10,
    12: 20,
}

UNLIMITED = "unlimited"


@dataclass(frozen=True)
class FeatureValue:
    """
    Normalized plan feature.

    kind is one of "boolean", "limit", "text" or "list"; ``value`` holds a bool,
    an int or "unlimited", a str, or a list of str respectively.
    """
    kind: str
    value: Any


def normalize_feature(raw: Any) -> FeatureValue:
    """Map one raw feature value from the plan document onto a FeatureValue."""
    if isinstance(raw, bool):
        return FeatureValue("boolean", raw)
    if isinstance(raw, (int, float)):
        return FeatureValue("limit", int(raw))
    if isinstance(raw, str):
        if raw.strip().lower() == UNLIMITED:
            return FeatureValue("limit", UNLIMITED)
        return FeatureValue("text", raw)
    if isinstance(raw, (list, tuple)):
        return FeatureValue("list", [str(item) for item in raw])
    if raw is None:
        return FeatureValue("boolean", False)
    return FeatureValue("text", str(raw))


def normalize_features(raw_features: Optional[Dict[str, Any]]) -> Dict[str, FeatureValue]:
    return {key: normalize_feature(value) for key, value in (raw_features or {}).items()}


def get_feature_limit(plan: SubscriptionPlan, feature_key: str) -> Union[int, str, None]:
    """
    Get the numeric limit for a feature.

    Returns:
        An int, "unlimited", or None when the plan has no such limit
    """
    feature = normalize_features(plan.features).get(feature_key)
    if feature is None or feature.kind != "limit":
        return None
    return feature.value


def has_feature(plan: SubscriptionPlan, feature_key: str) -> bool:
    """Whether the plan grants a feature (true flag, non-zero limit, non-empty text/list)."""
    feature = normalize_features(plan.features).get(feature_key)
    if feature is None:
        return False
    if feature.kind == "limit":
        return feature.value == UNLIMITED or feature.value > 0
    return bool(feature.value)


def calculate_plan_price(base_monthly_price: float, cycle_months: int) -> float:
    """Price for a billing cycle with the long-cycle discount applied, rounded to cents."""
    if cycle_months not in BILLING_CYCLE_DISCOUNTS:
        raise ValidationError(f"Invalid billing cycle: {cycle_months} months")

    discount = BILLING_CYCLE_DISCOUNTS[cycle_months]
    total_before_discount = base_monthly_price * cycle_months
    discount_amount = total_before_discount * (discount / 100)
    return round(total_before_discount - discount_amount, 2)


def get_monthly_equivalent(total_price: float, cycle_months: int) -> float:
    return round(total_price / cycle_months, 2)


async def get_plan(db: AsyncSession, plan_id: str) -> SubscriptionPlan:
    result = await db.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
    )
    plan = result.scalar_one_or_none()

    if not plan:
        raise NotFoundError("Plan", plan_id)

    return plan


async def list_active_plans(db: AsyncSession) -> List[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active == True)  # noqa: E712
        .order_by(SubscriptionPlan.price)
    )
    return list(result.scalars().all())


async def create_plan(
    db: AsyncSession,
    plan_id: str,
    name: str,
    base_monthly_price: float,
    billing_cycle_months: int,
    features: Optional[Dict[str, Any]] = None,
    currency: str = "BDT",
    description: Optional[str] = None,
    is_popular: bool = False
) -> SubscriptionPlan:
    """
    Add a plan to the catalog (seeding / super-admin use).

    The stored price is the full price for the cycle, discount applied.
    """
    if base_monthly_price < 0:
        raise ValidationError("Plan price cannot be negative", details={"price": base_monthly_price})

    price = calculate_plan_price(base_monthly_price, billing_cycle_months)

    plan = SubscriptionPlan(
        id=plan_id,
        name=name,
        description=description,
        price=price,
        currency=currency,
        billing_cycle_months=billing_cycle_months,
        features=features or {},
        is_active=True,
        is_popular=is_popular
    )
    db.add(plan)
    await db.commit()

    logger.info(f"✅ Plan created: {plan_id} ({price} {currency} / {BILLING_CYCLE_NAMES[billing_cycle_months]})")
    return plan


def price_for_cycle(plan: SubscriptionPlan, cycle_months: int) -> float:
    """
    Price of ``plan`` billed over ``cycle_months``.

    Plans store the discounted price of their own cycle; other cycles are
    priced from the undiscounted monthly base.
    """
    if cycle_months == plan.billing_cycle_months:
        return plan.price

    plan_discount = BILLING_CYCLE_DISCOUNTS.get(plan.billing_cycle_months, 0)
    base_monthly = plan.price / (plan.billing_cycle_months * (1 - plan_discount / 100))
    return calculate_plan_price(base_monthly, cycle_months)
