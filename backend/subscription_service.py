"""
Subscription Store
Creation, cancellation and lookup of tenant subscription records
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from exceptions import ConflictError, NotFoundError, ValidationError
from models import (
    Invoice, InvoiceStatus, Subscription, SubscriptionStatus, LIVE_SUBSCRIPTION_STATUSES
)
from plan_catalog import BILLING_CYCLE_DISCOUNTS, get_plan, price_for_cycle
from schemas import SubscriptionStatusDetails
from subscription_status import resolve_subscription_status

logger = logging.getLogger(__name__)


def calculate_period_end(start_date: datetime, cycle_months: int) -> datetime:
    """Calendar-month period end; Jan 31 + 1 month lands on the last day of February."""
    return start_date + relativedelta(months=cycle_months)


def calculate_grace_period_end(period_end: datetime, grace_days: Optional[int] = None) -> datetime:
    if grace_days is None:
        grace_days = settings.GRACE_PERIOD_DAYS
    return period_end + timedelta(days=grace_days)


async def get_current_subscription(db: AsyncSession, tenant_id: str) -> Optional[Subscription]:
    """Most recent subscription record for the tenant (live or historical)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def require_subscription(db: AsyncSession, tenant_id: str) -> Subscription:
    subscription = await get_current_subscription(db, tenant_id)
    if not subscription:
        raise NotFoundError("Subscription", tenant_id)
    return subscription


async def get_live_subscription(db: AsyncSession, tenant_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(
            Subscription.tenant_id == tenant_id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES)
        )
    )
    return result.scalar_one_or_none()


async def get_open_invoice(db: AsyncSession, subscription_id: int) -> Optional[Invoice]:
    result = await db.execute(
        select(Invoice).where(
            Invoice.subscription_id == subscription_id,
            Invoice.status == InvoiceStatus.PENDING
        )
    )
    return result.scalar_one_or_none()


async def retire_expired_subscription(db: AsyncSession, subscription: Subscription):
    """
    Store ``expired`` on a record whose period and grace window have ended so a
    new record can take its place. Not committed.
    """
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id, Subscription.status == subscription.status)
        .values(status=SubscriptionStatus.EXPIRED, auto_renew=False)
    )
    logger.info(f"Subscription {subscription.id} for tenant {subscription.tenant_id} marked expired")


async def create_subscription(
    db: AsyncSession,
    tenant_id: str,
    plan_id: str,
    now: datetime,
    billing_cycle_months: Optional[int] = None,
    trial: bool = False,
    transaction_id: Optional[str] = None
) -> Subscription:
    """
    Start a subscription on plan purchase or trial start.

    A paid start records the first period as already paid. Raises
    ConflictError if the tenant already holds a live subscription.
    """
    plan = await get_plan(db, plan_id)
    if not plan.is_active:
        raise ValidationError("Plan is not available", details={"plan_id": plan_id})

    cycle_months = billing_cycle_months or plan.billing_cycle_months
    if cycle_months not in BILLING_CYCLE_DISCOUNTS:
        raise ValidationError(f"Invalid billing cycle: {cycle_months} months")

    live = await get_live_subscription(db, tenant_id)
    if live is not None:
        if not resolve_subscription_status(live, now, settings.EXPIRING_SOON_DAYS).is_expired:
            raise ConflictError(
                "Tenant already has a live subscription",
                details={"tenant_id": tenant_id}
            )
        await retire_expired_subscription(db, live)

    amount = price_for_cycle(plan, cycle_months)

    if trial:
        trial_ends_at = now + timedelta(days=settings.TRIAL_PERIOD_DAYS)
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            plan_name=plan.name,
            status=SubscriptionStatus.TRIAL,
            billing_cycle_months=cycle_months,
            amount=amount,
            currency=plan.currency,
            current_period_start=now,
            current_period_end=trial_ends_at,
            trial_ends_at=trial_ends_at,
            auto_renew=True
        )
    else:
        period_end = calculate_period_end(now, cycle_months)
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            plan_name=plan.name,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle_months=cycle_months,
            amount=amount,
            currency=plan.currency,
            current_period_start=now,
            current_period_end=period_end,
            grace_period_ends_at=calculate_grace_period_end(period_end),
            auto_renew=True,
            last_payment_date=now,
            last_transaction_id=transaction_id,
            total_paid=amount
        )

    db.add(subscription)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent create for the same tenant
        await db.rollback()
        raise ConflictError(
            "Tenant already has a live subscription",
            details={"tenant_id": tenant_id}
        )

    logger.info(f"✅ Subscription {subscription.id} created for tenant {tenant_id} ({subscription.status.value}, {cycle_months}m)")
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    tenant_id: str,
    now: datetime,
    immediately: bool = False
) -> Subscription:
    """Cancel at period end (default) or immediately."""
    subscription = await require_subscription(db, tenant_id)

    if subscription.status not in LIVE_SUBSCRIPTION_STATUSES:
        raise ValidationError("No active subscription to cancel", details={"status": subscription.status.value})

    subscription.auto_renew = False
    subscription.cancelled_at = now
    if immediately:
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancel_at_period_end = False
    else:
        subscription.cancel_at_period_end = True

    await db.commit()

    logger.info(f"✅ Subscription {subscription.id} cancelled for tenant {tenant_id} (immediately={immediately})")
    return subscription


async def reactivate_subscription(db: AsyncSession, tenant_id: str, now: datetime) -> Subscription:
    """Undo a cancellation while the paid period is still running."""
    subscription = await require_subscription(db, tenant_id)

    if subscription.status in LIVE_SUBSCRIPTION_STATUSES:
        if not subscription.cancel_at_period_end:
            raise ValidationError("Subscription is not cancelled")
        subscription.cancel_at_period_end = False
    elif subscription.status == SubscriptionStatus.CANCELLED:
        if subscription.current_period_end < now:
            raise ValidationError("Subscription has expired. Please purchase a new subscription.")
        if subscription.trial_ends_at and subscription.trial_ends_at > now:
            subscription.status = SubscriptionStatus.TRIAL
        else:
            subscription.status = SubscriptionStatus.ACTIVE
    else:
        raise ValidationError(
            "Only cancelled subscriptions can be reactivated",
            details={"status": subscription.status.value}
        )

    subscription.auto_renew = True
    subscription.cancelled_at = None

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Tenant already has a live subscription", details={"tenant_id": tenant_id})

    logger.info(f"✅ Subscription {subscription.id} reactivated for tenant {tenant_id} (status: {subscription.status.value})")
    return subscription


async def get_subscription_overview(
    db: AsyncSession,
    tenant_id: str,
    now: datetime
) -> Tuple[Optional[Subscription], SubscriptionStatusDetails, Optional[Invoice]]:
    """Current record, its status resolved at ``now``, and any open invoice. Never writes."""
    subscription = await get_current_subscription(db, tenant_id)
    status = resolve_subscription_status(subscription, now, settings.EXPIRING_SOON_DAYS)

    open_invoice = None
    if subscription is not None:
        open_invoice = await get_open_invoice(db, subscription.id)

    return subscription, status, open_invoice
