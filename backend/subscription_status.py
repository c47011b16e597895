"""
Subscription Status Resolver

Derives a tenant's live subscription status from the stored period and grace
window. Pure: no I/O, no writes. The stored ``status`` column is only changed
by renewal reconciliation, explicit cancellation and re-subscribing, never
by a read.
"""

import math
from datetime import datetime
from typing import Optional

from models import Subscription, SubscriptionStatus
from schemas import SubscriptionStatusDetails

SECONDS_PER_DAY = 86400
EXPIRING_SOON_DAYS = 7
URGENT_NOTICE_DAYS = 3


def days_until(deadline: datetime, now: datetime) -> int:
    """Whole days remaining until ``deadline``, rounded up and never negative."""
    seconds = (deadline - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


def resolve_subscription_status(
    subscription: Optional[Subscription],
    now: datetime,
    expiring_soon_days: int = EXPIRING_SOON_DAYS
) -> SubscriptionStatusDetails:
    """
    Resolve the dynamic status of a subscription at ``now``.

    Non-active stored statuses (trial, cancelled, ...) are authoritative and
    returned verbatim. An active subscription is active until its period end,
    then in its grace period while one is recorded, then expired.
    """
    if subscription is None:
        return SubscriptionStatusDetails(
            dynamic_status=SubscriptionStatus.EXPIRED,
            is_expired=True,
            requires_payment=True
        )

    status = SubscriptionStatus(subscription.status)

    if status != SubscriptionStatus.ACTIVE:
        is_trial = status == SubscriptionStatus.TRIAL
        days_remaining = 0
        if is_trial and subscription.trial_ends_at:
            days_remaining = days_until(subscription.trial_ends_at, now)
        elif status == SubscriptionStatus.GRACE_PERIOD and subscription.grace_period_ends_at:
            days_remaining = days_until(subscription.grace_period_ends_at, now)

        is_expired = status == SubscriptionStatus.EXPIRED
        is_grace_period = status == SubscriptionStatus.GRACE_PERIOD
        return SubscriptionStatusDetails(
            dynamic_status=status,
            is_expired=is_expired,
            is_grace_period=is_grace_period,
            is_trial=is_trial,
            days_remaining=days_remaining,
            requires_payment=is_expired or is_grace_period
        )

    if now <= subscription.current_period_end:
        days_remaining = days_until(subscription.current_period_end, now)
        return SubscriptionStatusDetails(
            dynamic_status=SubscriptionStatus.ACTIVE,
            days_remaining=days_remaining,
            is_expiring_soon=0 < days_remaining <= expiring_soon_days,
            show_urgent_notice=0 < days_remaining <= URGENT_NOTICE_DAYS
        )

    grace_end = subscription.grace_period_ends_at
    if grace_end is not None and now <= grace_end:
        return SubscriptionStatusDetails(
            dynamic_status=SubscriptionStatus.GRACE_PERIOD,
            is_grace_period=True,
            days_remaining=days_until(grace_end, now),
            requires_payment=True
        )

    return SubscriptionStatusDetails(
        dynamic_status=SubscriptionStatus.EXPIRED,
        is_expired=True,
        days_remaining=0,
        requires_payment=True
    )
