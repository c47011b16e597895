from datetime import datetime, timedelta

import pytest

from exceptions import ConflictError, NotFoundError, ValidationError
from models import Subscription, SubscriptionStatus
from subscription_service import (
    calculate_period_end,
    cancel_subscription,
    create_subscription,
    get_current_subscription,
    get_subscription_overview,
    reactivate_subscription
)
from tests.conftest import NOW, TENANT_ID


def test_period_end_uses_calendar_months():
    assert calculate_period_end(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert calculate_period_end(datetime(2024, 3, 15), 12) == datetime(2025, 3, 15)


async def test_paid_start_records_first_period(db, plan):
    subscription = await create_subscription(db, TENANT_ID, plan.id, NOW, transaction_id="TXN-1")

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2024, 6, 15, 10, 0, 0)
    assert subscription.grace_period_ends_at == datetime(2024, 6, 22, 10, 0, 0)
    assert subscription.total_paid == 1000.0
    assert subscription.last_transaction_id == "TXN-1"


async def test_yearly_start_on_monthly_plan_is_discounted(db, plan):
    subscription = await create_subscription(db, TENANT_ID, plan.id, NOW, billing_cycle_months=12)

    assert subscription.amount == 9600.0
    assert subscription.current_period_end == datetime(2025, 5, 15, 10, 0, 0)


async def test_trial_start(db, plan):
    subscription = await create_subscription(db, TENANT_ID, plan.id, NOW, trial=True)

    assert subscription.status == SubscriptionStatus.TRIAL
    assert subscription.trial_ends_at == NOW + timedelta(days=14)
    assert subscription.total_paid == 0.0


async def test_second_live_subscription_conflicts(db, subscription, plan):
    with pytest.raises(ConflictError):
        await create_subscription(db, TENANT_ID, plan.id, NOW)


async def test_unknown_plan(db):
    with pytest.raises(NotFoundError):
        await create_subscription(db, TENANT_ID, "missing_plan", NOW)


async def test_cancel_at_period_end_keeps_status(db, subscription):
    cancelled = await cancel_subscription(db, TENANT_ID, NOW)

    assert cancelled.status == SubscriptionStatus.ACTIVE
    assert cancelled.cancel_at_period_end
    assert not cancelled.auto_renew
    assert cancelled.cancelled_at == NOW


async def test_cancel_immediately_then_reactivate(db, subscription):
    cancelled = await cancel_subscription(db, TENANT_ID, NOW, immediately=True)
    assert cancelled.status == SubscriptionStatus.CANCELLED

    reactivated = await reactivate_subscription(db, TENANT_ID, NOW)

    assert reactivated.status == SubscriptionStatus.ACTIVE
    assert reactivated.auto_renew
    assert reactivated.cancelled_at is None


async def test_reactivate_after_period_end_is_rejected(db, subscription):
    await cancel_subscription(db, TENANT_ID, NOW, immediately=True)

    with pytest.raises(ValidationError):
        await reactivate_subscription(db, TENANT_ID, NOW + timedelta(days=30))


async def test_reactivate_uncancelled_subscription_is_rejected(db, subscription):
    with pytest.raises(ValidationError):
        await reactivate_subscription(db, TENANT_ID, NOW)


async def test_cancelled_tenant_can_subscribe_again(db, subscription, plan):
    await cancel_subscription(db, TENANT_ID, NOW, immediately=True)

    renewed = await create_subscription(db, TENANT_ID, plan.id, NOW + timedelta(days=1))

    current = await get_current_subscription(db, TENANT_ID)
    assert current.id == renewed.id
    assert renewed.id != subscription.id


async def test_expired_tenant_can_subscribe_again(db, subscription, plan):
    after_grace = datetime(2024, 7, 20, 10, 0, 0)

    renewed = await create_subscription(db, TENANT_ID, plan.id, after_grace)

    previous = await db.get(Subscription, subscription.id, populate_existing=True)
    assert previous.status == SubscriptionStatus.EXPIRED
    assert not previous.auto_renew
    assert renewed.status == SubscriptionStatus.ACTIVE
    assert renewed.current_period_end == datetime(2024, 8, 20, 10, 0, 0)
    assert (await get_current_subscription(db, TENANT_ID)).id == renewed.id


async def test_subscribe_during_grace_period_conflicts(db, subscription, plan):
    with pytest.raises(ConflictError):
        await create_subscription(db, TENANT_ID, plan.id, datetime(2024, 5, 23, 10, 0, 0))

    current = await db.get(Subscription, subscription.id, populate_existing=True)
    assert current.status == SubscriptionStatus.ACTIVE


async def test_overview_resolves_status_without_writing(db, subscription):
    later = datetime(2024, 5, 23, 10, 0, 0)

    record, status, open_invoice = await get_subscription_overview(db, TENANT_ID, later)

    assert status.dynamic_status == SubscriptionStatus.GRACE_PERIOD
    assert status.days_remaining == 4
    assert open_invoice is None
    await db.refresh(record)
    assert record.status == SubscriptionStatus.ACTIVE


async def test_overview_for_unknown_tenant(db):
    record, status, open_invoice = await get_subscription_overview(db, "nobody", NOW)

    assert record is None
    assert status.dynamic_status == SubscriptionStatus.EXPIRED
    assert status.requires_payment
