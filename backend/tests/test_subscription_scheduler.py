from datetime import datetime, timedelta

from models import InvoiceStatus
from subscription_scheduler import (
    issue_due_renewal_invoices,
    start_subscription_scheduler,
    stop_subscription_scheduler
)
from subscription_service import cancel_subscription, create_subscription, get_open_invoice
from tests.conftest import NOW, TENANT_ID


async def test_issues_invoices_for_expiring_subscriptions(db, subscription, renewals):
    counts = await issue_due_renewal_invoices(db, NOW, renewals)

    assert counts == {"expiring": 1, "grace_period": 0, "expired": 0, "invoiced": 1}
    invoice = await get_open_invoice(db, subscription.id)
    assert invoice.status == InvoiceStatus.PENDING
    assert invoice.period_start == datetime(2024, 5, 20, 10, 0, 0)


async def test_second_run_does_not_duplicate(db, subscription, renewals):
    await issue_due_renewal_invoices(db, NOW, renewals)

    counts = await issue_due_renewal_invoices(db, NOW, renewals)

    assert counts["invoiced"] == 0
    assert len(await renewals.get_invoice_history(db, TENANT_ID)) == 1


async def test_lapsed_subscriptions_are_counted_and_invoiced(db, plan, renewals):
    await create_subscription(db, "tenant-grace", plan.id, datetime(2024, 4, 10, 10, 0, 0))
    await create_subscription(db, "tenant-lapsed", plan.id, datetime(2024, 3, 1, 10, 0, 0))
    await create_subscription(db, "tenant-healthy", plan.id, NOW - timedelta(days=1))

    counts = await issue_due_renewal_invoices(db, NOW, renewals)

    assert counts == {"expiring": 0, "grace_period": 1, "expired": 1, "invoiced": 2}
    assert await renewals.get_invoice_history(db, "tenant-healthy") == []


async def test_cancelled_subscriptions_are_skipped(db, subscription, renewals):
    await cancel_subscription(db, TENANT_ID, NOW)

    counts = await issue_due_renewal_invoices(db, NOW, renewals)

    assert counts["invoiced"] == 0


async def test_scheduler_registers_jobs():
    scheduler = start_subscription_scheduler()
    try:
        assert scheduler.get_job("daily_subscription_checks") is not None
        assert scheduler.get_job("stale_session_sweep") is not None
        assert start_subscription_scheduler() is scheduler
    finally:
        stop_subscription_scheduler()

    assert not scheduler.running
