"""
Subscription Scheduler - Background tasks for subscription renewal

This module handles:
1. Daily issue of renewal invoices for auto-renewing subscriptions that are
   expiring soon or already need payment
2. Hourly sweep of renewal sessions the gateway never called back

Run as a background task using APScheduler or as a cron job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from models import Subscription, SubscriptionStatus
from renewal_service import RenewalService, renewal_service
from subscription_service import get_open_invoice
from subscription_status import resolve_subscription_status
from timezone_utils import utc_now

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Stored statuses the renewal check looks at
RENEWABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
)

_scheduler = None


async def issue_due_renewal_invoices(
    db: AsyncSession,
    now: datetime,
    service: RenewalService = renewal_service
) -> Dict[str, int]:
    """
    Issue renewal invoices for auto-renewing subscriptions that need one.

    Returns counts of expiring, grace-period, expired and newly invoiced subscriptions.
    """
    logger.info("🔍 Starting daily subscription renewal check...")

    result = await db.execute(
        select(Subscription.id).where(
            Subscription.status.in_(RENEWABLE_STATUSES),
            Subscription.auto_renew == True,  # noqa: E712
            Subscription.cancel_at_period_end == False  # noqa: E712
        )
    )
    subscription_ids = list(result.scalars().all())

    counts = {"expiring": 0, "grace_period": 0, "expired": 0, "invoiced": 0}

    for subscription_id in subscription_ids:
        # Reloaded per row; a rollback below expires everything in the session
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)
        tenant_id = subscription.tenant_id
        status = resolve_subscription_status(subscription, now, settings.EXPIRING_SOON_DAYS)

        if status.is_expired:
            counts["expired"] += 1
        elif status.is_grace_period:
            counts["grace_period"] += 1
        elif status.is_expiring_soon:
            counts["expiring"] += 1

        if not (status.is_expiring_soon or status.requires_payment):
            continue

        try:
            if await get_open_invoice(db, subscription_id):
                continue
            invoice = await service.issue_renewal_invoice(db, subscription, now)
            counts["invoiced"] += 1
            logger.info(f"📧 Renewal invoice {invoice.invoice_number} ready for tenant {tenant_id} ({status.days_remaining} day(s) left)")
        except Exception as e:
            await db.rollback()
            logger.error(f"❌ Failed to issue renewal invoice for tenant {tenant_id}: {str(e)}")

    logger.info(
        f"✅ Renewal check complete: {counts['expiring']} expiring soon, "
        f"{counts['grace_period']} in grace period, {counts['expired']} expired, "
        f"{counts['invoiced']} invoice(s) issued"
    )
    return counts


async def run_daily_subscription_checks(now: Optional[datetime] = None):
    """
    Main entry point for daily subscription checks.
    """
    logger.info("=" * 60)
    logger.info("🚀 Starting daily subscription maintenance tasks...")
    logger.info("=" * 60)

    try:
        async with async_session_maker() as db:
            await issue_due_renewal_invoices(db, now or utc_now())

        logger.info("=" * 60)
        logger.info("✅ All subscription maintenance tasks completed successfully")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"❌ Fatal error in subscription maintenance: {str(e)}", exc_info=True)


async def run_stale_session_sweep(now: Optional[datetime] = None):
    """Fail renewal invoices whose gateway session timed out"""
    try:
        async with async_session_maker() as db:
            swept = await renewal_service.sweep_stale_invoices(db, now or utc_now())
        if swept:
            logger.info(f"🔄 Stale session sweep failed {swept} invoice(s)")
    except Exception as e:
        logger.error(f"❌ Stale session sweep failed: {str(e)}", exc_info=True)


# ============================================================================
# Scheduler Setup (APScheduler)
# ============================================================================

def start_subscription_scheduler():
    """
    Start the APScheduler background scheduler.
    Daily renewal checks run at 9:00 AM UTC; the stale-session sweep runs hourly.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.cron import CronTrigger

    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler

    scheduler = AsyncIOScheduler(timezone="UTC")

    # Schedule daily checks at 9:00 AM UTC
    scheduler.add_job(
        run_daily_subscription_checks,
        CronTrigger(hour=9, minute=0, timezone="UTC"),
        id='daily_subscription_checks',
        name='Daily Subscription Renewal Checks',
        replace_existing=True
    )

    scheduler.add_job(
        run_stale_session_sweep,
        CronTrigger(minute=15, timezone="UTC"),
        id='stale_session_sweep',
        name='Hourly Stale Renewal Session Sweep',
        replace_existing=True
    )

    scheduler.start()
    _scheduler = scheduler
    logger.info("📅 Subscription scheduler started - daily checks at 09:00 UTC, sweep hourly")

    return scheduler


def stop_subscription_scheduler():
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("📅 Subscription scheduler stopped")
    _scheduler = None


# ============================================================================
# Manual Execution
# ============================================================================

async def run_all_checks():
    """
    Run every maintenance task once.
    Run with: python subscription_scheduler.py
    """
    logger.info("🧪 Running subscription checks once...")
    await run_daily_subscription_checks()
    await run_stale_session_sweep()


if __name__ == "__main__":
    asyncio.run(run_all_checks())
