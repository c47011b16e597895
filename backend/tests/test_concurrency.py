"""
Concurrent callers in separate sessions against a file-backed SQLite database.

Each test parks the callers between the status read and the conditional
write, then releases them together so the loser reaches its
zero-rows-affected branch.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import affiliate_ledger
import renewal_service
import withdrawal_service
from affiliate_ledger import accrue, confirm_commission, enroll_affiliate, get_affiliate, reverse_commission, update_affiliate_settings
from database import Base
from exceptions import ConflictError
from models import CommissionStatus, Invoice, InvoiceStatus, PaymentTransaction, Subscription, WithdrawalStatus
from plan_catalog import create_plan
from renewal_service import RECONCILE_ALREADY_PROCESSED, RECONCILE_PAID, RenewalService, RenewalSession
from sslcommerz_service import CallbackUrls, PaymentOutcome
from subscription_service import create_subscription
from withdrawal_service import approve_withdrawal, complete_withdrawal, request_withdrawal
from tests.conftest import NOW, TENANT_ID, FakeGateway, success_callback

BKASH = {"mobile_number": "01712345678"}


class Rendezvous:
    """Parks callers until ``parties`` of them are waiting, then lets all through"""

    def __init__(self, parties: int):
        self.parties = parties
        self.arrived = 0
        self.event = asyncio.Event()

    async def wait(self):
        self.arrived += 1
        if self.arrived >= self.parties:
            self.event.set()
        await self.event.wait()


class HeldGateway(FakeGateway):
    """Validation waits at the rendezvous, after the caller has read the invoice"""

    def __init__(self, rendezvous: Rendezvous):
        super().__init__()
        self.rendezvous = rendezvous

    async def validate(self, validation_id):
        await self.rendezvous.wait()
        return await super().validate(validation_id)


def hold_locked_affiliate_reads(monkeypatch, module, rendezvous: Rendezvous):
    original = module.get_affiliate

    async def held(db, affiliate_id, lock=False):
        if lock:
            await rendezvous.wait()
        return await original(db, affiliate_id, lock=lock)

    monkeypatch.setattr(module, "get_affiliate", held)


@pytest.fixture
async def file_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        connect_args={"timeout": 30}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def subscribed(sessions):
    async with sessions() as db:
        plan = await create_plan(db, "growth_monthly", "Growth", 1000.0, 1)
        subscription = await create_subscription(db, TENANT_ID, plan.id, datetime(2024, 4, 20, 10, 0, 0))
        return subscription.id


def build_renewals(gateway) -> RenewalService:
    return RenewalService(
        gateway,
        callback_urls=CallbackUrls.for_base_url("https://billing.example.com"),
        amount_tolerance=0.01,
        session_timeout=timedelta(hours=24)
    )


async def open_session(sessions, renewals) -> str:
    async with sessions() as db:
        session = await renewals.start_renewal(db, TENANT_ID, NOW)
        return session.transaction_id


async def reconcile_success(sessions, renewals, transaction_id, validation_id):
    async with sessions() as db:
        return await renewals.reconcile(
            db, transaction_id, PaymentOutcome.SUCCESS,
            success_callback(transaction_id, validation_id, 1000.0), NOW
        )


async def load_subscription(sessions, subscription_id) -> Subscription:
    async with sessions() as db:
        return await db.get(Subscription, subscription_id)


async def test_simultaneous_success_callbacks_apply_once(sessions, subscribed):
    gateway = HeldGateway(Rendezvous(2))
    renewals = build_renewals(gateway)
    transaction_id = await open_session(sessions, renewals)
    gateway.approve("VAL-REDIRECT", transaction_id, 1000.0)
    gateway.approve("VAL-IPN", transaction_id, 1000.0)

    results = await asyncio.gather(
        reconcile_success(sessions, renewals, transaction_id, "VAL-REDIRECT"),
        reconcile_success(sessions, renewals, transaction_id, "VAL-IPN"),
    )

    assert sorted(r.status for r in results) == [RECONCILE_ALREADY_PROCESSED, RECONCILE_PAID]
    subscription = await load_subscription(sessions, subscribed)
    assert subscription.renewal_count == 1
    assert subscription.total_paid == 2000.0
    assert subscription.current_period_end == datetime(2024, 6, 20, 10, 0, 0)
    async with sessions() as db:
        recorded = await db.execute(select(func.count(PaymentTransaction.id)))
        assert recorded.scalar_one() == 1


async def test_success_racing_a_rejected_validation_has_one_outcome(sessions, subscribed):
    gateway = HeldGateway(Rendezvous(2))
    renewals = build_renewals(gateway)
    transaction_id = await open_session(sessions, renewals)
    gateway.approve("VAL-GOOD", transaction_id, 1000.0)

    results = await asyncio.gather(
        reconcile_success(sessions, renewals, transaction_id, "VAL-GOOD"),
        reconcile_success(sessions, renewals, transaction_id, "VAL-FORGED"),
    )

    statuses = [r.status for r in results]
    assert statuses.count(RECONCILE_ALREADY_PROCESSED) == 1
    async with sessions() as db:
        invoice = (await db.execute(select(Invoice).where(Invoice.transaction_id == transaction_id))).scalar_one()
    subscription = await load_subscription(sessions, subscribed)
    if RECONCILE_PAID in statuses:
        assert invoice.status == InvoiceStatus.PAID
        assert subscription.renewal_count == 1
    else:
        assert invoice.status == InvoiceStatus.FAILED
        assert subscription.renewal_count == 0
        assert subscription.current_period_end == datetime(2024, 5, 20, 10, 0, 0)


async def test_simultaneous_starts_claim_the_issued_invoice_once(sessions, subscribed, monkeypatch):
    gateway = FakeGateway()
    renewals = build_renewals(gateway)
    async with sessions() as db:
        subscription = await db.get(Subscription, subscribed)
        issued = await renewals.issue_renewal_invoice(db, subscription, NOW)

    rendezvous = Rendezvous(2)
    original = renewal_service.get_open_invoice

    async def held(db, subscription_id):
        invoice = await original(db, subscription_id)
        await rendezvous.wait()
        return invoice

    monkeypatch.setattr(renewal_service, "get_open_invoice", held)

    async def start():
        async with sessions() as db:
            return await renewals.start_renewal(db, TENANT_ID, NOW)

    results = await asyncio.gather(start(), start(), return_exceptions=True)

    started = [r for r in results if isinstance(r, RenewalSession)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(started) == 1
    assert len(conflicts) == 1
    assert [i["transaction_id"] for i in gateway.initiated] == [started[0].transaction_id]
    async with sessions() as db:
        invoice = await db.get(Invoice, issued.id)
        assert invoice.transaction_id == started[0].transaction_id


@pytest.fixture
async def funded(sessions):
    """Affiliate with two approved commissions of 50.00"""
    async with sessions() as db:
        await update_affiliate_settings(db, {"enabled": True, "min_withdrawal_amount": 10.0})
        affiliate = await enroll_affiliate(db, "user-000123", "Rahim Uddin")
        first = await accrue(db, affiliate.id, "ORD-1", 1000.0)
        second = await accrue(db, affiliate.id, "ORD-2", 1000.0)
        await confirm_commission(db, first.id, NOW)
        await confirm_commission(db, second.id, NOW)
        return affiliate.id, first.id


async def test_simultaneous_confirmations_credit_once(sessions, monkeypatch):
    async with sessions() as db:
        await update_affiliate_settings(db, {"enabled": True})
        affiliate = await enroll_affiliate(db, "user-000123", "Rahim Uddin")
        commission = await accrue(db, affiliate.id, "ORD-1", 1000.0)
    hold_locked_affiliate_reads(monkeypatch, affiliate_ledger, Rendezvous(2))

    async def confirm():
        async with sessions() as db:
            return await confirm_commission(db, commission.id, NOW)

    results = await asyncio.gather(confirm(), confirm())

    assert [r.status for r in results] == [CommissionStatus.APPROVED, CommissionStatus.APPROVED]
    async with sessions() as db:
        credited = await get_affiliate(db, affiliate.id)
    assert credited.available_balance == 50.0
    assert credited.total_earnings == 50.0
    assert credited.delivered_orders == 1


async def test_simultaneous_reversals_debit_once(sessions, funded, monkeypatch):
    affiliate_id, commission_id = funded
    hold_locked_affiliate_reads(monkeypatch, affiliate_ledger, Rendezvous(2))

    async def reverse():
        async with sessions() as db:
            return await reverse_commission(db, commission_id, NOW)

    results = await asyncio.gather(reverse(), reverse())

    assert [r.status for r in results] == [CommissionStatus.CANCELLED, CommissionStatus.CANCELLED]
    async with sessions() as db:
        debited = await get_affiliate(db, affiliate_id)
    assert debited.available_balance == 50.0
    assert debited.total_earnings == 50.0
    assert debited.delivered_orders == 1


async def test_simultaneous_completions_debit_once(sessions, funded, monkeypatch):
    affiliate_id, _ = funded
    async with sessions() as db:
        withdrawal = await request_withdrawal(db, affiliate_id, 60.0, "bkash", BKASH, NOW)
        await approve_withdrawal(db, withdrawal.id, "admin-1", NOW)
    hold_locked_affiliate_reads(monkeypatch, withdrawal_service, Rendezvous(2))

    async def complete():
        async with sessions() as db:
            return await complete_withdrawal(db, withdrawal.id, "admin-1", NOW)

    results = await asyncio.gather(complete(), complete())

    assert [r.status for r in results] == [WithdrawalStatus.COMPLETED, WithdrawalStatus.COMPLETED]
    async with sessions() as db:
        paid_out = await get_affiliate(db, affiliate_id)
    assert paid_out.available_balance == 40.0
    assert paid_out.total_withdrawn == 60.0
    assert paid_out.total_earnings == 100.0
