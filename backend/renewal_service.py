"""
Renewal Orchestrator

Drives a renewal attempt from invoice issue through the hosted checkout to
reconciliation of the gateway callbacks. ``reconcile`` is the only place an
invoice leaves ``pending``; it is guarded by a conditional update on the
invoice status so duplicate and out-of-order callbacks are no-ops.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from exceptions import ConflictError, GatewayError, NotFoundError, ValidationError
from models import Invoice, InvoiceStatus, PaymentTransaction, Subscription, SubscriptionStatus
from plan_catalog import BILLING_CYCLE_DISCOUNTS, get_plan, price_for_cycle
from sslcommerz_service import (
    CallbackUrls, GatewayCallback, GatewayValidation, PaymentOutcome, sslcommerz_service
)
from subscription_service import (
    calculate_grace_period_end, calculate_period_end, get_open_invoice, require_subscription
)

logger = logging.getLogger(__name__)

RECONCILE_PAID = "paid"
RECONCILE_FAILED = "failed"
RECONCILE_ALREADY_PROCESSED = "already-processed"

INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class RenewalSession:
    invoice: Invoice
    transaction_id: str
    hosted_page_url: str


@dataclass(frozen=True)
class ReconcileResult:
    status: str  # paid, failed or already-processed
    invoice: Invoice


def generate_invoice_number(now: datetime) -> str:
    """INV-YYYYMM-XXXXXX"""
    suffix = "".join(secrets.choice(INVOICE_SUFFIX_ALPHABET) for _ in range(6))
    return f"INV-{now:%Y%m}-{suffix}"


def describe_cycle(plan_name: Optional[str], cycle_months: int) -> str:
    return f"{plan_name or 'Subscription'} Plan - {cycle_months} Month{'s' if cycle_months > 1 else ''}"


def _conditional_invoice_update(invoice_id: int, from_status: InvoiceStatus, **values):
    return (
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


class RenewalService:
    """Renewal attempts and their reconciliation against gateway callbacks"""

    def __init__(
        self,
        gateway,
        callback_urls: Optional[CallbackUrls] = None,
        amount_tolerance: Optional[float] = None,
        session_timeout: Optional[timedelta] = None
    ):
        self.gateway = gateway
        self.callback_urls = callback_urls or CallbackUrls.for_base_url(settings.APP_BASE_URL)
        self.amount_tolerance = (
            settings.PAYMENT_AMOUNT_TOLERANCE if amount_tolerance is None else amount_tolerance
        )
        self.session_timeout = session_timeout or timedelta(hours=settings.RENEWAL_SESSION_TIMEOUT_HOURS)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def _cycle_amount(self, db: AsyncSession, subscription: Subscription, cycle_months: int) -> float:
        if cycle_months == subscription.billing_cycle_months:
            return subscription.amount
        plan = await get_plan(db, subscription.plan_id)
        return price_for_cycle(plan, cycle_months)

    async def _build_invoice(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: datetime,
        cycle_months: int
    ) -> Invoice:
        new_start = max(now, subscription.current_period_end)
        invoice = Invoice(
            invoice_number=generate_invoice_number(now),
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
            plan_name=subscription.plan_name,
            billing_cycle_months=cycle_months,
            description=describe_cycle(subscription.plan_name, cycle_months),
            amount=await self._cycle_amount(db, subscription, cycle_months),
            currency=subscription.currency,
            status=InvoiceStatus.PENDING,
            period_start=new_start,
            period_end=calculate_period_end(new_start, cycle_months),
            due_date=new_start
        )
        db.add(invoice)
        return invoice

    async def issue_renewal_invoice(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: datetime,
        billing_cycle_months: Optional[int] = None
    ) -> Invoice:
        """
        Issue the pending invoice for the subscription's next period.

        Returns the already-open invoice if there is one.
        """
        existing = await get_open_invoice(db, subscription.id)
        if existing:
            return existing

        subscription_id = subscription.id
        cycle_months = billing_cycle_months or subscription.billing_cycle_months
        invoice = await self._build_invoice(db, subscription, now, cycle_months)
        try:
            await db.commit()
        except IntegrityError:
            # Another worker issued it first
            await db.rollback()
            existing = await get_open_invoice(db, subscription_id)
            if existing is None:
                raise
            return existing

        logger.info(f"✅ Renewal invoice {invoice.invoice_number} issued for tenant {subscription.tenant_id} ({invoice.amount} {invoice.currency})")
        return invoice

    async def get_invoice_history(self, db: AsyncSession, tenant_id: str, limit: int = 50) -> List[Invoice]:
        result = await db.execute(
            select(Invoice)
            .where(Invoice.tenant_id == tenant_id)
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_invoice_by_transaction_id(self, db: AsyncSession, transaction_id: str) -> Optional[Invoice]:
        result = await db.execute(select(Invoice).where(Invoice.transaction_id == transaction_id))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_renewal(
        self,
        db: AsyncSession,
        tenant_id: str,
        now: datetime,
        billing_cycle_months: Optional[int] = None,
        transaction_id: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None
    ) -> RenewalSession:
        """
        Open a gateway session for the tenant's next period.

        The invoice and the gateway session are committed together: if the
        gateway call fails nothing is persisted. The subscription itself is
        not touched until reconciliation.

        Raises:
            NotFoundError: tenant has no subscription
            ValidationError: unsupported billing cycle
            ConflictError: a renewal is already waiting on the gateway
            GatewayError: gateway unavailable (retryable)
        """
        subscription = await require_subscription(db, tenant_id)

        cycle_months = billing_cycle_months or subscription.billing_cycle_months
        if cycle_months not in BILLING_CYCLE_DISCOUNTS:
            raise ValidationError(f"Invalid billing cycle: {cycle_months} months")

        if transaction_id and await self.get_invoice_by_transaction_id(db, transaction_id):
            raise ConflictError(
                "Transaction id already used",
                details={"transaction_id": transaction_id}
            )

        invoice = await get_open_invoice(db, subscription.id)

        if invoice is not None and invoice.transaction_id:
            if invoice.gateway_initiated_at and invoice.gateway_initiated_at < now - self.session_timeout:
                await self._expire_invoice(db, invoice, now, source="renewal")
                invoice = None
            else:
                raise ConflictError(
                    "A renewal payment is already in progress",
                    details={"invoice_number": invoice.invoice_number}
                )

        if invoice is not None:
            # Reuse the issued invoice, re-windowed and re-priced for this attempt.
            # Only one concurrent start may claim it.
            new_start = max(now, subscription.current_period_end)
            amount = await self._cycle_amount(db, subscription, cycle_months)
            try:
                result = await db.execute(
                    update(Invoice)
                    .where(
                        Invoice.id == invoice.id,
                        Invoice.status == InvoiceStatus.PENDING,
                        Invoice.transaction_id.is_(None)
                    )
                    .values(
                        billing_cycle_months=cycle_months,
                        amount=amount,
                        description=describe_cycle(subscription.plan_name, cycle_months),
                        period_start=new_start,
                        period_end=calculate_period_end(new_start, cycle_months),
                        due_date=new_start,
                        transaction_id=transaction_id or f"RENEW_{invoice.invoice_number}_{now:%Y%m%d%H%M%S}",
                        gateway_initiated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError:
                await db.rollback()
                raise ConflictError("Transaction id already used", details={"transaction_id": transaction_id})
            if result.rowcount == 0:
                await db.rollback()
                raise ConflictError("A renewal payment is already in progress", details={"tenant_id": tenant_id})
            await db.refresh(invoice)
        else:
            invoice = await self._build_invoice(db, subscription, now, cycle_months)
            invoice.transaction_id = transaction_id or f"RENEW_{invoice.invoice_number}_{now:%Y%m%d%H%M%S}"
            invoice.gateway_initiated_at = now

            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("A renewal payment is already in progress", details={"tenant_id": tenant_id})

        try:
            session = await self.gateway.initiate(
                amount=invoice.amount,
                currency=invoice.currency,
                transaction_id=invoice.transaction_id,
                callback_urls=self.callback_urls,
                customer=customer,
                product_name=invoice.description
            )
        except GatewayError:
            await db.rollback()
            logger.warning(f"⚠️ Renewal for tenant {tenant_id} not started: gateway unavailable")
            raise

        invoice.gateway_session_id = session.gateway_session_id
        await db.commit()

        logger.info(f"✅ Renewal started for tenant {tenant_id}: {invoice.invoice_number} ({invoice.transaction_id})")
        return RenewalSession(
            invoice=invoice,
            transaction_id=invoice.transaction_id,
            hosted_page_url=session.hosted_page_url
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def _verify(self, invoice: Invoice, validation: GatewayValidation) -> Optional[str]:
        """Return why the validation does not cover this invoice, or None if it does."""
        if not validation.is_valid:
            return "Gateway validation failed"
        if validation.transaction_id and validation.transaction_id != invoice.transaction_id:
            return "Validated transaction id does not match"
        if validation.currency and validation.currency.upper() != invoice.currency.upper():
            return "Validated currency does not match"
        if validation.amount is None:
            return "Validated amount missing"
        if abs(validation.amount - invoice.amount) > invoice.amount * self.amount_tolerance:
            return "Validated amount does not match"
        return None

    def _transaction_record(
        self,
        invoice: Invoice,
        outcome: str,
        source: str,
        callback: Optional[GatewayCallback],
        validation: Optional[GatewayValidation]
    ) -> PaymentTransaction:
        record = PaymentTransaction(
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            transaction_id=invoice.transaction_id,
            outcome=outcome,
            source=source
        )
        if callback is not None:
            record.gateway_status = callback.gateway_status
            record.validation_id = callback.validation_id
            record.bank_transaction_id = callback.bank_transaction_id
            record.amount = callback.amount
            record.currency = callback.currency
            record.risk_level = callback.risk_level
            record.risk_title = callback.risk_title
            record.card_type = callback.card_type
            record.gateway_transaction_date = callback.transaction_date
            record.gateway_response = callback.raw
        if validation is not None:
            record.bank_transaction_id = validation.bank_transaction_id or record.bank_transaction_id
            record.amount = validation.amount if validation.amount is not None else record.amount
            record.currency = validation.currency or record.currency
            record.risk_level = validation.risk_level if validation.risk_level is not None else record.risk_level
            record.risk_title = validation.risk_title or record.risk_title
            record.gateway_response = validation.raw
        return record

    async def _expire_invoice(self, db: AsyncSession, invoice: Invoice, now: datetime, source: str) -> bool:
        result = await db.execute(
            _conditional_invoice_update(
                invoice.id, InvoiceStatus.PENDING,
                status=InvoiceStatus.FAILED,
                failed_at=now,
                failure_reason="Gateway session timed out"
            )
        )
        if result.rowcount == 0:
            return False
        db.add(self._transaction_record(invoice, PaymentOutcome.FAILED.value, source, None, None))
        logger.warning(f"⚠️ Invoice {invoice.invoice_number} expired without a gateway callback")
        return True

    async def reconcile(
        self,
        db: AsyncSession,
        transaction_id: str,
        outcome: PaymentOutcome,
        payload: Optional[GatewayCallback],
        now: datetime,
        source: str = "ipn"
    ) -> ReconcileResult:
        """
        Apply a gateway callback to its invoice exactly once.

        Success is only trusted after validating ``payload.validation_id``
        with the gateway; a failed or mismatching validation is applied as a
        failure. The first callback to move the invoice out of ``pending``
        wins and every later one returns ``already-processed``.

        Raises:
            NotFoundError: no invoice carries this transaction id
            GatewayError: validation could not reach the gateway (retryable, nothing written)
        """
        invoice = await self.get_invoice_by_transaction_id(db, transaction_id)
        if invoice is None:
            raise NotFoundError("Invoice", transaction_id)

        if invoice.status != InvoiceStatus.PENDING:
            await self._report_late_success(invoice, outcome, payload)
            logger.info(f"🔄 Transaction {transaction_id} already processed ({invoice.status.value}); {source} callback ignored")
            return ReconcileResult(RECONCILE_ALREADY_PROCESSED, invoice)

        validation = None
        failure_reason = None
        if outcome == PaymentOutcome.SUCCESS:
            validation = await self.gateway.validate(payload.validation_id if payload else None)
            failure_reason = self._verify(invoice, validation)
            if failure_reason:
                logger.warning(f"⚠️ Success callback for {transaction_id} rejected: {failure_reason}")
        elif outcome == PaymentOutcome.CANCELLED:
            failure_reason = "Payment cancelled by customer"
        else:
            failure_reason = (payload.error if payload else None) or "Payment failed"

        if failure_reason is None:
            return await self._apply_paid(db, invoice, payload, validation, now, source)
        return await self._apply_failed(db, invoice, outcome, failure_reason, payload, validation, now, source)

    async def _apply_paid(
        self,
        db: AsyncSession,
        invoice: Invoice,
        payload: Optional[GatewayCallback],
        validation: GatewayValidation,
        now: datetime,
        source: str
    ) -> ReconcileResult:
        result = await db.execute(
            _conditional_invoice_update(
                invoice.id, InvoiceStatus.PENDING,
                status=InvoiceStatus.PAID,
                paid_at=now,
                failure_reason=None
            )
        )
        if result.rowcount == 0:
            await db.rollback()
            await db.refresh(invoice)
            await self._report_late_success(invoice, PaymentOutcome.SUCCESS, payload)
            logger.info(f"🔄 Transaction {invoice.transaction_id} already processed by a concurrent callback")
            return ReconcileResult(RECONCILE_ALREADY_PROCESSED, invoice)

        await db.execute(
            update(Subscription)
            .where(Subscription.id == invoice.subscription_id)
            .values(
                status=SubscriptionStatus.ACTIVE,
                current_period_start=invoice.period_start,
                current_period_end=invoice.period_end,
                grace_period_ends_at=calculate_grace_period_end(invoice.period_end),
                cancel_at_period_end=False,
                cancelled_at=None,
                auto_renew=True,
                billing_cycle_months=invoice.billing_cycle_months,
                amount=invoice.amount,
                last_payment_date=now,
                last_transaction_id=invoice.transaction_id,
                renewal_count=Subscription.renewal_count + 1,
                total_paid=Subscription.total_paid + invoice.amount,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        db.add(self._transaction_record(invoice, PaymentOutcome.SUCCESS.value, source, payload, validation))
        transaction_id, tenant_id = invoice.transaction_id, invoice.tenant_id

        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.error(
                f"❌ Payment {transaction_id} verified but tenant {tenant_id} "
                f"already holds another live subscription - manual reconciliation required"
            )
            raise ConflictError(
                "Tenant already has a live subscription",
                details={"transaction_id": transaction_id}
            )

        await db.refresh(invoice)
        if validation is not None and validation.risk_level == 1:
            logger.warning(f"⚠️ Payment {invoice.transaction_id} flagged by gateway risk check: {validation.risk_title}")
        logger.info(f"✅ Renewal paid: {invoice.invoice_number} for tenant {invoice.tenant_id} ({invoice.amount} {invoice.currency}, via {source})")
        return ReconcileResult(RECONCILE_PAID, invoice)

    async def _apply_failed(
        self,
        db: AsyncSession,
        invoice: Invoice,
        outcome: PaymentOutcome,
        reason: str,
        payload: Optional[GatewayCallback],
        validation: Optional[GatewayValidation],
        now: datetime,
        source: str
    ) -> ReconcileResult:
        result = await db.execute(
            _conditional_invoice_update(
                invoice.id, InvoiceStatus.PENDING,
                status=InvoiceStatus.FAILED,
                failed_at=now,
                failure_reason=reason[:255]
            )
        )
        if result.rowcount == 0:
            await db.rollback()
            await db.refresh(invoice)
            logger.info(f"🔄 Transaction {invoice.transaction_id} already processed by a concurrent callback")
            return ReconcileResult(RECONCILE_ALREADY_PROCESSED, invoice)

        recorded_outcome = PaymentOutcome.FAILED if outcome == PaymentOutcome.SUCCESS else outcome
        db.add(self._transaction_record(invoice, recorded_outcome.value, source, payload, validation))
        await db.commit()
        await db.refresh(invoice)

        logger.warning(f"⚠️ Renewal failed: {invoice.invoice_number} for tenant {invoice.tenant_id} ({reason}, via {source})")
        return ReconcileResult(RECONCILE_FAILED, invoice)

    async def _report_late_success(
        self,
        invoice: Invoice,
        outcome: PaymentOutcome,
        payload: Optional[GatewayCallback]
    ):
        """A success for an invoice that already failed may be money captured but never applied."""
        if invoice.status != InvoiceStatus.FAILED or outcome != PaymentOutcome.SUCCESS:
            return
        if not payload or not payload.validation_id:
            return

        validation = await self.gateway.validate(payload.validation_id)
        if self._verify(invoice, validation) is None:
            logger.error(
                f"❌ Verified payment {payload.validation_id} for failed invoice {invoice.invoice_number} "
                f"(tenant {invoice.tenant_id}) - manual reconciliation required"
            )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep_stale_invoices(self, db: AsyncSession, now: datetime, timeout: Optional[timedelta] = None) -> int:
        """Fail gateway-pending invoices that never received a callback. Returns the number swept."""
        cutoff = now - (timeout or self.session_timeout)
        result = await db.execute(
            select(Invoice).where(
                Invoice.status == InvoiceStatus.PENDING,
                Invoice.transaction_id.is_not(None),
                Invoice.gateway_initiated_at < cutoff
            )
        )
        stale = list(result.scalars().all())

        swept = 0
        for invoice in stale:
            if await self._expire_invoice(db, invoice, now, source="sweeper"):
                swept += 1
        await db.commit()

        if swept:
            logger.info(f"✅ Swept {swept} stale renewal session(s)")
        return swept


# Singleton instance - routes and the scheduler share it
renewal_service = RenewalService(sslcommerz_service)
