"""
Subscription API Endpoints
Handles status, renewal payment initialization, gateway callbacks and subscription management
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import List, Optional
import logging

from database import get_db
from dependencies import get_now, require_admin
from exceptions import ValidationError
from plan_catalog import get_monthly_equivalent, list_active_plans
from renewal_service import RenewalService, renewal_service
from sslcommerz_service import PaymentOutcome, parse_callback
from config import settings
from schemas import (
    CancelSubscriptionRequest,
    InvoiceResponse,
    PlanResponse,
    ReconcileResponse,
    RenewalRequest,
    RenewalStartResponse,
    SubscriptionCreateRequest,
    SubscriptionOverviewResponse,
    SubscriptionResponse
)
import subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


def get_renewal_service() -> RenewalService:
    return renewal_service


@router.get("/plans", response_model=List[PlanResponse])
async def get_available_plans(db: AsyncSession = Depends(get_db)):
    """Get all available subscription plans with monthly equivalent pricing"""
    plans = await list_active_plans(db)
    return [
        PlanResponse(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            billing_cycle_months=plan.billing_cycle_months,
            monthly_equivalent=get_monthly_equivalent(plan.price, plan.billing_cycle_months),
            features=plan.features or {},
            is_popular=plan.is_popular
        )
        for plan in plans
    ]


@router.get("/gateway/config-status")
async def get_payment_config_status(
    _: str = Depends(require_admin),
    service: RenewalService = Depends(get_renewal_service)
):
    """
    Get SSLCommerz configuration status (admin only).

    Returns diagnostic information without exposing the store password.
    """
    return {
        "sslcommerz": service.gateway.get_configuration_status(),
        "trial_period_days": settings.TRIAL_PERIOD_DAYS,
        "grace_period_days": settings.GRACE_PERIOD_DAYS,
        "renewal_session_timeout_hours": settings.RENEWAL_SESSION_TIMEOUT_HOURS
    }


# ----------------------------------------------------------------------
# Gateway callbacks (form-encoded, posted by the gateway / customer browser)
# ----------------------------------------------------------------------

async def _reconcile_callback(
    request: Request,
    db: AsyncSession,
    service: RenewalService,
    now: datetime,
    source: str,
    default_status: str,
    forced_outcome: Optional[PaymentOutcome] = None
) -> ReconcileResponse:
    form = await request.form()
    callback = parse_callback(form, default_status=default_status)

    if not callback.transaction_id:
        raise ValidationError("Missing transaction id")

    outcome = forced_outcome or callback.outcome
    result = await service.reconcile(db, callback.transaction_id, outcome, callback, now, source=source)

    return ReconcileResponse(
        status=result.status,
        invoice_number=result.invoice.invoice_number,
        invoice_status=result.invoice.status,
        transaction_id=callback.transaction_id
    )


@router.post("/renew/success", response_model=ReconcileResponse)
async def renewal_success(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service),
    now: datetime = Depends(get_now)
):
    """Success redirect - only applied after the gateway validates it"""
    return await _reconcile_callback(request, db, service, now, "redirect", "VALID")


@router.post("/renew/fail", response_model=ReconcileResponse)
async def renewal_fail(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service),
    now: datetime = Depends(get_now)
):
    return await _reconcile_callback(request, db, service, now, "redirect", "FAILED", PaymentOutcome.FAILED)


@router.post("/renew/cancel", response_model=ReconcileResponse)
async def renewal_cancel(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service),
    now: datetime = Depends(get_now)
):
    return await _reconcile_callback(request, db, service, now, "redirect", "CANCELLED", PaymentOutcome.CANCELLED)


@router.post("/renew/ipn", response_model=ReconcileResponse)
async def renewal_ipn(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service),
    now: datetime = Depends(get_now)
):
    """
    Server-to-server payment notification.

    The gateway retries until it gets a 2xx, so duplicates are expected and
    answer with ``already-processed``.
    """
    return await _reconcile_callback(request, db, service, now, "ipn", "FAILED")


# ----------------------------------------------------------------------
# Tenant endpoints
# ----------------------------------------------------------------------

@router.get("/{tenant_id}/status", response_model=SubscriptionOverviewResponse)
async def get_subscription_status(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Current subscription with its status resolved at request time"""
    subscription, status, open_invoice = await subscription_service.get_subscription_overview(db, tenant_id, now)
    return SubscriptionOverviewResponse(
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
        status=status,
        open_invoice=InvoiceResponse.model_validate(open_invoice) if open_invoice else None
    )


@router.post("/{tenant_id}/start", response_model=SubscriptionResponse)
async def start_subscription(
    tenant_id: str,
    request: SubscriptionCreateRequest,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Record a plan purchase or start a trial"""
    subscription = await subscription_service.create_subscription(
        db,
        tenant_id,
        request.plan_id,
        now,
        billing_cycle_months=request.billing_cycle_months,
        trial=request.trial,
        transaction_id=request.transaction_id
    )
    return subscription


@router.post("/{tenant_id}/renew", response_model=RenewalStartResponse)
async def start_renewal(
    tenant_id: str,
    request: Optional[RenewalRequest] = None,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service),
    now: datetime = Depends(get_now)
):
    """Initialize a renewal payment and return the hosted checkout URL"""
    request = request or RenewalRequest()
    session = await service.start_renewal(
        db,
        tenant_id,
        now,
        billing_cycle_months=request.billing_cycle_months,
        transaction_id=request.transaction_id,
        customer=request.customer.model_dump()
    )
    invoice = session.invoice
    return RenewalStartResponse(
        invoice_number=invoice.invoice_number,
        transaction_id=session.transaction_id,
        hosted_page_url=session.hosted_page_url,
        amount=invoice.amount,
        currency=invoice.currency,
        period_start=invoice.period_start,
        period_end=invoice.period_end
    )


@router.get("/{tenant_id}/history", response_model=List[InvoiceResponse])
async def get_invoice_history(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    service: RenewalService = Depends(get_renewal_service)
):
    """Get invoice history for a tenant"""
    return await service.get_invoice_history(db, tenant_id)


@router.post("/{tenant_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    tenant_id: str,
    request: Optional[CancelSubscriptionRequest] = None,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Cancel subscription (remains active until end of billing period unless immediate)"""
    request = request or CancelSubscriptionRequest()
    return await subscription_service.cancel_subscription(db, tenant_id, now, immediately=request.immediately)


@router.post("/{tenant_id}/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Reactivate a cancelled subscription"""
    return await subscription_service.reactivate_subscription(db, tenant_id, now)
