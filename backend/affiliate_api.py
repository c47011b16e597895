"""
Affiliate API Endpoints
Order lifecycle hooks, enrollment, progress and withdrawal processing
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import List, Optional
import logging

from database import get_db
from dependencies import get_now, require_admin
from exceptions import ValidationError
from models import CommissionStatus, WithdrawalStatus
from schemas import (
    AffiliateEnrollRequest,
    AffiliateProgressResponse,
    AffiliateResponse,
    AffiliateSettingsResponse,
    AffiliateSettingsUpdate,
    AffiliateStatusUpdate,
    CommissionAccrueRequest,
    CommissionResponse,
    LevelProgress,
    WithdrawalCreateRequest,
    WithdrawalListResponse,
    WithdrawalProcessRequest,
    WithdrawalResponse
)
import affiliate_ledger
import withdrawal_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/affiliate", tags=["affiliate"])


# ----------------------------------------------------------------------
# Program settings (admin)
# ----------------------------------------------------------------------

@router.get("/settings", response_model=AffiliateSettingsResponse)
async def get_settings(
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await affiliate_ledger.get_affiliate_settings(db)


@router.put("/settings", response_model=AffiliateSettingsResponse)
async def update_settings(
    request: AffiliateSettingsUpdate,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await affiliate_ledger.update_affiliate_settings(db, request.model_dump(exclude_unset=True))


# ----------------------------------------------------------------------
# Order lifecycle hooks (called by the order service)
# ----------------------------------------------------------------------

@router.post("/orders/{order_id}/accrue", response_model=Optional[CommissionResponse])
async def accrue_order_commission(
    order_id: str,
    request: CommissionAccrueRequest,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Order placed with a promo code; returns null when no commission applies"""
    if request.affiliate_id is not None:
        return await affiliate_ledger.accrue(db, request.affiliate_id, order_id, request.order_total)
    if request.promo_code:
        return await affiliate_ledger.accrue_for_promo_code(db, request.promo_code, order_id, request.order_total)
    raise ValidationError("Either promo_code or affiliate_id is required")


@router.post("/orders/{order_id}/delivered", response_model=Optional[CommissionResponse])
async def order_delivered(
    order_id: str,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await affiliate_ledger.confirm_order_commission(db, order_id, now)


@router.post("/orders/{order_id}/cancelled", response_model=Optional[CommissionResponse])
async def order_cancelled(
    order_id: str,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await affiliate_ledger.reverse_order_commission(db, order_id, now)


# ----------------------------------------------------------------------
# Withdrawal processing (admin)
# ----------------------------------------------------------------------

@router.get("/withdrawals", response_model=WithdrawalListResponse)
async def list_all_withdrawals(
    status: Optional[WithdrawalStatus] = None,
    affiliate_id: Optional[int] = None,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    withdrawals = await withdrawal_service.list_withdrawals(db, affiliate_id=affiliate_id, status=status)
    return WithdrawalListResponse(withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals])


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(
    withdrawal_id: int,
    request: WithdrawalProcessRequest,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await withdrawal_service.approve_withdrawal(db, withdrawal_id, request.processed_by, now, request.notes)


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(
    withdrawal_id: int,
    request: WithdrawalProcessRequest,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await withdrawal_service.reject_withdrawal(db, withdrawal_id, request.processed_by, now, request.notes)


@router.post("/withdrawals/{withdrawal_id}/complete", response_model=WithdrawalResponse)
async def complete_withdrawal(
    withdrawal_id: int,
    request: WithdrawalProcessRequest,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await withdrawal_service.complete_withdrawal(db, withdrawal_id, request.processed_by, now)


# ----------------------------------------------------------------------
# Affiliates
# ----------------------------------------------------------------------

@router.post("/enroll", response_model=AffiliateResponse)
async def enroll(request: AffiliateEnrollRequest, db: AsyncSession = Depends(get_db)):
    return await affiliate_ledger.enroll_affiliate(db, request.user_id, request.full_name)


@router.get("/{affiliate_id}", response_model=AffiliateResponse)
async def get_affiliate(affiliate_id: int, db: AsyncSession = Depends(get_db)):
    return await affiliate_ledger.get_affiliate(db, affiliate_id)


@router.put("/{affiliate_id}/status", response_model=AffiliateResponse)
async def update_affiliate_status(
    affiliate_id: int,
    request: AffiliateStatusUpdate,
    _: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await affiliate_ledger.set_affiliate_status(db, affiliate_id, request.status)


@router.get("/{affiliate_id}/progress", response_model=AffiliateProgressResponse)
async def get_progress(affiliate_id: int, db: AsyncSession = Depends(get_db)):
    """Level, progress towards the next level and commission counts"""
    progress = await affiliate_ledger.get_affiliate_progress(db, affiliate_id)
    return AffiliateProgressResponse(
        affiliate=AffiliateResponse.model_validate(progress["affiliate"]),
        current_level=progress["current_level"],
        commission_percentage=progress["commission_percentage"],
        progress=LevelProgress(**progress["progress"]),
        pending_commissions=progress["pending_commissions"],
        approved_commissions=progress["approved_commissions"]
    )


@router.get("/{affiliate_id}/commissions", response_model=List[CommissionResponse])
async def get_commissions(
    affiliate_id: int,
    status: Optional[CommissionStatus] = None,
    db: AsyncSession = Depends(get_db)
):
    await affiliate_ledger.get_affiliate(db, affiliate_id)
    return await affiliate_ledger.list_commissions(db, affiliate_id, status)


@router.post("/{affiliate_id}/withdrawals", response_model=WithdrawalResponse)
async def request_withdrawal(
    affiliate_id: int,
    request: WithdrawalCreateRequest,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    return await withdrawal_service.request_withdrawal(
        db,
        affiliate_id,
        request.amount,
        request.payment_method,
        request.payment_details.model_dump(),
        now
    )


@router.get("/{affiliate_id}/withdrawals", response_model=WithdrawalListResponse)
async def get_withdrawals(
    affiliate_id: int,
    status: Optional[WithdrawalStatus] = None,
    db: AsyncSession = Depends(get_db)
):
    await affiliate_ledger.get_affiliate(db, affiliate_id)
    withdrawals = await withdrawal_service.list_withdrawals(db, affiliate_id=affiliate_id, status=status)
    return WithdrawalListResponse(withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals])
