"""
Affiliate Commission Ledger

Commission rows move pending -> approved -> cancelled (or pending -> cancelled)
in response to the order lifecycle. Balance columns are only ever changed with
SQL expressions inside the transaction that moves the commission, and every
mutation re-checks available_balance == total_earnings - total_withdrawn
before committing.
"""

import logging
import re
import secrets
import string
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_levels import (
    LevelConfig, calculate_affiliate_level, commission_percentage_for,
    get_next_level_progress, normalize_level_config
)
from config import settings as app_settings
from exceptions import (
    ConflictError, InvariantViolation, NotFoundError, ReconciliationRequired, ValidationError
)
from models import (
    Affiliate, AffiliateCommission, AffiliateSettings, AffiliateStatus, CommissionStatus
)

logger = logging.getLogger(__name__)

SETTINGS_ID = "affiliate_settings_v1"
BALANCE_TOLERANCE = 0.005  # half a cent
PROMO_CODE_ATTEMPTS = 10
PROMO_RANDOM_ALPHABET = string.ascii_uppercase + string.digits

DEFAULT_COMMISSION_LEVELS = {
    "1": {"percentage": 5, "enabled": True},
}
DEFAULT_SALES_THRESHOLDS = {"1": 0, "2": 10, "3": 25, "4": 50, "5": 100}


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------

async def get_affiliate_settings(db: AsyncSession) -> AffiliateSettings:
    """Program settings, creating the default row on first use."""
    result = await db.execute(select(AffiliateSettings).where(AffiliateSettings.id == SETTINGS_ID))
    program = result.scalar_one_or_none()
    if program:
        return program

    program = AffiliateSettings(
        id=SETTINGS_ID,
        enabled=False,
        min_withdrawal_amount=app_settings.AFFILIATE_MIN_WITHDRAWAL_AMOUNT,
        commission_levels=dict(DEFAULT_COMMISSION_LEVELS),
        sales_thresholds=dict(DEFAULT_SALES_THRESHOLDS),
        cookie_expiry_days=30
    )
    db.add(program)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(AffiliateSettings).where(AffiliateSettings.id == SETTINGS_ID))
        return result.scalar_one()

    logger.info("✅ Default affiliate settings created")
    return program


def level_config(program: AffiliateSettings) -> LevelConfig:
    return normalize_level_config(program.commission_levels, program.sales_thresholds)


async def update_affiliate_settings(db: AsyncSession, updates: Dict[str, Any]) -> AffiliateSettings:
    program = await get_affiliate_settings(db)

    levels = updates.get("commission_levels")
    if levels is not None:
        for key, entry in levels.items():
            percentage = entry.get("percentage")
            if percentage is not None and not 0 <= float(percentage) <= 100:
                raise ValidationError(
                    "Commission percentage must be between 0 and 100",
                    details={"level": key, "percentage": percentage}
                )

    for field_name in ("enabled", "min_withdrawal_amount", "commission_levels",
                       "sales_thresholds", "cookie_expiry_days"):
        if field_name in updates and updates[field_name] is not None:
            setattr(program, field_name, updates[field_name])

    await db.commit()
    logger.info(f"✅ Affiliate settings updated: {sorted(k for k, v in updates.items() if v is not None)}")
    return program


# ----------------------------------------------------------------------
# Affiliates
# ----------------------------------------------------------------------

def generate_promo_code(user_id: str, full_name: Optional[str] = None) -> str:
    """First 3 letters of the name (or AFF) + last 6 of the user id + 3 random characters."""
    name_part = re.sub(r"[^A-Za-z0-9]", "", full_name or "")[:3].upper() or "AFF"
    id_part = re.sub(r"[^A-Za-z0-9]", "", user_id)[-6:].upper()
    random_part = "".join(secrets.choice(PROMO_RANDOM_ALPHABET) for _ in range(3))
    return f"{name_part}{id_part}{random_part}"


async def get_affiliate(db: AsyncSession, affiliate_id: int, lock: bool = False) -> Affiliate:
    query = select(Affiliate).where(Affiliate.id == affiliate_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    affiliate = result.scalar_one_or_none()
    if not affiliate:
        raise NotFoundError("Affiliate", affiliate_id)
    return affiliate


async def get_affiliate_by_user(db: AsyncSession, user_id: str) -> Optional[Affiliate]:
    result = await db.execute(select(Affiliate).where(Affiliate.user_id == user_id))
    return result.scalar_one_or_none()


async def find_active_affiliate_by_promo_code(db: AsyncSession, promo_code: str) -> Optional[Affiliate]:
    if not promo_code:
        return None
    result = await db.execute(
        select(Affiliate).where(
            Affiliate.promo_code == promo_code.strip().upper(),
            Affiliate.status == AffiliateStatus.ACTIVE
        )
    )
    return result.scalar_one_or_none()


async def enroll_affiliate(db: AsyncSession, user_id: str, full_name: Optional[str] = None) -> Affiliate:
    """
    Enroll a user as an affiliate with a fresh promo code.

    Raises:
        ValidationError: the affiliate program is disabled
        ConflictError: the user is already an affiliate
    """
    program = await get_affiliate_settings(db)
    if not program.enabled:
        raise ValidationError("Affiliate system is not enabled")

    if await get_affiliate_by_user(db, user_id):
        raise ConflictError("Affiliate account already exists", details={"user_id": user_id})

    promo_code = None
    for _ in range(PROMO_CODE_ATTEMPTS):
        candidate = generate_promo_code(user_id, full_name)
        existing = await db.execute(select(Affiliate.id).where(Affiliate.promo_code == candidate))
        if existing.scalar_one_or_none() is None:
            promo_code = candidate
            break
    if promo_code is None:
        raise ConflictError("Could not allocate a unique promo code", details={"user_id": user_id})

    affiliate = Affiliate(
        user_id=user_id,
        promo_code=promo_code,
        status=AffiliateStatus.ACTIVE,
        total_earnings=0.0,
        total_withdrawn=0.0,
        available_balance=0.0,
        total_orders=0,
        delivered_orders=0,
        current_level=1
    )
    db.add(affiliate)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Affiliate account already exists", details={"user_id": user_id})

    logger.info(f"✅ Affiliate enrolled: user {user_id} ({promo_code})")
    return affiliate


async def set_affiliate_status(db: AsyncSession, affiliate_id: int, status: AffiliateStatus) -> Affiliate:
    affiliate = await get_affiliate(db, affiliate_id)
    affiliate.status = status
    await db.commit()
    logger.info(f"✅ Affiliate {affiliate_id} status set to {status.value}")
    return affiliate


# ----------------------------------------------------------------------
# Invariant
# ----------------------------------------------------------------------

def assert_balance_invariant(affiliate: Affiliate):
    """Raise InvariantViolation unless available_balance == total_earnings - total_withdrawn."""
    expected = affiliate.total_earnings - affiliate.total_withdrawn
    if abs(affiliate.available_balance - expected) > BALANCE_TOLERANCE or affiliate.available_balance < -BALANCE_TOLERANCE:
        raise InvariantViolation(
            "Affiliate balance invariant violated",
            details={
                "affiliate_id": affiliate.id,
                "total_earnings": affiliate.total_earnings,
                "total_withdrawn": affiliate.total_withdrawn,
                "available_balance": affiliate.available_balance
            }
        )


async def verify_and_commit(db: AsyncSession, affiliate_id: int):
    """Re-read the affiliate inside the open transaction, check the invariant, then commit."""
    affiliate = await get_affiliate(db, affiliate_id)
    try:
        assert_balance_invariant(affiliate)
    except InvariantViolation as e:
        await db.rollback()
        logger.error(f"❌ {e.message} - mutation rolled back: {e.details}")
        raise
    await db.commit()


# ----------------------------------------------------------------------
# Commissions
# ----------------------------------------------------------------------

async def get_commission(db: AsyncSession, commission_id: int) -> AffiliateCommission:
    result = await db.execute(
        select(AffiliateCommission)
        .where(AffiliateCommission.id == commission_id)
        .execution_options(populate_existing=True)
    )
    commission = result.scalar_one_or_none()
    if not commission:
        raise NotFoundError("Commission", commission_id)
    return commission


async def get_commission_by_order(db: AsyncSession, order_id: str) -> Optional[AffiliateCommission]:
    result = await db.execute(
        select(AffiliateCommission)
        .where(AffiliateCommission.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_commissions(
    db: AsyncSession,
    affiliate_id: int,
    status: Optional[CommissionStatus] = None
) -> List[AffiliateCommission]:
    query = select(AffiliateCommission).where(AffiliateCommission.affiliate_id == affiliate_id)
    if status is not None:
        query = query.where(AffiliateCommission.status == status)
    result = await db.execute(query.order_by(AffiliateCommission.created_at.desc()))
    return list(result.scalars().all())


async def accrue(
    db: AsyncSession,
    affiliate_id: int,
    order_id: str,
    order_total: float
) -> Optional[AffiliateCommission]:
    """
    Record a pending commission for an order placed with the affiliate's code.

    Returns None when the program is disabled or no level pays a commission.
    Accruing the same order twice returns the first commission.
    """
    if order_total <= 0:
        raise ValidationError("Order total must be positive", details={"order_total": order_total})

    existing = await get_commission_by_order(db, order_id)
    if existing:
        logger.info(f"🔄 Commission for order {order_id} already accrued")
        return existing

    program = await get_affiliate_settings(db)
    if not program.enabled:
        return None

    affiliate = await get_affiliate(db, affiliate_id, lock=True)
    if affiliate.status != AffiliateStatus.ACTIVE:
        await db.rollback()
        raise ValidationError("Affiliate is not active", details={"affiliate_id": affiliate_id})

    config = level_config(program)
    level = max(affiliate.current_level, calculate_affiliate_level(affiliate.delivered_orders, config.thresholds))
    percentage = commission_percentage_for(level, config)
    if percentage is None:
        await db.rollback()
        return None

    commission = AffiliateCommission(
        affiliate_id=affiliate.id,
        order_id=order_id,
        level=level,
        order_total=order_total,
        commission_percentage=percentage,
        commission_amount=round(order_total * percentage / 100, 2),
        status=CommissionStatus.PENDING
    )
    db.add(commission)
    await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate.id)
        .values(total_orders=Affiliate.total_orders + 1)
        .execution_options(synchronize_session=False)
    )

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_commission_by_order(db, order_id)
        if existing is None:
            raise
        logger.info(f"🔄 Commission for order {order_id} accrued concurrently")
        return existing

    logger.info(f"✅ Commission accrued: order {order_id} -> affiliate {affiliate.id} ({commission.commission_amount} at {percentage}%, level {level})")
    return commission


async def accrue_for_promo_code(
    db: AsyncSession,
    promo_code: str,
    order_id: str,
    order_total: float
) -> Optional[AffiliateCommission]:
    """Accrue for the active affiliate owning ``promo_code``; unknown codes accrue nothing."""
    affiliate = await find_active_affiliate_by_promo_code(db, promo_code)
    if affiliate is None:
        logger.info(f"No active affiliate for promo code {promo_code!r} (order {order_id})")
        return None
    return await accrue(db, affiliate.id, order_id, order_total)


def _commission_transition(commission_id: int, from_status: CommissionStatus, **values):
    return (
        update(AffiliateCommission)
        .where(AffiliateCommission.id == commission_id, AffiliateCommission.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def confirm_commission(db: AsyncSession, commission_id: int, now: datetime) -> AffiliateCommission:
    """
    Approve a commission when its order is delivered and credit the affiliate.

    Idempotent: confirming an approved commission changes nothing.
    """
    commission = await get_commission(db, commission_id)
    if commission.status == CommissionStatus.APPROVED:
        logger.info(f"🔄 Commission {commission_id} already approved")
        return commission
    if commission.status == CommissionStatus.CANCELLED:
        raise ConflictError("Commission was cancelled", details={"commission_id": commission_id})

    program = await get_affiliate_settings(db)
    affiliate = await get_affiliate(db, commission.affiliate_id, lock=True)

    result = await db.execute(
        _commission_transition(commission.id, CommissionStatus.PENDING,
                               status=CommissionStatus.APPROVED, approved_at=now)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.info(f"🔄 Commission {commission_id} processed concurrently")
        return await get_commission(db, commission_id)

    amount = commission.commission_amount
    await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate.id)
        .values(
            total_earnings=Affiliate.total_earnings + amount,
            available_balance=Affiliate.available_balance + amount,
            delivered_orders=Affiliate.delivered_orders + 1
        )
        .execution_options(synchronize_session=False)
    )

    thresholds = level_config(program).thresholds
    new_level = max(affiliate.current_level, calculate_affiliate_level(affiliate.delivered_orders + 1, thresholds))
    if new_level != affiliate.current_level:
        await db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id)
            .values(current_level=new_level)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"✅ Affiliate {affiliate.id} promoted to level {new_level}")

    await verify_and_commit(db, affiliate.id)

    logger.info(f"✅ Commission {commission_id} approved: +{amount} for affiliate {affiliate.id}")
    return await get_commission(db, commission_id)


async def reverse_commission(db: AsyncSession, commission_id: int, now: datetime) -> AffiliateCommission:
    """
    Cancel a commission when its order is cancelled.

    A pending commission is cancelled with no balance effect. An approved one
    is debited from the affiliate; if the balance no longer covers it (already
    withdrawn) nothing is written and ReconciliationRequired is raised.
    """
    commission = await get_commission(db, commission_id)
    if commission.status == CommissionStatus.CANCELLED:
        logger.info(f"🔄 Commission {commission_id} already cancelled")
        return commission

    if commission.status == CommissionStatus.PENDING:
        result = await db.execute(
            _commission_transition(commission.id, CommissionStatus.PENDING,
                                   status=CommissionStatus.CANCELLED, cancelled_at=now)
        )
        if result.rowcount == 0:
            # Approved in the meantime; take the approved path
            await db.rollback()
            return await reverse_commission(db, commission_id, now)
        await db.commit()
        logger.info(f"✅ Pending commission {commission_id} cancelled")
        return await get_commission(db, commission_id)

    program = await get_affiliate_settings(db)
    affiliate = await get_affiliate(db, commission.affiliate_id, lock=True)
    affiliate_id = affiliate.id
    amount = commission.commission_amount
    balance = affiliate.available_balance

    if balance + BALANCE_TOLERANCE < amount:
        await db.rollback()
        logger.error(
            f"❌ Reversal of commission {commission_id} ({amount}) exceeds affiliate {affiliate_id} "
            f"balance {balance} - manual reconciliation required"
        )
        raise ReconciliationRequired(
            "Commission reversal exceeds available balance",
            details={
                "commission_id": commission_id,
                "affiliate_id": affiliate_id,
                "amount": amount,
                "available_balance": balance
            }
        )

    result = await db.execute(
        _commission_transition(commission.id, CommissionStatus.APPROVED,
                               status=CommissionStatus.CANCELLED, cancelled_at=now)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.info(f"🔄 Commission {commission_id} processed concurrently")
        return await get_commission(db, commission_id)

    result = await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id, Affiliate.available_balance >= amount - BALANCE_TOLERANCE)
        .values(
            total_earnings=Affiliate.total_earnings - amount,
            available_balance=Affiliate.available_balance - amount,
            delivered_orders=Affiliate.delivered_orders - (1 if affiliate.delivered_orders > 0 else 0)
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.error(f"❌ Balance of affiliate {affiliate_id} changed during reversal of commission {commission_id} - manual reconciliation required")
        raise ReconciliationRequired(
            "Commission reversal exceeds available balance",
            details={"commission_id": commission_id, "affiliate_id": affiliate_id, "amount": amount}
        )

    remaining_delivered = max(0, affiliate.delivered_orders - 1)
    new_level = calculate_affiliate_level(remaining_delivered, level_config(program).thresholds)
    if new_level != affiliate.current_level:
        await db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(current_level=new_level)
            .execution_options(synchronize_session=False)
        )

    await verify_and_commit(db, affiliate_id)

    logger.info(f"✅ Commission {commission_id} reversed: -{amount} for affiliate {affiliate_id}")
    return await get_commission(db, commission_id)


async def confirm_order_commission(db: AsyncSession, order_id: str, now: datetime) -> Optional[AffiliateCommission]:
    """Order delivered; orders without an affiliate commission are ignored."""
    commission = await get_commission_by_order(db, order_id)
    if commission is None:
        return None
    return await confirm_commission(db, commission.id, now)


async def reverse_order_commission(db: AsyncSession, order_id: str, now: datetime) -> Optional[AffiliateCommission]:
    """Order cancelled; orders without an affiliate commission are ignored."""
    commission = await get_commission_by_order(db, order_id)
    if commission is None:
        return None
    return await reverse_commission(db, commission.id, now)


# ----------------------------------------------------------------------
# Dashboard
# ----------------------------------------------------------------------

async def get_affiliate_progress(db: AsyncSession, affiliate_id: int) -> Dict[str, Any]:
    affiliate = await get_affiliate(db, affiliate_id)
    program = await get_affiliate_settings(db)
    config = level_config(program)

    current_level = calculate_affiliate_level(affiliate.delivered_orders, config.thresholds)
    progress = get_next_level_progress(current_level, affiliate.delivered_orders, config.thresholds)

    counts = await db.execute(
        select(AffiliateCommission.status, func.count(AffiliateCommission.id))
        .where(AffiliateCommission.affiliate_id == affiliate_id)
        .group_by(AffiliateCommission.status)
    )
    by_status = {status: count for status, count in counts.all()}

    return {
        "affiliate": affiliate,
        "current_level": current_level,
        "commission_percentage": commission_percentage_for(current_level, config),
        "progress": progress,
        "pending_commissions": by_status.get(CommissionStatus.PENDING, 0),
        "approved_commissions": by_status.get(CommissionStatus.APPROVED, 0),
    }
