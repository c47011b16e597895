"""
Withdrawal Workflow
pending -> approved -> completed, or pending -> rejected.

The affiliate balance is only debited when a withdrawal completes. Until
then pending and approved requests hold their amount against it, so a new
request must fit in what is left.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_ledger import (
    BALANCE_TOLERANCE, get_affiliate, get_affiliate_settings, verify_and_commit
)
from exceptions import ConflictError, NotFoundError, ValidationError
from models import Affiliate, AffiliateStatus, AffiliateWithdrawal, WithdrawalStatus

logger = logging.getLogger(__name__)

MOBILE_BANKING_METHODS = ("mobile", "bkash", "nagad", "rocket")
BANK_METHODS = ("bank", "transfer")
MOBILE_NUMBER_PATTERN = re.compile(r"^01[3-9]\d{8}$")
MIN_ACCOUNT_NUMBER_DIGITS = 8
RESERVING_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED)


def validate_payment_details(payment_method: str, payment_details: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """
    Check the payout destination for the chosen method and return it trimmed.

    Raises:
        ValidationError: a field the method needs is missing or malformed
    """
    method = (payment_method or "").strip().lower()
    if not method:
        raise ValidationError("Payment method is required")
    if not payment_details:
        raise ValidationError("Payment details are required")

    details = {
        key: (str(payment_details.get(key)).strip() or None) if payment_details.get(key) is not None else None
        for key in ("account_name", "account_number", "bank_name", "mobile_number")
    }

    if any(word in method for word in BANK_METHODS):
        if not details["account_number"]:
            raise ValidationError("Account number is required for bank transfer")
        if not details["bank_name"]:
            raise ValidationError("Bank name is required for bank transfer")
        if not details["account_name"]:
            raise ValidationError("Account name is required for bank transfer")
        digits = re.sub(r"\D", "", details["account_number"])
        if len(digits) < MIN_ACCOUNT_NUMBER_DIGITS:
            raise ValidationError(f"Account number must have at least {MIN_ACCOUNT_NUMBER_DIGITS} digits")

    if any(word in method for word in MOBILE_BANKING_METHODS):
        if not details["mobile_number"]:
            raise ValidationError("Mobile number is required for mobile banking")
        number = re.sub(r"[\s-]", "", details["mobile_number"])
        if number.startswith("+88"):
            number = number[3:]
        if not MOBILE_NUMBER_PATTERN.match(number):
            raise ValidationError("Invalid mobile number", details={"mobile_number": details["mobile_number"]})
        details["mobile_number"] = number

    return details


async def get_withdrawal(db: AsyncSession, withdrawal_id: int) -> AffiliateWithdrawal:
    result = await db.execute(
        select(AffiliateWithdrawal)
        .where(AffiliateWithdrawal.id == withdrawal_id)
        .execution_options(populate_existing=True)
    )
    withdrawal = result.scalar_one_or_none()
    if not withdrawal:
        raise NotFoundError("Withdrawal", withdrawal_id)
    return withdrawal


async def list_withdrawals(
    db: AsyncSession,
    affiliate_id: Optional[int] = None,
    status: Optional[WithdrawalStatus] = None
) -> List[AffiliateWithdrawal]:
    query = select(AffiliateWithdrawal)
    if affiliate_id is not None:
        query = query.where(AffiliateWithdrawal.affiliate_id == affiliate_id)
    if status is not None:
        query = query.where(AffiliateWithdrawal.status == status)
    result = await db.execute(query.order_by(AffiliateWithdrawal.requested_at.desc(), AffiliateWithdrawal.id.desc()))
    return list(result.scalars().all())


async def get_reserved_amount(db: AsyncSession, affiliate_id: int) -> float:
    """Total of the affiliate's pending and approved withdrawals."""
    result = await db.execute(
        select(func.coalesce(func.sum(AffiliateWithdrawal.amount), 0.0)).where(
            AffiliateWithdrawal.affiliate_id == affiliate_id,
            AffiliateWithdrawal.status.in_(RESERVING_STATUSES)
        )
    )
    return float(result.scalar_one())


async def request_withdrawal(
    db: AsyncSession,
    affiliate_id: int,
    amount: float,
    payment_method: str,
    payment_details: Optional[Dict[str, Any]],
    now: datetime
) -> AffiliateWithdrawal:
    """
    Create a pending withdrawal.

    Invalid requests are rejected before anything is persisted.

    Raises:
        NotFoundError: unknown affiliate
        ValidationError: bad amount or details, below minimum, above available balance,
            or affiliate not active
    """
    if amount is None or amount <= 0:
        raise ValidationError("Amount is required and must be greater than 0")

    details = validate_payment_details(payment_method, payment_details)

    program = await get_affiliate_settings(db)
    min_amount = program.min_withdrawal_amount
    if amount < min_amount:
        raise ValidationError(f"Minimum withdrawal amount is {min_amount}", details={"min_amount": min_amount})

    # Serializes requests from the same affiliate
    affiliate = await get_affiliate(db, affiliate_id, lock=True)

    if affiliate.status != AffiliateStatus.ACTIVE:
        status = affiliate.status.value
        await db.rollback()
        raise ValidationError("Affiliate is not active", details={"status": status})

    available = affiliate.available_balance
    if amount > available:
        await db.rollback()
        raise ValidationError(
            f"Insufficient balance. Available: {available:.2f}",
            details={"available_balance": available, "amount": amount}
        )

    # Requests not yet completed still hold their amount against the balance
    reserved = await get_reserved_amount(db, affiliate_id)
    if reserved + amount > available + BALANCE_TOLERANCE:
        await db.rollback()
        raise ValidationError(
            f"Insufficient balance. You have {reserved:.2f} in open withdrawals. "
            f"Available: {available - reserved:.2f}",
            details={"available_balance": available, "reserved": reserved, "amount": amount}
        )

    withdrawal = AffiliateWithdrawal(
        affiliate_id=affiliate.id,
        amount=amount,
        status=WithdrawalStatus.PENDING,
        payment_method=payment_method.strip(),
        payment_details=details,
        requested_at=now,
        updated_at=now
    )
    db.add(withdrawal)
    await db.commit()

    logger.info(f"✅ Withdrawal {withdrawal.id} requested by affiliate {affiliate_id}: {amount}")
    return withdrawal


async def _transition(
    db: AsyncSession,
    withdrawal_id: int,
    from_status: WithdrawalStatus,
    to_status: WithdrawalStatus,
    **values
) -> bool:
    result = await db.execute(
        update(AffiliateWithdrawal)
        .where(AffiliateWithdrawal.id == withdrawal_id, AffiliateWithdrawal.status == from_status)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _illegal_transition(withdrawal: AffiliateWithdrawal, target: WithdrawalStatus) -> ConflictError:
    return ConflictError(
        f"Cannot move a {withdrawal.status.value} withdrawal to {target.value}",
        details={"withdrawal_id": withdrawal.id, "status": withdrawal.status.value}
    )


async def approve_withdrawal(
    db: AsyncSession,
    withdrawal_id: int,
    processed_by: str,
    now: datetime,
    notes: Optional[str] = None
) -> AffiliateWithdrawal:
    withdrawal = await get_withdrawal(db, withdrawal_id)
    if withdrawal.status == WithdrawalStatus.APPROVED:
        return withdrawal

    values = {"processed_at": now, "processed_by": processed_by, "updated_at": now}
    if notes:
        values["notes"] = notes
    if not await _transition(db, withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED, **values):
        await db.rollback()
        withdrawal = await get_withdrawal(db, withdrawal_id)
        if withdrawal.status == WithdrawalStatus.APPROVED:
            return withdrawal
        raise _illegal_transition(withdrawal, WithdrawalStatus.APPROVED)

    await db.commit()
    logger.info(f"✅ Withdrawal {withdrawal_id} approved by {processed_by}")
    return await get_withdrawal(db, withdrawal_id)


async def reject_withdrawal(
    db: AsyncSession,
    withdrawal_id: int,
    processed_by: str,
    now: datetime,
    notes: Optional[str] = None
) -> AffiliateWithdrawal:
    withdrawal = await get_withdrawal(db, withdrawal_id)
    if withdrawal.status == WithdrawalStatus.REJECTED:
        return withdrawal

    values = {"processed_at": now, "processed_by": processed_by, "updated_at": now}
    if notes:
        values["notes"] = notes
    if not await _transition(db, withdrawal_id, WithdrawalStatus.PENDING, WithdrawalStatus.REJECTED, **values):
        await db.rollback()
        withdrawal = await get_withdrawal(db, withdrawal_id)
        if withdrawal.status == WithdrawalStatus.REJECTED:
            return withdrawal
        raise _illegal_transition(withdrawal, WithdrawalStatus.REJECTED)

    await db.commit()
    logger.info(f"✅ Withdrawal {withdrawal_id} rejected by {processed_by}")
    return await get_withdrawal(db, withdrawal_id)


async def complete_withdrawal(
    db: AsyncSession,
    withdrawal_id: int,
    processed_by: str,
    now: datetime
) -> AffiliateWithdrawal:
    """
    Mark an approved withdrawal paid out and debit the affiliate.

    The status change and the balance debit commit together. If the balance
    no longer covers the amount nothing is written and ConflictError is raised.
    """
    withdrawal = await get_withdrawal(db, withdrawal_id)
    if withdrawal.status == WithdrawalStatus.COMPLETED:
        logger.info(f"🔄 Withdrawal {withdrawal_id} already completed")
        return withdrawal
    if withdrawal.status != WithdrawalStatus.APPROVED:
        raise _illegal_transition(withdrawal, WithdrawalStatus.COMPLETED)

    affiliate = await get_affiliate(db, withdrawal.affiliate_id, lock=True)
    affiliate_id = affiliate.id
    amount = withdrawal.amount

    moved = await _transition(
        db, withdrawal_id, WithdrawalStatus.APPROVED, WithdrawalStatus.COMPLETED,
        completed_at=now, processed_by=processed_by, updated_at=now
    )
    if not moved:
        await db.rollback()
        withdrawal = await get_withdrawal(db, withdrawal_id)
        if withdrawal.status == WithdrawalStatus.COMPLETED:
            return withdrawal
        raise _illegal_transition(withdrawal, WithdrawalStatus.COMPLETED)

    result = await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id, Affiliate.available_balance >= amount - BALANCE_TOLERANCE)
        .values(
            available_balance=Affiliate.available_balance - amount,
            total_withdrawn=Affiliate.total_withdrawn + amount
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        logger.warning(f"⚠️ Withdrawal {withdrawal_id} ({amount}) exceeds current balance of affiliate {affiliate_id}")
        raise ConflictError(
            "Withdrawal exceeds current available balance",
            details={"withdrawal_id": withdrawal_id, "amount": amount}
        )

    await verify_and_commit(db, affiliate_id)

    logger.info(f"✅ Withdrawal {withdrawal_id} completed: -{amount} for affiliate {affiliate_id}")
    return await get_withdrawal(db, withdrawal_id)
