import pytest
from sqlalchemy import update

from affiliate_ledger import (
    accrue,
    accrue_for_promo_code,
    assert_balance_invariant,
    confirm_commission,
    confirm_order_commission,
    enroll_affiliate,
    generate_promo_code,
    get_affiliate,
    get_affiliate_progress,
    reverse_commission,
    reverse_order_commission,
    update_affiliate_settings,
    verify_and_commit
)
from exceptions import ConflictError, InvariantViolation, ReconciliationRequired, ValidationError
from models import Affiliate, CommissionStatus
from withdrawal_service import approve_withdrawal, complete_withdrawal, request_withdrawal
from tests.conftest import NOW

BKASH = {"mobile_number": "01712345678"}
TWO_LEVELS = {
    "1": {"percentage": 5, "enabled": True},
    "2": {"percentage": 5, "enabled": True},
}


async def set_affiliate(db, affiliate_id, **values):
    await db.execute(update(Affiliate).where(Affiliate.id == affiliate_id).values(**values))
    await db.commit()


def test_promo_code_format():
    code = generate_promo_code("user-000123", "Rahim Uddin")

    assert code.startswith("RAH000123")
    assert len(code) == 12
    assert generate_promo_code("42").startswith("AFF42")


async def test_enrollment(db, affiliate):
    assert affiliate.promo_code.startswith("RAH")
    assert affiliate.available_balance == 0.0
    assert affiliate.current_level == 1

    with pytest.raises(ConflictError):
        await enroll_affiliate(db, "user-000123", "Rahim Uddin")


async def test_enrollment_requires_enabled_program(db):
    with pytest.raises(ValidationError):
        await enroll_affiliate(db, "user-000999")


async def test_commission_confirmed_once(db, affiliate):
    await update_affiliate_settings(db, {"commission_levels": TWO_LEVELS})
    await set_affiliate(db, affiliate.id, current_level=2)

    commission = await accrue(db, affiliate.id, "ORD-1001", 1000.0)

    assert commission.commission_amount == 50.0
    assert commission.status == CommissionStatus.PENDING
    assert commission.level == 2

    await confirm_commission(db, commission.id, NOW)
    again = await confirm_commission(db, commission.id, NOW)

    assert again.status == CommissionStatus.APPROVED
    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.total_earnings == 50.0
    assert refreshed.available_balance == 50.0
    assert refreshed.delivered_orders == 1
    assert refreshed.total_orders == 1


async def test_accrue_is_idempotent_per_order(db, affiliate):
    first = await accrue(db, affiliate.id, "ORD-1", 500.0)
    second = await accrue(db, affiliate.id, "ORD-1", 500.0)

    assert first.id == second.id
    assert (await get_affiliate(db, affiliate.id)).total_orders == 1


async def test_accrue_with_program_disabled(db, affiliate):
    await update_affiliate_settings(db, {"enabled": False})

    assert await accrue(db, affiliate.id, "ORD-1", 500.0) is None


async def test_accrue_by_promo_code(db, affiliate):
    commission = await accrue_for_promo_code(db, affiliate.promo_code.lower(), "ORD-7", 200.0)

    assert commission.affiliate_id == affiliate.id
    assert commission.commission_amount == 10.0
    assert await accrue_for_promo_code(db, "NOSUCHCODE", "ORD-8", 200.0) is None


async def test_accrue_rejects_non_positive_total(db, affiliate):
    with pytest.raises(ValidationError):
        await accrue(db, affiliate.id, "ORD-1", 0)


async def test_reversing_pending_commission_has_no_balance_effect(db, affiliate):
    commission = await accrue(db, affiliate.id, "ORD-1", 1000.0)

    reversed_commission = await reverse_commission(db, commission.id, NOW)

    assert reversed_commission.status == CommissionStatus.CANCELLED
    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.total_earnings == 0.0
    assert refreshed.available_balance == 0.0


async def test_reversing_approved_commission_debits_balance(db, affiliate):
    commission = await accrue(db, affiliate.id, "ORD-1", 1000.0)
    await confirm_commission(db, commission.id, NOW)

    reversed_commission = await reverse_commission(db, commission.id, NOW)
    await reverse_commission(db, commission.id, NOW)

    assert reversed_commission.status == CommissionStatus.CANCELLED
    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.total_earnings == 0.0
    assert refreshed.available_balance == 0.0
    assert refreshed.delivered_orders == 0


async def test_confirming_cancelled_commission_conflicts(db, affiliate):
    commission = await accrue(db, affiliate.id, "ORD-1", 1000.0)
    await reverse_commission(db, commission.id, NOW)

    with pytest.raises(ConflictError):
        await confirm_commission(db, commission.id, NOW)


async def test_reversal_after_payout_needs_reconciliation(db, affiliate):
    await update_affiliate_settings(db, {"min_withdrawal_amount": 10.0})
    commission = await accrue(db, affiliate.id, "ORD-1", 1000.0)
    await confirm_commission(db, commission.id, NOW)
    withdrawal = await request_withdrawal(db, affiliate.id, 50.0, "bkash", BKASH, NOW)
    await approve_withdrawal(db, withdrawal.id, "admin-1", NOW)
    await complete_withdrawal(db, withdrawal.id, "admin-1", NOW)

    with pytest.raises(ReconciliationRequired):
        await reverse_commission(db, commission.id, NOW)

    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.available_balance == 0.0
    assert refreshed.total_earnings == 50.0
    assert refreshed.total_withdrawn == 50.0
    still_approved = await confirm_order_commission(db, "ORD-1", NOW)
    assert still_approved.status == CommissionStatus.APPROVED


async def test_delivery_promotes_level(db, affiliate):
    await set_affiliate(db, affiliate.id, delivered_orders=9)
    commission = await accrue(db, affiliate.id, "ORD-10", 100.0)

    await confirm_commission(db, commission.id, NOW)

    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.delivered_orders == 10
    assert refreshed.current_level == 2


async def test_order_hooks_ignore_orders_without_commission(db, affiliate):
    assert await confirm_order_commission(db, "ORD-NONE", NOW) is None
    assert await reverse_order_commission(db, "ORD-NONE", NOW) is None


def test_invariant_check():
    assert_balance_invariant(Affiliate(id=1, total_earnings=80.0, total_withdrawn=30.0, available_balance=50.0))

    with pytest.raises(InvariantViolation):
        assert_balance_invariant(Affiliate(id=1, total_earnings=80.0, total_withdrawn=30.0, available_balance=60.0))


async def test_invariant_violation_rolls_back(db, affiliate):
    await db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate.id)
        .values(available_balance=Affiliate.available_balance + 25.0)
    )

    with pytest.raises(InvariantViolation):
        await verify_and_commit(db, affiliate.id)

    refreshed = await get_affiliate(db, affiliate.id)
    assert refreshed.available_balance == 0.0


async def test_progress(db, affiliate):
    await update_affiliate_settings(db, {"commission_levels": TWO_LEVELS})
    await set_affiliate(db, affiliate.id, delivered_orders=24)
    await accrue(db, affiliate.id, "ORD-1", 100.0)

    progress = await get_affiliate_progress(db, affiliate.id)

    assert progress["current_level"] == 2
    assert progress["progress"]["next_level"] == 3
    assert progress["progress"]["progress"] == pytest.approx(96.0)
    assert progress["commission_percentage"] == 5.0
    assert progress["pending_commissions"] == 1
    assert progress["approved_commissions"] == 0


async def test_level_without_enabled_percentage_accrues_nothing(db, affiliate):
    await update_affiliate_settings(db, {"commission_levels": {
        "1": {"percentage": 5, "enabled": True},
        "2": {"percentage": 8, "enabled": False},
    }})
    await set_affiliate(db, affiliate.id, current_level=2)

    assert await accrue(db, affiliate.id, "ORD-1", 1000.0) is None
    assert (await get_affiliate(db, affiliate.id)).total_orders == 0
