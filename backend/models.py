from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, JSON,
    Enum as SQLEnum, UniqueConstraint, Index, text
)
from sqlalchemy.orm import relationship
import enum
from database import Base
from timezone_utils import utc_now


def status_enum(enum_cls):
    """Store enum values (not names) in a portable VARCHAR column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True
    )


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses that count as the tenant's one live subscription
LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.GRACE_PERIOD,
)


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class AffiliateStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class SubscriptionPlan(Base):
    """Plan catalog entry - near-immutable, read-only to the lifecycle engine"""
    __tablename__ = "subscription_plans"

    id = Column(String(50), primary_key=True)  # e.g. growth_monthly
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    currency = Column(String(3), default="BDT", nullable=False)
    billing_cycle_months = Column(Integer, default=1, nullable=False)  # 1, 6 or 12
    features = Column(JSON, nullable=False, default=dict)  # heterogeneous typed map
    is_active = Column(Boolean, default=True, nullable=False)
    is_popular = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<SubscriptionPlan {self.id} ({self.price} {self.currency}/{self.billing_cycle_months}m)>"


class Subscription(Base):
    """
    Tenant subscription record.

    At most one live record (active, trial or grace_period) per tenant. Records
    are never hard-deleted; re-subscribing after expiry inserts a new row.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(String(50), ForeignKey("subscription_plans.id"), nullable=False)
    plan_name = Column(String(100), nullable=True)  # Cached for display

    status = Column(status_enum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, nullable=False)
    billing_cycle_months = Column(Integer, default=1, nullable=False)
    amount = Column(Float, nullable=False)  # Amount charged per period
    currency = Column(String(3), default="BDT", nullable=False)

    # Period Tracking
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    trial_ends_at = Column(DateTime, nullable=True)
    grace_period_ends_at = Column(DateTime, nullable=True)

    # Renewal Flags
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    auto_renew = Column(Boolean, default=True, nullable=False)

    # Payment Tracking
    last_payment_date = Column(DateTime, nullable=True)
    last_transaction_id = Column(String(100), nullable=True)
    total_paid = Column(Float, default=0.0, nullable=False)
    renewal_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    plan = relationship("SubscriptionPlan")
    invoices = relationship("Invoice", back_populates="subscription")

    __table_args__ = (
        Index('idx_subscriptions_tenant_created', 'tenant_id', 'created_at'),
        Index(
            'uq_subscriptions_live_tenant', 'tenant_id',
            unique=True,
            sqlite_where=text("status IN ('active', 'trial', 'grace_period')"),
            postgresql_where=text("status IN ('active', 'trial', 'grace_period')")
        ),
    )

    def __repr__(self):
        return f"<Subscription {self.id} (Tenant: {self.tenant_id}, Status: {self.status})>"


class Invoice(Base):
    """
    One row per billing period attempted.

    A pending invoice without a transaction id has been issued but not yet
    sent to the gateway; with a transaction id it is waiting on a callback.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(32), unique=True, nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    plan_id = Column(String(50), nullable=False)
    plan_name = Column(String(100), nullable=True)
    billing_cycle_months = Column(Integer, nullable=False)
    description = Column(String(255), nullable=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="BDT", nullable=False)
    status = Column(status_enum(InvoiceStatus), default=InvoiceStatus.PENDING, nullable=False)

    # Billing period this invoice pays for
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)

    # Gateway Session
    transaction_id = Column(String(100), unique=True, nullable=True, index=True)
    gateway_session_id = Column(String(255), nullable=True)
    gateway_initiated_at = Column(DateTime, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    subscription = relationship("Subscription", back_populates="invoices")
    payment_transactions = relationship("PaymentTransaction", back_populates="invoice")

    __table_args__ = (
        Index('idx_invoices_status', 'status'),
        Index(
            'uq_invoices_open_subscription', 'subscription_id',
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'")
        ),
    )

    def __repr__(self):
        return f"<Invoice {self.invoice_number} (Tenant: {self.tenant_id}, Status: {self.status})>"


class PaymentTransaction(Base):
    """Audit record of every gateway callback that changed an invoice"""
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(100), nullable=False, index=True)

    outcome = Column(String(20), nullable=False)  # success, failed, cancelled
    source = Column(String(20), nullable=False)  # ipn, redirect, sweeper
    gateway_status = Column(String(20), nullable=True)  # VALID, FAILED, ...
    validation_id = Column(String(100), nullable=True)
    bank_transaction_id = Column(String(100), nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    risk_level = Column(Integer, nullable=True)
    risk_title = Column(String(100), nullable=True)
    card_type = Column(String(50), nullable=True)
    gateway_transaction_date = Column(DateTime, nullable=True)
    gateway_response = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False)

    invoice = relationship("Invoice", back_populates="payment_transactions")

    def __repr__(self):
        return f"<PaymentTransaction {self.transaction_id} {self.outcome}>"


class AffiliateSettings(Base):
    """
    Affiliate program settings.

    Commission tiers exist in two shapes: the flat ``sales_thresholds`` map and
    the older ``commission_levels[n].requiredSales`` field. Both are read.
    """
    __tablename__ = "affiliate_settings"

    id = Column(String(50), primary_key=True, default="affiliate_settings_v1")
    enabled = Column(Boolean, default=False, nullable=False)
    min_withdrawal_amount = Column(Float, default=100.0, nullable=False)
    commission_levels = Column(JSON, nullable=False, default=dict)  # {"1": {"percentage": 5, "enabled": true}}
    sales_thresholds = Column(JSON, nullable=True)  # {"1": 0, "2": 10, ...}
    cookie_expiry_days = Column(Integer, default=30, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class Affiliate(Base):
    """Referring user - soft-suspended, never deleted"""
    __tablename__ = "affiliates"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False)
    promo_code = Column(String(20), unique=True, nullable=False, index=True)
    status = Column(status_enum(AffiliateStatus), default=AffiliateStatus.ACTIVE, nullable=False)

    # Ledger (available_balance == total_earnings - total_withdrawn)
    total_earnings = Column(Float, default=0.0, nullable=False)
    total_withdrawn = Column(Float, default=0.0, nullable=False)
    available_balance = Column(Float, default=0.0, nullable=False)

    total_orders = Column(Integer, default=0, nullable=False)
    delivered_orders = Column(Integer, default=0, nullable=False)
    current_level = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    commissions = relationship("AffiliateCommission", back_populates="affiliate")
    withdrawals = relationship("AffiliateWithdrawal", back_populates="affiliate")

    def __repr__(self):
        return f"<Affiliate {self.promo_code} Balance:{self.available_balance}>"


class AffiliateCommission(Base):
    """Commission accrued on one order; keeps the percentage in force at accrual time"""
    __tablename__ = "affiliate_commissions"

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    order_id = Column(String(64), nullable=False)
    level = Column(Integer, nullable=False)
    order_total = Column(Float, nullable=False)
    commission_percentage = Column(Float, nullable=False)
    commission_amount = Column(Float, nullable=False)
    status = Column(status_enum(CommissionStatus), default=CommissionStatus.PENDING, nullable=False)

    approved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    affiliate = relationship("Affiliate", back_populates="commissions")

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_commission_order'),
        Index('idx_commissions_affiliate_status', 'affiliate_id', 'status'),
    )

    def __repr__(self):
        return f"<AffiliateCommission Order:{self.order_id} {self.commission_amount} ({self.status})>"


class AffiliateWithdrawal(Base):
    """Payout request processed by a privileged actor"""
    __tablename__ = "affiliate_withdrawals"

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    status = Column(status_enum(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False)
    payment_method = Column(String(50), nullable=False)
    payment_details = Column(JSON, nullable=False, default=dict)
    notes = Column(Text, nullable=True)

    requested_at = Column(DateTime, default=utc_now, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String(64), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    affiliate = relationship("Affiliate", back_populates="withdrawals")

    __table_args__ = (
        Index('idx_withdrawals_affiliate_status', 'affiliate_id', 'status'),
    )

    def __repr__(self):
        return f"<AffiliateWithdrawal {self.id} {self.amount} ({self.status})>"
