from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from models import (
    SubscriptionStatus, InvoiceStatus, AffiliateStatus, CommissionStatus, WithdrawalStatus
)


# Status Resolver Output
class SubscriptionStatusDetails(BaseModel):
    """Live status derived from a subscription record at a point in time"""
    dynamic_status: SubscriptionStatus
    is_expired: bool = False
    is_grace_period: bool = False
    is_trial: bool = False
    days_remaining: int = 0
    is_expiring_soon: bool = False
    show_urgent_notice: bool = False
    requires_payment: bool = False

    class Config:
        frozen = True


# Plan Schemas
class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: float
    currency: str
    billing_cycle_months: int
    monthly_equivalent: float
    features: Dict[str, Any]
    is_popular: bool = False

    class Config:
        from_attributes = True


# Subscription Schemas
class SubscriptionResponse(BaseModel):
    id: int
    tenant_id: str
    plan_id: str
    plan_name: Optional[str] = None
    status: SubscriptionStatus
    billing_cycle_months: int
    amount: float
    currency: str
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool
    auto_renew: bool
    last_payment_date: Optional[datetime] = None
    total_paid: float
    renewal_count: int

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str
    subscription_id: int
    plan_name: Optional[str] = None
    description: Optional[str] = None
    amount: float
    currency: str
    status: InvoiceStatus
    period_start: datetime
    period_end: datetime
    due_date: datetime
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionOverviewResponse(BaseModel):
    """Subscription record plus its freshly resolved status"""
    subscription: Optional[SubscriptionResponse] = None
    status: SubscriptionStatusDetails
    open_invoice: Optional[InvoiceResponse] = None


class SubscriptionCreateRequest(BaseModel):
    """Plan purchase (already paid) or trial start"""
    plan_id: str = Field(..., min_length=1, max_length=50)
    billing_cycle_months: Optional[Literal[1, 6, 12]] = None
    trial: bool = False
    transaction_id: Optional[str] = Field(None, max_length=100)


class CancelSubscriptionRequest(BaseModel):
    immediately: bool = False


# Renewal Schemas
class RenewalCustomer(BaseModel):
    """Customer block forwarded to the hosted checkout page"""
    name: str = "Merchant"
    email: Optional[EmailStr] = None
    phone: str = "01700000000"
    address: str = "N/A"
    city: str = "Dhaka"
    postcode: str = "1000"
    country: str = "Bangladesh"


class RenewalRequest(BaseModel):
    billing_cycle_months: Optional[Literal[1, 6, 12]] = None
    transaction_id: Optional[str] = Field(None, min_length=6, max_length=100)
    customer: RenewalCustomer = Field(default_factory=RenewalCustomer)


class RenewalStartResponse(BaseModel):
    invoice_number: str
    transaction_id: str
    hosted_page_url: str
    amount: float
    currency: str
    period_start: datetime
    period_end: datetime


class ReconcileResponse(BaseModel):
    """Stable outcome returned to every callback and poll"""
    status: Literal["paid", "failed", "already-processed"]
    invoice_number: str
    invoice_status: InvoiceStatus
    transaction_id: str


# Affiliate Schemas
class AffiliateEnrollRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    full_name: Optional[str] = None


class AffiliateResponse(BaseModel):
    id: int
    user_id: str
    promo_code: str
    status: AffiliateStatus
    total_earnings: float
    total_withdrawn: float
    available_balance: float
    total_orders: int
    delivered_orders: int
    current_level: int

    class Config:
        from_attributes = True


class AffiliateStatusUpdate(BaseModel):
    status: AffiliateStatus


class LevelProgress(BaseModel):
    next_level: Optional[int] = None
    required_sales: int = 0
    progress: float = 100.0


class AffiliateProgressResponse(BaseModel):
    affiliate: AffiliateResponse
    current_level: int
    commission_percentage: Optional[float] = None
    progress: LevelProgress
    pending_commissions: int
    approved_commissions: int


class AffiliateSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    min_withdrawal_amount: Optional[float] = Field(None, ge=0)
    commission_levels: Optional[Dict[str, Dict[str, Any]]] = None
    sales_thresholds: Optional[Dict[str, int]] = None
    cookie_expiry_days: Optional[int] = Field(None, ge=1)


class AffiliateSettingsResponse(BaseModel):
    enabled: bool
    min_withdrawal_amount: float
    commission_levels: Dict[str, Dict[str, Any]]
    sales_thresholds: Optional[Dict[str, int]] = None
    cookie_expiry_days: int

    class Config:
        from_attributes = True


class CommissionAccrueRequest(BaseModel):
    """Order placed through a promo code; exactly one of promo_code / affiliate_id"""
    order_total: float = Field(..., gt=0)
    promo_code: Optional[str] = None
    affiliate_id: Optional[int] = None


class CommissionResponse(BaseModel):
    id: int
    affiliate_id: int
    order_id: str
    level: int
    order_total: float
    commission_percentage: float
    commission_amount: float
    status: CommissionStatus
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Withdrawal Schemas
class WithdrawalPaymentDetails(BaseModel):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    mobile_number: Optional[str] = None


class WithdrawalCreateRequest(BaseModel):
    amount: float = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, max_length=50)
    payment_details: WithdrawalPaymentDetails


class WithdrawalProcessRequest(BaseModel):
    processed_by: str = Field(..., min_length=1, max_length=64)
    notes: Optional[str] = None


class WithdrawalResponse(BaseModel):
    id: int
    affiliate_id: int
    amount: float
    status: WithdrawalStatus
    payment_method: str
    payment_details: Dict[str, Any]
    notes: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WithdrawalListResponse(BaseModel):
    withdrawals: List[WithdrawalResponse]
