"""
Shared fixtures: an in-memory SQLite database per test, a pinned clock and a
scripted payment gateway.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from affiliate_ledger import enroll_affiliate, update_affiliate_settings
from database import Base
from exceptions import GatewayError
from plan_catalog import create_plan
from renewal_service import RenewalService
from sslcommerz_service import CallbackUrls, GatewayCallback, GatewaySession, GatewayValidation, PaymentOutcome
from subscription_service import create_subscription

NOW = datetime(2024, 5, 15, 10, 0, 0)
TENANT_ID = "tenant-acme"
ADMIN_KEY = "test-admin-key"


class FakeGateway:
    """Scripted stand-in for SSLCommerzService"""

    def __init__(self):
        self.fail_initiate = False
        self.fail_validate = False
        self.initiated = []
        self.validated = []
        self.validations: Dict[str, GatewayValidation] = {}

    def approve(
        self,
        validation_id: str,
        transaction_id: str,
        amount: float,
        currency: str = "BDT",
        risk_level: int = 0
    ):
        self.validations[validation_id] = GatewayValidation(
            status="VALID",
            transaction_id=transaction_id,
            amount=amount,
            currency=currency,
            risk_level=risk_level,
            risk_title="Safe" if risk_level == 0 else "Review",
            bank_transaction_id=f"BANK-{validation_id}",
            card_type="VISA-Dutch Bangla",
            raw={"status": "VALID", "val_id": validation_id, "tran_id": transaction_id}
        )

    async def initiate(self, amount, currency, transaction_id, callback_urls, customer=None, product_name=None):
        if self.fail_initiate:
            raise GatewayError("Payment service temporarily unavailable")
        self.initiated.append({"amount": amount, "currency": currency, "transaction_id": transaction_id})
        return GatewaySession(
            hosted_page_url=f"https://sandbox.sslcommerz.com/EasyCheckOut/{transaction_id}",
            gateway_session_id=f"SESSION-{transaction_id}"
        )

    async def validate(self, validation_id):
        if self.fail_validate:
            raise GatewayError("Payment validation temporarily unavailable")
        self.validated.append(validation_id)
        if not validation_id:
            return GatewayValidation(status="INVALID")
        return self.validations.get(validation_id, GatewayValidation(status="INVALID"))

    def get_configuration_status(self):
        return {"is_configured": True, "mode": "sandbox", "issues": [], "has_issues": False}


def success_callback(transaction_id: str, validation_id: str, amount: Optional[float] = None) -> GatewayCallback:
    return GatewayCallback(
        outcome=PaymentOutcome.SUCCESS,
        gateway_status="VALID",
        transaction_id=transaction_id,
        validation_id=validation_id,
        amount=amount,
        currency="BDT",
        raw={"tran_id": transaction_id, "val_id": validation_id, "status": "VALID"}
    )


def failed_callback(transaction_id: str, error: str = "Insufficient funds") -> GatewayCallback:
    return GatewayCallback(
        outcome=PaymentOutcome.FAILED,
        gateway_status="FAILED",
        transaction_id=transaction_id,
        error=error,
        raw={"tran_id": transaction_id, "status": "FAILED", "error": error}
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def renewals(gateway):
    return RenewalService(
        gateway,
        callback_urls=CallbackUrls.for_base_url("https://billing.example.com"),
        amount_tolerance=0.01,
        session_timeout=timedelta(hours=24)
    )


@pytest.fixture
async def plan(db):
    return await create_plan(
        db,
        "growth_monthly",
        "Growth",
        1000.0,
        1,
        features={"max_users": 5, "max_products": "unlimited", "reports": True}
    )


@pytest.fixture
async def subscription(db, plan):
    """Paid monthly subscription started 2024-04-20, period ends 2024-05-20 (5 days after NOW)"""
    return await create_subscription(db, TENANT_ID, plan.id, datetime(2024, 4, 20, 10, 0, 0), transaction_id="FIRST-PAYMENT")


@pytest.fixture
async def affiliate_program(db):
    return await update_affiliate_settings(db, {"enabled": True})


@pytest.fixture
async def affiliate(db, affiliate_program):
    return await enroll_affiliate(db, "user-000123", "Rahim Uddin")
