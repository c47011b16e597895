"""
SSLCommerz Payment Service
Hosted checkout sessions and transaction validation via the SSLCommerz API
"""

import httpx
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, Mapping

from config import settings
from exceptions import GatewayError
from timezone_utils import GATEWAY_TIMEZONE, parse_gateway_datetime

logger = logging.getLogger(__name__)


LIVE_BASE_URL = "https://securepay.sslcommerz.com"
SANDBOX_BASE_URL = "https://sandbox.sslcommerz.com"

SESSION_PATH = "/gwprocess/v4/api.php"
VALIDATION_PATH = "/validator/api/validationserverAPI.php"

VALID_STATUSES = ("VALID", "VALIDATED")


class PaymentOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Gateway callback status -> canonical outcome
CALLBACK_OUTCOMES = {
    "VALID": PaymentOutcome.SUCCESS,
    "VALIDATED": PaymentOutcome.SUCCESS,
    "FAILED": PaymentOutcome.FAILED,
    "UNATTEMPTED": PaymentOutcome.FAILED,
    "EXPIRED": PaymentOutcome.FAILED,
    "CANCELLED": PaymentOutcome.CANCELLED,
}


@dataclass(frozen=True)
class SSLCommerzConfig:
    store_id: str
    store_password: str
    is_live: bool = False
    timeout: float = 30.0

    @property
    def base_url(self) -> str:
        return LIVE_BASE_URL if self.is_live else SANDBOX_BASE_URL


@dataclass(frozen=True)
class CallbackUrls:
    success: str
    fail: str
    cancel: str
    ipn: str

    @classmethod
    def for_base_url(cls, base_url: str) -> "CallbackUrls":
        base = base_url.rstrip("/")
        return cls(
            success=f"{base}/api/subscription/renew/success",
            fail=f"{base}/api/subscription/renew/fail",
            cancel=f"{base}/api/subscription/renew/cancel",
            ipn=f"{base}/api/subscription/renew/ipn",
        )


@dataclass(frozen=True)
class GatewaySession:
    hosted_page_url: str
    gateway_session_id: Optional[str] = None


@dataclass(frozen=True)
class GatewayValidation:
    status: str  # VALID or INVALID
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    risk_level: Optional[int] = None
    risk_title: Optional[str] = None
    bank_transaction_id: Optional[str] = None
    card_type: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.status == "VALID"


@dataclass(frozen=True)
class GatewayCallback:
    """Normalized form body of a success/fail/cancel redirect or an IPN"""
    outcome: PaymentOutcome
    gateway_status: str
    transaction_id: Optional[str] = None
    validation_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    risk_level: Optional[int] = None
    risk_title: Optional[str] = None
    bank_transaction_id: Optional[str] = None
    card_type: Optional[str] = None
    transaction_date: Optional[datetime] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_callback(form_data: Mapping[str, Any], default_status: Optional[str] = None) -> GatewayCallback:
    """
    Normalize a gateway callback body.

    ``default_status`` is used when the body carries no ``status`` field
    (the browser redirect routes know their own outcome).
    """
    raw = {key: value for key, value in form_data.items()}
    gateway_status = (_clean(raw.get("status")) or default_status or "FAILED").upper()
    outcome = CALLBACK_OUTCOMES.get(gateway_status, PaymentOutcome.FAILED)

    return GatewayCallback(
        outcome=outcome,
        gateway_status=gateway_status,
        transaction_id=_clean(raw.get("tran_id")),
        validation_id=_clean(raw.get("val_id")),
        amount=_to_float(raw.get("amount")),
        currency=_clean(raw.get("currency")),
        risk_level=_to_int(raw.get("risk_level")),
        risk_title=_clean(raw.get("risk_title")),
        bank_transaction_id=_clean(raw.get("bank_tran_id")),
        card_type=_clean(raw.get("card_type")),
        transaction_date=parse_gateway_datetime(raw.get("tran_date"), GATEWAY_TIMEZONE),
        error=_clean(raw.get("error")) or _clean(raw.get("failedreason")),
        raw=raw
    )


class SSLCommerzService:
    """Service for SSLCommerz payment operations"""

    def __init__(self, config: SSLCommerzConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.base_url = config.base_url
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "SSLCommerzService":
        return cls(SSLCommerzConfig(
            store_id=settings.SSLCOMMERZ_STORE_ID,
            store_password=settings.SSLCOMMERZ_STORE_PASSWORD,
            is_live=settings.SSLCOMMERZ_IS_LIVE
        ))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.config.timeout)

    def is_configured(self) -> bool:
        """Check if store credentials are configured"""
        return bool(self.config.store_id and self.config.store_password)

    def get_configuration_status(self) -> Dict[str, Any]:
        """
        Get gateway configuration status without exposing the store password.
        Useful for admin diagnostics.
        """
        store_id = self.config.store_id or ""
        store_password = self.config.store_password or ""

        issues = []
        if not store_id:
            issues.append("SSLCOMMERZ_STORE_ID is not set")
        elif store_id != store_id.strip():
            issues.append("SSLCOMMERZ_STORE_ID has leading/trailing whitespace")

        if not store_password:
            issues.append("SSLCOMMERZ_STORE_PASSWORD is not set")
        elif store_password != store_password.strip():
            issues.append("SSLCOMMERZ_STORE_PASSWORD has leading/trailing whitespace")

        # Sandbox store ids conventionally carry a "test" prefix
        if self.config.is_live and store_id.lower().startswith("test"):
            issues.append("Live mode is enabled with what looks like a sandbox store id")

        return {
            "is_configured": self.is_configured(),
            "store_id_set": bool(store_id),
            "store_password_set": bool(store_password),
            "store_id_preview": f"{store_id[:6]}..." if len(store_id) > 6 else "not_set",
            "mode": "live" if self.config.is_live else "sandbox",
            "base_url": self.base_url,
            "issues": issues,
            "has_issues": len(issues) > 0
        }

    async def initiate(
        self,
        amount: float,
        currency: str,
        transaction_id: str,
        callback_urls: CallbackUrls,
        customer: Optional[Dict[str, Any]] = None,
        product_name: str = "Subscription Renewal"
    ) -> GatewaySession:
        """
        Open a hosted checkout session.

        Raises:
            GatewayError: gateway unreachable, not configured, or no checkout URL returned
        """
        if not self.is_configured():
            logger.error("❌ Payment initialization failed: SSLCommerz store not configured")
            raise GatewayError("Payment service is not configured")

        customer = customer or {}
        payload = {
            "store_id": self.config.store_id,
            "store_passwd": self.config.store_password,
            "total_amount": f"{amount:.2f}",
            "currency": currency,
            "tran_id": transaction_id,
            "success_url": callback_urls.success,
            "fail_url": callback_urls.fail,
            "cancel_url": callback_urls.cancel,
            "ipn_url": callback_urls.ipn,
            "shipping_method": "NO",
            "product_name": product_name,
            "product_category": "Subscription",
            "product_profile": "non-physical-goods",
            "cus_name": customer.get("name") or "Merchant",
            "cus_email": customer.get("email") or "billing@example.com",
            "cus_add1": customer.get("address") or "N/A",
            "cus_city": customer.get("city") or "Dhaka",
            "cus_postcode": customer.get("postcode") or "1000",
            "cus_country": customer.get("country") or "Bangladesh",
            "cus_phone": customer.get("phone") or "01700000000",
        }

        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}{SESSION_PATH}", data=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.error(f"❌ SSLCommerz session timeout for {transaction_id}")
            raise GatewayError("Connection timeout - unable to reach payment gateway")
        except httpx.HTTPStatusError as e:
            logger.error(f"❌ SSLCommerz API error: {e.response.status_code} {e.response.text}")
            raise GatewayError(
                "Payment service temporarily unavailable",
                details={"status_code": e.response.status_code}
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ SSLCommerz connection error: {str(e)}")
            raise GatewayError("Payment service temporarily unavailable")
        except ValueError:
            logger.error(f"❌ SSLCommerz returned a non-JSON body for {transaction_id}")
            raise GatewayError("Malformed response from payment gateway")

        if not isinstance(data, dict) or data.get("status") != "SUCCESS" or not data.get("GatewayPageURL"):
            reason = data.get("failedreason") if isinstance(data, dict) else None
            logger.error(f"❌ Payment initialization failed for {transaction_id}: {reason}")
            raise GatewayError(
                "Payment gateway did not return a checkout URL",
                details={"reason": reason}
            )

        logger.info(f"✅ Payment session created: {transaction_id}")
        return GatewaySession(
            hosted_page_url=data["GatewayPageURL"],
            gateway_session_id=data.get("sessionkey")
        )

    async def validate(self, validation_id: str) -> GatewayValidation:
        """
        Validate a transaction with the gateway's validation API.

        A missing validation id is INVALID without a network call. Transport
        problems raise GatewayError so the caller can retry.
        """
        if not validation_id:
            return GatewayValidation(status="INVALID")

        params = {
            "val_id": validation_id,
            "store_id": self.config.store_id,
            "store_passwd": self.config.store_password,
            "v": 1,
            "format": "json",
        }

        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}{VALIDATION_PATH}", params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.error(f"❌ SSLCommerz validation timeout for {validation_id}")
            raise GatewayError("Connection timeout - unable to reach payment gateway")
        except httpx.HTTPStatusError as e:
            logger.error(f"❌ Validation error: {e.response.status_code} {e.response.text}")
            raise GatewayError(
                "Payment validation temporarily unavailable",
                details={"status_code": e.response.status_code}
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ SSLCommerz connection error: {str(e)}")
            raise GatewayError("Payment validation temporarily unavailable")
        except ValueError:
            raise GatewayError("Malformed response from payment gateway")

        if not isinstance(data, dict):
            raise GatewayError("Malformed response from payment gateway")

        gateway_status = str(data.get("status", "")).upper()
        status = "VALID" if gateway_status in VALID_STATUSES else "INVALID"
        logger.info(f"✅ Transaction validated: {validation_id} - Status: {gateway_status}")

        return GatewayValidation(
            status=status,
            transaction_id=_clean(data.get("tran_id")),
            amount=_to_float(data.get("amount")),
            currency=_clean(data.get("currency_type")) or _clean(data.get("currency")),
            risk_level=_to_int(data.get("risk_level")),
            risk_title=_clean(data.get("risk_title")),
            bank_transaction_id=_clean(data.get("bank_tran_id")),
            card_type=_clean(data.get("card_type")),
            raw=data
        )


# Singleton instance built from environment settings
sslcommerz_service = SSLCommerzService.from_settings()
