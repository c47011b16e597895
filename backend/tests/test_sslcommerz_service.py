from datetime import datetime

import httpx
import pytest

from exceptions import GatewayError
from sslcommerz_service import (
    SANDBOX_BASE_URL,
    SESSION_PATH,
    VALIDATION_PATH,
    CallbackUrls,
    PaymentOutcome,
    SSLCommerzConfig,
    SSLCommerzService,
    parse_callback
)

CALLBACKS = CallbackUrls.for_base_url("https://billing.example.com/")
CONFIG = SSLCommerzConfig(store_id="teststore01", store_password="teststore01@ssl")


def service_with(handler) -> SSLCommerzService:
    return SSLCommerzService(CONFIG, transport=httpx.MockTransport(handler))


def test_callback_urls():
    assert CALLBACKS.success == "https://billing.example.com/api/subscription/renew/success"
    assert CALLBACKS.ipn == "https://billing.example.com/api/subscription/renew/ipn"


def test_parse_success_callback():
    callback = parse_callback({
        "status": "VALID",
        "tran_id": "RENEW_INV-202405-ABC123",
        "val_id": "240515100001abc",
        "amount": "1000.00",
        "currency": "BDT",
        "risk_level": "0",
        "tran_date": "2024-05-15 16:00:00",
    })

    assert callback.outcome == PaymentOutcome.SUCCESS
    assert callback.transaction_id == "RENEW_INV-202405-ABC123"
    assert callback.amount == 1000.0
    assert callback.risk_level == 0
    # Gateway reports Asia/Dhaka (UTC+6)
    assert callback.transaction_date == datetime(2024, 5, 15, 10, 0, 0)


def test_parse_callback_defaults():
    assert parse_callback({"tran_id": "T1"}, default_status="CANCELLED").outcome == PaymentOutcome.CANCELLED
    assert parse_callback({"tran_id": "T1", "status": "SOMETHING"}).outcome == PaymentOutcome.FAILED
    assert parse_callback({"tran_id": "T1", "amount": "abc"}).amount is None


def test_configuration_status_hides_password():
    status = SSLCommerzService(SSLCommerzConfig(store_id="", store_password="secret")).get_configuration_status()

    assert not status["is_configured"]
    assert status["mode"] == "sandbox"
    assert "SSLCOMMERZ_STORE_ID is not set" in status["issues"]
    assert "secret" not in str(status)


async def test_initiate_returns_hosted_page():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == f"{SANDBOX_BASE_URL}{SESSION_PATH}"
        body = request.content.decode()
        assert "tran_id=RENEW-1" in body
        assert "total_amount=1000.00" in body
        return httpx.Response(200, json={
            "status": "SUCCESS",
            "GatewayPageURL": "https://sandbox.sslcommerz.com/EasyCheckOut/abc",
            "sessionkey": "abc"
        })

    session = await service_with(handler).initiate(1000.0, "BDT", "RENEW-1", CALLBACKS)

    assert session.hosted_page_url == "https://sandbox.sslcommerz.com/EasyCheckOut/abc"
    assert session.gateway_session_id == "abc"


async def test_initiate_rejects_failed_session():
    def handler(request):
        return httpx.Response(200, json={"status": "FAILED", "failedreason": "Store Credential Error"})

    with pytest.raises(GatewayError) as exc_info:
        await service_with(handler).initiate(1000.0, "BDT", "RENEW-1", CALLBACKS)

    assert exc_info.value.details["reason"] == "Store Credential Error"


async def test_initiate_maps_http_errors():
    def handler(request):
        return httpx.Response(503, text="Service Unavailable")

    with pytest.raises(GatewayError) as exc_info:
        await service_with(handler).initiate(1000.0, "BDT", "RENEW-1", CALLBACKS)

    assert exc_info.value.retryable


async def test_initiate_maps_timeouts():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GatewayError):
        await service_with(handler).initiate(1000.0, "BDT", "RENEW-1", CALLBACKS)


async def test_initiate_requires_credentials():
    service = SSLCommerzService(SSLCommerzConfig(store_id="", store_password=""))

    with pytest.raises(GatewayError):
        await service.initiate(1000.0, "BDT", "RENEW-1", CALLBACKS)


async def test_validate_valid_transaction():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == VALIDATION_PATH
        assert request.url.params["val_id"] == "VAL-1"
        return httpx.Response(200, json={
            "status": "VALIDATED",
            "tran_id": "RENEW-1",
            "amount": "1000.00",
            "currency_type": "BDT",
            "risk_level": "1",
            "risk_title": "Review"
        })

    validation = await service_with(handler).validate("VAL-1")

    assert validation.is_valid
    assert validation.transaction_id == "RENEW-1"
    assert validation.amount == 1000.0
    assert validation.currency == "BDT"
    assert validation.risk_level == 1


async def test_validate_invalid_transaction():
    def handler(request):
        return httpx.Response(200, json={"status": "INVALID_TRANSACTION"})

    validation = await service_with(handler).validate("VAL-1")

    assert not validation.is_valid


async def test_validate_without_id_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    validation = await service_with(handler).validate("")

    assert validation.status == "INVALID"


async def test_validate_malformed_body():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(GatewayError):
        await service_with(handler).validate("VAL-1")
