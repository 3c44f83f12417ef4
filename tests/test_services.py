"""Tests for the payment service layer."""

import json

import pytest
from sqlalchemy import select

from conftest import APP_URL, MERCHANT_CALLBACK
from test_iyzico import INSTALLMENT, installment_table
from threeds_gateway.config import GatewaySettings
from threeds_gateway.database import PaymentAttemptRepository, ProviderLog
from threeds_gateway.errors import StateError, ValidationError
from threeds_gateway.models import (
    CancelRequest,
    CommissionRequest,
    InstallmentInquiry,
    PaymentStatus,
    RefundRequest,
    StatusRequest,
)
from threeds_gateway.providers import AkbankSession, IyzicoSession, PaycellSession, ProviderRegistry, ZiraatSession
from threeds_gateway.services import PaymentService
from threeds_gateway.signing import NESTPAY_VER3, SignatureEngine

AKBANK_PATH = "virtualpos/transaction/process"


@pytest.fixture
def registry(vpos_config, paycell_config, iyzico_config, http_client):
    registry = ProviderRegistry()
    registry.register("akbank", AkbankSession(vpos_config, http_client))
    registry.register("ziraat", ZiraatSession(vpos_config, http_client))
    registry.register("paycell", PaycellSession(paycell_config, http_client))
    registry.register("iyzico", IyzicoSession(iyzico_config, http_client))
    return registry


@pytest.fixture
def service(test_db_session, registry):
    return PaymentService(test_db_session, registry, GatewaySettings(app_url=APP_URL))


def state_token(result):
    return result.html.split("state=")[1].split('"')[0]


def ziraat_callback(order_id, store_key="TEST1234", **fields):
    data = {"oid": order_id, "mdStatus": "1", "Response": "Approved", "ProcReturnCode": "00", "TransId": "ZT-1"}
    data.update(fields)
    data["HASH"] = SignatureEngine(NESTPAY_VER3).sign(data, store_key)
    return data


class TestCreatePayment:
    """Tests for payment creation through the service."""

    async def test_direct_payment_succeeds(self, service, payment_request, vendor, test_db_session):
        vendor.add(AKBANK_PATH, {"respCode": "0000", "respText": "Approved", "transactionId": "TX-1"})

        result = await service.create_payment("akbank", payment_request, client_ip="10.0.0.9")

        assert result.success is True
        assert result.status == PaymentStatus.SUCCESSFUL
        assert result.payment_id == "TX-1"
        assert result.amount == payment_request.amount

        attempt = await PaymentAttemptRepository(test_db_session).get("akbank", "TX-1")
        assert attempt.status == "successful"
        assert attempt.is_3d is False
        log = await service.audit.repository.get_by_id(attempt.log_id)
        assert log.status == "successful"
        assert log.client_ip == "10.0.0.9"
        assert log.request["card_info"]["card_number"] == "435508******4358"
        assert log.processing_ms is not None

    async def test_intermediate_decline_becomes_failed_result(self, service, payment_request, vendor):
        vendor.add("getCardTokenSecure", {"header": {"responseCode": "9", "responseDescription": "Invalid card"}})

        result = await service.create_payment("paycell", payment_request)

        assert result.success is False
        assert result.status == PaymentStatus.FAILED
        assert result.error_code == "9"

    async def test_validation_error_is_logged_and_raised(self, service, payment_request, vendor, test_db_session):
        request = payment_request.model_copy(update={"currency": "USD"})
        with pytest.raises(ValidationError):
            await service.create_payment("akbank", request)
        assert vendor.requests == []

        log = (await test_db_session.execute(select(ProviderLog).order_by(ProviderLog.id.desc()))).scalars().first()
        assert log.method == "create_payment"
        assert log.status == "error"
        assert log.error_code == "VALIDATION_ERROR"

    async def test_unknown_provider(self, service, payment_request):
        with pytest.raises(StateError) as exc_info:
            await service.create_payment("papara", payment_request)
        assert exc_info.value.code == "PROVIDER_NOT_FOUND"


class TestThreeDFlow:
    """Tests for the redirect and callback round trip."""

    async def test_three_d_declined_on_callback(self, service, payment_request_3d, vendor):
        started = await service.create_payment("ziraat", payment_request_3d)

        assert started.success is True
        assert started.status == PaymentStatus.PENDING
        assert "<form" in started.html

        outcome = await service.complete_callback(
            "ziraat",
            state_token(started),
            ziraat_callback(started.payment_id, mdStatus="0", Response="Declined", ProcReturnCode="05"),
        )

        assert outcome.result.success is False
        assert outcome.result.status == PaymentStatus.FAILED
        assert outcome.result.error_code == "05"
        assert outcome.state.original_callback_url == MERCHANT_CALLBACK
        assert outcome.state.payment_id == started.payment_id
        assert vendor.requests == []

    async def test_completed_callback_is_replayed(self, service, payment_request_3d, test_db_session):
        started = await service.create_payment("ziraat", payment_request_3d)
        token = state_token(started)
        data = ziraat_callback(started.payment_id)

        first = await service.complete_callback("ziraat", token, data)
        second = await service.complete_callback("ziraat", token, data)

        assert first.result.status == PaymentStatus.SUCCESSFUL
        assert first.replayed is False
        assert second.replayed is True
        assert second.result.status == PaymentStatus.SUCCESSFUL
        assert second.result.transaction_id == first.result.transaction_id
        attempt = await PaymentAttemptRepository(test_db_session).get("ziraat", started.payment_id)
        assert attempt.is_3d is True

    async def test_token_for_other_provider(self, service, payment_request_3d):
        started = await service.create_payment("ziraat", payment_request_3d)
        with pytest.raises(StateError) as exc_info:
            await service.complete_callback("paycell", state_token(started), {})
        assert exc_info.value.code == "CALLBACK_PROVIDER_MISMATCH"

    async def test_invalid_hash_keeps_merchant_url(self, service, payment_request_3d):
        started = await service.create_payment("ziraat", payment_request_3d)
        data = dict(ziraat_callback(started.payment_id), HASH="forged")

        with pytest.raises(ValidationError) as exc_info:
            await service.complete_callback("ziraat", state_token(started), data)

        assert exc_info.value.code == "INVALID_SIGNATURE"
        assert exc_info.value.details["original_callback_url"] == MERCHANT_CALLBACK
        assert exc_info.value.details["payment_id"] == started.payment_id

    async def test_unknown_token(self, service):
        with pytest.raises(StateError) as exc_info:
            await service.complete_callback("ziraat", "forged-token", {})
        assert exc_info.value.code == "CALLBACK_NOT_FOUND"


class TestFollowUps:
    """Tests for status, cancel and refund through the service."""

    async def test_cancel_without_log_makes_no_call(self, service, vendor):
        with pytest.raises(StateError) as exc_info:
            await service.cancel_payment("akbank", CancelRequest(payment_id="never-created"))

        assert exc_info.value.code == "REFERENCE_NOT_FOUND"
        assert vendor.requests == []
        logs = await service.audit.repository.list_by_payment_id("akbank", "never-created")
        assert logs[0].status == "error"
        assert logs[0].error_code == "REFERENCE_NOT_FOUND"

    async def test_cancel_after_sale(self, service, payment_request, vendor, test_db_session):
        vendor.add(AKBANK_PATH, {"respCode": "0000", "transactionId": "TX-1"})
        await service.create_payment("akbank", payment_request)

        result = await service.cancel_payment("akbank", CancelRequest(payment_id="TX-1"))

        assert result.status == PaymentStatus.CANCELLED
        sale_order = json.loads(vendor.calls(AKBANK_PATH)[0].content)["order"]["orderId"]
        assert json.loads(vendor.calls(AKBANK_PATH)[1].content)["order"]["orderId"] == sale_order
        attempt = await PaymentAttemptRepository(test_db_session).get("akbank", "TX-1")
        assert attempt.status == "cancelled"

    async def test_refund_marks_attempt(self, service, payment_request, vendor, test_db_session):
        vendor.add(AKBANK_PATH, {"respCode": "0000", "transactionId": "TX-1"})
        await service.create_payment("akbank", payment_request)

        result = await service.refund_payment("akbank", RefundRequest(payment_id="TX-1", refund_amount="100.50"))

        assert result.status == PaymentStatus.REFUNDED
        assert result.refund_amount == payment_request.amount
        attempt = await PaymentAttemptRepository(test_db_session).get("akbank", "TX-1")
        assert attempt.status == "refunded"
        assert attempt.result["status"] == "refunded"
        assert attempt.result["payment_id"] == "TX-1"
        assert attempt.result["amount"] == 100.5

    async def test_status_not_supported(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.get_payment_status("akbank", StatusRequest(payment_id="TX-1"))
        assert exc_info.value.code == "NOT_SUPPORTED"

    async def test_webhook_delegates_to_provider(self, service):
        data = ziraat_callback("O-1")
        assert (await service.validate_webhook("ziraat", data, {}))["oid"] == "O-1"
        with pytest.raises(ValidationError):
            await service.validate_webhook("akbank", {}, {})


class TestInquiries:
    """Tests for installment and commission lookups through the service."""

    async def test_commission_is_audited(self, service, vendor, test_db_session):
        vendor.add(INSTALLMENT, installment_table())

        result = await service.get_commission(
            "iyzico", CommissionRequest(amount="100", installment_count=3, bin_number="554960"), client_ip="10.0.0.9"
        )

        assert result.success is True
        assert result.commission_amount == 4.5
        log = (await test_db_session.execute(select(ProviderLog).order_by(ProviderLog.id.desc()))).scalars().first()
        assert log.method == "get_commission"
        assert log.endpoint == "/v1/payments/iyzico/commission"
        assert log.status == "successful"
        assert log.client_ip == "10.0.0.9"

    async def test_unsupported_inquiry_is_logged_and_raised(self, service, vendor, test_db_session):
        with pytest.raises(ValidationError) as exc_info:
            await service.get_installment_info("akbank", InstallmentInquiry(amount="100", bin_number="435508"))

        assert exc_info.value.code == "NOT_SUPPORTED"
        assert vendor.requests == []
        log = (await test_db_session.execute(select(ProviderLog).order_by(ProviderLog.id.desc()))).scalars().first()
        assert log.method == "get_installment_info"
        assert log.status == "error"
        assert log.error_code == "NOT_SUPPORTED"
