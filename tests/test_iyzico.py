"""Tests for the iyzico provider session."""

import base64
import hashlib
import hmac
import json
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest

from threeds_gateway.config import ProviderConfig
from threeds_gateway.errors import StateError, TransportError, ValidationError
from threeds_gateway.models import (
    CancelRequest,
    CommissionRequest,
    Customer,
    InstallmentInquiry,
    PaymentStatus,
    RefundRequest,
    StatusRequest,
)
from threeds_gateway.providers import AkbankSession
from threeds_gateway.providers.iyzico import IyzicoSession, decode_html_content

from conftest import TEST_CARD

PAYMENT = "/payment/auth"
INITIALIZE = "/payment/3dsecure/initialize"
THREED_AUTH = "/payment/3dsecure/auth"
CANCEL = "/payment/cancel"
REFUND = "/payment/refund"
DETAIL = "/payment/detail"
INSTALLMENT = "/payment/iyzipos/installment"

BANK_PAGE = '<html><body><form action="https://acs.bank.example/3ds"></form></body></html>'


def paid(payment_id="22416035", transaction_id="23212356"):
    return {
        "status": "success",
        "paymentId": payment_id,
        "price": 100.5,
        "paidPrice": 100.5,
        "currency": "TRY",
        "fraudStatus": 1,
        "itemTransactions": [{"itemId": "B1", "paymentTransactionId": transaction_id, "price": 100.5}],
    }


def installment_table(bin_number="554960"):
    return {
        "status": "success",
        "installmentDetails": [{
            "binNumber": bin_number,
            "price": 100.0,
            "cardType": "CREDIT_CARD",
            "cardAssociation": "MASTER_CARD",
            "cardFamilyName": "Bonus",
            "bankName": "Garanti Bankasi",
            "installmentPrices": [
                {"installmentNumber": 3, "installmentPrice": 34.84, "totalPrice": 104.5},
                {"installmentNumber": 1, "installmentPrice": 100.0, "totalPrice": 100.0},
                {"installmentNumber": 6, "installmentPrice": 18.0, "totalPrice": 108.0},
            ],
        }],
    }


@pytest.fixture
def iyzico(iyzico_config, http_client):
    return IyzicoSession(iyzico_config, http_client)


def authorization_parts(request):
    scheme, _, encoded = request.headers["Authorization"].partition(" ")
    assert scheme == "IYZWSv2"
    return dict(part.split(":", 1) for part in base64.b64decode(encoded).decode().split("&"))


class TestHelpers:
    """Tests for configuration, validation and HTML decoding."""

    def test_requires_both_keys(self, http_client):
        with pytest.raises(ValidationError) as exc_info:
            IyzicoSession(ProviderConfig(values={"apiKey": "only-this"}), http_client)
        assert exc_info.value.code == "MISSING_CONFIG"

    def test_decode_html_content(self):
        encoded = base64.b64encode(BANK_PAGE.encode()).decode()
        assert decode_html_content(encoded) == BANK_PAGE
        with pytest.raises(TransportError):
            decode_html_content("not base64 at all!")

    async def test_surname_required_before_network(self, iyzico, payment_request, make_ctx, vendor):
        request = payment_request.model_copy(update={"customer": Customer(name="Ada", email="ada@example.com")})
        with pytest.raises(ValidationError):
            await iyzico.create_payment(await make_ctx("iyzico"), request)
        assert vendor.requests == []

    async def test_unsupported_currency(self, iyzico, payment_request, make_ctx, vendor):
        with pytest.raises(ValidationError):
            await iyzico.create_payment(await make_ctx("iyzico"), payment_request.model_copy(update={"currency": "JPY"}))
        assert vendor.requests == []


class TestDirectPayment:
    """Tests for the non-3D payment call."""

    async def test_signed_sale(self, iyzico, payment_request, make_ctx, vendor, audit):
        vendor.add(PAYMENT, paid())
        ctx = await make_ctx("iyzico", "create_payment")

        result = await iyzico.create_payment(ctx, payment_request)

        assert result.status == PaymentStatus.SUCCESSFUL
        assert result.transaction_id == "22416035"
        assert result.amount == Decimal("100.50")
        sent = vendor.calls(PAYMENT)[0]
        parts = authorization_parts(sent)
        assert parts["apiKey"] == "sandbox-api-key"
        assert parts["randomKey"] == sent.headers["x-iyzi-rnd"]
        expected = hmac.new(
            b"sandbox-secret-key", (parts["randomKey"] + PAYMENT).encode() + sent.content, hashlib.sha256
        ).hexdigest()
        assert parts["signature"] == expected

        body = json.loads(sent.content)
        assert body["price"] == body["paidPrice"] == "100.50"
        assert body["paymentCard"]["cardNumber"] == TEST_CARD
        assert body["basketItems"][0]["price"] == "100.50"
        assert body["buyer"]["identityNumber"] == "74300864791"
        assert "callbackUrl" not in body

        log = await audit.repository.get_by_id(ctx.log_id)
        assert log.request["paymentRequest"]["paymentCard"]["cardNumber"] == "435508******4358"
        assert log.request["paymentRequest"]["paymentCard"]["cvc"] == "***"
        assert log.request["paymentResult"] == {"paymentId": "22416035", "paymentTransactionId": "23212356"}

    async def test_declined_sale(self, iyzico, payment_request, make_ctx, vendor, audit):
        vendor.add(PAYMENT, {"status": "failure", "errorCode": "10051", "errorMessage": "Kart limiti yetersiz"})
        ctx = await make_ctx("iyzico", "create_payment")

        result = await iyzico.create_payment(ctx, payment_request)

        assert result.success is False
        assert result.status == PaymentStatus.FAILED
        assert result.error_code == "10051"
        assert result.message == "Kart limiti yetersiz"
        log = await audit.repository.get_by_id(ctx.log_id)
        assert "paymentResult" not in log.request

    async def test_missing_status_fails_closed(self, iyzico, payment_request, make_ctx, vendor):
        vendor.add(PAYMENT, {"paymentId": "1"})
        result = await iyzico.create_payment(await make_ctx("iyzico"), payment_request)
        assert result.status == PaymentStatus.FAILED
        assert result.error_code == "UNKNOWN"


class TestThreeDPayment:
    """Tests for 3D initialize and completion."""

    async def _start(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store, response=None):
        vendor.add(INITIALIZE, response or {
            "status": "success",
            "paymentId": "22416035",
            "threeDSHtmlContent": base64.b64encode(BANK_PAGE.encode()).decode(),
        })
        ctx = await make_ctx("iyzico", "create_3d_payment")
        result = await iyzico.create_3d_payment(ctx, payment_request_3d)
        callback = vendor.json_body(INITIALIZE)["callbackUrl"]
        state = await callback_store.resolve(parse_qs(urlparse(callback).query)["state"][0])
        return result, state

    async def test_start_returns_bank_page(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store):
        result, state = await self._start(iyzico, payment_request_3d, make_ctx, vendor, callback_store)

        assert result.status == PaymentStatus.PENDING
        assert result.success is True
        assert result.html == BANK_PAGE
        assert "threeDSHtmlContent" not in result.provider_response
        assert state.payment_id == result.payment_id
        assert vendor.json_body(INITIALIZE)["conversationId"] == result.payment_id

    async def test_start_without_html_fails(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store):
        result, _ = await self._start(
            iyzico, payment_request_3d, make_ctx, vendor, callback_store, response={"status": "success"}
        )
        assert result.status == PaymentStatus.FAILED
        assert result.error_code == "NO_3DS_CONTENT"

    async def test_complete_authenticated(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store, audit):
        started, state = await self._start(iyzico, payment_request_3d, make_ctx, vendor, callback_store)
        vendor.add(THREED_AUTH, paid())
        ctx = await make_ctx("iyzico", "complete_3d_payment", started.payment_id)

        result = await iyzico.complete_3d_payment(
            ctx,
            state,
            {"status": "success", "paymentId": "22416035", "conversationId": started.payment_id, "mdStatus": "1"},
        )

        assert result.status == PaymentStatus.SUCCESSFUL
        assert result.payment_id == started.payment_id
        assert result.transaction_id == "22416035"
        assert vendor.json_body(THREED_AUTH) == {
            "conversationId": started.payment_id,
            "paymentId": "22416035",
            "locale": "tr",
        }
        log = await audit.repository.get_by_id(ctx.log_id)
        assert log.request["paymentResult"]["paymentTransactionId"] == "23212356"

    async def test_complete_not_authenticated(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store):
        started, state = await self._start(iyzico, payment_request_3d, make_ctx, vendor, callback_store)

        result = await iyzico.complete_3d_payment(
            await make_ctx("iyzico"), state, {"status": "failure", "paymentId": "22416035", "mdStatus": "0"}
        )

        assert result.status == PaymentStatus.FAILED
        assert result.error_code == "MDSTATUS_0"
        assert vendor.calls(THREED_AUTH) == []

    async def test_complete_rejects_other_payment(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store):
        _, state = await self._start(iyzico, payment_request_3d, make_ctx, vendor, callback_store)
        with pytest.raises(ValidationError):
            await iyzico.complete_3d_payment(
                await make_ctx("iyzico"), state, {"status": "success", "paymentId": "99999999", "mdStatus": "1"}
            )
        assert vendor.calls(THREED_AUTH) == []

    async def test_complete_requires_payment_id(self, iyzico, payment_request_3d, make_ctx, vendor, callback_store):
        _, state = await self._start(iyzico, payment_request_3d, make_ctx, vendor, callback_store)
        with pytest.raises(ValidationError):
            await iyzico.complete_3d_payment(await make_ctx("iyzico"), state, {"mdStatus": "1"})


class TestFollowUps:
    """Tests for status, cancel and refund."""

    async def _sale(self, iyzico, payment_request, make_ctx, vendor, audit):
        vendor.add(PAYMENT, paid())
        ctx = await make_ctx("iyzico", "create_payment")
        result = await iyzico.create_payment(ctx, payment_request)
        await audit.close(ctx.log_id, result)
        return result.payment_id

    async def test_cancel_uses_recorded_payment_id(self, iyzico, payment_request, make_ctx, vendor, audit):
        payment_id = await self._sale(iyzico, payment_request, make_ctx, vendor, audit)
        vendor.add(CANCEL, {"status": "success", "paymentId": "22416035", "price": 100.5})

        result = await iyzico.cancel_payment(
            await make_ctx("iyzico"), CancelRequest(payment_id=payment_id, reason="buyer_request")
        )

        assert result.status == PaymentStatus.CANCELLED
        body = vendor.json_body(CANCEL)
        assert body["paymentId"] == "22416035"
        assert body["reason"] == "buyer_request"
        assert body["ip"] == "10.0.0.1"

    async def test_refund_uses_transaction_id(self, iyzico, payment_request, make_ctx, vendor, audit):
        payment_id = await self._sale(iyzico, payment_request, make_ctx, vendor, audit)
        vendor.add(REFUND, {"status": "success", "paymentId": "22416035", "paymentTransactionId": "23212356"})

        result = await iyzico.refund_payment(
            await make_ctx("iyzico"), RefundRequest(payment_id=payment_id, refund_amount="40")
        )

        assert result.status == PaymentStatus.REFUNDED
        assert result.refund_id == "23212356"
        body = vendor.json_body(REFUND)
        assert body["paymentTransactionId"] == "23212356"
        assert body["price"] == "40.00"

    async def test_refund_decline(self, iyzico, payment_request, make_ctx, vendor, audit):
        payment_id = await self._sale(iyzico, payment_request, make_ctx, vendor, audit)
        vendor.add(REFUND, {"status": "failure", "errorCode": "5092", "errorMessage": "Refund period expired"})

        result = await iyzico.refund_payment(
            await make_ctx("iyzico"), RefundRequest(payment_id=payment_id, refund_amount="40")
        )

        assert result.success is False
        assert result.error_code == "5092"

    @pytest.mark.parametrize(
        "payment_status,expected",
        [
            ("SUCCESS", PaymentStatus.SUCCESSFUL),
            ("INIT_THREEDS", PaymentStatus.PENDING),
            ("CALLBACK_THREEDS", PaymentStatus.PROCESSING),
            ("FAILURE", PaymentStatus.FAILED),
            ("SOMETHING_NEW", PaymentStatus.FAILED),
        ],
    )
    async def test_status_maps_payment_status(
        self, iyzico, payment_request, make_ctx, vendor, audit, payment_status, expected
    ):
        payment_id = await self._sale(iyzico, payment_request, make_ctx, vendor, audit)
        vendor.add(DETAIL, {"status": "success", "paymentId": "22416035", "paymentStatus": payment_status})

        result = await iyzico.get_payment_status(await make_ctx("iyzico"), StatusRequest(payment_id=payment_id))

        assert result.status == expected
        assert vendor.json_body(DETAIL)["paymentId"] == "22416035"

    async def test_cancel_without_log_makes_no_call(self, iyzico, make_ctx, vendor):
        with pytest.raises(StateError) as exc_info:
            await iyzico.cancel_payment(await make_ctx("iyzico"), CancelRequest(payment_id="never-created"))
        assert exc_info.value.code == "REFERENCE_NOT_FOUND"
        assert vendor.requests == []


class TestInstallments:
    """Tests for installment and commission inquiries."""

    async def test_installment_table(self, iyzico, make_ctx, vendor):
        vendor.add(INSTALLMENT, installment_table())

        info = await iyzico.get_installment_info(
            await make_ctx("iyzico"), InstallmentInquiry(amount="100", bin_number="554960")
        )

        assert info.success is True
        assert info.bank_name == "Garanti Bankasi"
        assert info.card_family == "Bonus"
        assert [o.installment_count for o in info.options] == [1, 3, 6]
        assert info.max_installment_count == 6
        assert info.options[1].total_price == Decimal("104.5")
        body = vendor.json_body(INSTALLMENT)
        assert body["binNumber"] == "554960"
        assert body["price"] == "100.00"

    async def test_installment_failure(self, iyzico, make_ctx, vendor):
        vendor.add(INSTALLMENT, {"status": "failure", "errorCode": "5070", "errorMessage": "Invalid bin"})
        info = await iyzico.get_installment_info(
            await make_ctx("iyzico"), InstallmentInquiry(amount="100", bin_number="000000")
        )
        assert info.success is False
        assert info.error_code == "5070"
        assert info.options == []

    async def test_commission_from_table(self, iyzico, make_ctx, vendor):
        vendor.add(INSTALLMENT, installment_table())

        result = await iyzico.get_commission(
            await make_ctx("iyzico"), CommissionRequest(amount="100", installment_count=3, bin_number="554960")
        )

        assert result.success is True
        assert result.total_amount == Decimal("104.5")
        assert result.installment_amount == Decimal("34.84")
        assert result.commission_amount == Decimal("4.5")
        assert result.commission_rate == Decimal("4.50")

    async def test_commission_for_plan_not_offered(self, iyzico, make_ctx, vendor):
        vendor.add(INSTALLMENT, installment_table())
        result = await iyzico.get_commission(
            await make_ctx("iyzico"), CommissionRequest(amount="100", installment_count=12, bin_number="554960")
        )
        assert result.success is False
        assert result.error_code == "INSTALLMENT_NOT_OFFERED"

    def test_bin_validation(self):
        with pytest.raises(ValueError):
            InstallmentInquiry(amount="100", bin_number="55")

    async def test_other_vendors_do_not_offer_inquiries(self, vpos_config, http_client, make_ctx, vendor):
        akbank = AkbankSession(vpos_config, http_client)
        with pytest.raises(ValidationError) as exc_info:
            await akbank.get_commission(await make_ctx("akbank"), CommissionRequest(amount="100"))
        assert exc_info.value.code == "NOT_SUPPORTED"
        assert vendor.requests == []
