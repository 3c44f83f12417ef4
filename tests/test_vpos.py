"""Tests for the Akbank and Ziraat virtual POS sessions."""

import json

import pytest

from threeds_gateway.errors import StateError, ValidationError
from threeds_gateway.models import CancelRequest, PaymentStatus, RefundRequest, StatusRequest, TransactionContext
from threeds_gateway.providers.akbank import AkbankSession
from threeds_gateway.providers.vpos import generate_random_number, generate_request_datetime
from threeds_gateway.providers.ziraat import THREED_GATEWAY_URL, ZiraatSession, card_type
from threeds_gateway.signing import NESTPAY_VER3, SignatureEngine, hmac_sha512_b64

AKBANK_PATH = "virtualpos/transaction/process"
ZIRAAT_PATH = "msu/api/v2"


@pytest.fixture
def akbank(vpos_config, http_client):
    return AkbankSession(vpos_config, http_client)


@pytest.fixture
def ziraat(vpos_config, http_client):
    return ZiraatSession(vpos_config, http_client)


class TestWireFormat:
    """Tests for the shared request envelope."""

    def test_random_number_and_datetime(self):
        assert len(generate_random_number()) == 128
        assert generate_random_number() != generate_random_number()
        assert len(generate_request_datetime()) == 23

    def test_card_type(self):
        assert card_type("5406675406675403") == "2"
        assert card_type("4355084355084358") == "1"


class TestAkbank:
    """Tests for Akbank direct sale and follow-ups."""

    async def test_sale_signs_sent_bytes(self, akbank, payment_request, make_ctx, vendor):
        vendor.add(AKBANK_PATH, {"respCode": "0000", "respText": "Approved", "transactionId": "TX-1"})

        result = await akbank.create_payment(await make_ctx("akbank"), payment_request)

        assert result.status == PaymentStatus.SUCCESSFUL
        assert result.transaction_id == "TX-1"
        sent = vendor.calls(AKBANK_PATH)[0]
        assert sent.headers["auth-hash"] == hmac_sha512_b64("vpos-secret", sent.content)
        body = json.loads(sent.content)
        assert body["txnCode"] == "1000"
        assert body["transaction"] == {"amount": 10050, "currencyCode": 949, "motoInd": 0, "installCount": 1}
        assert body["card"]["expireDate"] == "1230"
        assert body["terminal"]["merchantSafeId"] == "2023090417500272654BD9A49CF07574"

    async def test_declined_sale(self, akbank, payment_request, make_ctx, vendor):
        vendor.add(AKBANK_PATH, {"respCode": "VPS-1005", "respText": "Insufficient funds"})
        result = await akbank.create_payment(await make_ctx("akbank"), payment_request)
        assert result.success is False
        assert result.error_code == "VPS-1005"

    async def test_card_never_logged(self, akbank, payment_request, make_ctx, vendor, audit):
        vendor.add(AKBANK_PATH, {"respCode": "0000"})
        ctx = await make_ctx("akbank")
        await akbank.create_payment(ctx, payment_request)
        log = await audit.repository.get_by_id(ctx.log_id)
        assert log.request["saleRequest"]["card"]["cardNumber"] == "435508******4358"
        assert log.request["saleRequest"]["card"]["cvv2"] == "***"

    async def test_three_d_not_supported(self, akbank, payment_request_3d, make_ctx, vendor):
        with pytest.raises(ValidationError) as exc_info:
            await akbank.create_3d_payment(await make_ctx("akbank"), payment_request_3d)
        assert exc_info.value.code == "NOT_SUPPORTED"
        assert vendor.requests == []

    async def test_status_not_supported(self, akbank, make_ctx):
        with pytest.raises(ValidationError):
            await akbank.get_payment_status(await make_ctx("akbank"), StatusRequest(payment_id="TX-1"))

    async def test_foreign_currency_rejected(self, akbank, payment_request, make_ctx, vendor):
        with pytest.raises(ValidationError):
            await akbank.create_payment(await make_ctx("akbank"), payment_request.model_copy(update={"currency": "USD"}))
        assert vendor.requests == []

    async def test_cancel_and_refund_use_recorded_order(self, akbank, payment_request, make_ctx, vendor, audit):
        vendor.add(AKBANK_PATH, {"respCode": "0000", "transactionId": "TX-1"})
        ctx = await make_ctx("akbank")
        sale = await akbank.create_payment(ctx, payment_request)
        await audit.close(ctx.log_id, sale)
        order_id = json.loads(vendor.calls(AKBANK_PATH)[0].content)["order"]["orderId"]

        cancelled = await akbank.cancel_payment(await make_ctx("akbank"), CancelRequest(payment_id="TX-1"))
        refunded = await akbank.refund_payment(
            await make_ctx("akbank"), RefundRequest(payment_id="TX-1", refund_amount="10.00")
        )

        assert cancelled.status == PaymentStatus.CANCELLED
        assert refunded.status == PaymentStatus.REFUNDED
        cancel_body = json.loads(vendor.calls(AKBANK_PATH)[1].content)
        refund_body = json.loads(vendor.calls(AKBANK_PATH)[2].content)
        assert cancel_body["txnCode"] == "2000"
        assert cancel_body["order"]["orderId"] == order_id
        assert refund_body["txnCode"] == "2100"
        assert refund_body["transaction"]["amount"] == 1000

    async def test_cancel_without_log(self, akbank, make_ctx, vendor):
        with pytest.raises(StateError):
            await akbank.cancel_payment(await make_ctx("akbank"), CancelRequest(payment_id="nope"))
        assert vendor.requests == []


class TestZiraatThreeD:
    """Tests for the Nestpay 3D_PAY gate."""

    async def _start(self, ziraat, request, make_ctx):
        ctx = await make_ctx("ziraat", "create_3d_payment")
        return ctx, await ziraat.create_3d_payment(ctx, request)

    def _callback(self, ziraat, order_id, **fields):
        data = {
            "oid": order_id,
            "mdStatus": "1",
            "Response": "Approved",
            "ProcReturnCode": "00",
            "TransId": "ZT-1",
            "clientid": ziraat.merchant_safe_id,
        }
        data.update(fields)
        data["HASH"] = SignatureEngine(NESTPAY_VER3).sign(data, ziraat.store_key)
        return data

    async def test_start_renders_signed_form(self, ziraat, payment_request_3d, make_ctx, vendor, audit):
        ctx, result = await self._start(ziraat, payment_request_3d, make_ctx)

        assert result.status == PaymentStatus.PENDING
        assert result.redirect_url == THREED_GATEWAY_URL
        assert f'action="{THREED_GATEWAY_URL}"' in result.html
        assert 'name="hashAlgorithm" value="ver3"' in result.html
        assert vendor.requests == []

        log = await audit.repository.get_by_id(ctx.log_id)
        params = log.request["threeDFormParams"]
        assert params["pan"] == "435508******4358"
        assert params["oid"] == result.payment_id
        assert params["amount"] == "100.50"
        assert params["storetype"] == "3D_PAY"

    async def test_form_hash_verifies_against_store_key(self, ziraat, payment_request_3d, make_ctx):
        _, result = await self._start(ziraat, payment_request_3d, make_ctx)
        params = ziraat.build_3d_form_params(payment_request_3d, result.payment_id, "https://gw.example.com/cb")
        params["HASH"] = ziraat.engine.sign(params, "TEST1234")
        assert ziraat.engine.verify(params, ziraat.store_key, params["HASH"])

    async def test_complete_success(self, ziraat, payment_request_3d, make_ctx, callback_store):
        _, result = await self._start(ziraat, payment_request_3d, make_ctx)
        state = await callback_store.resolve(result.html.split("state=")[1].split('"')[0])

        completed = await ziraat.complete_3d_payment(
            await make_ctx("ziraat"), state, self._callback(ziraat, result.payment_id)
        )

        assert completed.status == PaymentStatus.SUCCESSFUL
        assert completed.transaction_id == "ZT-1"
        assert completed.amount == payment_request_3d.amount

    @pytest.mark.parametrize(
        "fields,error_code",
        [
            ({"mdStatus": "0", "Response": "Declined", "ProcReturnCode": "05"}, "05"),
            ({"mdStatus": "5", "Response": "Approved", "ProcReturnCode": ""}, "Approved"),
            ({"mdStatus": "1", "Response": "Error", "ProcReturnCode": "99"}, "99"),
        ],
    )
    async def test_complete_failures(self, ziraat, make_ctx, fields, error_code):
        state = TransactionContext(provider="ziraat", payment_id="O-1", amount="100.50", currency="TRY")
        completed = await ziraat.complete_3d_payment(
            await make_ctx("ziraat"), state, self._callback(ziraat, "O-1", **fields)
        )
        assert completed.status == PaymentStatus.FAILED
        assert completed.error_code == error_code

    async def test_tampered_callback_rejected(self, ziraat, make_ctx):
        state = TransactionContext(provider="ziraat", payment_id="O-1", amount="100.50", currency="TRY")
        data = self._callback(ziraat, "O-1", mdStatus="0")
        data["mdStatus"] = "1"
        with pytest.raises(ValidationError) as exc_info:
            await ziraat.complete_3d_payment(await make_ctx("ziraat"), state, data)
        assert exc_info.value.code == "INVALID_SIGNATURE"

    async def test_order_id_mismatch(self, ziraat, make_ctx):
        state = TransactionContext(provider="ziraat", payment_id="O-1", amount="100.50", currency="TRY")
        with pytest.raises(ValidationError):
            await ziraat.complete_3d_payment(await make_ctx("ziraat"), state, self._callback(ziraat, "O-2"))

    async def test_refund_of_three_d_payment(self, ziraat, payment_request_3d, make_ctx, vendor, audit):
        ctx, result = await self._start(ziraat, payment_request_3d, make_ctx)
        await audit.close(ctx.log_id, result)
        vendor.add(ZIRAAT_PATH, {"respCode": "0000"})

        refunded = await ziraat.refund_payment(
            await make_ctx("ziraat"), RefundRequest(payment_id=result.payment_id, refund_amount="100.50")
        )

        assert refunded.status == PaymentStatus.REFUNDED
        assert json.loads(vendor.calls(ZIRAAT_PATH)[0].content)["order"]["orderId"] == result.payment_id

    def test_webhook_requires_valid_hash(self, ziraat):
        data = self._callback(ziraat, "O-1")
        assert ziraat.validate_webhook(data, {})["oid"] == "O-1"
        with pytest.raises(ValidationError):
            ziraat.validate_webhook(dict(data, HASH="forged"), {})
