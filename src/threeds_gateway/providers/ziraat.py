"""Ziraat Bankası virtual POS.

3-D payments use the Nestpay ``3D_PAY`` hosted gate: the browser posts a form
signed with ``hashAlgorithm=ver3``, the bank authenticates and provisions, then
posts the outcome back with its own ``HASH``. Direct sale, cancel and refund go
through the JSON API shared with Akbank.
"""

import logging
import time
from typing import Any, Dict, Mapping

from ..audit import mask_sensitive
from ..errors import GatewayError, StateError, ValidationError
from ..models import NormalizedResult, PaymentRequest, TransactionContext, format_amount
from ..normalizer import VendorSignals
from ..signing import NESTPAY_VER3, SignatureEngine
from ..templates import render_autosubmit_form
from .base import CallContext, SessionState
from .vpos import VirtualPosSession

logger = logging.getLogger(__name__)

API_SANDBOX_URL = "https://test.merchantsafeunipay.com/msu/api/v2"
API_PRODUCTION_URL = "https://merchantsafeunipay.com/msu/api/v2"
THREED_GATEWAY_URL = "https://merchantsafeunipay.com/msu/3dgate"

CURRENCY_NUMERIC_TRY = "949"
MD_STATUS_AUTHENTICATED = frozenset({"1", "2", "3", "4"})
RESPONSE_APPROVED = "Approved"


def card_type(card_number: str) -> str:
    """Nestpay card type: 2 for Mastercard, 1 otherwise."""
    return "2" if card_number.startswith("5") else "1"


class ZiraatSession(VirtualPosSession):
    """Ziraat provider session."""

    name = "ziraat"
    # the signed 3D_PAY form is the session; the bank opens it on post
    entry_states = frozenset({SessionState.PROVISIONED, SessionState.AWAITING_AUTHENTICATION})
    sandbox_url = API_SANDBOX_URL
    production_url = API_PRODUCTION_URL

    def __init__(self, config, http, normalizer=None):
        super().__init__(config, http, normalizer)
        # the hosted gate signs with the store key when one is issued
        self.store_key = config.get("storeKey", self.secret_key)
        self.engine = SignatureEngine(NESTPAY_VER3)

    def build_3d_form_params(self, request: PaymentRequest, order_id: str, callback: str) -> Dict[str, str]:
        card = request.card_info
        bill_to_name = card.card_holder_name.strip() or request.customer.full_name
        return {
            "clientid": self.merchant_safe_id,
            "oid": order_id,
            "amount": format_amount(request.amount),
            "okurl": callback,
            "failUrl": callback,
            "TranType": "Auth",
            "Instalment": str(request.installment_count) if request.installment_count > 1 else "",
            "callbackUrl": callback,
            "currency": CURRENCY_NUMERIC_TRY,
            "rnd": str(time.time_ns() // 1_000_000),
            "storetype": "3D_PAY",
            "hashAlgorithm": "ver3",
            "lang": "tr",
            "pan": card.number,
            "cv2": card.cvv.get_secret_value(),
            "Ecom_Payment_Card_ExpDate_Year": card.expire_year_short,
            "Ecom_Payment_Card_ExpDate_Month": card.expire_month,
            "cardType": card_type(card.number),
            "BillToName": bill_to_name,
            "BillToCompany": "",
        }

    def verify_hash(self, data: Mapping[str, Any]) -> None:
        """Check the bank's ``HASH`` over every posted field.

        Raises:
            ValidationError: ``INVALID_SIGNATURE`` if it is missing or wrong.
        """
        received = data.get("HASH") or data.get("hash")
        fields = {k: v for k, v in data.items() if isinstance(v, str)}
        if not received or not self.engine.verify(fields, self.store_key, received):
            logger.warning(f"[{self.name}] rejected callback with invalid HASH")
            raise ValidationError(
                "invalid HASH in callback data",
                code="INVALID_SIGNATURE",
                provider=self.name,
            )

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=True)
        order_id = self.generate_order_id()
        flow = self.new_flow(order_id)
        try:
            gateway_callback = await self.park_context(ctx, request, order_id)
            params = self.build_3d_form_params(request, order_id, gateway_callback)
            params["HASH"] = self.engine.sign(params, self.store_key)
            await ctx.record(self.name, "threeDFormParams", params)
            html = render_autosubmit_form(THREED_GATEWAY_URL, params)
            flow.advance(SessionState.AWAITING_AUTHENTICATION)
        except GatewayError:
            flow.fail()
            raise

        return self.normalizer.normalize(
            VendorSignals(success_flag=True, redirect_url=THREED_GATEWAY_URL, html=html),
            payment_id=order_id,
            order_id=order_id,
            amount=request.amount,
            currency=request.currency,
            raw=mask_sensitive(params),
        )

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        self.verify_hash(data)
        order_id = data.get("oid")
        if order_id and order_id != state.payment_id:
            raise ValidationError("order id does not match the stored payment", provider=self.name)

        flow = self.resume_flow(state.payment_id)
        md_status = data.get("mdStatus", "")
        response = data.get("Response", "")
        success = md_status in MD_STATUS_AUTHENTICATED and response == RESPONSE_APPROVED
        if success:
            flow.advance(SessionState.PROVISIONED)

        result = self.normalizer.normalize(
            VendorSignals(success_flag=success),
            payment_id=state.payment_id,
            transaction_id=data.get("TransId") or None,
            order_id=state.payment_id,
            amount=state.amount,
            currency=state.currency,
            message="3D payment completed successfully" if success else (data.get("ErrMsg") or "3D payment failed"),
            raw=mask_sensitive(dict(data)),
        )
        if not success:
            error_code = data.get("ProcReturnCode") or response or f"MDSTATUS_{md_status or 'MISSING'}"
            result = result.model_copy(update={"error_code": error_code})
        return flow.finish(result)

    async def original_order_id(self, ctx: CallContext, payment_id: str) -> str:
        try:
            return await super().original_order_id(ctx, payment_id)
        except StateError:
            # 3D payments are keyed by the order id carried in the signed form
            return await ctx.field_from_log(self.name, payment_id, "threeDFormParams.oid")

    def validate_webhook(
        self,
        data: Mapping[str, Any],
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> Dict[str, Any]:
        self.verify_hash(data)
        return dict(data)
