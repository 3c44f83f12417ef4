"""Payten (MerchantSafe Unipay) hosted payment page.

Card entry and 3-D authentication both happen on Payten's page: the gateway
opens a ``SESSIONTOKEN`` session, redirects the browser to ``3dgate`` and, on
return, asks ``QUERYTRANSACTION`` what happened. All calls are multipart forms.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from ..errors import GatewayError, ValidationError, VendorDeclineError
from ..models import (
    CancelRequest,
    NormalizedResult,
    PaymentRequest,
    PaymentStatus,
    RefundRequest,
    RefundResult,
    StatusRequest,
    TransactionContext,
    format_amount,
)
from ..normalizer import VendorSignals
from ..transport import TransportResponse
from .base import CallContext, ProviderSession, SessionState

logger = logging.getLogger(__name__)

API_SANDBOX_URL = "https://test.merchantsafeunipay.com/msu/api/v2"
API_PRODUCTION_URL = "https://merchantsafeunipay.com/msu/api/v2"
GATE_SANDBOX_URL = "https://test.merchantsafeunipay.com/msu/3dgate"
GATE_PRODUCTION_URL = "https://merchantsafeunipay.com/msu/3dgate"

ACTION_SESSION = "SESSIONTOKEN"
ACTION_QUERY_TRANSACTION = "QUERYTRANSACTION"
ACTION_VOID = "VOID"
ACTION_REFUND = "REFUND"

SESSION_TYPE_PAYMENT = "PAYMENTSESSION"
CURRENCY_TRY = "TRY"
SUCCESS_CODES = frozenset({"00"})
NO_TRANSACTION = "NO_TRANSACTION"

# Callback field names Payten has been seen to use for the session token.
SESSION_TOKEN_FIELDS = ("sessionToken", "session_token", "SESSIONTOKEN")


class PaytenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    response_code: Optional[str] = Field(default=None, alias="responseCode")
    response_msg: Optional[str] = Field(default=None, alias="responseMsg")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_msg: Optional[str] = Field(default=None, alias="errorMsg")
    session_token: Optional[str] = Field(default=None, alias="sessionToken")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    transaction_list: List[Dict[str, Any]] = Field(default_factory=list, alias="transactionList")

    @property
    def first_transaction_id(self) -> Optional[str]:
        if self.transaction_list:
            value = self.transaction_list[0].get("transactionId")
            return str(value) if value is not None else None
        return self.transaction_id

    @property
    def message(self) -> Optional[str]:
        if self.response_code in SUCCESS_CODES:
            return self.response_msg
        return self.error_msg or self.response_msg

    @property
    def transaction_code(self) -> str:
        """Return code of the queried transaction.

        The envelope code only says the query itself ran. An approved query
        without a transaction means the customer never paid.
        """
        if self.response_code not in SUCCESS_CODES:
            return self.response_code or "UNKNOWN"
        if not self.transaction_list:
            return NO_TRANSACTION
        return str(self.transaction_list[0].get("pgTranReturnCode") or "UNKNOWN")

    @property
    def transaction_message(self) -> Optional[str]:
        if self.response_code not in SUCCESS_CODES:
            return self.message
        if not self.transaction_list:
            return "no transaction found in response"
        transaction = self.transaction_list[0]
        if self.transaction_code in SUCCESS_CODES:
            return self.response_msg
        return transaction.get("pgTranErrorText") or self.response_msg


def session_token_from(data: Mapping[str, str]) -> str:
    for key in SESSION_TOKEN_FIELDS:
        if data.get(key):
            return data[key]
    return ""


class PaytenSession(ProviderSession):
    """Payten provider session.

    The card never reaches the gateway, so ``card_info`` is optional here and
    a direct charge goes through the same hosted page as a 3-D one.
    """

    name = "payten"
    required_config = ("merchant", "merchantUser", "merchantPassword")
    requires_card = False
    entry_states = frozenset({SessionState.SESSION_OPENED})

    def __init__(self, config, http, normalizer=None):
        super().__init__(config, http, normalizer)
        self.merchant = config.get("merchant")
        self.merchant_user = config.get("merchantUser")
        self.merchant_password = config.get("merchantPassword")
        if self.is_production:
            self.api_url, self.gate_url = API_PRODUCTION_URL, GATE_PRODUCTION_URL
        else:
            self.api_url, self.gate_url = API_SANDBOX_URL, GATE_SANDBOX_URL

    def validate_request(self, request: PaymentRequest, is_3d: bool) -> None:
        # the hosted page always returns through the callback
        super().validate_request(request, is_3d=True)
        if not request.customer.email:
            raise ValidationError("customer email is required", provider=self.name)
        if request.currency != CURRENCY_TRY:
            raise ValidationError(f"unsupported currency: {request.currency}", provider=self.name)

    def _credentials(self) -> Dict[str, str]:
        return {
            "MERCHANT": self.merchant,
            "MERCHANTUSER": self.merchant_user,
            "MERCHANTPASSWORD": self.merchant_password,
        }

    async def _send(
        self,
        ctx: CallContext,
        kind: str,
        fields: Dict[str, str],
        idempotent: bool = False,
    ) -> TransportResponse:
        await ctx.record(self.name, kind, {k: v for k, v in fields.items() if k != "MERCHANTPASSWORD"})
        return await self.http.post_multipart(
            self.api_url, fields, provider=self.name, idempotent=idempotent
        )

    def build_session_fields(self, request: PaymentRequest, merchant_payment_id: str, return_url: str) -> Dict[str, str]:
        customer = request.customer
        fields = {
            "ACTION": ACTION_SESSION,
            **self._credentials(),
            "CUSTOMER": customer.id or customer.email,
            "SESSIONTYPE": SESSION_TYPE_PAYMENT,
            "MERCHANTPAYMENTID": merchant_payment_id,
            "AMOUNT": format_amount(request.amount),
            "CURRENCY": CURRENCY_TRY,
            "RETURNURL": return_url,
            "EXTRA[SaveCard]": "NO",
        }
        if customer.email:
            fields["CUSTOMEREMAIL"] = customer.email
        if customer.full_name:
            fields["CUSTOMERNAME"] = customer.full_name
        if customer.phone_number:
            fields["CUSTOMERPHONE"] = customer.phone_number
        return fields

    def normalize_response(
        self,
        parsed: PaytenResponse,
        *,
        success_status: PaymentStatus = PaymentStatus.SUCCESSFUL,
        payment_id: Optional[str] = None,
        amount=None,
        currency: Optional[str] = None,
    ) -> NormalizedResult:
        return self.normalizer.normalize(
            VendorSignals(code=parsed.response_code or "UNKNOWN", success_codes=SUCCESS_CODES),
            success_status=success_status,
            payment_id=payment_id,
            transaction_id=parsed.first_transaction_id,
            order_id=payment_id,
            amount=amount,
            currency=currency,
            message=parsed.message,
            raw=parsed.model_dump(by_alias=True, exclude_none=True),
        )

    def normalize_transaction(
        self,
        parsed: PaytenResponse,
        *,
        payment_id: Optional[str] = None,
        amount=None,
        currency: Optional[str] = None,
    ) -> NormalizedResult:
        return self.normalizer.normalize(
            VendorSignals(code=parsed.transaction_code, success_codes=SUCCESS_CODES),
            payment_id=payment_id,
            transaction_id=parsed.first_transaction_id,
            order_id=payment_id,
            amount=amount,
            currency=currency,
            message=parsed.transaction_message,
            raw=parsed.model_dump(by_alias=True, exclude_none=True),
        )

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=True)
        merchant_payment_id = request.id or self.generate_order_id("PAYTEN-")
        flow = self.new_flow(merchant_payment_id)
        try:
            gateway_callback = await self.park_context(ctx, request, merchant_payment_id)
            fields = self.build_session_fields(request, merchant_payment_id, gateway_callback)
            response = await self._send(ctx, "sessionTokenRequest", fields)
            parsed = self.parse_response(PaytenResponse, response)
            if parsed.response_code not in SUCCESS_CODES or not parsed.session_token:
                raise VendorDeclineError(
                    f"session token error: {parsed.message or 'no session token returned'}",
                    vendor_code=parsed.error_code or parsed.response_code or "NO_SESSION_TOKEN",
                    raw=response.json(),
                    provider=self.name,
                )
            flow.advance(SessionState.SESSION_OPENED)
            await ctx.record(self.name, "sessionToken", {"sessionToken": parsed.session_token})
            redirect_url = f"{self.gate_url}?{urlencode({'sessionToken': parsed.session_token})}"
            flow.advance(SessionState.AWAITING_AUTHENTICATION)
        except GatewayError:
            flow.fail()
            raise

        logger.info(f"[{self.name}] hosted page session opened for {merchant_payment_id}")
        return self.normalizer.normalize(
            VendorSignals(success_flag=True, redirect_url=redirect_url),
            payment_id=merchant_payment_id,
            order_id=merchant_payment_id,
            amount=request.amount,
            currency=request.currency,
            message="Redirect to Payten hosted page",
            raw=parsed.model_dump(by_alias=True, exclude_none=True),
        )

    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        return await self.create_3d_payment(ctx, request)

    async def _query(self, ctx: CallContext, session_token: str) -> PaytenResponse:
        fields = {"ACTION": ACTION_QUERY_TRANSACTION, "SESSIONTOKEN": session_token}
        response = await self._send(ctx, "queryTransactionRequest", fields, idempotent=True)
        return self.parse_response(PaytenResponse, response)

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        session_token = session_token_from(data)
        if not session_token:
            raise ValidationError("sessionToken is required", provider=self.name)
        issued = await ctx.field_from_log_id(self.name, state.log_id, "sessionToken.sessionToken")
        if session_token != issued:
            raise ValidationError("sessionToken does not match the stored session", provider=self.name)

        flow = self.resume_flow(state.payment_id)
        try:
            parsed = await self._query(ctx, session_token)
        except GatewayError:
            flow.fail()
            raise
        if parsed.transaction_code in SUCCESS_CODES:
            flow.advance(SessionState.PROVISIONED)
        else:
            logger.warning(f"[{self.name}] {state.payment_id} not paid: {parsed.transaction_code}")
        result = self.normalize_transaction(
            parsed, payment_id=state.payment_id, amount=state.amount, currency=state.currency
        )
        return flow.finish(result)

    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        session_token = await ctx.field_from_log(self.name, request.payment_id, "sessionToken.sessionToken")
        parsed = await self._query(ctx, session_token)
        return self.normalize_transaction(parsed, payment_id=request.payment_id)

    async def _merchant_payment_id(self, ctx: CallContext, payment_id: str) -> str:
        return await ctx.field_from_log(self.name, payment_id, "sessionTokenRequest.MERCHANTPAYMENTID")

    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        merchant_payment_id = await self._merchant_payment_id(ctx, request.payment_id)
        fields = {"ACTION": ACTION_VOID, **self._credentials(), "MERCHANTPAYMENTID": merchant_payment_id}
        response = await self._send(ctx, "voidRequest", fields, idempotent=True)
        parsed = self.parse_response(PaytenResponse, response)
        return self.normalize_response(
            parsed, success_status=PaymentStatus.CANCELLED, payment_id=request.payment_id
        )

    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        merchant_payment_id = await self._merchant_payment_id(ctx, request.payment_id)
        fields = {
            "ACTION": ACTION_REFUND,
            **self._credentials(),
            "MERCHANTPAYMENTID": merchant_payment_id,
            "AMOUNT": format_amount(request.refund_amount),
            "CURRENCY": request.currency or CURRENCY_TRY,
        }
        response = await self._send(ctx, "refundRequest", fields, idempotent=True)
        parsed = self.parse_response(PaytenResponse, response)
        result = self.normalize_response(
            parsed,
            success_status=PaymentStatus.REFUNDED,
            payment_id=request.payment_id,
            amount=request.refund_amount,
        )
        return self.refund_result(result, request)
