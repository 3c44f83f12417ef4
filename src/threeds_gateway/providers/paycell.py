"""Turkcell Paycell integration.

Card data is exchanged for a card token first; every later call uses the token.
3-D payments open a ``threeDSession``, post the browser to Paycell's
``threeDSecure`` page, and after the callback confirm the session with
``getThreeDSessionResult`` before provisioning. Paycell does not sign its
callbacks, so the result call is the trust anchor.
"""

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

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
)
from ..normalizer import VendorSignals
from ..signing import paycell_signature
from ..templates import render_autosubmit_form
from ..transport import encode_json
from .base import CallContext, ProviderSession, SessionState, kurus

logger = logging.getLogger(__name__)

API_SANDBOX_URL = "https://tpay-test.turkcell.com.tr"
API_PRODUCTION_URL = "https://tpay.turkcell.com.tr"
PAYMENT_MANAGEMENT_SANDBOX_URL = "https://omccstb.turkcell.com.tr"
PAYMENT_MANAGEMENT_PRODUCTION_URL = "https://epayment.turkcell.com.tr"

ENDPOINT_PROVISION_ALL = "/tpay/provision/services/restful/getCardToken/provisionAll/"
ENDPOINT_INQUIRE_ALL = "/tpay/provision/services/restful/getCardToken/inquireAll/"
ENDPOINT_REVERSE = "/tpay/provision/services/restful/getCardToken/reverse/"
ENDPOINT_REFUND = "/tpay/provision/services/restful/getCardToken/refund/"
ENDPOINT_GET_THREED_SESSION = "/tpay/provision/services/restful/getCardToken/getThreeDSession/"
ENDPOINT_GET_THREED_SESSION_RESULT = "/tpay/provision/services/restful/getCardToken/getThreeDSessionResult/"
ENDPOINT_GET_CARD_TOKEN_SECURE = "/paymentmanagement/rest/getCardTokenSecure"
ENDPOINT_THREED_SECURE = "/paymentmanagement/rest/threeDSecure"

# Published sandbox credentials
TEST_APPLICATION_NAME = "PAYCELLTEST"
TEST_APPLICATION_PWD = "PaycellTestPassword"
TEST_SECURE_CODE = "PAYCELL12345"
TEST_MERCHANT_CODE = "9998"
CARD_TOKEN_TRANSACTION_PREFIX = "666"

RESPONSE_CODE_SUCCESS = "0"
SUCCESS_CODES = frozenset({RESPONSE_CODE_SUCCESS})
PAYMENT_METHOD_CREDIT_CARD = "CREDIT_CARD"

INQUIRY_STATUS_MAP = {
    "ACTIVE": PaymentStatus.SUCCESSFUL,
    "PARTIAL_REFUND": PaymentStatus.SUCCESSFUL,
    "REVERSE": PaymentStatus.CANCELLED,
    "REFUND": PaymentStatus.REFUNDED,
}


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RequestHeader(_Wire):
    application_name: str = Field(alias="applicationName")
    application_pwd: Optional[str] = Field(default=None, alias="applicationPwd")
    client_ip_address: Optional[str] = Field(default=None, alias="clientIPAddress")
    transaction_date_time: str = Field(alias="transactionDateTime")
    transaction_id: str = Field(alias="transactionId")


class ResponseHeader(_Wire):
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    response_date_time: Optional[str] = Field(default=None, alias="responseDateTime")
    response_code: Optional[str] = Field(default=None, alias="responseCode")
    response_description: Optional[str] = Field(default=None, alias="responseDescription")


class CardTokenRequest(_Wire):
    header: RequestHeader
    cc_author: Optional[str] = Field(default=None, alias="ccAuthor")
    credit_card_no: str = Field(alias="creditCardNo")
    expire_date_month: str = Field(alias="expireDateMonth")
    expire_date_year: str = Field(alias="expireDateYear")
    cvc_no: str = Field(alias="cvcNo")
    hash_data: str = Field(alias="hashData")


class CardTokenResponse(_Wire):
    header: ResponseHeader = Field(default_factory=ResponseHeader)
    card_token: Optional[str] = Field(default=None, alias="cardToken")
    hash_data: Optional[str] = Field(default=None, alias="hashData")


class ThreeDSessionRequest(_Wire):
    request_header: RequestHeader = Field(alias="requestHeader")
    amount: str
    card_token: str = Field(alias="cardToken")
    installment_count: int = Field(default=0, alias="installmentCount")
    merchant_code: str = Field(alias="merchantCode")
    msisdn: str
    target: str = "MERCHANT"
    transaction_type: str = Field(default="AUTH", alias="transactionType")


class ThreeDSessionResponse(_Wire):
    response_header: ResponseHeader = Field(default_factory=ResponseHeader, alias="responseHeader")
    extra_parameters: Optional[Dict[str, Any]] = Field(default=None, alias="extraParameters")
    three_d_session_id: Optional[str] = Field(default=None, alias="threeDSessionId")


class ThreeDSessionResultRequest(_Wire):
    request_header: RequestHeader = Field(alias="requestHeader")
    merchant_code: str = Field(alias="merchantCode")
    three_d_session_id: str = Field(alias="threeDSessionId")
    msisdn: str


class ThreeDOperationResult(_Wire):
    three_d_result: Optional[str] = Field(default=None, alias="threeDResult")
    three_d_result_description: Optional[str] = Field(default=None, alias="threeDResultDescription")


class ThreeDSessionResultResponse(_Wire):
    response_header: ResponseHeader = Field(default_factory=ResponseHeader, alias="responseHeader")
    md_status: Optional[str] = Field(default=None, alias="mdStatus")
    md_error_message: Optional[str] = Field(default=None, alias="mdErrorMessage")
    three_d_operation_result: Optional[ThreeDOperationResult] = Field(default=None, alias="threeDOperationResult")


class ProvisionRequest(_Wire):
    """``provisionAll`` body. Paycell expects the unused keys as explicit nulls."""
    extra_parameters: Optional[Dict[str, Any]] = Field(default=None, alias="extraParameters")
    request_header: RequestHeader = Field(alias="requestHeader")
    acquirer_bank_code: Optional[str] = Field(default=None, alias="acquirerBankCode")
    amount: str
    card_id: Optional[str] = Field(default=None, alias="cardId")
    card_token: Optional[str] = Field(default=None, alias="cardToken")
    currency: str
    installment_count: Optional[int] = Field(default=None, alias="installmentCount")
    merchant_code: str = Field(alias="merchantCode")
    msisdn: str
    original_reference_number: Optional[str] = Field(default=None, alias="originalReferenceNumber")
    payment_type: str = Field(default="SALE", alias="paymentType")
    payment_method_type: str = Field(default=PAYMENT_METHOD_CREDIT_CARD, alias="paymentMethodType")
    pin: Optional[str] = None
    point_amount: Optional[str] = Field(default=None, alias="pointAmount")
    reference_number: str = Field(alias="referenceNumber")
    three_d_session_id: Optional[str] = Field(default=None, alias="threeDSessionId")


class ProvisionResponse(_Wire):
    response_header: ResponseHeader = Field(default_factory=ResponseHeader, alias="responseHeader")
    extra_parameters: Optional[Dict[str, Any]] = Field(default=None, alias="extraParameters")
    acquirer_bank_code: Optional[str] = Field(default=None, alias="acquirerBankCode")
    issuer_bank_code: Optional[str] = Field(default=None, alias="issuerBankCode")
    approval_code: Optional[str] = Field(default=None, alias="approvalCode")
    reconciliation_date: Optional[str] = Field(default=None, alias="reconciliationDate")
    amount: Optional[str] = None
    status: Optional[str] = None


class InquireRequest(_Wire):
    request_header: RequestHeader = Field(alias="requestHeader")
    original_reference_number: str = Field(alias="originalReferenceNumber")
    reference_number: str = Field(alias="referenceNumber")
    merchant_code: str = Field(alias="merchantCode")
    msisdn: str
    payment_method_type: str = Field(default=PAYMENT_METHOD_CREDIT_CARD, alias="paymentMethodType")


class ReverseRequest(_Wire):
    request_header: RequestHeader = Field(alias="requestHeader")
    original_reference_number: str = Field(alias="originalReferenceNumber")
    reference_number: str = Field(alias="referenceNumber")
    merchant_code: str = Field(alias="merchantCode")
    payment_type: str = Field(default="REVERSE", alias="paymentType")


class RefundWireRequest(_Wire):
    request_header: RequestHeader = Field(alias="requestHeader")
    original_reference_number: str = Field(alias="originalReferenceNumber")
    reference_number: str = Field(alias="referenceNumber")
    merchant_code: str = Field(alias="merchantCode")
    amount: str
    payment_type: str = Field(default="REFUND", alias="paymentType")


def normalize_msisdn(phone_number: Optional[str]) -> str:
    """Strip the Turkish country code, leaving the 10-digit subscriber number."""
    msisdn = (phone_number or "").replace(" ", "")
    if msisdn.startswith("+90"):
        msisdn = msisdn[3:]
    elif msisdn.startswith("90") and len(msisdn) == 12:
        msisdn = msisdn[2:]
    return msisdn


def generate_transaction_id() -> str:
    """20-digit transaction id."""
    now = time.time_ns()
    return f"{(now // 1_000_000_000) % 10**10:010d}{(now % 1_000_000_000):010d}"


def generate_transaction_datetime(now: Optional[datetime] = None) -> str:
    """``YYYYMMddHHmmssSSS``."""
    now = now or datetime.now()
    return now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"


def generate_reference_number() -> str:
    return f"REF_{time.time_ns()}"


class PaycellSession(ProviderSession):
    """Paycell provider session."""

    name = "paycell"
    required_config = ("username", "password", "merchantId", "secureCode")

    def __init__(self, config, http, normalizer=None):
        super().__init__(config, http, normalizer)
        if self.is_production:
            self.username = config.get("username")
            self.password = config.get("password")
            self.merchant_id = config.get("merchantId")
            self.secure_code = config.get("secureCode")
            self.base_url = API_PRODUCTION_URL
            self.payment_management_url = PAYMENT_MANAGEMENT_PRODUCTION_URL
        else:
            self.username = config.get("username", TEST_APPLICATION_NAME)
            self.password = config.get("password", TEST_APPLICATION_PWD)
            self.merchant_id = config.get("merchantId", TEST_MERCHANT_CODE)
            self.secure_code = config.get("secureCode", TEST_SECURE_CODE)
            self.base_url = API_SANDBOX_URL
            self.payment_management_url = PAYMENT_MANAGEMENT_SANDBOX_URL

    @property
    def three_d_secure_url(self) -> str:
        return self.payment_management_url + ENDPOINT_THREED_SECURE

    def validate_config(self) -> None:
        # sandbox falls back to the published test credentials
        if self.is_production:
            super().validate_config()

    def validate_request(self, request: PaymentRequest, is_3d: bool) -> None:
        super().validate_request(request, is_3d)
        if not request.customer.phone_number:
            raise ValidationError("customer phone number is required", provider=self.name)
        msisdn = normalize_msisdn(request.customer.phone_number)
        if len(msisdn) != 10 or not msisdn.isdigit():
            raise ValidationError("phone number must be 10 digits", provider=self.name)

    def _header(self, ctx: CallContext, transaction_id: Optional[str] = None) -> RequestHeader:
        return RequestHeader(
            application_name=self.username,
            application_pwd=self.password,
            client_ip_address=ctx.client_ip or "",
            transaction_date_time=generate_transaction_datetime(),
            transaction_id=transaction_id or generate_transaction_id(),
        )

    async def _post(self, ctx: CallContext, kind: str, url: str, body: _Wire, idempotent: bool = False):
        payload = body.model_dump(by_alias=True)
        await ctx.record(self.name, kind, payload)
        return await self.http.post_json(
            url, encode_json(payload), provider=self.name, idempotent=idempotent
        )

    async def _get_card_token(self, ctx: CallContext, request: PaymentRequest) -> str:
        """Exchange the raw card for a card token. The card is not used after this."""
        card = request.card_info
        transaction_datetime = generate_transaction_datetime()
        transaction_id = CARD_TOKEN_TRANSACTION_PREFIX + transaction_datetime
        token_request = CardTokenRequest(
            header=RequestHeader(
                application_name=self.username,
                transaction_date_time=transaction_datetime,
                transaction_id=transaction_id,
            ),
            cc_author=card.card_holder_name or None,
            credit_card_no=card.number,
            expire_date_month=card.expire_month,
            expire_date_year=card.expire_year_short,
            cvc_no=card.cvv.get_secret_value(),
            hash_data=paycell_signature(
                self.username, self.password, self.secure_code, transaction_id, transaction_datetime
            ),
        )
        response = await self._post(
            ctx, "cardTokenRequest", self.payment_management_url + ENDPOINT_GET_CARD_TOKEN_SECURE, token_request
        )
        parsed = self.parse_response(CardTokenResponse, response)
        code = parsed.header.response_code
        if code != RESPONSE_CODE_SUCCESS or not parsed.card_token:
            raise VendorDeclineError(
                f"card token error: {parsed.header.response_description or 'no card token returned'}",
                vendor_code=code or "NO_CARD_TOKEN",
                raw=response.json(),
                provider=self.name,
            )
        return parsed.card_token

    async def _provision(
        self,
        ctx: CallContext,
        provision: ProvisionRequest,
        amount: Decimal,
        currency: str,
        payment_id: Optional[str] = None,
    ) -> NormalizedResult:
        response = await self._post(ctx, "provisionRequest", self.base_url + ENDPOINT_PROVISION_ALL, provision)
        parsed = self.parse_response(ProvisionResponse, response)
        header = parsed.response_header
        transaction_id = header.transaction_id or provision.request_header.transaction_id
        return self.normalizer.normalize(
            VendorSignals(code=header.response_code, success_codes=SUCCESS_CODES),
            payment_id=payment_id or transaction_id,
            transaction_id=transaction_id,
            order_id=provision.reference_number,
            amount=amount,
            currency=currency,
            message=header.response_description,
            raw=parsed.model_dump(by_alias=True),
        )

    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=False)
        flow = self.new_flow()
        try:
            card_token = await self._get_card_token(ctx, request)
            flow.advance(SessionState.TOKEN_ACQUIRED)
            provision = ProvisionRequest(
                request_header=self._header(ctx),
                amount=kurus(request.amount),
                card_token=card_token,
                currency=request.currency,
                merchant_code=self.merchant_id,
                msisdn=normalize_msisdn(request.customer.phone_number),
                reference_number=generate_reference_number(),
            )
            flow.advance(SessionState.PROVISIONED)
            result = await self._provision(ctx, provision, request.amount, request.currency)
        except GatewayError:
            flow.fail()
            raise
        return flow.finish(result)

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=True)
        flow = self.new_flow()
        try:
            card_token = await self._get_card_token(ctx, request)
            flow.advance(SessionState.TOKEN_ACQUIRED)

            session_request = ThreeDSessionRequest(
                request_header=self._header(ctx),
                amount=kurus(request.amount),
                card_token=card_token,
                installment_count=request.installment_count if request.installment_count > 1 else 0,
                merchant_code=self.merchant_id,
                msisdn=normalize_msisdn(request.customer.phone_number),
            )
            response = await self._post(
                ctx, "threeDSessionRequest", self.base_url + ENDPOINT_GET_THREED_SESSION, session_request
            )
            parsed = self.parse_response(ThreeDSessionResponse, response)
            header = parsed.response_header
            if header.response_code != RESPONSE_CODE_SUCCESS or not parsed.three_d_session_id:
                raise VendorDeclineError(
                    f"getThreeDSession error: {header.response_description or 'no session id returned'}",
                    vendor_code=header.response_code or "NO_SESSION",
                    raw=response.json(),
                    provider=self.name,
                )
            session_id = parsed.three_d_session_id
            flow.payment_id = session_id
            flow.advance(SessionState.SESSION_OPENED)

            gateway_callback = await self.park_context(ctx, request, session_id, session_id=session_id)
            html = render_autosubmit_form(
                self.three_d_secure_url,
                {"threeDSessionId": session_id, "callbackurl": gateway_callback},
            )
            flow.advance(SessionState.AWAITING_AUTHENTICATION)
        except GatewayError:
            flow.fail()
            raise

        return self.normalizer.normalize(
            VendorSignals(
                code=header.response_code,
                success_codes=SUCCESS_CODES,
                redirect_url=self.three_d_secure_url,
                html=html,
            ),
            payment_id=session_id,
            transaction_id=header.transaction_id,
            amount=request.amount,
            currency=request.currency,
            raw=parsed.model_dump(by_alias=True),
        )

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        session_id = data.get("threeDSessionId") or state.session_id
        if not session_id:
            raise ValidationError("threeDSessionId is required", provider=self.name)
        if session_id != state.payment_id:
            raise ValidationError("threeDSessionId does not match the stored session", provider=self.name)

        flow = self.resume_flow(state.payment_id)
        try:
            msisdn = await ctx.field_from_log_id(self.name, state.log_id, "threeDSessionRequest.msisdn")
            card_token = await ctx.field_from_log_id(self.name, state.log_id, "threeDSessionRequest.cardToken")

            result_request = ThreeDSessionResultRequest(
                request_header=self._header(ctx),
                merchant_code=self.merchant_id,
                three_d_session_id=session_id,
                msisdn=msisdn,
            )
            response = await self._post(
                ctx,
                "threeDSessionResultRequest",
                self.base_url + ENDPOINT_GET_THREED_SESSION_RESULT,
                result_request,
                idempotent=True,
            )
            parsed = self.parse_response(ThreeDSessionResultResponse, response)
            header = parsed.response_header
            operation = parsed.three_d_operation_result
            if header.response_code != RESPONSE_CODE_SUCCESS:
                code = header.response_code or "NO_RESPONSE_CODE"
                message = header.response_description
            elif operation is not None and operation.three_d_result != RESPONSE_CODE_SUCCESS:
                code = operation.three_d_result or "3D_FAILED"
                message = operation.three_d_result_description or parsed.md_error_message
            else:
                code, message = None, None

            if code is not None:
                flow.fail()
                return self.normalizer.normalize(
                    VendorSignals(code=code, success_codes=SUCCESS_CODES),
                    payment_id=state.payment_id,
                    amount=state.amount,
                    currency=state.currency,
                    message=message or "3D authentication failed",
                    raw=parsed.model_dump(by_alias=True),
                )

            provision = ProvisionRequest(
                request_header=self._header(ctx),
                amount=kurus(state.amount),
                card_token=card_token,
                currency=state.currency,
                installment_count=state.installment_count if state.installment_count > 1 else None,
                merchant_code=self.merchant_id,
                msisdn=msisdn,
                reference_number=generate_reference_number(),
                three_d_session_id=session_id,
            )
            flow.advance(SessionState.PROVISIONED)
            result = await self._provision(ctx, provision, state.amount, state.currency, payment_id=state.payment_id)
        except GatewayError:
            flow.fail()
            raise
        return flow.finish(result)

    async def _original_reference(self, ctx: CallContext, payment_id: str) -> str:
        return await ctx.field_from_log(self.name, payment_id, "provisionRequest.referenceNumber")

    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        original_reference = await self._original_reference(ctx, request.payment_id)
        msisdn = await ctx.field_from_log(self.name, request.payment_id, "provisionRequest.msisdn")
        inquiry = InquireRequest(
            request_header=self._header(ctx),
            original_reference_number=original_reference,
            reference_number=generate_reference_number(),
            merchant_code=self.merchant_id,
            msisdn=msisdn,
        )
        response = await self._post(
            ctx, "inquireRequest", self.base_url + ENDPOINT_INQUIRE_ALL, inquiry, idempotent=True
        )
        parsed = self.parse_response(ProvisionResponse, response)
        header = parsed.response_header
        if header.response_code == RESPONSE_CODE_SUCCESS:
            signals = VendorSignals(
                status_text=parsed.status,
                status_map=INQUIRY_STATUS_MAP,
                success_flag=True,
            )
        else:
            signals = VendorSignals(code=header.response_code or "UNKNOWN", success_codes=SUCCESS_CODES)
        return self.normalizer.normalize(
            signals,
            payment_id=request.payment_id,
            transaction_id=header.transaction_id,
            order_id=original_reference,
            message=header.response_description,
            raw=parsed.model_dump(by_alias=True),
        )

    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        original_reference = await self._original_reference(ctx, request.payment_id)
        reverse = ReverseRequest(
            request_header=self._header(ctx),
            original_reference_number=original_reference,
            reference_number=generate_reference_number(),
            merchant_code=self.merchant_id,
        )
        response = await self._post(ctx, "reverseRequest", self.base_url + ENDPOINT_REVERSE, reverse, idempotent=True)
        parsed = self.parse_response(ProvisionResponse, response)
        header = parsed.response_header
        return self.normalizer.normalize(
            VendorSignals(code=header.response_code or "UNKNOWN", success_codes=SUCCESS_CODES),
            success_status=PaymentStatus.CANCELLED,
            payment_id=request.payment_id,
            transaction_id=header.transaction_id,
            order_id=original_reference,
            message=header.response_description,
            raw=parsed.model_dump(by_alias=True),
        )

    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        original_reference = await self._original_reference(ctx, request.payment_id)
        refund = RefundWireRequest(
            request_header=self._header(ctx),
            original_reference_number=original_reference,
            reference_number=generate_reference_number(),
            merchant_code=self.merchant_id,
            amount=kurus(request.refund_amount),
        )
        response = await self._post(ctx, "refundRequest", self.base_url + ENDPOINT_REFUND, refund, idempotent=True)
        parsed = self.parse_response(ProvisionResponse, response)
        header = parsed.response_header
        result = self.normalizer.normalize(
            VendorSignals(code=header.response_code or "UNKNOWN", success_codes=SUCCESS_CODES),
            success_status=PaymentStatus.REFUNDED,
            payment_id=request.payment_id,
            transaction_id=header.transaction_id,
            message=header.response_description,
            raw=parsed.model_dump(by_alias=True),
        )
        return self.refund_result(result, request)
