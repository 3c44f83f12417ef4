"""iyzico payment API.

Requests are JSON signed with ``IYZWSv2``. A 3-D payment is initialized with
the card; iyzico answers with the bank's page as base64 ``threeDSHtmlContent``
and, after authentication, posts ``paymentId`` and ``mdStatus`` back to the
gateway, which then finalizes the payment with ``/payment/3dsecure/auth``.
"""

import base64
import binascii
import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import GatewayError, StateError, TransportError, ValidationError
from ..models import (
    CancelRequest,
    InstallmentInfo,
    InstallmentInquiry,
    InstallmentOption,
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
from ..signing import iyzico_authorization
from ..transport import encode_json
from .base import CallContext, ProviderSession, SessionState

logger = logging.getLogger(__name__)

API_SANDBOX_URL = "https://sandbox-api.iyzipay.com"
API_PRODUCTION_URL = "https://api.iyzipay.com"

PATH_PAYMENT = "/payment/auth"
PATH_3D_INITIALIZE = "/payment/3dsecure/initialize"
PATH_3D_AUTH = "/payment/3dsecure/auth"
PATH_CANCEL = "/payment/cancel"
PATH_REFUND = "/payment/refund"
PATH_DETAIL = "/payment/detail"
PATH_INSTALLMENT = "/payment/iyzipos/installment"

STATUS_SUCCESS = "success"
MD_STATUS_AUTHENTICATED = "1"
DEFAULT_LOCALE = "tr"
# iyzico's published sandbox identity number
DEFAULT_IDENTITY_NUMBER = "74300864791"
SUPPORTED_CURRENCIES = frozenset({"TRY", "USD", "EUR", "GBP", "IRR", "NOK", "RUB", "CHF"})
CANCEL_REASONS = frozenset({"double_payment", "buyer_request", "fraud", "other"})

PAYMENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "SUCCESS": PaymentStatus.SUCCESSFUL,
    "FAILURE": PaymentStatus.FAILED,
    "INIT_THREEDS": PaymentStatus.PENDING,
    "CALLBACK_THREEDS": PaymentStatus.PROCESSING,
}


class IyzicoResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    status: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    payment_transaction_id: Optional[str] = Field(default=None, alias="paymentTransactionId")
    payment_status: Optional[str] = Field(default=None, alias="paymentStatus")
    three_ds_html_content: Optional[str] = Field(default=None, alias="threeDSHtmlContent")
    item_transactions: List[Dict[str, Any]] = Field(default_factory=list, alias="itemTransactions")
    installment_details: List[Dict[str, Any]] = Field(default_factory=list, alias="installmentDetails")

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def first_transaction_id(self) -> Optional[str]:
        if self.payment_transaction_id:
            return self.payment_transaction_id
        if self.item_transactions:
            value = self.item_transactions[0].get("paymentTransactionId")
            return str(value) if value is not None else None
        return None


def generate_random_key() -> str:
    """Millisecond timestamp followed by random digits."""
    return f"{int(time.time() * 1000)}{secrets.randbelow(10 ** 9):09d}"


def decode_html_content(content: str, provider: str = "iyzico") -> str:
    """Decode the base64 ``threeDSHtmlContent`` into the bank page.

    Raises:
        TransportError: If the content is not base64 UTF-8.
    """
    try:
        return base64.b64decode(content, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise TransportError(
            "iyzico returned undecodable 3D HTML content", retryable=False, provider=provider
        ) from e


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value))


class IyzicoSession(ProviderSession):
    """iyzico provider session."""

    name = "iyzico"
    required_config = ("apiKey", "secretKey")
    # card data goes straight into the payment call
    entry_states = frozenset({SessionState.PROVISIONED, SessionState.SESSION_OPENED})

    def __init__(self, config, http, normalizer=None):
        super().__init__(config, http, normalizer)
        self.api_key = config.get("apiKey")
        self.secret_key = config.get("secretKey")
        self.identity_number = config.get("identityNumber") or DEFAULT_IDENTITY_NUMBER
        self.api_url = API_PRODUCTION_URL if self.is_production else API_SANDBOX_URL

    def validate_request(self, request: PaymentRequest, is_3d: bool) -> None:
        super().validate_request(request, is_3d)
        customer = request.customer
        if not customer.email:
            raise ValidationError("customer email is required", provider=self.name)
        if not customer.name or not customer.surname:
            raise ValidationError("customer name and surname are required", provider=self.name)
        if request.currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"unsupported currency: {request.currency}", provider=self.name)

    async def send(
        self,
        ctx: CallContext,
        kind: str,
        path: str,
        body: Dict[str, Any],
        idempotent: bool = False,
    ) -> IyzicoResponse:
        """Sign and send ``body`` to ``path``, recording it under ``kind`` first."""
        body.setdefault("locale", DEFAULT_LOCALE)
        content = encode_json(body)
        random_key = generate_random_key()
        await ctx.record(self.name, kind, body)
        response = await self.http.post_json(
            self.api_url + path,
            content,
            provider=self.name,
            headers={
                "Authorization": iyzico_authorization(self.api_key, self.secret_key, random_key, path, content),
                "x-iyzi-rnd": random_key,
            },
            idempotent=idempotent,
        )
        return self.parse_response(IyzicoResponse, response)

    def signals(self, parsed: IyzicoResponse, html: Optional[str] = None) -> VendorSignals:
        if parsed.succeeded:
            return VendorSignals(success_flag=True, html=html)
        return VendorSignals(code=parsed.error_code or "UNKNOWN")

    def normalize_response(
        self,
        parsed: IyzicoResponse,
        *,
        success_status: PaymentStatus = PaymentStatus.SUCCESSFUL,
        payment_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        html: Optional[str] = None,
    ) -> NormalizedResult:
        return self.normalizer.normalize(
            self.signals(parsed, html),
            success_status=success_status,
            payment_id=payment_id,
            transaction_id=parsed.payment_id,
            order_id=payment_id,
            amount=amount,
            currency=currency,
            message=None if parsed.succeeded else parsed.error_message,
            raw=parsed.model_dump(by_alias=True, exclude_none=True, exclude={"three_ds_html_content"}),
        )

    def _address(self, request: PaymentRequest) -> Dict[str, Any]:
        address = request.customer.address
        return {
            "contactName": request.customer.full_name,
            "address": address.address if address else "",
            "city": address.city if address else "",
            "country": address.country if address else "",
            "zipCode": address.zip_code if address else "",
        }

    def _basket(self, request: PaymentRequest, payment_id: str) -> List[Dict[str, Any]]:
        if not request.items:
            return [{
                "id": payment_id,
                "name": request.description or "Payment",
                "category1": "General",
                "itemType": "PHYSICAL",
                "price": format_amount(request.amount),
            }]
        return [
            {
                "id": item.id,
                "name": item.name,
                "category1": item.category or "General",
                "itemType": "PHYSICAL",
                "price": format_amount(item.price * item.quantity),
            }
            for item in request.items
        ]

    def build_payment_body(
        self,
        ctx: CallContext,
        request: PaymentRequest,
        payment_id: str,
        callback: Optional[str] = None,
    ) -> Dict[str, Any]:
        customer = request.customer
        card = request.card_info
        price = format_amount(request.amount)
        address = self._address(request)
        body: Dict[str, Any] = {
            "locale": DEFAULT_LOCALE,
            "conversationId": request.conversation_id or payment_id,
            "price": price,
            "paidPrice": price,
            "currency": request.currency,
            "installment": max(request.installment_count, 1),
            "basketId": payment_id,
            "paymentChannel": "WEB",
            "paymentGroup": "PRODUCT",
            "paymentCard": {
                "cardHolderName": card.card_holder_name or customer.full_name,
                "cardNumber": card.number,
                "expireMonth": card.expire_month,
                "expireYear": card.expire_year,
                "cvc": card.cvv.get_secret_value(),
                "registerCard": 0,
            },
            "buyer": {
                "id": customer.id or payment_id,
                "name": customer.name,
                "surname": customer.surname,
                "gsmNumber": customer.phone_number,
                "email": customer.email,
                "identityNumber": self.identity_number,
                "registrationAddress": address["address"],
                "ip": customer.ip_address or ctx.client_ip or "127.0.0.1",
                "city": address["city"],
                "country": address["country"],
                "zipCode": address["zipCode"],
            },
            "shippingAddress": address,
            "billingAddress": address,
            "basketItems": self._basket(request, payment_id),
        }
        if callback:
            body["callbackUrl"] = callback
        return body

    async def _remember_payment(self, ctx: CallContext, parsed: IyzicoResponse) -> None:
        """Keep iyzico's references on the audit row for cancel, refund and status."""
        if parsed.succeeded and parsed.payment_id:
            await ctx.record(
                self.name,
                "paymentResult",
                {"paymentId": parsed.payment_id, "paymentTransactionId": parsed.first_transaction_id},
            )

    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=False)
        payment_id = request.id or self.generate_order_id("IYZ-")
        flow = self.new_flow(payment_id)
        try:
            flow.advance(SessionState.PROVISIONED)
            parsed = await self.send(ctx, "paymentRequest", PATH_PAYMENT, self.build_payment_body(ctx, request, payment_id))
            await self._remember_payment(ctx, parsed)
        except GatewayError:
            flow.fail()
            raise
        result = self.normalize_response(
            parsed, payment_id=payment_id, amount=request.amount, currency=request.currency
        )
        return flow.finish(result)

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=True)
        payment_id = request.id or self.generate_order_id("IYZ-")
        flow = self.new_flow(payment_id)
        try:
            gateway_callback = await self.park_context(ctx, request, payment_id)
            body = self.build_payment_body(ctx, request, payment_id, callback=gateway_callback)
            parsed = await self.send(ctx, "threeDSInitializeRequest", PATH_3D_INITIALIZE, body)
            html = None
            if parsed.succeeded and parsed.three_ds_html_content:
                html = decode_html_content(parsed.three_ds_html_content, self.name)
                flow.advance(SessionState.SESSION_OPENED)
                if parsed.payment_id:
                    await ctx.record(self.name, "threeDSInitialize", {"paymentId": parsed.payment_id})
                flow.advance(SessionState.AWAITING_AUTHENTICATION)
        except GatewayError:
            flow.fail()
            raise

        if parsed.succeeded and html is None:
            logger.warning(f"[{self.name}] 3D initialize for {payment_id} returned no HTML content")
            return flow.finish(self.normalizer.normalize(
                VendorSignals(code="NO_3DS_CONTENT"),
                payment_id=payment_id,
                amount=request.amount,
                currency=request.currency,
                message="3D initialize returned no HTML content",
                raw=parsed.model_dump(by_alias=True, exclude_none=True),
            ))
        result = self.normalize_response(
            parsed, payment_id=payment_id, amount=request.amount, currency=request.currency, html=html
        )
        return flow.finish(result)

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        iyzico_payment_id = data.get("paymentId")
        if not iyzico_payment_id:
            raise ValidationError("paymentId is required", provider=self.name)
        conversation_id = state.conversation_id or state.payment_id
        if data.get("conversationId") and data["conversationId"] != conversation_id:
            raise ValidationError("conversationId does not match the stored payment", provider=self.name)
        try:
            issued = await ctx.field_from_log_id(self.name, state.log_id, "threeDSInitialize.paymentId")
        except StateError:
            issued = None
        if issued and issued != iyzico_payment_id:
            raise ValidationError("paymentId does not match the initialized payment", provider=self.name)

        flow = self.resume_flow(state.payment_id)
        md_status = data.get("mdStatus", "")
        if data.get("status") != STATUS_SUCCESS or md_status != MD_STATUS_AUTHENTICATED:
            logger.info(f"[{self.name}] {state.payment_id} not authenticated: mdStatus={md_status or '-'}")
            result = self.normalizer.normalize(
                VendorSignals(code=f"MDSTATUS_{md_status or 'MISSING'}"),
                payment_id=state.payment_id,
                transaction_id=iyzico_payment_id,
                order_id=state.payment_id,
                amount=state.amount,
                currency=state.currency,
                message="3D authentication failed",
                raw=dict(data),
            )
            return flow.finish(result)

        body = {"conversationId": conversation_id, "paymentId": iyzico_payment_id}
        if data.get("conversationData"):
            body["conversationData"] = data["conversationData"]
        try:
            parsed = await self.send(ctx, "threeDSAuthRequest", PATH_3D_AUTH, body)
            await self._remember_payment(ctx, parsed)
        except GatewayError:
            flow.fail()
            raise
        if parsed.succeeded:
            flow.advance(SessionState.PROVISIONED)
        result = self.normalize_response(
            parsed, payment_id=state.payment_id, amount=state.amount, currency=state.currency
        )
        return flow.finish(result)

    async def _iyzico_payment_id(self, ctx: CallContext, payment_id: str) -> str:
        return await ctx.field_from_log(self.name, payment_id, "paymentResult.paymentId")

    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        iyzico_payment_id = await self._iyzico_payment_id(ctx, request.payment_id)
        body = {"conversationId": request.conversation_id or request.payment_id, "paymentId": iyzico_payment_id}
        parsed = await self.send(ctx, "paymentDetailRequest", PATH_DETAIL, body, idempotent=True)
        if not parsed.succeeded or not parsed.payment_status:
            return self.normalize_response(parsed, payment_id=request.payment_id)
        return self.normalizer.normalize(
            VendorSignals(status_text=parsed.payment_status, status_map=PAYMENT_STATUS_MAP),
            payment_id=request.payment_id,
            transaction_id=parsed.payment_id,
            order_id=request.payment_id,
            raw=parsed.model_dump(by_alias=True, exclude_none=True),
        )

    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        iyzico_payment_id = await self._iyzico_payment_id(ctx, request.payment_id)
        body: Dict[str, Any] = {
            "conversationId": request.conversation_id or request.payment_id,
            "paymentId": iyzico_payment_id,
            "ip": ctx.client_ip or "127.0.0.1",
        }
        if request.reason in CANCEL_REASONS:
            body["reason"] = request.reason
        if request.description or request.reason:
            body["description"] = request.description or request.reason
        parsed = await self.send(ctx, "cancelRequest", PATH_CANCEL, body, idempotent=True)
        return self.normalize_response(parsed, success_status=PaymentStatus.CANCELLED, payment_id=request.payment_id)

    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        transaction_id = await ctx.field_from_log(self.name, request.payment_id, "paymentResult.paymentTransactionId")
        body: Dict[str, Any] = {
            "conversationId": request.conversation_id or request.payment_id,
            "paymentTransactionId": transaction_id,
            "price": format_amount(request.refund_amount),
            "ip": ctx.client_ip or "127.0.0.1",
        }
        if request.currency:
            body["currency"] = request.currency
        parsed = await self.send(ctx, "refundRequest", PATH_REFUND, body, idempotent=True)
        result = self.normalize_response(
            parsed,
            success_status=PaymentStatus.REFUNDED,
            payment_id=request.payment_id,
            amount=request.refund_amount,
        )
        refund = self.refund_result(result, request)
        return refund.model_copy(update={"refund_id": parsed.first_transaction_id})

    async def get_installment_info(self, ctx: CallContext, request: InstallmentInquiry) -> InstallmentInfo:
        body: Dict[str, Any] = {
            "conversationId": request.conversation_id or generate_random_key(),
            "price": format_amount(request.amount),
        }
        if request.bin_number:
            body["binNumber"] = request.bin_number
        parsed = await self.send(ctx, "installmentRequest", PATH_INSTALLMENT, body, idempotent=True)
        raw = parsed.model_dump(by_alias=True, exclude_none=True)
        if not parsed.succeeded or not parsed.installment_details:
            return InstallmentInfo(
                success=False,
                bin_number=request.bin_number,
                message=parsed.error_message or "no installment plans returned",
                error_code=parsed.error_code or "NO_INSTALLMENT_DETAILS",
                provider_response=raw,
            )
        detail = parsed.installment_details[0]
        options = [
            InstallmentOption(
                installment_count=int(price["installmentNumber"]),
                installment_price=_decimal(price["installmentPrice"]),
                total_price=_decimal(price["totalPrice"]),
            )
            for price in detail.get("installmentPrices") or []
        ]
        return InstallmentInfo(
            success=True,
            bin_number=detail.get("binNumber") or request.bin_number,
            bank_name=detail.get("bankName"),
            card_association=detail.get("cardAssociation"),
            card_family=detail.get("cardFamilyName"),
            options=sorted(options, key=lambda o: o.installment_count),
            message="Installment plans retrieved",
            provider_response=raw,
        )
