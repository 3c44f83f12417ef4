"""Shared JSON virtual-POS protocol used by Akbank and the Ziraat API.

Every request carries a ``terminal`` block, a fresh ``randomNumber`` and a
``requestDateTime``; the serialized body is signed with HMAC-SHA-512 and the
signature travels in the ``auth-hash`` header. The exact bytes that were
signed are the bytes sent.
"""

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import GatewayError, ValidationError
from ..models import (
    CancelRequest,
    NormalizedResult,
    PaymentRequest,
    PaymentStatus,
    RefundRequest,
    RefundResult,
    StatusRequest,
    to_minor_units,
)
from ..normalizer import VendorSignals
from ..signing import hmac_sha512_b64
from ..transport import TransportResponse, encode_json
from .base import CallContext, ProviderSession, SessionState

logger = logging.getLogger(__name__)

API_VERSION = "1.00"
CURRENCY_CODE_TRY = 949
SUCCESS_CODES = frozenset({"0000", "00"})

TXN_CODE_SALE = "1000"
TXN_CODE_CANCEL = "2000"
TXN_CODE_REFUND = "2100"

RANDOM_NUMBER_LENGTH = 128


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Terminal(_Wire):
    merchant_safe_id: str = Field(alias="merchantSafeId")
    terminal_safe_id: str = Field(alias="terminalSafeId")


class Card(_Wire):
    card_number: str = Field(alias="cardNumber")
    cvv2: str
    expire_date: str = Field(alias="expireDate")


class Reward(_Wire):
    ccb_reward_amount: int = Field(default=0, alias="ccbRewardAmount")
    pcb_reward_amount: int = Field(default=0, alias="pcbRewardAmount")
    xcb_reward_amount: int = Field(default=0, alias="xcbRewardAmount")


class Transaction(_Wire):
    amount: int
    currency_code: int = Field(default=CURRENCY_CODE_TRY, alias="currencyCode")
    moto_ind: Optional[int] = Field(default=None, alias="motoInd")
    install_count: Optional[int] = Field(default=None, alias="installCount")


class Order(_Wire):
    order_id: str = Field(alias="orderId")


class Customer(_Wire):
    email_address: Optional[str] = Field(default=None, alias="emailAddress")
    ip_address: str = Field(alias="ipAddress")


class VposRequest(_Wire):
    version: str = API_VERSION
    txn_code: str = Field(alias="txnCode")
    request_date_time: str = Field(alias="requestDateTime")
    random_number: str = Field(alias="randomNumber")
    terminal: Terminal
    card: Optional[Card] = None
    reward: Optional[Reward] = None
    transaction: Optional[Transaction] = None
    order: Optional[Order] = None
    customer: Optional[Customer] = None


class VposResponse(_Wire):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    resp_code: Optional[str] = Field(default=None, alias="respCode")
    resp_text: Optional[str] = Field(default=None, alias="respText")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    order_id: Optional[str] = Field(default=None, alias="orderId")
    order: Optional[Order] = None


def generate_request_datetime(now: Optional[datetime] = None) -> str:
    """``YYYY-MM-DDTHH:MM:SS.mmm``."""
    now = now or datetime.now()
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}"


def generate_random_number(length: int = RANDOM_NUMBER_LENGTH) -> str:
    return secrets.token_hex(length // 2)


def currency_code(currency: str) -> int:
    if currency.upper() != "TRY":
        raise ValidationError(f"unsupported currency: {currency}")
    return CURRENCY_CODE_TRY


class VirtualPosSession(ProviderSession):
    """Sale, cancel and refund over the JSON virtual-POS API.

    Subclasses set the endpoint URLs.
    """

    required_config = ("merchantSafeId", "terminalSafeId", "secretKey")
    # signed JSON straight to the bank, no card token step
    entry_states = frozenset({SessionState.PROVISIONED})
    sandbox_url: str = ""
    production_url: str = ""

    def __init__(self, config, http, normalizer=None):
        super().__init__(config, http, normalizer)
        self.merchant_safe_id = config.get("merchantSafeId")
        self.terminal_safe_id = config.get("terminalSafeId")
        self.secret_key = config.get("secretKey")
        self.api_url = self.production_url if self.is_production else self.sandbox_url

    def validate_request(self, request: PaymentRequest, is_3d: bool) -> None:
        super().validate_request(request, is_3d)
        if not request.customer.email:
            raise ValidationError("customer email is required", provider=self.name)
        currency_code(request.currency)

    def build_request(self, txn_code: str, **parts: Any) -> VposRequest:
        return VposRequest(
            txn_code=txn_code,
            request_date_time=generate_request_datetime(),
            random_number=generate_random_number(),
            terminal=Terminal(merchant_safe_id=self.merchant_safe_id, terminal_safe_id=self.terminal_safe_id),
            **parts,
        )

    async def send(
        self,
        ctx: CallContext,
        kind: str,
        body: VposRequest,
        idempotent: bool = False,
    ) -> TransportResponse:
        """Sign and send ``body``, recording it under ``kind`` first."""
        payload = body.model_dump(by_alias=True, exclude_none=True)
        content = encode_json(payload)
        await ctx.record(self.name, kind, payload)
        return await self.http.post_json(
            self.api_url,
            content,
            provider=self.name,
            headers={"auth-hash": hmac_sha512_b64(self.secret_key, content)},
            idempotent=idempotent,
        )

    def normalize_response(
        self,
        parsed: VposResponse,
        *,
        success_status: PaymentStatus = PaymentStatus.SUCCESSFUL,
        payment_id: Optional[str] = None,
        order_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> NormalizedResult:
        order_id = (parsed.order.order_id if parsed.order else None) or parsed.order_id or order_id
        return self.normalizer.normalize(
            VendorSignals(code=parsed.resp_code or "UNKNOWN", success_codes=SUCCESS_CODES),
            success_status=success_status,
            payment_id=payment_id or parsed.transaction_id or order_id,
            transaction_id=parsed.transaction_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            message=parsed.resp_text,
            raw=parsed.model_dump(by_alias=True, exclude_none=True),
        )

    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=False)
        card = request.card_info
        order_id = self.generate_order_id()
        body = self.build_request(
            TXN_CODE_SALE,
            card=Card(
                card_number=card.number,
                cvv2=card.cvv.get_secret_value(),
                expire_date=card.expire_month + card.expire_year_short,
            ),
            reward=Reward(),
            transaction=Transaction(
                amount=to_minor_units(request.amount),
                currency_code=currency_code(request.currency),
                moto_ind=0,
                install_count=max(request.installment_count, 1),
            ),
            order=Order(order_id=order_id),
            customer=Customer(
                email_address=request.customer.email,
                ip_address=request.customer.ip_address or ctx.client_ip or "127.0.0.1",
            ),
        )

        flow = self.new_flow(order_id)
        try:
            flow.advance(SessionState.PROVISIONED)
            response = await self.send(ctx, "saleRequest", body)
            parsed = self.parse_response(VposResponse, response)
        except GatewayError:
            flow.fail()
            raise
        result = self.normalize_response(
            parsed, order_id=order_id, amount=request.amount, currency=request.currency
        )
        return flow.finish(result)

    async def original_order_id(self, ctx: CallContext, payment_id: str) -> str:
        return await ctx.field_from_log(self.name, payment_id, "order.orderId")

    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        raise self.not_supported("payment status inquiry")

    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        order_id = await self.original_order_id(ctx, request.payment_id)
        body = self.build_request(TXN_CODE_CANCEL, order=Order(order_id=order_id))
        response = await self.send(ctx, "cancelRequest", body, idempotent=True)
        parsed = self.parse_response(VposResponse, response)
        return self.normalize_response(
            parsed,
            success_status=PaymentStatus.CANCELLED,
            payment_id=request.payment_id,
            order_id=order_id,
        )

    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        order_id = await self.original_order_id(ctx, request.payment_id)
        body = self.build_request(
            TXN_CODE_REFUND,
            order=Order(order_id=order_id),
            transaction=Transaction(
                amount=to_minor_units(request.refund_amount),
                currency_code=currency_code(request.currency or "TRY"),
            ),
        )
        response = await self.send(ctx, "refundRequest", body, idempotent=True)
        parsed = self.parse_response(VposResponse, response)
        result = self.normalize_response(
            parsed,
            success_status=PaymentStatus.REFUNDED,
            payment_id=request.payment_id,
            order_id=order_id,
            amount=request.refund_amount,
        )
        return self.refund_result(result, request)
