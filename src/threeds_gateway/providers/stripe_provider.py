"""Stripe PaymentIntents through the official ``stripe`` SDK.

The SDK is synchronous, so each call runs in a worker thread with the key
passed per call; no module-level ``stripe.api_key`` is set.
"""

import asyncio
import logging
import os
from functools import partial
from typing import Any, Dict, Mapping, Optional

import stripe

from ..errors import GatewayError, TransportError, ValidationError
from ..models import (
    CancelRequest,
    NormalizedResult,
    PaymentRequest,
    PaymentStatus,
    RefundRequest,
    RefundResult,
    StatusRequest,
    TransactionContext,
    to_minor_units,
)
from ..normalizer import VendorSignals
from .base import CallContext, ProviderSession, SessionState

logger = logging.getLogger(__name__)

INTENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.SUCCESSFUL,
    "requires_action": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "canceled": PaymentStatus.CANCELLED,
    "requires_payment_method": PaymentStatus.FAILED,
}

REFUND_STATUS_MAP: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}

CANCELLATION_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer", "abandoned"})
REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


def redirect_url_of(intent: Mapping[str, Any]) -> Optional[str]:
    next_action = intent.get("next_action") or {}
    return (next_action.get("redirect_to_url") or {}).get("url")


class StripeSession(ProviderSession):
    """Stripe provider session."""

    name = "stripe"
    required_config = ("secretKey",)
    # the PaymentIntent stands in for the card token
    entry_states = frozenset({SessionState.PROVISIONED, SessionState.SESSION_OPENED})

    def __init__(self, config, http, normalizer=None):
        # STRIPE_API_KEY is still honoured for single-account deployments
        self.api_key = config.get("secretKey") or os.getenv("STRIPE_API_KEY", "")
        self.webhook_secret = config.get("webhookSecret") or os.getenv("STRIPE_WEBHOOK_SECRET", "")
        super().__init__(config, http, normalizer)

    def validate_config(self) -> None:
        if not self.api_key:
            raise ValidationError(
                "stripe: missing required configuration: secretKey",
                code="MISSING_CONFIG",
                provider=self.name,
            )

    async def _call(self, fn, *args: Any, **params: Any) -> Dict[str, Any]:
        """Run one SDK call off the event loop and return the object as a dict.

        Raises:
            TransportError: If Stripe could not be reached.
            stripe.StripeError: For any error Stripe answered with.
        """
        try:
            obj = await asyncio.to_thread(partial(fn, *args, api_key=self.api_key, **params))
        except stripe.APIConnectionError as e:
            raise TransportError(
                f"Request to stripe failed: {e.user_message or e}",
                retryable=True,
                provider=self.name,
            ) from e
        return obj.to_dict()

    def _error_result(self, error: stripe.StripeError, payment_id: Optional[str] = None, **kwargs: Any) -> NormalizedResult:
        logger.warning(f"[{self.name}] Stripe error for {payment_id or '-'}: {error.code or type(error).__name__}")
        return self.normalizer.normalize(
            VendorSignals(code=error.code or "STRIPE_ERROR"),
            payment_id=payment_id,
            message=error.user_message or str(error),
            raw=error.json_body or {"error": str(error)},
            **kwargs,
        )

    def normalize_intent(self, intent: Dict[str, Any], **kwargs: Any) -> NormalizedResult:
        status_text = intent.get("status")
        redirect_url = redirect_url_of(intent) if status_text in ("requires_action", "requires_confirmation") else None
        error = intent.get("last_payment_error") or {}
        result = self.normalizer.normalize(
            VendorSignals(status_text=status_text, status_map=INTENT_STATUS_MAP, redirect_url=redirect_url),
            payment_id=intent.get("id"),
            transaction_id=intent.get("latest_charge"),
            order_id=(intent.get("metadata") or {}).get("reference_id"),
            message=error.get("message"),
            raw=intent,
            **kwargs,
        )
        if not result.success and error.get("code"):
            result = result.model_copy(update={"error_code": error["code"]})
        return result

    def build_intent_params(self, request: PaymentRequest, force_3d: bool) -> Dict[str, Any]:
        card = request.card_info
        customer = request.customer
        billing: Dict[str, Any] = {"name": customer.full_name or card.card_holder_name or None, "email": customer.email}
        if customer.address and customer.address.address:
            billing["address"] = {
                "line1": customer.address.address,
                "city": customer.address.city,
                "country": customer.address.country,
                "postal_code": customer.address.zip_code,
            }
        metadata = {"reference_id": request.reference_id or request.id or ""}
        if request.conversation_id:
            metadata["conversation_id"] = request.conversation_id
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency.lower(),
            "payment_method_data": {
                "type": "card",
                "card": {
                    "number": card.number,
                    "exp_month": int(card.expire_month),
                    "exp_year": int(card.expire_year),
                    "cvc": card.cvv.get_secret_value(),
                },
                "billing_details": {k: v for k, v in billing.items() if v},
            },
            "capture_method": "automatic",
            "payment_method_options": {
                "card": {"request_three_d_secure": "any" if force_3d else "automatic"},
            },
            "metadata": metadata,
        }
        if request.description:
            params["description"] = request.description
        return params

    async def _create_intent(self, ctx: CallContext, request: PaymentRequest, force_3d: bool) -> Dict[str, Any]:
        params = self.build_intent_params(request, force_3d)
        # card data is never written to the audit log
        await ctx.record(
            self.name,
            "paymentIntentRequest",
            {k: v for k, v in params.items() if k != "payment_method_data"},
        )
        return await self._call(stripe.PaymentIntent.create, **params)

    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=False)
        flow = self.new_flow()
        try:
            intent = await self._create_intent(ctx, request, force_3d=False)
            flow.payment_id = intent["id"]
            flow.advance(SessionState.PROVISIONED)
            intent = await self._call(stripe.PaymentIntent.confirm, intent["id"])
        except stripe.StripeError as e:
            flow.fail()
            return self._error_result(
                e, payment_id=flow.payment_id, amount=request.amount, currency=request.currency
            )
        except GatewayError:
            flow.fail()
            raise
        result = self.normalize_intent(intent, amount=request.amount, currency=request.currency)
        return flow.finish(result)

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        self.validate_request(request, is_3d=True)
        flow = self.new_flow()
        try:
            intent = await self._create_intent(ctx, request, force_3d=True)
            flow.payment_id = intent["id"]
            flow.advance(SessionState.SESSION_OPENED)
            gateway_callback = await self.park_context(ctx, request, intent["id"])
            await ctx.record(self.name, "confirmRequest", {"paymentIntent": intent["id"], "return_url": gateway_callback})
            intent = await self._call(stripe.PaymentIntent.confirm, intent["id"], return_url=gateway_callback)
        except stripe.StripeError as e:
            flow.fail()
            return self._error_result(
                e, payment_id=flow.payment_id, amount=request.amount, currency=request.currency
            )
        except GatewayError:
            flow.fail()
            raise

        result = self.normalize_intent(intent, amount=request.amount, currency=request.currency)
        if result.status == PaymentStatus.PENDING:
            flow.advance(SessionState.AWAITING_AUTHENTICATION)
        return flow.finish(result)

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        intent_id = data.get("payment_intent") or state.payment_id
        if intent_id != state.payment_id:
            raise ValidationError("payment_intent does not match the stored payment", provider=self.name)

        flow = self.resume_flow(state.payment_id)
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, intent_id)
        except stripe.StripeError as e:
            flow.fail()
            return self._error_result(e, payment_id=state.payment_id, amount=state.amount, currency=state.currency)
        except GatewayError:
            flow.fail()
            raise
        if intent.get("status") == "succeeded":
            flow.advance(SessionState.PROVISIONED)
        result = self.normalize_intent(intent, amount=state.amount, currency=state.currency)
        return flow.finish(result)

    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, request.payment_id)
        except stripe.StripeError as e:
            return self._error_result(e, payment_id=request.payment_id)
        return self.normalize_intent(intent)

    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        params = {}
        if request.reason in CANCELLATION_REASONS:
            params["cancellation_reason"] = request.reason
        await ctx.record(self.name, "cancelRequest", {"paymentIntent": request.payment_id, **params})
        try:
            intent = await self._call(stripe.PaymentIntent.cancel, request.payment_id, **params)
        except stripe.StripeError as e:
            return self._error_result(e, payment_id=request.payment_id)
        return self.normalize_intent(intent)

    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        params: Dict[str, Any] = {
            "payment_intent": request.payment_id,
            "amount": to_minor_units(request.refund_amount),
        }
        if request.reason in REFUND_REASONS:
            params["reason"] = request.reason
        if request.description:
            params["metadata"] = {"description": request.description}
        await ctx.record(self.name, "refundRequest", params)
        try:
            refund = await self._call(stripe.Refund.create, **params)
        except stripe.StripeError as e:
            result = self._error_result(e, payment_id=request.payment_id)
        else:
            result = self.normalizer.normalize(
                VendorSignals(status_text=refund.get("status"), status_map=REFUND_STATUS_MAP),
                success_status=PaymentStatus.REFUNDED,
                payment_id=request.payment_id,
                transaction_id=refund.get("id"),
                amount=request.refund_amount,
                message=refund.get("failure_reason"),
                raw=refund,
            )
        return self.refund_result(result, request)

    def validate_webhook(
        self,
        data: Mapping[str, Any],
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> Dict[str, Any]:
        """Verify the ``Stripe-Signature`` header over the raw body.

        Raises:
            ValidationError: ``INVALID_SIGNATURE`` if the header is missing or wrong,
                ``MISSING_CONFIG`` if no webhook secret is configured.
        """
        if not self.webhook_secret:
            raise ValidationError(
                "stripe: webhook secret is not configured", code="MISSING_CONFIG", provider=self.name
            )
        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature") or ""
        try:
            event = stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise ValidationError(
                "Invalid webhook signature", code="INVALID_SIGNATURE", provider=self.name
            ) from e
        return {"type": event["type"], "provider": self.name, "payload": event.to_dict()}
