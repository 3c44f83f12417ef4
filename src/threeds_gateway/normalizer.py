"""Mapping of vendor response signals onto the canonical status set."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .models import NormalizedResult, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass
class VendorSignals:
    """Raw signals extracted from one vendor response.

    Attributes:
        code: Explicit response/result code, if the vendor sent one.
        success_codes: Codes meaning the operation went through.
        status_text: Vendor status string (e.g. ``requires_action``).
        status_map: Vendor status string -> canonical status.
        success_flag: Boolean success indicator, if any.
        redirect_url: Redirect target for a 3-D or hosted page flow.
        html: Auto-submit page for a 3-D flow.
    """
    code: Optional[str] = None
    success_codes: FrozenSet[str] = field(default_factory=frozenset)
    status_text: Optional[str] = None
    status_map: Mapping[str, PaymentStatus] = field(default_factory=dict)
    success_flag: Optional[bool] = None
    redirect_url: Optional[str] = None
    html: Optional[str] = None


class ResponseNormalizer:
    """Fail-closed classifier for vendor responses.

    Precedence:
        1. an explicit response code beats any status string;
        2. a mapped status string;
        3. the boolean success flag;
        4. a redirect or HTML artifact turns any non-failure into Pending.

    Anything unknown or absent is Failed, never Successful.
    """

    def classify(
        self,
        signals: VendorSignals,
        success_status: PaymentStatus = PaymentStatus.SUCCESSFUL,
    ) -> PaymentStatus:
        """Return the canonical status for ``signals``.

        Args:
            signals: Extracted vendor signals.
            success_status: Status meaning success for this operation
                (CANCELLED for a cancel call, REFUNDED for a refund).
        """
        if signals.code is not None and signals.code != "":
            status = success_status if signals.code in signals.success_codes else PaymentStatus.FAILED
        elif signals.status_text:
            status = signals.status_map.get(signals.status_text)
            if status is None:
                logger.warning(f"Unmapped vendor status '{signals.status_text}', treating as failed")
                status = PaymentStatus.FAILED
        elif signals.success_flag is not None:
            status = success_status if signals.success_flag else PaymentStatus.FAILED
        else:
            status = PaymentStatus.FAILED

        if (signals.redirect_url or signals.html) and status not in (
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ):
            status = PaymentStatus.PENDING
        return status

    def normalize(
        self,
        signals: VendorSignals,
        *,
        success_status: PaymentStatus = PaymentStatus.SUCCESSFUL,
        payment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        message: Optional[str] = None,
        raw: Optional[Any] = None,
    ) -> NormalizedResult:
        """Build a :class:`NormalizedResult` from vendor signals."""
        status = self.classify(signals, success_status)
        failed = status == PaymentStatus.FAILED
        error_code = None
        if failed:
            error_code = signals.code or signals.status_text or "UNKNOWN"
        return NormalizedResult(
            success=not failed,
            status=status,
            payment_id=payment_id,
            transaction_id=transaction_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            message=message or _default_message(status),
            error_code=error_code,
            redirect_url=signals.redirect_url,
            html=signals.html,
            provider_response=raw,
        )

    def from_payload(self, payload: Dict[str, Any], **kwargs: Any) -> NormalizedResult:
        """Classify a generic payload with ``success``/``status``/``redirectUrl``/``html`` keys."""
        success = payload.get("success")
        signals = VendorSignals(
            code=payload.get("code"),
            success_codes=frozenset(kwargs.pop("success_codes", ())),
            status_text=payload.get("status"),
            status_map=kwargs.pop("status_map", {}),
            success_flag=success if isinstance(success, bool) else None,
            redirect_url=payload.get("redirectUrl") or payload.get("redirect_url"),
            html=payload.get("html"),
        )
        return self.normalize(signals, raw=payload, **kwargs)


def _default_message(status: PaymentStatus) -> str:
    return {
        PaymentStatus.SUCCESSFUL: "Payment successful",
        PaymentStatus.PENDING: "3D secure authentication required",
        PaymentStatus.PROCESSING: "Payment is being processed",
        PaymentStatus.CANCELLED: "Payment cancelled",
        PaymentStatus.REFUNDED: "Payment refunded",
        PaymentStatus.FAILED: "Payment failed",
    }[status]
