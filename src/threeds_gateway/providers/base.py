"""Provider session interface and the 3-D state machine shared by all vendors."""

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Type, TypeVar, TYPE_CHECKING

from pydantic import BaseModel, ValidationError as SchemaError

from ..callbacks import callback_url
from ..config import ProviderConfig
from ..errors import StateError, TransportError, ValidationError
from ..models import (
    CancelRequest,
    CommissionRequest,
    CommissionResult,
    InstallmentInfo,
    InstallmentInquiry,
    NormalizedResult,
    PaymentRequest,
    PaymentStatus,
    RefundRequest,
    RefundResult,
    StatusRequest,
    TransactionContext,
    to_minor_units,
)
from ..normalizer import ResponseNormalizer
from ..transport import ProviderHTTPClient, TransportResponse

if TYPE_CHECKING:
    from ..audit import AuditLog
    from ..callbacks import CallbackStateStore

logger = logging.getLogger(__name__)

WireModel = TypeVar("WireModel", bound=BaseModel)


@dataclass(frozen=True)
class CallContext:
    """Per-call state handed to every provider method.

    Provider sessions are long-lived and shared between requests, so nothing
    about the current call is ever stored on them.
    """
    log_id: Optional[int] = None
    tenant_id: Optional[int] = None
    client_ip: Optional[str] = None
    phone_number: Optional[str] = None
    environment: Optional[str] = None
    session_id: Optional[str] = None
    audit: Optional["AuditLog"] = None
    callbacks: Optional["CallbackStateStore"] = None

    async def record(self, provider: str, kind: str, payload: Any) -> None:
        """Add a signed outbound request to this call's audit row."""
        if self.audit is not None:
            await self.audit.record(provider, kind, payload, self.log_id)

    async def field_from_log(self, provider: str, payment_id: str, field: str) -> str:
        if self.audit is None:
            raise StateError(
                f"No audit log available to recover '{field}'",
                code="REFERENCE_NOT_FOUND",
                provider=provider,
            )
        return await self.audit.field_from_log(provider, payment_id, field)

    async def field_from_log_id(self, provider: str, log_id: Optional[int], field: str) -> str:
        if self.audit is None or log_id is None:
            raise StateError(
                f"No audit log available to recover '{field}'",
                code="REFERENCE_NOT_FOUND",
                provider=provider,
            )
        return await self.audit.field_from_log_id(provider, log_id, field)


class SessionState(str, enum.Enum):
    INITIATED = "initiated"
    TOKEN_ACQUIRED = "token_acquired"
    SESSION_OPENED = "session_opened"
    AWAITING_AUTHENTICATION = "awaiting_authentication"
    AUTHENTICATION_RECEIVED = "authentication_received"
    PROVISIONED = "provisioned"
    TERMINAL = "terminal"


# Terminal is reachable from every other state (any step may fail).
LEGAL_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.INITIATED: frozenset({SessionState.TOKEN_ACQUIRED}),
    SessionState.TOKEN_ACQUIRED: frozenset({
        SessionState.SESSION_OPENED,
        SessionState.PROVISIONED,
    }),
    SessionState.SESSION_OPENED: frozenset({SessionState.AWAITING_AUTHENTICATION}),
    SessionState.AWAITING_AUTHENTICATION: frozenset({SessionState.AUTHENTICATION_RECEIVED}),
    SessionState.AUTHENTICATION_RECEIVED: frozenset({SessionState.PROVISIONED}),
    SessionState.PROVISIONED: frozenset(),
    SessionState.TERMINAL: frozenset(),
}


class SessionFlow:
    """Tracks one payment through the token/session/authenticate/capture steps.

    Args:
        provider: Provider key, for logging.
        payment_id: Payment identifier, once known.
        state: Starting state. Completion resumes at ``AWAITING_AUTHENTICATION``.
        entry_states: States reachable from ``INITIATED``. Vendors that never
            exchange the card for a token (hosted pages, signed form posts,
            direct bank APIs) name the step they start at instead of
            ``TOKEN_ACQUIRED``.
    """

    def __init__(
        self,
        provider: str,
        payment_id: Optional[str] = None,
        state: SessionState = SessionState.INITIATED,
        entry_states: Optional[FrozenSet[SessionState]] = None,
    ):
        self.provider = provider
        self.payment_id = payment_id
        self.state = state
        self.entry_states = entry_states or LEGAL_TRANSITIONS[SessionState.INITIATED]
        self.outcome: Optional[PaymentStatus] = None
        self.transitions: List[Tuple[SessionState, SessionState]] = []

    def advance(self, target: SessionState) -> None:
        """Move to ``target``.

        Raises:
            StateError: If the transition is not allowed from the current state.
        """
        if target == SessionState.TERMINAL:
            allowed = self.state != SessionState.TERMINAL
        elif self.state == SessionState.INITIATED:
            allowed = target in self.entry_states
        else:
            allowed = target in LEGAL_TRANSITIONS[self.state]
        if not allowed:
            raise StateError(
                f"Illegal transition {self.state.value} -> {target.value}",
                code="ILLEGAL_TRANSITION",
                provider=self.provider,
            )
        logger.debug(f"[{self.provider}] {self.payment_id or '-'}: {self.state.value} -> {target.value}")
        self.transitions.append((self.state, target))
        self.state = target

    def finish(self, result: NormalizedResult) -> NormalizedResult:
        """Close the flow with ``result`` unless it is waiting on the bank."""
        if result.status != PaymentStatus.PENDING and self.state != SessionState.TERMINAL:
            self.advance(SessionState.TERMINAL)
            self.outcome = result.status
        return result

    def fail(self) -> None:
        if self.state != SessionState.TERMINAL:
            self.advance(SessionState.TERMINAL)
            self.outcome = PaymentStatus.FAILED


class ProviderSession(ABC):
    """Interface every vendor integration implements.

    Sessions are built once at startup from a :class:`ProviderConfig` and the
    shared HTTP client. Everything about a single call arrives in the
    :class:`CallContext`.
    """

    name: str = ""
    required_config: Tuple[str, ...] = ()
    requires_card: bool = True
    entry_states: FrozenSet[SessionState] = frozenset({SessionState.TOKEN_ACQUIRED})

    def __init__(
        self,
        config: ProviderConfig,
        http: ProviderHTTPClient,
        normalizer: Optional[ResponseNormalizer] = None,
    ):
        self.config = config
        self.http = http
        self.normalizer = normalizer or ResponseNormalizer()
        self.validate_config()

    @property
    def is_production(self) -> bool:
        return self.config.is_production

    def validate_config(self) -> None:
        """Raise if a required credential is missing.

        Raises:
            ValidationError: ``MISSING_CONFIG`` naming the missing keys.
        """
        missing = [key for key in self.required_config if not self.config.get(key)]
        if missing:
            raise ValidationError(
                f"{self.name}: missing required configuration: {', '.join(missing)}",
                code="MISSING_CONFIG",
                provider=self.name,
            )

    def validate_request(self, request: PaymentRequest, is_3d: bool) -> None:
        """Reject malformed requests before any network call.

        Raises:
            ValidationError: On the first problem found.
        """
        if request.amount <= 0:
            raise ValidationError("amount must be greater than 0", provider=self.name)
        if not request.currency:
            raise ValidationError("currency is required", provider=self.name)
        if self.requires_card:
            card = request.card_info
            if card is None or not card.number:
                raise ValidationError("card number is required", provider=self.name)
            if not card.expire_month or not card.expire_year:
                raise ValidationError("card expiry date is required", provider=self.name)
            if not card.cvv.get_secret_value():
                raise ValidationError("card CVV is required", provider=self.name)
        if is_3d and not request.callback_url:
            raise ValidationError("callback URL is required for 3D payments", provider=self.name)

    def new_flow(self, payment_id: Optional[str] = None) -> SessionFlow:
        return SessionFlow(self.name, payment_id, entry_states=self.entry_states)

    def resume_flow(self, payment_id: str) -> SessionFlow:
        """Flow for a completion call, picking up where the redirect left off."""
        flow = SessionFlow(self.name, payment_id, SessionState.AWAITING_AUTHENTICATION)
        flow.advance(SessionState.AUTHENTICATION_RECEIVED)
        return flow

    async def park_context(
        self,
        ctx: CallContext,
        request: PaymentRequest,
        payment_id: str,
        session_id: Optional[str] = None,
    ) -> str:
        """Store the transaction context for the bank round trip.

        Returns:
            The gateway callback URL carrying the opaque state token.

        Raises:
            StateError: If the call has no callback store.
        """
        if ctx.callbacks is None:
            raise StateError("No callback store for 3D payment", code="CALLBACK_STORE_MISSING", provider=self.name)
        state = TransactionContext(
            tenant_id=ctx.tenant_id,
            provider=self.name,
            payment_id=payment_id,
            amount=request.amount,
            currency=request.currency,
            environment=ctx.environment or self.config.environment,
            client_ip=ctx.client_ip,
            original_callback_url=request.callback_url,
            log_id=ctx.log_id,
            session_id=session_id,
            installment_count=request.installment_count,
            conversation_id=request.conversation_id,
        )
        token = await ctx.callbacks.create(state)
        return callback_url(self.config.callback_base_url, self.name, token)

    @staticmethod
    def generate_order_id(prefix: str = "") -> str:
        return f"{prefix}{uuid.uuid4().hex[:20].upper()}"

    @abstractmethod
    async def create_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        """Charge a card without 3-D authentication."""
        raise NotImplementedError

    @abstractmethod
    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        """Start a 3-D payment and return a Pending result carrying the redirect artifact."""
        raise NotImplementedError

    @abstractmethod
    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        """Finish a 3-D payment from the fields the bank posted back."""
        raise NotImplementedError

    @abstractmethod
    async def get_payment_status(self, ctx: CallContext, request: StatusRequest) -> NormalizedResult:
        raise NotImplementedError

    @abstractmethod
    async def cancel_payment(self, ctx: CallContext, request: CancelRequest) -> NormalizedResult:
        raise NotImplementedError

    @abstractmethod
    async def refund_payment(self, ctx: CallContext, request: RefundRequest) -> RefundResult:
        raise NotImplementedError

    async def get_installment_info(self, ctx: CallContext, request: InstallmentInquiry) -> InstallmentInfo:
        """Installment plans the vendor offers for a card and amount.

        Raises:
            ValidationError: ``NOT_SUPPORTED`` unless overridden.
        """
        raise self.not_supported("installment inquiry")

    async def get_commission(self, ctx: CallContext, request: CommissionRequest) -> CommissionResult:
        """Commission for one installment plan, read off the installment table."""
        info = await self.get_installment_info(
            ctx,
            InstallmentInquiry(
                amount=request.amount,
                bin_number=request.bin_number,
                currency=request.currency,
                conversation_id=request.conversation_id,
            ),
        )
        return commission_from_installments(info, request)

    def validate_webhook(
        self,
        data: Mapping[str, Any],
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> Dict[str, Any]:
        """Verify an inbound webhook and return its payload.

        Vendors without a verifiable signature scheme are rejected.

        Raises:
            ValidationError: ``NOT_SUPPORTED`` unless overridden.
        """
        raise ValidationError(
            f"{self.name} does not offer verifiable webhooks",
            code="NOT_SUPPORTED",
            provider=self.name,
        )

    def parse_response(self, model: Type[WireModel], response: TransportResponse) -> WireModel:
        """Parse a vendor body into its typed wire model.

        Raises:
            TransportError: If the body is not JSON or does not fit the model.
        """
        data = response.json()
        try:
            return model.model_validate(data)
        except SchemaError as e:
            raise TransportError(
                f"Unexpected {self.name} response (HTTP {response.status_code})",
                retryable=False,
                status_code=response.status_code,
                provider=self.name,
            ) from e

    def not_supported(self, operation: str) -> ValidationError:
        return ValidationError(
            f"{self.name} does not support {operation}",
            code="NOT_SUPPORTED",
            provider=self.name,
        )

    def refund_result(self, result: NormalizedResult, request: RefundRequest) -> RefundResult:
        """Reshape a normalized refund response."""
        return RefundResult(
            success=result.success,
            status=result.status,
            refund_id=result.transaction_id,
            payment_id=request.payment_id,
            refund_amount=request.refund_amount,
            message=result.message,
            error_code=result.error_code,
            provider_response=result.provider_response,
        )


def kurus(amount: Decimal) -> str:
    """Minor-unit amount as a string, e.g. ``Decimal("100.50")`` -> ``"10050"``."""
    return str(to_minor_units(amount))


def commission_from_installments(info: InstallmentInfo, request: CommissionRequest) -> CommissionResult:
    """Difference between the plan's total price and the amount asked for."""
    base = {"amount": request.amount, "installment_count": request.installment_count}
    if not info.success:
        return CommissionResult(
            success=False,
            message=info.message,
            error_code=info.error_code,
            provider_response=info.provider_response,
            **base,
        )
    option = next((o for o in info.options if o.installment_count == request.installment_count), None)
    if option is None:
        return CommissionResult(
            success=False,
            message=f"{request.installment_count} installments are not offered for this card",
            error_code="INSTALLMENT_NOT_OFFERED",
            provider_response=info.provider_response,
            **base,
        )
    commission = option.total_price - request.amount
    rate = (commission * 100 / request.amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return CommissionResult(
        success=True,
        installment_amount=option.installment_price,
        total_amount=option.total_price,
        commission_amount=commission,
        commission_rate=rate,
        message="Commission calculated",
        provider_response=info.provider_response,
        **base,
    )
