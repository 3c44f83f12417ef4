"""Payment service layer tying provider sessions to the audit log and persistence."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog, mask_sensitive
from .callbacks import CallbackStateStore
from .config import GatewaySettings
from .database import PaymentAttemptRepository
from .errors import GatewayError, SigningError, StateError, VendorDeclineError
from .models import (
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
    failed_result,
)
from .providers.base import CallContext, ProviderSession
from .providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

Result = Union[NormalizedResult, RefundResult]


@dataclass
class CallbackOutcome:
    """Result of a callback together with the context it was resolved from."""
    state: TransactionContext
    result: NormalizedResult
    replayed: bool = False


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PaymentService:
    """Runs provider operations with auditing and attempt tracking.

    Args:
        session: AsyncSession for the current request.
        registry: Configured provider sessions.
        settings: Gateway settings; defaults are used when omitted.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        settings: Optional[GatewaySettings] = None,
    ):
        self.session = session
        self.registry = registry
        self.settings = settings or GatewaySettings()
        self.audit = AuditLog(session)
        self.callbacks = CallbackStateStore(session, ttl_minutes=self.settings.callback_state_ttl_minutes)
        self.attempts = PaymentAttemptRepository(session)

    def _context(
        self,
        log_id: int,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
        phone_number: Optional[str] = None,
        environment: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> CallContext:
        return CallContext(
            log_id=log_id,
            tenant_id=tenant_id,
            client_ip=client_ip,
            phone_number=phone_number,
            environment=environment,
            session_id=session_id,
            audit=self.audit,
            callbacks=self.callbacks,
        )

    async def _run(
        self,
        provider: ProviderSession,
        log_id: int,
        call: Awaitable[Result],
        payment_id: Optional[str] = None,
        amount=None,
        currency: Optional[str] = None,
    ) -> Result:
        """Await a provider call and record its outcome on the audit row.

        Vendor declines in intermediate steps become Failed results. Other
        gateway errors are recorded and re-raised.
        """
        started = time.monotonic()
        try:
            result = await call
        except VendorDeclineError as e:
            logger.info(f"[{provider.name}] declined: {e.vendor_code} {e.message}")
            result = failed_result(
                e.message,
                error_code=e.vendor_code or e.code,
                payment_id=payment_id,
                amount=amount,
                currency=currency,
                provider_response=mask_sensitive(e.raw) if isinstance(e.raw, dict) else None,
            )
        except GatewayError as e:
            if isinstance(e, SigningError):
                logger.critical(f"[{provider.name}] signing failure: {e.message}")
            else:
                logger.warning(f"[{provider.name}] {e.code}: {e.message}")
            await self.audit.fail(log_id, e, _elapsed_ms(started))
            # keep the audit row even though the request fails
            await self.session.commit()
            raise
        await self.audit.close(log_id, result, _elapsed_ms(started))
        return result

    async def _track(self, provider: str, result: NormalizedResult, tenant_id: Optional[int], log_id: int, is_3d: Optional[bool] = None) -> None:
        if not result.payment_id:
            return
        await self.attempts.upsert(
            provider=provider,
            payment_id=result.payment_id,
            status=result.status.value,
            tenant_id=tenant_id,
            transaction_id=result.transaction_id,
            amount=result.amount,
            currency=result.currency,
            is_3d=is_3d,
            error_code=result.error_code,
            message=result.message,
            log_id=log_id,
            result=result.model_dump(mode="json", exclude={"html"}),
        )

    async def create_payment(
        self,
        provider: str,
        request: PaymentRequest,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> NormalizedResult:
        """Create a payment, using the 3-D flow when ``request.use_3d`` is set."""
        session = self.registry.get(provider, tenant_id)
        tenant_id = tenant_id if tenant_id is not None else request.tenant_id
        client_ip = request.client_ip or client_ip
        method = "create_3d_payment" if request.use_3d else "create_payment"
        log_id = await self.audit.open(
            provider=session.name,
            method=method,
            request=request.audit_payload(),
            endpoint=f"/v1/payments/{provider}",
            tenant_id=tenant_id,
            client_ip=client_ip,
        )
        ctx = self._context(
            log_id,
            tenant_id=tenant_id,
            client_ip=client_ip,
            phone_number=request.customer.phone_number,
            environment=request.environment,
        )
        call = session.create_3d_payment(ctx, request) if request.use_3d else session.create_payment(ctx, request)
        result = await self._run(
            session, log_id, call, payment_id=request.id, amount=request.amount, currency=request.currency
        )
        await self._track(session.name, result, tenant_id, log_id, is_3d=request.use_3d)
        logger.info(f"[{session.name}] {method} -> {result.status.value} ({result.payment_id or '-'})")
        return result

    async def complete_callback(
        self,
        provider: str,
        token: Optional[str],
        data: Mapping[str, str],
        client_ip: Optional[str] = None,
    ) -> CallbackOutcome:
        """Resolve a callback token and finish the 3-D payment it belongs to.

        A callback for a payment that already reached a terminal status replays
        the stored result instead of completing twice.

        Raises:
            StateError: For unknown or expired tokens, or a token issued for
                another provider.
        """
        state = await self.callbacks.resolve(token)
        if state.provider != provider.lower():
            raise StateError(
                f"Callback state belongs to '{state.provider}'",
                code="CALLBACK_PROVIDER_MISMATCH",
                provider=provider,
            )

        attempt = await self.attempts.get(state.provider, state.payment_id)
        if attempt is not None and PaymentStatus(attempt.status).is_terminal and attempt.result:
            logger.info(f"[{state.provider}] replaying {attempt.status} result for {state.payment_id}")
            return CallbackOutcome(state, NormalizedResult.model_validate(attempt.result), replayed=True)

        session = self.registry.get(state.provider, state.tenant_id)
        log_id = await self.audit.open(
            provider=session.name,
            method="complete_3d_payment",
            request={"callback": dict(data)},
            endpoint=f"/v1/callback/{provider}",
            tenant_id=state.tenant_id,
            payment_id=state.payment_id,
            client_ip=client_ip or state.client_ip,
        )
        ctx = self._context(
            log_id,
            tenant_id=state.tenant_id,
            client_ip=state.client_ip,
            environment=state.environment,
            session_id=state.session_id,
        )
        try:
            result = await self._run(
                session,
                log_id,
                session.complete_3d_payment(ctx, state, data),
                payment_id=state.payment_id,
                amount=state.amount,
                currency=state.currency,
            )
        except GatewayError as e:
            # lets the callback route still send the customer back to the merchant
            e.details.setdefault("payment_id", state.payment_id)
            e.details.setdefault("original_callback_url", state.original_callback_url)
            raise
        await self._track(session.name, result, state.tenant_id, log_id, is_3d=True)
        return CallbackOutcome(state, result)

    async def _follow_up(
        self,
        provider: str,
        method: str,
        payment_id: str,
        request: Dict[str, Any],
        tenant_id: Optional[int],
        client_ip: Optional[str],
    ):
        session = self.registry.get(provider, tenant_id)
        log_id = await self.audit.open(
            provider=session.name,
            method=method,
            request=request,
            endpoint=f"/v1/payments/{provider}/{payment_id}",
            tenant_id=tenant_id,
            payment_id=payment_id,
            client_ip=client_ip,
        )
        return session, log_id, self._context(log_id, tenant_id=tenant_id, client_ip=client_ip)

    async def get_payment_status(
        self,
        provider: str,
        request: StatusRequest,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> NormalizedResult:
        session, log_id, ctx = await self._follow_up(
            provider, "get_payment_status", request.payment_id, request.model_dump(mode="json"), tenant_id, client_ip
        )
        result = await self._run(session, log_id, session.get_payment_status(ctx, request), payment_id=request.payment_id)
        if result.success and await self.attempts.get(session.name, request.payment_id) is not None:
            await self._track(session.name, result, tenant_id, log_id)
        return result

    async def cancel_payment(
        self,
        provider: str,
        request: CancelRequest,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> NormalizedResult:
        session, log_id, ctx = await self._follow_up(
            provider, "cancel_payment", request.payment_id, request.model_dump(mode="json"), tenant_id, client_ip
        )
        result = await self._run(session, log_id, session.cancel_payment(ctx, request), payment_id=request.payment_id)
        if result.success:
            await self._track(session.name, result, tenant_id, log_id)
        logger.info(f"[{session.name}] cancel {request.payment_id} -> {result.status.value}")
        return result

    async def refund_payment(
        self,
        provider: str,
        request: RefundRequest,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> RefundResult:
        session, log_id, ctx = await self._follow_up(
            provider, "refund_payment", request.payment_id, request.model_dump(mode="json"), tenant_id, client_ip
        )
        result = await self._run(session, log_id, session.refund_payment(ctx, request), payment_id=request.payment_id)
        if isinstance(result, NormalizedResult):
            # a decline before the refund call reached the vendor
            result = session.refund_result(result, request)
        if result.success and result.status == PaymentStatus.REFUNDED:
            attempt = await self.attempts.get(session.name, request.payment_id)
            if attempt is not None:
                # replayed callbacks read this back as a NormalizedResult
                refunded = NormalizedResult(
                    success=True,
                    status=PaymentStatus.REFUNDED,
                    payment_id=request.payment_id,
                    transaction_id=attempt.transaction_id,
                    amount=attempt.amount,
                    currency=attempt.currency,
                    message=result.message,
                    provider_response=result.provider_response,
                )
                await self.attempts.upsert(
                    provider=session.name,
                    payment_id=request.payment_id,
                    status=PaymentStatus.REFUNDED.value,
                    message=result.message,
                    log_id=log_id,
                    result=refunded.model_dump(mode="json", exclude={"html"}),
                )
        logger.info(f"[{session.name}] refund {request.payment_id} -> {result.status.value}")
        return result

    async def _inquire(
        self,
        provider: str,
        method: str,
        endpoint: str,
        request: Union[InstallmentInquiry, CommissionRequest],
        tenant_id: Optional[int],
        client_ip: Optional[str],
    ) -> Union[InstallmentInfo, CommissionResult]:
        """Run a read-only inquiry with its own audit row.

        Nothing is tracked as a payment attempt. Errors, vendor declines
        included, are recorded and re-raised.
        """
        session = self.registry.get(provider, tenant_id)
        log_id = await self.audit.open(
            provider=session.name,
            method=method,
            request=request.model_dump(mode="json"),
            endpoint=endpoint,
            tenant_id=tenant_id,
            client_ip=client_ip,
        )
        ctx = self._context(log_id, tenant_id=tenant_id, client_ip=client_ip)
        started = time.monotonic()
        try:
            result = await getattr(session, method)(ctx, request)
        except GatewayError as e:
            logger.warning(f"[{session.name}] {method} {e.code}: {e.message}")
            await self.audit.fail(log_id, e, _elapsed_ms(started))
            await self.session.commit()
            raise
        await self.audit.close(log_id, result, _elapsed_ms(started))
        return result

    async def get_installment_info(
        self,
        provider: str,
        request: InstallmentInquiry,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> InstallmentInfo:
        return await self._inquire(
            provider, "get_installment_info", f"/v1/payments/{provider}/installments", request, tenant_id, client_ip
        )

    async def get_commission(
        self,
        provider: str,
        request: CommissionRequest,
        tenant_id: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> CommissionResult:
        return await self._inquire(
            provider, "get_commission", f"/v1/payments/{provider}/commission", request, tenant_id, client_ip
        )

    async def validate_webhook(
        self,
        provider: str,
        data: Mapping[str, Any],
        headers: Mapping[str, str],
        body: bytes = b"",
        tenant_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        session = self.registry.get(provider, tenant_id)
        return session.validate_webhook(data, headers, body=body)
