"""Repository layer for database operations."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DEFAULT_CALLBACK_TTL_MINUTES
from ..models import utcnow
from .models import CallbackState, ProviderLog, PaymentAttempt

logger = logging.getLogger(__name__)


class CallbackStateRepository:
    """Repository for CallbackState CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        token: str,
        provider: str,
        payment_id: str,
        context_json: str,
        tenant_id: Optional[int] = None,
        ttl_minutes: int = DEFAULT_CALLBACK_TTL_MINUTES,
    ) -> CallbackState:
        """Persist a new callback state.

        Args:
            token: Opaque bearer token.
            provider: Provider key.
            payment_id: Provider-side payment identifier.
            context_json: Serialized transaction context.
            tenant_id: Optional tenant identifier.
            ttl_minutes: Time-to-live in minutes.

        Returns:
            Created CallbackState instance.
        """
        now = utcnow()
        state = CallbackState(
            token=token,
            provider=provider,
            payment_id=payment_id,
            tenant_id=tenant_id,
            context_json=context_json,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
        self.session.add(state)
        await self.session.flush()

        logger.debug(f"Stored callback state for {provider} payment {payment_id}")
        return state

    async def get_by_token(self, token: str) -> Optional[CallbackState]:
        """Get a callback state by its token.

        Args:
            token: The opaque token.

        Returns:
            CallbackState instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(CallbackState).where(CallbackState.token == token)
        )
        return result.scalar_one_or_none()

    async def mark_resolved(self, state: CallbackState) -> CallbackState:
        """Record a resolution without consuming the state."""
        state.resolve_count = (state.resolve_count or 0) + 1
        state.last_resolved_at = utcnow()
        await self.session.flush()
        return state

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired callback states.

        Returns:
            Number of deleted records.
        """
        result = await self.session.execute(
            delete(CallbackState).where(CallbackState.expires_at < (now or utcnow()))
        )
        await self.session.flush()
        return result.rowcount


class ProviderLogRepository:
    """Repository for ProviderLog CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        provider: str,
        method: str,
        request: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
        tenant_id: Optional[int] = None,
        payment_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> ProviderLog:
        """Create a new log row for a gateway call.

        Returns:
            Created ProviderLog instance.
        """
        log = ProviderLog(
            provider=provider,
            method=method,
            endpoint=endpoint,
            tenant_id=tenant_id,
            payment_id=payment_id,
            client_ip=client_ip,
        )
        log.request = request or {}
        self.session.add(log)
        await self.session.flush()

        logger.debug(f"Created provider log {log.id} for {provider}.{method}")
        return log

    async def get_by_id(self, log_id: int) -> Optional[ProviderLog]:
        result = await self.session.execute(
            select(ProviderLog).where(ProviderLog.id == log_id)
        )
        return result.scalar_one_or_none()

    async def merge_request(self, log: ProviderLog, key: str, payload: Any) -> ProviderLog:
        """Merge ``payload`` into the row's request JSON under ``key``.

        Args:
            log: ProviderLog instance to update.
            key: Top-level key the payload is stored under.
            payload: JSON serializable payload.

        Returns:
            Updated ProviderLog instance.
        """
        request = log.request
        request[key] = payload
        log.request = request
        log.updated_at = utcnow()
        await self.session.flush()
        return log

    async def update_response(
        self,
        log: ProviderLog,
        response: Optional[Dict[str, Any]] = None,
        payment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        status: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        processing_ms: Optional[int] = None,
    ) -> ProviderLog:
        """Store the outcome of a gateway call.

        Returns:
            Updated ProviderLog instance.
        """
        if response is not None:
            log.response = response
        if payment_id:
            log.payment_id = payment_id
        if transaction_id:
            log.transaction_id = transaction_id
        if status:
            log.status = status
        if error_code:
            log.error_code = error_code
        if error_message:
            log.error_message = error_message
        if processing_ms is not None:
            log.processing_ms = processing_ms
        log.updated_at = utcnow()

        await self.session.flush()
        return log

    async def list_by_payment_id(
        self,
        provider: str,
        payment_id: str,
        limit: int = 20,
    ) -> List[ProviderLog]:
        """List log rows for a payment, newest first.

        Args:
            provider: Provider key.
            payment_id: Provider-side payment identifier.
            limit: Maximum number of results.

        Returns:
            List of ProviderLog instances.
        """
        result = await self.session.execute(
            select(ProviderLog)
            .where(
                and_(
                    ProviderLog.provider == provider,
                    ProviderLog.payment_id == payment_id,
                )
            )
            .order_by(ProviderLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class PaymentAttemptRepository:
    """Repository for PaymentAttempt CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, provider: str, payment_id: str) -> Optional[PaymentAttempt]:
        """Get a payment attempt by provider and payment ID.

        Returns:
            PaymentAttempt instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(PaymentAttempt).where(
                and_(
                    PaymentAttempt.provider == provider,
                    PaymentAttempt.payment_id == payment_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        provider: str,
        payment_id: str,
        status: str,
        tenant_id: Optional[int] = None,
        transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        is_3d: Optional[bool] = None,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        log_id: Optional[int] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> PaymentAttempt:
        """Create the attempt or move an existing one to ``status``.

        Returns:
            The created or updated PaymentAttempt instance.
        """
        attempt = await self.get(provider, payment_id)
        if attempt is None:
            attempt = PaymentAttempt(
                provider=provider,
                payment_id=payment_id,
                tenant_id=tenant_id,
                status=status,
                is_3d=bool(is_3d),
            )
            self.session.add(attempt)
        else:
            logger.info(
                f"Payment attempt {provider}/{payment_id}: {attempt.status} -> {status}"
            )
            attempt.status = status
            if is_3d is not None:
                attempt.is_3d = is_3d

        if transaction_id:
            attempt.transaction_id = transaction_id
        if amount is not None:
            attempt.amount = amount
        if currency:
            attempt.currency = currency
        attempt.error_code = error_code
        if message:
            attempt.message = message
        if log_id is not None:
            attempt.log_id = log_id
        if result is not None:
            attempt.result = result
        attempt.updated_at = utcnow()

        await self.session.flush()
        return attempt
