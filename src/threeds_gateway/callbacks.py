"""Server-side state that survives the customer's trip to the bank's 3-D page."""

import logging
import secrets
from typing import Optional
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from .config import DEFAULT_CALLBACK_TTL_MINUTES
from .database.repository import CallbackStateRepository
from .errors import StateError
from .models import TransactionContext, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


def callback_url(base_url: str, provider: str, token: str) -> str:
    """Gateway URL the bank returns the browser to."""
    return f"{base_url.rstrip('/')}/v1/callback/{quote(provider)}?state={quote(token)}"


class CallbackStateStore:
    """Binds an opaque token to a :class:`TransactionContext`.

    Tokens come from :func:`secrets.token_urlsafe`, so they cannot be guessed or
    enumerated. Resolution is a read: a browser replaying the callback gets the
    same context back, and duplicate completion is handled by the caller.

    Args:
        session: AsyncSession used for persistence.
        ttl_minutes: Lifetime of a stored context.
    """

    def __init__(self, session: AsyncSession, ttl_minutes: int = DEFAULT_CALLBACK_TTL_MINUTES):
        self.repository = CallbackStateRepository(session)
        self.ttl_minutes = ttl_minutes

    async def create(self, ctx: TransactionContext) -> str:
        """Persist ``ctx`` and return the token addressing it."""
        token = secrets.token_urlsafe(TOKEN_BYTES)
        await self.repository.create(
            token=token,
            provider=ctx.provider,
            payment_id=ctx.payment_id,
            context_json=ctx.model_dump_json(),
            tenant_id=ctx.tenant_id,
            ttl_minutes=self.ttl_minutes,
        )
        logger.info(f"[{ctx.provider}] parked context for payment {ctx.payment_id}")
        return token

    async def resolve(self, token: Optional[str]) -> TransactionContext:
        """Return the context stored under ``token``.

        Raises:
            StateError: ``CALLBACK_NOT_FOUND`` for unknown tokens and
                ``CALLBACK_EXPIRED`` once the TTL has passed.
        """
        state = await self.repository.get_by_token(token) if token else None
        if state is None:
            raise StateError("Unknown callback state", code="CALLBACK_NOT_FOUND")
        if state.is_expired(utcnow()):
            logger.warning(f"[{state.provider}] callback state for payment {state.payment_id} expired")
            expired = TransactionContext.model_validate_json(state.context_json)
            raise StateError(
                "Callback state expired",
                code="CALLBACK_EXPIRED",
                provider=state.provider,
                details={
                    "payment_id": expired.payment_id,
                    "original_callback_url": expired.original_callback_url,
                },
            )
        await self.repository.mark_resolved(state)
        return TransactionContext.model_validate_json(state.context_json)

    async def purge_expired(self) -> int:
        """Delete expired states and return how many were removed."""
        count = await self.repository.delete_expired(utcnow())
        if count:
            logger.info(f"Purged {count} expired callback states")
        return count
