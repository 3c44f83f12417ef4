"""Audit log of provider calls.

Every gateway call gets one ``provider_logs`` row. The row's request JSON starts
with the client request and collects each signed outbound request under its own
key (``provisionRequest``, ``threeDSessionRequest`` ...). Follow-up operations
such as cancel and refund recover the vendor's reference from these rows with
:meth:`AuditLog.field_from_log` instead of recomputing it.
"""

import logging
from collections import deque
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from .database.repository import ProviderLogRepository
from .errors import GatewayError, StateError
from .models import CommissionResult, InstallmentInfo, NormalizedResult, RefundResult, mask_card_number

logger = logging.getLogger(__name__)

PAN_KEYS = frozenset({"pan", "cardnumber", "card_number", "creditcardno"})
CVV_KEYS = frozenset({"cvv", "cvv2", "cv2", "cvc", "cvcno"})
SECRET_KEYS = frozenset({
    "applicationpwd",
    "merchantpassword",
    "password",
    "secretkey",
    "storekey",
    "apikey",
})


def mask_sensitive(payload: Any) -> Any:
    """Return a copy of ``payload`` with card numbers, CVVs and credentials masked."""
    if isinstance(payload, dict):
        masked = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if lowered in PAN_KEYS and isinstance(value, str) and value:
                masked[key] = mask_card_number(value)
            elif (lowered in CVV_KEYS or lowered in SECRET_KEYS) and value:
                masked[key] = "***"
            else:
                masked[key] = mask_sensitive(value)
        return masked
    if isinstance(payload, list):
        return [mask_sensitive(item) for item in payload]
    return payload


def _scalar(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _walk(node: Any, path: str) -> Optional[str]:
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return _scalar(node)


def find_field(document: Any, field: str) -> Optional[str]:
    """Breadth-first search for ``field`` in nested dictionaries.

    A dotted field (``provisionRequest.referenceNumber``) locates its first
    segment anywhere in the document and walks the rest from there.

    Returns the first non-null scalar as a string, or None.
    """
    head, _, rest = field.partition(".")
    queue = deque([document])
    while queue:
        node = queue.popleft()
        if isinstance(node, dict):
            if head in node:
                found = _walk(node[head], rest) if rest else _scalar(node[head])
                if found is not None:
                    return found
            queue.extend(v for v in node.values() if isinstance(v, (dict, list)))
        elif isinstance(node, list):
            queue.extend(v for v in node if isinstance(v, (dict, list)))
    return None


class AuditLog:
    """Audit log backed by the ``provider_logs`` table.

    Args:
        session: AsyncSession shared with the rest of the request.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repository = ProviderLogRepository(session)

    async def open(
        self,
        provider: str,
        method: str,
        request: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
        tenant_id: Optional[int] = None,
        payment_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> int:
        """Open a log row for one gateway call and return its id."""
        log = await self.repository.create(
            provider=provider,
            method=method,
            request=mask_sensitive(request or {}),
            endpoint=endpoint,
            tenant_id=tenant_id,
            payment_id=payment_id,
            client_ip=client_ip,
        )
        return log.id

    async def record(self, provider: str, kind: str, payload: Any, log_id: Optional[int]) -> None:
        """Merge a signed outbound request into the row's request JSON under ``kind``.

        Args:
            provider: Provider key.
            kind: Key the payload is stored under.
            payload: JSON serializable request (card data is masked).
            log_id: Row opened by :meth:`open`. Nothing is recorded without one.

        Raises:
            StateError: If ``log_id`` does not exist.
        """
        if log_id is None:
            logger.debug(f"[{provider}] no audit row for {kind}, skipping record")
            return
        log = await self.repository.get_by_id(log_id)
        if log is None:
            raise StateError(
                f"Audit log {log_id} not found",
                code="LOG_NOT_FOUND",
                provider=provider,
            )
        await self.repository.merge_request(log, kind, mask_sensitive(payload))

    async def close(
        self,
        log_id: Optional[int],
        result: Union[NormalizedResult, RefundResult, InstallmentInfo, CommissionResult],
        processing_ms: Optional[int] = None,
    ) -> None:
        """Store the normalized outcome of a call on its log row.

        Inquiry results carry no payment status; their row is marked
        ``successful`` or ``failed``.
        """
        if log_id is None:
            return
        log = await self.repository.get_by_id(log_id)
        if log is None:
            logger.warning(f"Audit log {log_id} vanished before close")
            return
        status = getattr(result, "status", None)
        await self.repository.update_response(
            log,
            response=result.model_dump(mode="json", exclude={"html"}),
            payment_id=getattr(result, "payment_id", None),
            transaction_id=getattr(result, "transaction_id", None) or getattr(result, "refund_id", None),
            status=status.value if status is not None else ("successful" if result.success else "failed"),
            error_code=result.error_code,
            error_message=None if result.success else result.message,
            processing_ms=processing_ms,
        )

    async def fail(
        self,
        log_id: Optional[int],
        error: Exception,
        processing_ms: Optional[int] = None,
    ) -> None:
        """Store a raised error on its log row."""
        if log_id is None:
            return
        log = await self.repository.get_by_id(log_id)
        if log is None:
            logger.warning(f"Audit log {log_id} vanished before fail")
            return
        code = error.code if isinstance(error, GatewayError) else type(error).__name__
        await self.repository.update_response(
            log,
            status="error",
            error_code=code,
            error_message=str(error),
            processing_ms=processing_ms,
        )

    async def field_from_log(self, provider: str, payment_id: str, field: str) -> str:
        """Recover ``field`` from the request JSON of the payment's log rows.

        Rows are searched newest first.

        Raises:
            StateError: ``REFERENCE_NOT_FOUND`` if no row carries the field.
        """
        for log in await self.repository.list_by_payment_id(provider, payment_id):
            value = find_field(log.request, field)
            if value is not None:
                return value
        raise StateError(
            f"No '{field}' recorded for {provider} payment {payment_id}",
            code="REFERENCE_NOT_FOUND",
            provider=provider,
        )

    async def field_from_log_id(self, provider: str, log_id: int, field: str) -> str:
        """Recover ``field`` from one specific log row.

        Raises:
            StateError: ``REFERENCE_NOT_FOUND`` if the row or field is missing.
        """
        log = await self.repository.get_by_id(log_id)
        value = find_field(log.request, field) if log is not None and log.provider == provider else None
        if value is None:
            raise StateError(
                f"No '{field}' recorded in {provider} log {log_id}",
                code="REFERENCE_NOT_FOUND",
                provider=provider,
            )
        return value
