"""Outbound HTTP transport shared by all provider sessions."""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


def encode_json(body: Mapping[str, Any]) -> bytes:
    """Serialize a request body compactly.

    The returned bytes are both signed and sent, so they must not be
    re-serialized afterwards.
    """
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class TransportResponse:
    """Vendor response as received, independent of the HTTP status code."""

    def __init__(self, status_code: int, headers: Mapping[str, str], content: bytes, provider: Optional[str] = None):
        self.status_code = status_code
        self.headers = headers
        self.content = content
        self.provider = provider

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def is_html(self) -> bool:
        content_type = self.headers.get("content-type", "")
        return "text/html" in content_type or self.text.lstrip().startswith("<")

    def json(self) -> Any:
        """Parse the body as JSON.

        Vendors report business declines inside 4xx bodies, so the status code is
        not checked here.

        Raises:
            TransportError: If the body is not JSON.
        """
        try:
            return json.loads(self.content)
        except ValueError as e:
            raise TransportError(
                f"Unparseable response from {self.provider or 'provider'} (HTTP {self.status_code})",
                retryable=self.status_code >= 500,
                status_code=self.status_code,
                provider=self.provider,
            ) from e


class ProviderHTTPClient:
    """Thin wrapper around ``httpx.AsyncClient`` with bounded timeouts.

    Args:
        timeout: Per-call timeout in seconds.
        max_retries: Extra attempts for idempotent calls on retryable failures.
        retry_backoff: Base delay between retries in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=False,
        )

    async def __aenter__(self) -> "ProviderHTTPClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        method: str,
        url: str,
        *,
        provider: Optional[str] = None,
        content: Optional[bytes] = None,
        data: Optional[Mapping[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        idempotent: bool = False,
    ) -> TransportResponse:
        """Send one request to a vendor.

        Args:
            method: HTTP method.
            url: Absolute vendor URL.
            provider: Provider key, used for logging and error context.
            content: Pre-serialized body (JSON providers sign these exact bytes).
            data: Form fields for ``application/x-www-form-urlencoded``.
            files: Multipart fields as ``{name: (None, value)}``.
            params: Query string parameters.
            headers: Extra request headers.
            idempotent: Retry retryable failures when True. Never set for charges.

        Returns:
            The vendor response, whatever its status code.

        Raises:
            TransportError: On timeout or network failure after retries.
        """
        attempts = 1 + (self.max_retries if idempotent else 0)
        last_error: Optional[TransportError] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(
                    method,
                    url,
                    content=content,
                    data=data,
                    files=files,
                    params=params,
                    headers=dict(headers or {}),
                )
            except httpx.TimeoutException as e:
                logger.warning(f"[{provider}] {method} {url} timed out after {self.timeout}s (attempt {attempt})")
                last_error = TransportError(
                    f"Request to {provider or url} timed out",
                    retryable=True,
                    timeout=True,
                    provider=provider,
                )
                last_error.__cause__ = e
            except httpx.HTTPError as e:
                logger.warning(f"[{provider}] {method} {url} failed: {e} (attempt {attempt})")
                last_error = TransportError(
                    f"Request to {provider or url} failed: {e}",
                    retryable=True,
                    provider=provider,
                )
                last_error.__cause__ = e
            else:
                logger.debug(f"[{provider}] {method} {url} -> HTTP {response.status_code}")
                if idempotent and response.status_code in RETRYABLE_STATUS_CODES and attempt < attempts:
                    await asyncio.sleep(self.retry_backoff * attempt)
                    continue
                return TransportResponse(
                    status_code=response.status_code,
                    headers=response.headers,
                    content=response.content,
                    provider=provider,
                )

            if attempt < attempts:
                await asyncio.sleep(self.retry_backoff * attempt)

        raise last_error

    async def post_json(
        self,
        url: str,
        body: bytes,
        *,
        provider: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        idempotent: bool = False,
    ) -> TransportResponse:
        merged = {"Content-Type": "application/json", "Accept": "application/json"}
        merged.update(headers or {})
        return await self.send(
            "POST", url, provider=provider, content=body, headers=merged, idempotent=idempotent
        )

    async def post_form(
        self,
        url: str,
        fields: Mapping[str, str],
        *,
        provider: Optional[str] = None,
        idempotent: bool = False,
    ) -> TransportResponse:
        return await self.send(
            "POST",
            url,
            provider=provider,
            data=dict(fields),
            headers={"Accept": "application/json"},
            idempotent=idempotent,
        )

    async def post_multipart(
        self,
        url: str,
        fields: Mapping[str, str],
        *,
        provider: Optional[str] = None,
        idempotent: bool = False,
    ) -> TransportResponse:
        files = {name: (None, value) for name, value in fields.items()}
        return await self.send(
            "POST",
            url,
            provider=provider,
            files=files,
            headers={"Accept": "application/json"},
            idempotent=idempotent,
        )
