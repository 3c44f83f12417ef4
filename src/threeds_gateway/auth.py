"""Authentication, tenant selection and rate limiting helpers for the API."""

import os
import secrets
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

PAYMENT_RATE_LIMIT = "60/minute"
CALLBACK_RATE_LIMIT = "120/minute"

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def _expected_api_key(request: Request) -> Optional[str]:
    settings = getattr(request.app.state, "settings", None)
    if settings is not None and settings.api_key:
        return settings.api_key
    return os.getenv("API_KEY")


async def verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    """Verify the API key from the Authorization header.

    Args:
        request: Incoming request, used to reach the app settings.
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = _expected_api_key(request)
    if not expected_key:
        logger.error("API_KEY is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key.encode(), expected_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def tenant_id_header(x_tenant_id: Optional[str] = Header(None)) -> Optional[int]:
    """Parse the optional ``X-Tenant-ID`` header."""
    if x_tenant_id is None or x_tenant_id == "":
        return None
    if not x_tenant_id.isdigit():
        raise HTTPException(status_code=400, detail="X-Tenant-ID must be a positive integer")
    return int(x_tenant_id)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
