"""HTTP API: payment operations, the 3-D callback re-entry point and webhooks."""

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import (
    CALLBACK_RATE_LIMIT,
    PAYMENT_RATE_LIMIT,
    client_ip,
    limiter,
    tenant_id_header,
    verify_api_key,
)
from .config import GatewaySettings
from .database import Database, get_db
from .errors import GatewayError, SigningError, StateError, TransportError, ValidationError
from .models import (
    CancelRequest,
    CommissionRequest,
    InstallmentInquiry,
    NormalizedResult,
    PaymentRequest,
    RefundRequest,
    StatusRequest,
    format_amount,
)
from .providers.registry import ProviderRegistry, build_registry
from .services import PaymentService
from .transport import ProviderHTTPClient

logger = logging.getLogger(__name__)

PAYMENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]{1,128}$")
CALLBACK_ERROR = "CALLBACK_ERROR"
UNRESOLVABLE_CALLBACK_CODES = frozenset({"CALLBACK_NOT_FOUND", "CALLBACK_EXPIRED", "CALLBACK_PROVIDER_MISMATCH"})


def validate_payment_id(payment_id: str) -> str:
    """Reject payment ids that could not have come from a provider.

    Raises:
        HTTPException: 400 for malformed ids.
    """
    if not PAYMENT_ID_PATTERN.match(payment_id):
        raise HTTPException(status_code=400, detail="Invalid payment ID format")
    return payment_id


def status_code_for(error: GatewayError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, SigningError):
        return 500
    if isinstance(error, TransportError):
        return 504 if error.timeout else 502
    if isinstance(error, StateError):
        return 404 if error.code == "PROVIDER_NOT_FOUND" else 409
    return 500


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


def merchant_redirect_url(url: str, params: Dict[str, Optional[str]]) -> str:
    """Append ``params`` to the merchant's callback URL, keeping its own query."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def result_params(result: NormalizedResult) -> Dict[str, Optional[str]]:
    if result.success:
        return {
            "success": "true",
            "paymentId": result.payment_id,
            "status": result.status.value,
            "transactionId": result.transaction_id,
            "amount": format_amount(result.amount) if result.amount is not None else None,
            "currency": result.currency,
        }
    return {
        "success": "false",
        "error": result.message,
        "errorCode": result.error_code,
        "paymentId": result.payment_id,
        "status": result.status.value,
    }


def get_service(request: Request, db: AsyncSession = Depends(get_db)) -> PaymentService:
    return PaymentService(db, request.app.state.registry, request.app.state.settings)


def create_app(
    settings: Optional[GatewaySettings] = None,
    http: Optional[ProviderHTTPClient] = None,
    registry: Optional[ProviderRegistry] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Gateway settings. Read from the environment at startup when omitted.
        http: Shared outbound HTTP client. Created from the settings when omitted.
        registry: Provider registry. Built from the settings when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings or GatewaySettings.from_env()
        app.state.http = http or ProviderHTTPClient(
            timeout=app.state.settings.http_timeout_seconds,
            max_retries=app.state.settings.http_max_retries,
        )
        app.state.registry = registry or build_registry(app.state.settings, app.state.http)
        app.state.database = Database(app.state.settings.database_url)
        await app.state.database.create_tables()
        logger.info(f"Gateway started with providers: {', '.join(app.state.registry.names()) or 'none'}")
        try:
            yield
        finally:
            if http is None:
                await app.state.http.aclose()
            await app.state.database.dispose()

    app = FastAPI(title="3-D Secure Payment Gateway", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(payments_router)
    app.include_router(callbacks_router)

    @app.get("/health")
    async def health(request: Request):
        return {"status": "healthy", "providers": request.app.state.registry.names()}

    return app


payments_router = APIRouter(prefix="/v1/payments", tags=["payments"], dependencies=[Depends(verify_api_key)])
callbacks_router = APIRouter(prefix="/v1", tags=["callbacks"])


@payments_router.post("/{provider}")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def create_payment(
    request: Request,
    provider: str,
    body: PaymentRequest,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    """Create a payment. Returns the redirect artifact for 3-D payments."""
    result = await service.create_payment(provider, body, tenant_id=tenant_id, client_ip=client_ip(request))
    return result.model_dump(mode="json")


@payments_router.post("/{provider}/refund")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def refund_payment(
    request: Request,
    provider: str,
    body: RefundRequest,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    validate_payment_id(body.payment_id)
    result = await service.refund_payment(provider, body, tenant_id=tenant_id, client_ip=client_ip(request))
    return result.model_dump(mode="json")


@payments_router.post("/{provider}/installments")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def get_installment_info(
    request: Request,
    provider: str,
    body: InstallmentInquiry,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    """Installment plans offered for a card BIN and amount."""
    result = await service.get_installment_info(provider, body, tenant_id=tenant_id, client_ip=client_ip(request))
    return result.model_dump(mode="json")


@payments_router.post("/{provider}/commission")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def get_commission(
    request: Request,
    provider: str,
    body: CommissionRequest,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    result = await service.get_commission(provider, body, tenant_id=tenant_id, client_ip=client_ip(request))
    return result.model_dump(mode="json")


@payments_router.get("/{provider}/{payment_id}")
async def get_payment_status(
    request: Request,
    provider: str,
    payment_id: str,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    validate_payment_id(payment_id)
    result = await service.get_payment_status(
        provider, StatusRequest(payment_id=payment_id), tenant_id=tenant_id, client_ip=client_ip(request)
    )
    return result.model_dump(mode="json")


@payments_router.delete("/{provider}/{payment_id}")
async def cancel_payment(
    request: Request,
    provider: str,
    payment_id: str,
    reason: Optional[str] = Query(default=None, max_length=255),
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    validate_payment_id(payment_id)
    result = await service.cancel_payment(
        provider, CancelRequest(payment_id=payment_id, reason=reason), tenant_id=tenant_id, client_ip=client_ip(request)
    )
    return result.model_dump(mode="json")


async def _callback_fields(request: Request) -> Dict[str, str]:
    data = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        data.update({key: value for key, value in form.items() if isinstance(value, str)})
    return data


@callbacks_router.api_route("/callback/{provider}", methods=["GET", "POST"])
@limiter.limit(CALLBACK_RATE_LIMIT)
async def provider_callback(
    request: Request,
    provider: str,
    service: PaymentService = Depends(get_service),
):
    """Re-entry point for the customer's browser after the bank's 3-D page.

    Always answers with a 303 to the merchant's callback URL when one is known.
    """
    data = await _callback_fields(request)
    # our own routing token, never part of the bank's signed fields
    token = data.pop("state", None)
    try:
        outcome = await service.complete_callback(provider, token, data, client_ip=client_ip(request))
    except GatewayError as e:
        merchant_url = e.details.get("original_callback_url")
        logger.warning(f"[{provider}] callback failed: {e.code}: {e.message}")
        if not merchant_url:
            return JSONResponse(status_code=400, content={"error": CALLBACK_ERROR, "detail": e.message})
        error_code = CALLBACK_ERROR if e.code in UNRESOLVABLE_CALLBACK_CODES else e.code
        params = {
            "success": "false",
            "error": e.message,
            "errorCode": error_code,
            "paymentId": e.details.get("payment_id"),
            "status": "failed",
        }
        return RedirectResponse(merchant_redirect_url(merchant_url, params), status_code=303)

    if not outcome.state.original_callback_url:
        return outcome.result.model_dump(mode="json")
    return RedirectResponse(
        merchant_redirect_url(outcome.state.original_callback_url, result_params(outcome.result)),
        status_code=303,
    )


@callbacks_router.post("/webhooks/{provider}")
async def provider_webhook(
    request: Request,
    provider: str,
    tenant_id: Optional[int] = Depends(tenant_id_header),
    service: PaymentService = Depends(get_service),
):
    body = await request.body()
    data: Any
    if "application/json" in request.headers.get("content-type", ""):
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")
    else:
        data = dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
    headers = {k.lower(): v for k, v in request.headers.items()}
    event = await service.validate_webhook(provider, data, headers, body=body, tenant_id=tenant_id)
    return {"accepted": True, "event": event}


app = create_app()
