"""Shared test fixtures and configuration."""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from threeds_gateway.audit import AuditLog
from threeds_gateway.callbacks import CallbackStateStore
from threeds_gateway.config import ProviderConfig
from threeds_gateway.models import Address, CardInfo, Customer, PaymentRequest
from threeds_gateway.providers.base import CallContext
from threeds_gateway.transport import ProviderHTTPClient

TEST_CARD = "4355084355084358"
MERCHANT_CALLBACK = "https://merchant.example.com/return"
APP_URL = "https://gw.example.com"


class VendorStub:
    """Routes outbound vendor calls to canned responses and records them.

    Responses are queued per URL fragment; once a queue runs dry the last
    response served for that fragment is repeated.
    """

    def __init__(self):
        self.routes: Dict[str, List[Any]] = {}
        self.last: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, fragment: str, *responses: Any) -> None:
        self.routes.setdefault(fragment, []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for fragment, queue in self.routes.items():
            if fragment in url and (queue or fragment in self.last):
                if queue:
                    self.last[fragment] = queue.pop(0)
                response = self.last[fragment]
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, httpx.Response):
                    return response
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"error": f"no stub for {url}"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]

    def json_body(self, fragment: str, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.calls(fragment)[index].content)


def multipart_fields(request: httpx.Request) -> Dict[str, str]:
    """Decode the simple ``name=value`` parts of a multipart body."""
    content_type = request.headers["content-type"]
    boundary = content_type.split("boundary=")[1].encode()
    fields = {}
    for part in request.content.split(b"--" + boundary):
        if b"\r\n\r\n" not in part:
            continue
        head, _, value = part.partition(b"\r\n\r\n")
        marker = b'name="'
        start = head.find(marker)
        if start == -1:
            continue
        name = head[start + len(marker):head.index(b'"', start + len(marker))].decode()
        fields[name] = value.rstrip(b"\r\n").decode()
    return fields


@pytest.fixture
def vendor() -> VendorStub:
    return VendorStub()


@pytest.fixture
async def http_client(vendor):
    """ProviderHTTPClient wired to the vendor stub."""
    client = ProviderHTTPClient(timeout=5, max_retries=2, retry_backoff=0, transport=vendor.transport)
    yield client
    await client.aclose()


# Database fixtures
@pytest.fixture
async def test_db_engine():
    """Create an in-memory SQLite database for testing."""
    from threeds_gateway.database import Base, create_async_engine

    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db_session(test_db_engine):
    """Create a database session for testing."""
    from threeds_gateway.database import get_async_session_factory

    session_factory = get_async_session_factory(test_db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(test_db_session) -> AuditLog:
    return AuditLog(test_db_session)


@pytest.fixture
def callback_store(test_db_session) -> CallbackStateStore:
    return CallbackStateStore(test_db_session)


@pytest.fixture
def make_ctx(audit, callback_store):
    """Open an audit row and return a CallContext bound to it."""

    async def _make(provider: str, method: str = "test", payment_id: Optional[str] = None, **kwargs) -> CallContext:
        log_id = await audit.open(provider=provider, method=method, payment_id=payment_id)
        return CallContext(
            log_id=log_id,
            client_ip="10.0.0.1",
            audit=audit,
            callbacks=callback_store,
            **kwargs,
        )

    return _make


@pytest.fixture
def payment_request() -> PaymentRequest:
    """100.50 TRY card payment from a Turkish mobile subscriber."""
    return PaymentRequest(
        amount=Decimal("100.50"),
        currency="TRY",
        customer=Customer(
            id="cust-1",
            name="Ada",
            surname="Lovelace",
            email="ada@example.com",
            phone_number="+905321234567",
            ip_address="10.0.0.1",
            address=Address(city="Istanbul", country="TR", address="Bagdat Cd. 1", zip_code="34710"),
        ),
        card_info=CardInfo(
            card_holder_name="Ada Lovelace",
            card_number=TEST_CARD,
            expire_month="12",
            expire_year="2030",
            cvv="000",
        ),
        callback_url=MERCHANT_CALLBACK,
    )


@pytest.fixture
def payment_request_3d(payment_request) -> PaymentRequest:
    return payment_request.model_copy(update={"use_3d": True})


@pytest.fixture
def vpos_config() -> ProviderConfig:
    return ProviderConfig(
        values={
            "merchantSafeId": "2023090417500272654BD9A49CF07574",
            "terminalSafeId": "2023090417500284633D137A249DBBEB",
            "secretKey": "vpos-secret",
            "storeKey": "TEST1234",
        },
        callback_base_url=APP_URL,
    )


@pytest.fixture
def paycell_config() -> ProviderConfig:
    return ProviderConfig(callback_base_url=APP_URL)


@pytest.fixture
def payten_config() -> ProviderConfig:
    return ProviderConfig(
        values={"merchant": "m@example.com", "merchantUser": "api@example.com", "merchantPassword": "pw"},
        callback_base_url=APP_URL,
    )


@pytest.fixture
def stripe_config() -> ProviderConfig:
    return ProviderConfig(
        values={"secretKey": "sk_test_mock_key", "webhookSecret": "whsec_test_secret"},
        callback_base_url=APP_URL,
    )


@pytest.fixture
def iyzico_config() -> ProviderConfig:
    return ProviderConfig(
        values={"apiKey": "sandbox-api-key", "secretKey": "sandbox-secret-key"},
        callback_base_url=APP_URL,
    )
