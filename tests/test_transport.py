"""Tests for the outbound HTTP transport."""

import httpx
import pytest

from threeds_gateway.errors import TransportError
from threeds_gateway.transport import ProviderHTTPClient, TransportResponse, encode_json

URL = "https://bank.example.com/api"


class TestTransportResponse:
    """Tests for response parsing."""

    def test_json_ignores_status_code(self):
        response = TransportResponse(400, {}, b'{"code": "51"}', provider="vpos")
        assert response.json() == {"code": "51"}

    def test_unparseable_body(self):
        response = TransportResponse(502, {}, b"<html>bad gateway</html>", provider="vpos")
        with pytest.raises(TransportError) as exc_info:
            response.json()
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 502
        assert response.is_html

    def test_encode_json_is_compact(self):
        assert encode_json({"a": 1, "b": "ş"}) == '{"a":1,"b":"ş"}'.encode("utf-8")


class TestProviderHTTPClient:
    """Tests for retries and timeouts."""

    async def test_charge_is_never_retried(self, vendor, http_client):
        vendor.add("/api", httpx.ConnectError("refused"))
        with pytest.raises(TransportError) as exc_info:
            await http_client.post_json(URL, b"{}", provider="vpos")
        assert exc_info.value.retryable is True
        assert len(vendor.calls("/api")) == 1

    async def test_idempotent_call_retried(self, vendor, http_client):
        vendor.add("/api", httpx.Response(503), {"ok": True})
        response = await http_client.post_json(URL, b"{}", provider="vpos", idempotent=True)
        assert response.json() == {"ok": True}
        assert len(vendor.calls("/api")) == 2

    async def test_idempotent_retries_are_bounded(self, vendor, http_client):
        vendor.add("/api", httpx.ConnectError("refused"))
        with pytest.raises(TransportError):
            await http_client.post_json(URL, b"{}", provider="vpos", idempotent=True)
        assert len(vendor.calls("/api")) == 3

    async def test_timeout(self, vendor, http_client):
        vendor.add("/api", httpx.ReadTimeout("slow"))
        with pytest.raises(TransportError) as exc_info:
            await http_client.post_form(URL, {"a": "1"}, provider="ziraat")
        assert exc_info.value.timeout is True
        assert exc_info.value.provider == "ziraat"

    async def test_sends_exact_bytes(self, vendor, http_client):
        vendor.add("/api", {"ok": True})
        body = encode_json({"amount": 10050})
        await http_client.post_json(URL, body, headers={"auth-hash": "x"})
        request = vendor.calls("/api")[0]
        assert request.content == body
        assert request.headers["auth-hash"] == "x"
        assert request.headers["content-type"] == "application/json"

    async def test_4xx_is_returned(self, vendor, http_client):
        vendor.add("/api", httpx.Response(422, json={"code": "51"}))
        response = await http_client.post_json(URL, b"{}")
        assert response.status_code == 422

    async def test_context_manager_closes(self, vendor):
        async with ProviderHTTPClient(transport=vendor.transport) as client:
            assert client.timeout == 30.0
