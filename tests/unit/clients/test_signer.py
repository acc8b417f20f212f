"""
Unit tests for SigningClient.

The signing service is replaced by an httpx.MockTransport.
"""

from __future__ import annotations

import httpx
import orjson
import pytest

from certsigner.clients.signer import SigningClient
from certsigner.config import SignerConfig
from certsigner.errors import SigningResponseError, SigningTransportError

SIGNER_URL = "http://registry.local/api/v1/certify"
REQUEST = {"preEnrollmentCode": "12346", "recipient": {"name": "Bhaya Mitra"}}


def _client(handler, **config) -> SigningClient:
    return SigningClient(
        SignerConfig(url=SIGNER_URL, **config),
        transport=httpx.MockTransport(handler),
    )


class TestSignAndSave:
    @pytest.mark.asyncio
    async def test_success_params(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"id": "open-saber.registry.create", "params": {"status": "SUCCESSFUL", "errmsg": ""}},
            )

        client = _client(handler)
        result = await client.sign_and_save(REQUEST)
        await client.close()

        assert result.ok
        assert result.params is not None
        assert result.params.status == "SUCCESSFUL"
        assert result.params.errmsg == ""

    @pytest.mark.asyncio
    async def test_posts_request_json(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"params": {"status": "SUCCESSFUL", "errmsg": ""}})

        client = _client(handler, auth_token="tok-123\r\n")
        await client.sign_and_save(REQUEST)
        await client.close()

        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == SIGNER_URL
        assert orjson.loads(request.content) == REQUEST
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert request.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_null_errmsg_becomes_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"params": {"status": "UNSUCCESSFUL", "errmsg": None}})

        client = _client(handler)
        result = await client.sign_and_save(REQUEST)
        await client.close()
        assert result.params.errmsg == ""

    @pytest.mark.asyncio
    async def test_non_200_is_a_result_not_an_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="<html>Internal Server Error</html>")

        client = _client(handler)
        result = await client.sign_and_save(REQUEST)
        await client.close()

        assert result.status == 500
        assert not result.ok
        assert result.params is None


class TestTransportErrors:
    @pytest.mark.asyncio
    async def test_connect_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(SigningTransportError, match="connection refused"):
            await client.sign_and_save(REQUEST)
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        client = _client(handler, timeout_s=0.5)
        with pytest.raises(SigningTransportError, match="timed out"):
            await client.sign_and_save(REQUEST)
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[]", b'{"result": {}}', b'{"params": null}'],
    )
    async def test_unreadable_200_body(self, body):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body)

        client = _client(handler)
        with pytest.raises(SigningResponseError):
            await client.sign_and_save(REQUEST)
        await client.close()

    def test_response_error_is_transport_error(self):
        assert issubclass(SigningResponseError, SigningTransportError)
