"""
certsigner — Signing Service Client

Async HTTP client for the registry's sign-and-save endpoint. The service
signs the certificate, persists it, and answers with an HTTP status plus a
``params`` block carrying the registry's own status string.

Two failure axes reach the caller:
  - a SigningResult whose status is not 200 (the service answered)
  - a SigningTransportError (it did not, or not intelligibly)
"""

from __future__ import annotations

from typing import Any

import httpx
import orjson
import structlog
from pydantic import ValidationError

from certsigner.config import SignerConfig
from certsigner.errors import SigningResponseError, SigningTransportError
from certsigner.types import SigningParams, SigningResult

logger = structlog.get_logger().bind(system="clients.signer")


class SigningClient:
    """
    Async HTTP client for the signing service.

    Usage::

        signer = SigningClient(config.signer)
        result = await signer.sign_and_save(request)
        await signer.close()
    """

    def __init__(
        self,
        config: SignerConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = config.url
        headers = {"Content-Type": "application/json"}
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_s, connect=min(config.timeout_s, 5.0)),
            headers=headers,
            transport=transport,
        )
        self._log = logger.bind(signer_url=self._url)

    async def sign_and_save(self, request: Any) -> SigningResult:
        """
        Submit one certificate request for signing and persistence.

        Returns a SigningResult for any HTTP response. Raises
        SigningTransportError on connection failure or timeout, and
        SigningResponseError when a 200 carries no readable ``params``.
        """
        try:
            resp = await self._client.post(self._url, content=orjson.dumps(request))
        except httpx.TimeoutException as exc:
            raise SigningTransportError(
                f"signing service timed out: {str(exc) or type(exc).__name__}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SigningTransportError(str(exc) or type(exc).__name__) from exc

        self._log.info("signing_response", status_code=resp.status_code)
        if resp.status_code != 200:
            return SigningResult(status=resp.status_code)

        try:
            body = orjson.loads(resp.content)
            params = SigningParams.model_validate(body["params"])
        except (orjson.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
            raise SigningResponseError(
                f"unreadable signing response: {exc}"
            ) from exc

        return SigningResult(status=200, params=params)

    async def close(self) -> None:
        await self._client.aclose()
