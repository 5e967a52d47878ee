"""
DPoP-signed HTTP requests with the server nonce protocol.

Authorization servers and PDS instances may reject a request with a
``use_dpop_nonce`` error and a ``DPoP-Nonce`` response header. The request is then
replayed with a new proof carrying that nonce. The replay happens at most
``MAX_NONCE_RETRIES`` times; a server that demands a new nonce again is treated as
a protocol violation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from jwcrypto import jwk
from multidict import CIMultiDictProxy

from dev.stevedylan.edge.app.metrics import MetricsClient
from dev.stevedylan.edge.atproto.jwt import create_dpop_jwt
from dev.stevedylan.edge.errors import NetworkError, NonceRequired, ProtocolError

logger = logging.getLogger(__name__)

MAX_NONCE_RETRIES = 1

USE_DPOP_NONCE = "use_dpop_nonce"


@dataclass(repr=False)
class DpopResponse:
    """
    Fully read response of a DPoP-signed request.

    Attributes:
        status: HTTP status code
        headers: Response headers
        body: Parsed JSON body, or None when the body is empty or not JSON
        nonce: The freshest nonce known after the request, to be persisted by the caller
    """

    status: int
    headers: CIMultiDictProxy[str]
    body: Any
    nonce: Optional[str]

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error(self) -> Optional[str]:
        if isinstance(self.body, dict):
            value = self.body.get("error")
            return value if isinstance(value, str) else None
        return None

    def error_description(self) -> Optional[str]:
        if isinstance(self.body, dict):
            value = self.body.get("error_description") or self.body.get("message")
            return value if isinstance(value, str) else None
        return None


async def _read_body(resp: ClientResponse) -> Any:
    try:
        return await resp.json(content_type=None)
    except ValueError:
        return None


def _check_nonce_demand(status: int, headers: CIMultiDictProxy[str], body: Any) -> None:
    """Raise NonceRequired when the response asks for a replay with a new nonce."""
    if status not in (400, 401):
        return

    new_nonce = headers.get("DPoP-Nonce")
    if not new_nonce:
        return

    error = body.get("error") if isinstance(body, dict) else None
    www_authenticate = headers.get("WWW-Authenticate", "")
    if error == USE_DPOP_NONCE or USE_DPOP_NONCE in www_authenticate:
        raise NonceRequired(new_nonce)


async def dpop_request(
    http_session: ClientSession,
    method: str,
    url: str,
    dpop_key: jwk.JWK,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    data: Any = None,
    json: Any = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    metrics_client: Optional[MetricsClient] = None,
) -> DpopResponse:
    """
    Send a DPoP-signed request, replaying it once when the server demands a nonce.

    Each attempt signs a new proof, so no ``jti`` is ever reused. When
    ``access_token`` is given the request is sent with ``Authorization: DPoP`` and
    the proof carries the ``ath`` claim.

    Args:
        http_session: Shared aiohttp client session
        method: HTTP method
        url: Exact request URL; it is also the ``htu`` claim
        dpop_key: Key pair the proof is signed with
        nonce: Last nonce issued by this server, if any
        access_token: Access token for resource requests
        data: Form dictionary or raw bytes body
        json: JSON body
        headers: Extra request headers
        timeout: Total timeout in seconds for one attempt
        metrics_client: Optional metrics client for retry counters

    Returns:
        DpopResponse: The final response and the freshest nonce

    Raises:
        NetworkError: On timeout or connection failure. Requests are never retried
            for these, because the server may already have acted on them.
        ProtocolError: When the server demands a new nonce after the replay.
    """
    attempts = MAX_NONCE_RETRIES + 1

    while attempts > 0:
        attempts -= 1

        request_headers = dict(headers or {})
        request_headers["DPoP"] = create_dpop_jwt(
            dpop_key, method, url, nonce=nonce, access_token=access_token
        )
        if access_token is not None:
            request_headers["Authorization"] = f"DPoP {access_token}"

        try:
            async with http_session.request(
                method,
                url,
                headers=request_headers,
                data=data,
                json=json,
                timeout=ClientTimeout(total=timeout) if timeout else None,
            ) as resp:
                status = resp.status
                response_headers = resp.headers
                body = await _read_body(resp)
        except asyncio.TimeoutError as e:
            raise NetworkError.timeout(url) from e
        except ClientError as e:
            raise NetworkError.connection(url, type(e).__name__) from e

        try:
            _check_nonce_demand(status, response_headers, body)
        except NonceRequired as e:
            if attempts == 0:
                raise ProtocolError.nonce_retry_exhausted(url) from e

            logger.debug("Server demanded a DPoP nonce, replaying %s %s", method, url)
            if metrics_client is not None:
                metrics_client.increment(
                    "edge.dpop.nonce_retry", 1, tag_dict={"method": method.upper()}
                )
            nonce = e.nonce
            continue

        return DpopResponse(
            status=status,
            headers=response_headers,
            body=body,
            nonce=response_headers.get("DPoP-Nonce") or nonce,
        )

    raise ProtocolError.nonce_retry_exhausted(url)
