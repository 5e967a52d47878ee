"""
Discovery and public reads against a PDS and its authorization server.

All requests here are idempotent GETs, so a timeout or connection failure is
retried once before it is reported as a NetworkError.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError

from dev.stevedylan.edge.errors import NetworkError, ProtocolError
from dev.stevedylan.edge.model.oauth import OAuthServerMetadata

logger = logging.getLogger(__name__)

GET_ATTEMPTS = 2


async def get_json(
    session: ClientSession, url: str, timeout: float = 10.0
) -> Tuple[int, Optional[Any]]:
    """GET a JSON document.

    Returns the status and the parsed body. The body is None for any status other
    than 200.

    Raises:
        NetworkError: When both attempts time out or fail to connect.
        ProtocolError: When a 200 response does not carry valid JSON.
    """
    attempts = GET_ATTEMPTS
    while True:
        attempts -= 1
        try:
            async with session.get(url, timeout=ClientTimeout(total=timeout)) as resp:
                if resp.status != 200:
                    return resp.status, None
                try:
                    return resp.status, await resp.json(content_type=None)
                except ValueError as e:
                    raise ProtocolError.malformed_body(url) from e
        except asyncio.TimeoutError as e:
            if attempts > 0:
                logger.warning("Timed out fetching %s, retrying", url)
                continue
            raise NetworkError.timeout(url) from e
        except ClientError as e:
            if attempts > 0:
                logger.warning("Connection failed fetching %s, retrying", url)
                continue
            raise NetworkError.connection(url, type(e).__name__) from e


async def oauth_protected_resource(
    session: ClientSession, pds: str, timeout: float = 10.0
) -> Optional[Dict[str, Any]]:
    _, body = await get_json(
        session, f"{pds}/.well-known/oauth-protected-resource", timeout
    )
    if isinstance(body, dict):
        return body
    return None


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str, timeout: float = 10.0
) -> Dict[str, Any]:
    url = f"{authorization_server}/.well-known/oauth-authorization-server"
    status, body = await get_json(session, url, timeout)
    if status != 200:
        raise ProtocolError.unexpected_status(url, status)
    if not isinstance(body, dict):
        raise ProtocolError.malformed_body(url)
    return body


async def fetch_server_metadata(
    session: ClientSession, remote_base_url: str, timeout: float = 10.0
) -> OAuthServerMetadata:
    """
    Discover the authorization server for a PDS and return its metadata.

    The PDS's protected resource document names its authorization server. When the
    document is missing, or names none, the PDS is assumed to be its own
    authorization server.

    Args:
        session: HTTP client session
        remote_base_url: Base URL of the PDS
        timeout: Timeout in seconds for each request

    Returns:
        OAuthServerMetadata: Validated authorization server metadata

    Raises:
        NetworkError: If the server cannot be reached
        ProtocolError: If the metadata is missing or lacks a required endpoint
    """
    pds = remote_base_url.rstrip("/")

    authorization_server = pds
    protected_resource = await oauth_protected_resource(session, pds, timeout)
    if protected_resource is not None:
        first_authorization_server = next(
            iter(protected_resource.get("authorization_servers", None) or []), None
        )
        if isinstance(first_authorization_server, str):
            authorization_server = first_authorization_server.rstrip("/")

    body = await oauth_authorization_server(session, authorization_server, timeout)

    try:
        return OAuthServerMetadata.model_validate(body)
    except ValidationError as e:
        field = ".".join(str(part) for part in e.errors()[0]["loc"])
        raise ProtocolError.missing_field(field) from e


async def get_record(
    session: ClientSession,
    pds: str,
    repo: str,
    collection: str,
    rkey: str,
    timeout: float = 10.0,
) -> Dict[str, Any]:
    """Fetch a public record with ``com.atproto.repo.getRecord``.

    Returns:
        The response document with ``uri``, ``cid`` and ``value``.
    """
    query = urlencode({"repo": repo, "collection": collection, "rkey": rkey})
    url = f"{pds.rstrip('/')}/xrpc/com.atproto.repo.getRecord?{query}"
    status, body = await get_json(session, url, timeout)
    if status != 200:
        raise ProtocolError.unexpected_status(url, status)
    if not isinstance(body, dict) or "cid" not in body or "uri" not in body:
        raise ProtocolError.malformed_body(url)
    return body
