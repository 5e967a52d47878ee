"""
DPoP-bound writes to a repository on a PDS.

Every request carries ``Authorization: DPoP <access token>`` and a proof with the
``ath`` claim. A PDS that answers 401 with a fresh nonce gets the request replayed
once with a new proof, the same contract as the token endpoint.
"""

import logging
from typing import Any, Dict, Optional, Tuple
from aiohttp import ClientSession
from jwcrypto import jwk

from dev.stevedylan.edge.app.metrics import MetricsClient
from dev.stevedylan.edge.atproto.dpop import DpopResponse, dpop_request
from dev.stevedylan.edge.errors import AuthorizationError, ProtocolError

logger = logging.getLogger(__name__)


def parse_at_uri(uri: str) -> Tuple[str, str, str]:
    """Split ``at://<repo>/<collection>/<rkey>`` into its parts.

    Raises:
        ValueError: If the value is not a record URI.
    """
    if not uri.startswith("at://"):
        raise ValueError(f"Not an AT URI: {uri}")
    parts = uri.removeprefix("at://").split("/")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Not a record AT URI: {uri}")
    repo, collection, rkey = parts
    return repo, collection, rkey


def _raise_for_write_error(resp: DpopResponse, url: str) -> None:
    if resp.ok:
        return
    if resp.status in (401, 403):
        raise AuthorizationError(resp.error() or "invalid_token", resp.error_description())
    raise ProtocolError.unexpected_status(url, resp.status)


async def create_record(
    http_session: ClientSession,
    pds_url: str,
    did: str,
    collection: str,
    record: Dict[str, Any],
    access_token: str,
    dpop_key: jwk.JWK,
    nonce: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Create a record with ``com.atproto.repo.createRecord``.

    Returns:
        Tuple of the response document (``uri`` and ``cid``) and the freshest nonce.
    """
    url = f"{pds_url.rstrip('/')}/xrpc/com.atproto.repo.createRecord"
    resp = await dpop_request(
        http_session,
        "POST",
        url,
        dpop_key,
        nonce=nonce,
        access_token=access_token,
        json={"repo": did, "collection": collection, "record": record},
        timeout=timeout,
        metrics_client=metrics_client,
    )
    _raise_for_write_error(resp, url)

    if not isinstance(resp.body, dict) or "uri" not in resp.body or "cid" not in resp.body:
        raise ProtocolError.malformed_body(url)

    logger.info("Created %s record %s", collection, resp.body["uri"])
    return resp.body, resp.nonce


async def upload_blob(
    http_session: ClientSession,
    pds_url: str,
    data: bytes,
    content_type: str,
    access_token: str,
    dpop_key: jwk.JWK,
    nonce: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Upload a blob with ``com.atproto.repo.uploadBlob``.

    Returns:
        Tuple of the blob reference and the freshest nonce.
    """
    url = f"{pds_url.rstrip('/')}/xrpc/com.atproto.repo.uploadBlob"
    resp = await dpop_request(
        http_session,
        "POST",
        url,
        dpop_key,
        nonce=nonce,
        access_token=access_token,
        data=data,
        headers={"Content-Type": content_type},
        timeout=timeout,
        metrics_client=metrics_client,
    )
    _raise_for_write_error(resp, url)

    blob = resp.body.get("blob") if isinstance(resp.body, dict) else None
    if not isinstance(blob, dict):
        raise ProtocolError.malformed_body(url)

    return blob, resp.nonce
