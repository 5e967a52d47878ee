"""
AT Protocol OAuth Client Implementation

This module implements the OAuth 2.0 client used for both the owner and the guest
logins. The client is public (``token_endpoint_auth_method: none``); possession of
the session is instead proven with DPoP.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)
- OAuth 2.0 Authorization Server Issuer Identification (RFC 9207)

The OAuth flow is implemented in three stages:
1. Initialization (`oauth_init`): discover the authorization server, generate a
   DPoP key, PKCE pair and state, push the authorization request and return the
   URL the browser is redirected to
2. Completion (`oauth_complete`): consume the stored state, exchange the
   authorization code for DPoP-bound tokens
3. Refresh (`oauth_refresh`): exchange the refresh token for new tokens and store
   them with a compare-and-swap on the old refresh token

A flow moves through the states START, METADATA_FETCHED, PAR_SENT,
AWAITING_CALLBACK, CODE_EXCHANGED and SESSION_ACTIVE or REFRESHED. Any failure moves
it to FAILED and the error is raised to the caller.
"""

import base64
from dataclasses import dataclass
from enum import Enum
import hashlib
import logging
import secrets
from typing import Optional, Tuple
from aiohttp import ClientSession
from jwcrypto import jwk
from pydantic import ValidationError
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from dev.stevedylan.edge.app.config import Settings
from dev.stevedylan.edge.app.metrics import MetricsClient, NoOpMetricsClient
from dev.stevedylan.edge.atproto.dpop import DpopResponse, dpop_request
from dev.stevedylan.edge.atproto.jwt import generate_dpop_key
from dev.stevedylan.edge.atproto.pds import fetch_server_metadata
from dev.stevedylan.edge.errors import (
    AuthorizationError,
    EdgeError,
    ProtocolError,
    SessionNotFound,
    StateMismatch,
    UnauthorizedSubject,
)
from dev.stevedylan.edge.model.oauth import (
    OAuthClientMetadata,
    OAuthServerMetadata,
    PARResponse,
    PKCEPair,
    TokenResponse,
)
from dev.stevedylan.edge.model.session import StoredSession
from dev.stevedylan.edge.store.session import SessionStore

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    START = "start"
    METADATA_FETCHED = "metadata_fetched"
    PAR_SENT = "par_sent"
    AWAITING_CALLBACK = "awaiting_callback"
    CODE_EXCHANGED = "code_exchanged"
    SESSION_ACTIVE = "session_active"
    REFRESHED = "refreshed"
    FAILED = "failed"


@dataclass(frozen=True)
class OAuthClient:
    """
    Client descriptor for one of the two OAuth clients this service registers.

    The client ID is the URL of the client's metadata document, as ATProto
    authorization servers require.
    """

    client_id: str
    redirect_uri: str
    scope: str
    client_name: str
    client_uri: str

    @classmethod
    def owner(cls, settings: Settings) -> "OAuthClient":
        return cls(
            client_id=f"{settings.api_url}/auth/client-metadata.json",
            redirect_uri=f"{settings.api_url}/auth/callback",
            scope=settings.owner_scope,
            client_name=settings.client_name,
            client_uri=settings.api_url,
        )

    @classmethod
    def guest(cls, settings: Settings) -> "OAuthClient":
        return cls(
            client_id=f"{settings.api_url}/guest-auth/client-metadata.json",
            redirect_uri=f"{settings.api_url}/guest-auth/callback",
            scope=settings.guest_scope,
            client_name=settings.guest_client_name,
            client_uri=settings.api_url,
        )

    def metadata(self) -> OAuthClientMetadata:
        """The client metadata document served at ``client_id``."""
        return OAuthClientMetadata(
            client_id=self.client_id,
            client_name=self.client_name,
            client_uri=self.client_uri,
            redirect_uris=[self.redirect_uri],
            grant_types=["authorization_code", "refresh_token"],
            response_types=["code"],
            scope=self.scope,
            token_endpoint_auth_method="none",
            application_type="web",
            dpop_bound_access_tokens=True,
        )


class OAuthFlow:
    """
    One run of the OAuth handshake.

    Carries everything later stages need and records which stage was reached.
    Secrets are never logged; transitions are.
    """

    def __init__(self, client: OAuthClient) -> None:
        self.client = client
        self.state = FlowState.START
        self.failure_reason: Optional[str] = None

        self.metadata: Optional[OAuthServerMetadata] = None
        self.dpop_key: Optional[jwk.JWK] = None
        self.dpop_nonce: Optional[str] = None
        self.oauth_state: Optional[str] = None
        self.authorization_url: Optional[str] = None
        self.token_response: Optional[TokenResponse] = None

    def advance(self, state: FlowState) -> None:
        logger.debug("OAuth flow %s -> %s", self.state.value, state.value)
        self.state = state

    def fail(self, reason: str) -> None:
        logger.info("OAuth flow failed in %s: %s", self.state.value, reason)
        self.state = FlowState.FAILED
        self.failure_reason = reason


def generate_pkce() -> PKCEPair:
    """
    Generate a PKCE verifier and its S256 challenge (RFC 7636).

    The verifier is the base64url encoding of 32 random bytes and the challenge is
    the base64url encoded SHA-256 digest of the verifier, both without padding.
    """
    code_verifier = secrets.token_urlsafe(32)

    hashed = hashlib.sha256(code_verifier.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    code_challenge = encoded.decode("ascii").rstrip("=")
    return PKCEPair(code_verifier=code_verifier, code_challenge=code_challenge)


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def _raise_for_oauth_error(resp: DpopResponse, url: str) -> None:
    if resp.ok:
        return

    error = resp.error()
    if resp.status in (400, 401) and error is not None:
        raise AuthorizationError(error, resp.error_description())

    raise ProtocolError.unexpected_status(url, resp.status)


def _parse_token_response(resp: DpopResponse, url: str) -> TokenResponse:
    _raise_for_oauth_error(resp, url)

    if not isinstance(resp.body, dict):
        raise ProtocolError.malformed_body(url)

    try:
        token_response = TokenResponse.model_validate(resp.body)
    except ValidationError as e:
        field = ".".join(str(part) for part in e.errors()[0]["loc"])
        raise ProtocolError.missing_field(field) from e

    if token_response.token_type.lower() != "dpop":
        raise ProtocolError.invalid_token_type(token_response.token_type)

    return token_response


async def send_pushed_authorization_request(
    http_session: ClientSession,
    metadata: OAuthServerMetadata,
    client_id: str,
    redirect_uri: str,
    state: str,
    pkce: PKCEPair,
    dpop_key: jwk.JWK,
    scope: str,
    nonce: Optional[str] = None,
    login_hint: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[PARResponse, Optional[str]]:
    """
    Push the authorization request to the authorization server (RFC 9126).

    Args:
        http_session: HTTP session for making requests
        metadata: Authorization server metadata
        client_id: Client identifier URL
        redirect_uri: Callback URL registered in the client metadata
        state: Opaque state echoed back on the callback
        pkce: PKCE pair; only the challenge is sent
        dpop_key: Key pair the session will be bound to
        scope: Requested scope
        nonce: Nonce previously issued by this server, if any
        login_hint: Handle or DID to preselect on the authorization page
        timeout: Request timeout in seconds
        metrics_client: Optional metrics client

    Returns:
        Tuple[PARResponse, Optional[str]]: The PAR response and the freshest nonce

    Raises:
        AuthorizationError: When the server rejects the request with an OAuth error
        ProtocolError: On any other unexpected response
        NetworkError: On timeout or connection failure
    """
    url = metadata.pushed_authorization_request_endpoint
    data = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state,
        "scope": scope,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": "S256",
    }
    if login_hint:
        data["login_hint"] = login_hint

    resp = await dpop_request(
        http_session,
        "POST",
        url,
        dpop_key,
        nonce=nonce,
        data=data,
        timeout=timeout,
        metrics_client=metrics_client,
    )
    _raise_for_oauth_error(resp, url)

    try:
        par_response = PARResponse.model_validate(resp.body)
    except ValidationError as e:
        raise ProtocolError.malformed_body(url) from e

    return par_response, resp.nonce


def build_authorization_url(
    metadata: OAuthServerMetadata, request_uri: str, client_id: str
) -> str:
    """Build the URL the browser is sent to, keeping any query the endpoint already has."""
    parsed_authorization_endpoint = urlparse(metadata.authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update({"client_id": client_id, "request_uri": request_uri})
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return urlunparse(parsed_authorization_endpoint)


async def exchange_code_for_tokens(
    http_session: ClientSession,
    metadata: OAuthServerMetadata,
    code: str,
    code_verifier: str,
    client_id: str,
    redirect_uri: str,
    dpop_key: jwk.JWK,
    nonce: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[TokenResponse, Optional[str]]:
    """
    Exchange an authorization code for DPoP-bound tokens.

    Returns:
        Tuple[TokenResponse, Optional[str]]: The tokens and the freshest nonce

    Raises:
        AuthorizationError: When the server rejects the code
        ProtocolError: When the response lacks ``access_token`` or ``sub``, or the
            token type is not DPoP
    """
    url = metadata.token_endpoint
    resp = await dpop_request(
        http_session,
        "POST",
        url,
        dpop_key,
        nonce=nonce,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
        },
        timeout=timeout,
        metrics_client=metrics_client,
    )
    return _parse_token_response(resp, url), resp.nonce


async def refresh_access_token(
    http_session: ClientSession,
    metadata: OAuthServerMetadata,
    refresh_token: str,
    client_id: str,
    dpop_key: jwk.JWK,
    nonce: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> Tuple[TokenResponse, Optional[str]]:
    """
    Exchange a refresh token for new tokens bound to the same DPoP key.

    Failures are raised, never swallowed; the caller decides whether the session
    survives.
    """
    url = metadata.token_endpoint
    resp = await dpop_request(
        http_session,
        "POST",
        url,
        dpop_key,
        nonce=nonce,
        data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        },
        timeout=timeout,
        metrics_client=metrics_client,
    )
    return _parse_token_response(resp, url), resp.nonce


async def oauth_init(
    http_session: ClientSession,
    store: SessionStore,
    remote_base_url: str,
    client: OAuthClient,
    login_hint: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> OAuthFlow:
    """
    Initialize an OAuth flow against the authorization server of a PDS.

    This function:
    1. Discovers the authorization server metadata
    2. Generates a fresh DPoP key pair, PKCE pair and state
    3. Pushes the authorization request
    4. Stores the state, verifier, key pair and nonce for the callback
    5. Builds the authorization URL

    Args:
        http_session: HTTP session for making requests
        store: Session store the in-flight state is written to
        remote_base_url: Base URL of the PDS
        client: Owner or guest client descriptor
        login_hint: Optional handle to preselect on the authorization page
        timeout: Timeout in seconds for each outbound request
        metrics_client: Optional metrics client

    Returns:
        OAuthFlow: Flow in AWAITING_CALLBACK with ``authorization_url`` and
        ``oauth_state`` set

    Raises:
        EdgeError: For any discovery or PAR failure
    """
    metrics_client = metrics_client or NoOpMetricsClient()
    flow = OAuthFlow(client)

    try:
        flow.metadata = await fetch_server_metadata(
            http_session, remote_base_url, timeout
        )
        flow.advance(FlowState.METADATA_FETCHED)

        flow.dpop_key, _ = generate_dpop_key()
        pkce = generate_pkce()
        flow.oauth_state = generate_state()

        par_response, flow.dpop_nonce = await send_pushed_authorization_request(
            http_session,
            flow.metadata,
            client.client_id,
            client.redirect_uri,
            flow.oauth_state,
            pkce,
            flow.dpop_key,
            client.scope,
            login_hint=login_hint,
            timeout=timeout,
            metrics_client=metrics_client,
        )
        flow.advance(FlowState.PAR_SENT)

        await store.store_auth_state(
            flow.oauth_state, pkce.code_verifier, flow.dpop_key, flow.dpop_nonce
        )

        flow.authorization_url = build_authorization_url(
            flow.metadata, par_response.request_uri, client.client_id
        )
        flow.advance(FlowState.AWAITING_CALLBACK)
    except EdgeError as e:
        flow.fail(str(e))
        metrics_client.increment("edge.oauth.login", 1, tag_dict={"result": "failed"})
        raise

    metrics_client.increment("edge.oauth.login", 1, tag_dict={"result": "ok"})
    return flow


async def oauth_complete(
    http_session: ClientSession,
    store: SessionStore,
    remote_base_url: str,
    client: OAuthClient,
    code: str,
    state: str,
    issuer: Optional[str] = None,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> OAuthFlow:
    """
    Complete an OAuth flow by exchanging the authorization code for tokens.

    The stored state is consumed before anything else so that a replayed callback
    can never reach the token endpoint.

    Args:
        http_session: HTTP session for making requests
        store: Session store holding the in-flight state
        remote_base_url: Base URL of the PDS the flow was started against
        client: Owner or guest client descriptor
        code: Authorization code from the callback
        state: State from the callback
        issuer: ``iss`` from the callback, checked against the metadata when present
        timeout: Timeout in seconds for each outbound request
        metrics_client: Optional metrics client

    Returns:
        OAuthFlow: Flow in CODE_EXCHANGED with ``token_response``, ``dpop_key`` and
        ``dpop_nonce`` set

    Raises:
        StateMismatch: If the state is unknown, expired or already used, or the
            issuer does not match
        EdgeError: For any other failure
    """
    metrics_client = metrics_client or NoOpMetricsClient()
    flow = OAuthFlow(client)
    flow.advance(FlowState.AWAITING_CALLBACK)
    flow.oauth_state = state

    try:
        consumed = await store.consume_auth_state(state)
        if consumed is None:
            raise StateMismatch.not_found()
        auth_state, flow.dpop_key = consumed

        flow.metadata = await fetch_server_metadata(
            http_session, remote_base_url, timeout
        )

        if issuer is not None and issuer.rstrip("/") != flow.metadata.issuer.rstrip("/"):
            raise StateMismatch.issuer_mismatch(flow.metadata.issuer, issuer)

        flow.token_response, flow.dpop_nonce = await exchange_code_for_tokens(
            http_session,
            flow.metadata,
            code,
            auth_state.code_verifier,
            client.client_id,
            client.redirect_uri,
            flow.dpop_key,
            nonce=auth_state.dpop_nonce,
            timeout=timeout,
            metrics_client=metrics_client,
        )
        flow.advance(FlowState.CODE_EXCHANGED)
    except EdgeError as e:
        flow.fail(str(e))
        metrics_client.increment(
            "edge.oauth.callback", 1, tag_dict={"result": type(e).__name__}
        )
        raise

    metrics_client.increment("edge.oauth.callback", 1, tag_dict={"result": "ok"})
    return flow


async def oauth_refresh(
    http_session: ClientSession,
    store: SessionStore,
    session_id: str,
    session: StoredSession,
    dpop_key: jwk.JWK,
    remote_base_url: str,
    client: OAuthClient,
    timeout: float = 10.0,
    metrics_client: Optional[MetricsClient] = None,
) -> StoredSession:
    """
    Refresh a stored session's tokens and persist them.

    The new tokens are written only if the stored refresh token is still the one
    this refresh used. When two requests refresh the same session concurrently,
    the one that loses keeps the winner's tokens instead of overwriting them; if
    the server already rejected the loser's refresh token because the winner
    rotated it, the winner's session is returned as well.

    Args:
        http_session: HTTP session for making requests
        store: Session store
        session_id: ID of the session being refreshed
        session: The session as read by the caller
        dpop_key: The session's key pair
        remote_base_url: Base URL of the PDS the session belongs to
        client: Owner or guest client descriptor
        timeout: Timeout in seconds for each outbound request
        metrics_client: Optional metrics client

    Returns:
        StoredSession: The session as stored after the refresh

    Raises:
        SessionNotFound: If the session has no refresh token or disappeared
        EdgeError: If the refresh fails
    """
    metrics_client = metrics_client or NoOpMetricsClient()

    if not session.refresh_token:
        raise SessionNotFound.refresh_failed()

    metadata = await fetch_server_metadata(http_session, remote_base_url, timeout)

    try:
        token_response, dpop_nonce = await refresh_access_token(
            http_session,
            metadata,
            session.refresh_token,
            client.client_id,
            dpop_key,
            nonce=session.dpop_nonce,
            timeout=timeout,
            metrics_client=metrics_client,
        )
    except AuthorizationError:
        current = await store.get_session(session_id)
        if current is not None and current[0].refresh_token != session.refresh_token:
            logger.info("Session was refreshed by a concurrent request")
            metrics_client.increment(
                "edge.oauth.refresh", 1, tag_dict={"result": "concurrent"}
            )
            return current[0]
        metrics_client.increment("edge.oauth.refresh", 1, tag_dict={"result": "failed"})
        raise

    if token_response.sub != session.did:
        raise UnauthorizedSubject.not_allowed(token_response.sub)

    written = await store.update_session(
        session_id,
        token_response.access_token,
        token_response.refresh_token,
        dpop_nonce,
        token_response.expires_in,
        expected_refresh_token=session.refresh_token,
    )
    if not written:
        logger.info("Session was refreshed by a concurrent request")

    current = await store.get_session(session_id)
    if current is None:
        raise SessionNotFound.missing(session_id)

    metrics_client.increment(
        "edge.oauth.refresh", 1, tag_dict={"result": "ok" if written else "concurrent"}
    )
    return current[0]
