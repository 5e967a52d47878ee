from dataclasses import dataclass, replace
import json
import logging
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode
from aiohttp import web
from jwcrypto import jwk
import sentry_sdk

from dev.stevedylan.edge.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
)
from dev.stevedylan.edge.atproto.oauth import OAuthClient, oauth_refresh
from dev.stevedylan.edge.errors import EdgeError, FormatError, SessionNotFound
from dev.stevedylan.edge.model.session import StoredSession
from dev.stevedylan.edge.store.cookie import get_session_id
from dev.stevedylan.edge.store.session import SessionStore, is_expired, is_guest_id

logger = logging.getLogger(__name__)


@dataclass(repr=False, frozen=True)
class OwnerSession:
    """
    Session of the site owner.

    The cookie value is the storage ID. The session always belongs to the allowed
    DID and lives on the configured PDS.

    Attributes:
        session_id: Storage ID of the session, also the cookie value
        session: The stored session
        dpop_key: The session's DPoP key pair
        pds_url: PDS the session's tokens are valid for
        client: OAuth client the session was issued to
    """

    session_id: str
    session: StoredSession
    dpop_key: jwk.JWK
    pds_url: str
    client: OAuthClient


@dataclass(repr=False, frozen=True)
class GuestSession:
    """
    Session of a guest commenter.

    The cookie carries a separate guest ID that maps to the storage ID, and the
    session lives on the guest's own PDS.

    Attributes:
        guest_id: ID carried by the cookie
        session_id: Storage ID of the session
        session: The stored session
        dpop_key: The session's DPoP key pair
        pds_url: The guest's PDS
        client: OAuth client the session was issued to
    """

    guest_id: str
    session_id: str
    session: StoredSession
    dpop_key: jwk.JWK
    pds_url: str
    client: OAuthClient


SessionDescriptor = Union[OwnerSession, GuestSession]


class SessionAccessException(Exception):
    """
    Raised when a request cannot be served with the session it carries.
    """

    def __init__(self, status: int, error: str) -> None:
        self.status = status
        self.error = error
        super().__init__(error)

    @staticmethod
    def unauthenticated() -> "SessionAccessException":
        return SessionAccessException(401, "Not authenticated")

    @staticmethod
    def owner_required() -> "SessionAccessException":
        return SessionAccessException(403, "Only the site owner can do this")

    def as_http_exception(self) -> web.HTTPException:
        cls = web.HTTPUnauthorized if self.status == 401 else web.HTTPForbidden
        return cls(
            body=json.dumps({"error": self.error}),
            content_type="application/json",
        )


def error_redirect(settings: Settings, code: str) -> str:
    return f"{settings.client_url}/now?{urlencode({'error': code})}"


async def report_failure(request: web.Request, e: Exception, message: str) -> None:
    """
    Log a failure caught at a route boundary.

    Expected failures (rejected logins, expired state, unreachable servers) are
    logged as warnings. Anything else is logged with its traceback, sent to Sentry
    and counted against the health gauge.
    """
    if isinstance(e, EdgeError):
        logger.warning("%s: %s", message, e)
        return

    logger.exception(message)
    sentry_sdk.capture_exception(e)
    await request.app[HealthGaugeAppKey].womp()


async def load_owner_session(
    request: web.Request, session_id: str
) -> Optional[OwnerSession]:
    """Load an owner session, None when missing, unreadable or not the owner's."""
    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    try:
        loaded = await store.get_session(session_id)
    except FormatError as e:
        logger.warning("Discarding unreadable session: %s", e)
        await store.delete_session(session_id)
        return None

    if loaded is None:
        return None

    session, dpop_key = loaded
    if session.did != settings.allowed_did:
        logger.warning("Discarding owner session held by %s", session.did)
        await store.delete_session(session_id)
        return None

    return OwnerSession(
        session_id=session_id,
        session=session,
        dpop_key=dpop_key,
        pds_url=settings.pds_url,
        client=OAuthClient.owner(settings),
    )


async def load_guest_session(
    request: web.Request, guest_id: str
) -> Optional[GuestSession]:
    """Load a guest session through its indirection record."""
    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    session_id = await store.resolve_guest_session(guest_id)
    if session_id is None:
        return None

    try:
        loaded = await store.get_session(session_id)
    except FormatError as e:
        logger.warning("Discarding unreadable guest session: %s", e)
        loaded = None

    if loaded is None or loaded[0].pds_url is None:
        await store.delete_session(session_id)
        await store.delete_guest_session(guest_id)
        return None

    session, dpop_key = loaded
    return GuestSession(
        guest_id=guest_id,
        session_id=session_id,
        session=session,
        dpop_key=dpop_key,
        pds_url=session.pds_url,
        client=OAuthClient.guest(settings),
    )


async def load_session(request: web.Request) -> Optional[SessionDescriptor]:
    """
    Resolve the request's cookie into a session descriptor.

    This is the only place the guest prefix of a cookie value is inspected.
    """
    cookie_value = get_session_id(request)
    if cookie_value is None:
        return None
    if is_guest_id(cookie_value):
        return await load_guest_session(request, cookie_value)
    return await load_owner_session(request, cookie_value)


async def discard_session(store: SessionStore, descriptor: SessionDescriptor) -> None:
    await store.delete_session(descriptor.session_id)
    if isinstance(descriptor, GuestSession):
        await store.delete_guest_session(descriptor.guest_id)


async def ensure_fresh(
    request: web.Request, descriptor: SessionDescriptor
) -> SessionDescriptor:
    """
    Refresh the session's tokens when they are within a minute of expiring.

    Raises:
        SessionNotFound: When the refresh failed. The session has been deleted.
    """
    if not is_expired(descriptor.session) or not descriptor.session.refresh_token:
        return descriptor

    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    try:
        session = await oauth_refresh(
            request.app[SessionAppKey],
            store,
            descriptor.session_id,
            descriptor.session,
            descriptor.dpop_key,
            descriptor.pds_url,
            descriptor.client,
            timeout=settings.http_timeout,
            metrics_client=request.app[MetricsClientAppKey],
        )
    except EdgeError as e:
        await report_failure(request, e, "Token refresh failed")
        await discard_session(store, descriptor)
        raise SessionNotFound.refresh_failed() from e

    return replace(descriptor, session=session)


async def require_session(
    request: web.Request, allow_guest: bool
) -> SessionDescriptor:
    """
    Load and refresh the request's session for a write endpoint.

    Raises:
        SessionAccessException: 401 without a usable session, 403 when a guest
            session is used where the owner is required.
    """
    descriptor = await load_session(request)
    if descriptor is None:
        raise SessionAccessException.unauthenticated()
    if isinstance(descriptor, GuestSession) and not allow_guest:
        raise SessionAccessException.owner_required()

    try:
        return await ensure_fresh(request, descriptor)
    except SessionNotFound as e:
        raise SessionAccessException.unauthenticated() from e


def status_body(descriptor: SessionDescriptor) -> Dict[str, Any]:
    body: Dict[str, Any] = {"authenticated": True, "did": descriptor.session.did}
    if descriptor.session.handle is not None:
        body["handle"] = descriptor.session.handle
    if isinstance(descriptor, GuestSession):
        body["isGuest"] = True
    return body
