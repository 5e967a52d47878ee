"""
Guest OAuth Handlers

Guests sign in with any AT Protocol identity to leave comments. Their PDS is
resolved from the handle they enter, and the session they get back is exposed to
the browser as a ``guest_`` prefixed ID that maps to the stored session.

- GET /guest-auth/client-metadata.json
- GET /guest-auth/login?handle=<handle>&returnTo=<path>
- GET /guest-auth/callback
- POST /guest-auth/logout
- GET /guest-auth/status
"""

import logging
from typing import Optional
from aiohttp import web

from dev.stevedylan.edge.app.config import (
    MetricsClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    SettingsAppKey,
)
from dev.stevedylan.edge.app.handlers.helpers import (
    GuestSession,
    ensure_fresh,
    error_redirect,
    load_guest_session,
    report_failure,
    status_body,
)
from dev.stevedylan.edge.atproto.oauth import (
    FlowState,
    OAuthClient,
    oauth_complete,
    oauth_init,
)
from dev.stevedylan.edge.errors import SessionNotFound, StateMismatch
from dev.stevedylan.edge.resolve.handle import resolve_handle_to_remote_server
from dev.stevedylan.edge.store.cookie import (
    clear_session_cookie,
    get_session_id,
    set_session_cookie,
)
from dev.stevedylan.edge.store.session import is_guest_id, new_guest_id

logger = logging.getLogger(__name__)

DEFAULT_RETURN_TO = "/now"


def safe_return_to(value: Optional[str]) -> str:
    """Only same-site absolute paths are honored."""
    if not value or not value.startswith("/") or value.startswith("//"):
        return DEFAULT_RETURN_TO
    if "\\" in value:
        return DEFAULT_RETURN_TO
    return value


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(OAuthClient.guest(settings).metadata().model_dump())


async def handle_login(request: web.Request):
    """
    Start a guest login.

    Query Parameters:
        handle: Handle or DID of the guest, required
        returnTo: Path on the site to return to afterwards, defaults to ``/now``
    """
    settings = request.app[SettingsAppKey]
    http_session = request.app[SessionAppKey]
    store = request.app[SessionStoreAppKey]

    handle = request.query.get("handle", "").strip()
    if not handle:
        raise web.HTTPFound(error_redirect(settings, "handle_required"))

    return_to = safe_return_to(request.query.get("returnTo", None))

    try:
        resolved = await resolve_handle_to_remote_server(
            http_session,
            handle,
            settings.plc_hostname,
            settings.handle_resolver_url,
            timeout=settings.http_timeout,
        )
    except Exception as e:
        await report_failure(request, e, "Guest handle resolution failed")
        raise web.HTTPFound(error_redirect(settings, "invalid_handle"))

    try:
        flow = await oauth_init(
            http_session,
            store,
            resolved.pds,
            OAuthClient.guest(settings),
            login_hint=handle,
            timeout=settings.http_timeout,
            metrics_client=request.app[MetricsClientAppKey],
        )
        await store.store_guest_flow(flow.oauth_state, return_to, resolved.pds)
    except Exception as e:
        await report_failure(request, e, "Guest login failed")
        raise web.HTTPFound(error_redirect(settings, "login_failed"))

    raise web.HTTPFound(str(flow.authorization_url))


async def handle_callback(request: web.Request):
    """
    Complete a guest login.

    The return path and PDS recorded at login are consumed together with the
    state. Any DID may complete a guest login.
    """
    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    error: Optional[str] = request.query.get("error", None)
    if error:
        logger.warning(
            "Authorization server returned %s: %s",
            error,
            request.query.get("error_description", ""),
        )
        raise web.HTTPFound(error_redirect(settings, error))

    code: Optional[str] = request.query.get("code", None)
    state: Optional[str] = request.query.get("state", None)
    issuer: Optional[str] = request.query.get("iss", None)
    if not code or not state:
        raise web.HTTPFound(error_redirect(settings, "missing_params"))

    return_to, pds_url = await store.consume_guest_flow(state)
    if pds_url is None:
        raise web.HTTPFound(error_redirect(settings, "missing_pds"))

    try:
        flow = await oauth_complete(
            request.app[SessionAppKey],
            store,
            pds_url,
            OAuthClient.guest(settings),
            code,
            state,
            issuer,
            timeout=settings.http_timeout,
            metrics_client=request.app[MetricsClientAppKey],
        )
        token_response = flow.token_response

        session_id = await store.create_session(
            token_response.access_token,
            token_response.refresh_token,
            flow.dpop_key,
            flow.dpop_nonce,
            token_response.sub,
            token_response.expires_in,
            pds_url=pds_url,
        )
        guest_id = new_guest_id()
        await store.map_guest_session(guest_id, session_id)
        flow.advance(FlowState.SESSION_ACTIVE)
    except StateMismatch as e:
        await report_failure(request, e, "Guest callback rejected")
        raise web.HTTPFound(error_redirect(settings, e.code))
    except Exception as e:
        await report_failure(request, e, "Guest callback failed")
        raise web.HTTPFound(error_redirect(settings, "callback_failed"))

    response = web.HTTPFound(f"{settings.client_url}{safe_return_to(return_to)}")
    set_session_cookie(response, guest_id, settings)
    raise response


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    guest_id = get_session_id(request)
    if guest_id is not None and is_guest_id(guest_id):
        session_id = await store.resolve_guest_session(guest_id)
        if session_id is not None:
            await store.delete_session(session_id)
        await store.delete_guest_session(guest_id)

    response = web.json_response({"success": True})
    clear_session_cookie(response, settings)
    return response


async def handle_status(request: web.Request):
    settings = request.app[SettingsAppKey]

    guest_id = get_session_id(request)
    if guest_id is None or not is_guest_id(guest_id):
        return web.json_response({"authenticated": False})

    descriptor: Optional[GuestSession] = await load_guest_session(request, guest_id)
    if descriptor is None:
        response = web.json_response({"authenticated": False})
        clear_session_cookie(response, settings)
        return response

    try:
        descriptor = await ensure_fresh(request, descriptor)
    except SessionNotFound:
        response = web.json_response({"authenticated": False})
        clear_session_cookie(response, settings)
        return response

    return web.json_response(status_body(descriptor))
