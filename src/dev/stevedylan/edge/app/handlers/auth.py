"""
Owner OAuth Handlers

Endpoints through which the site owner signs in with their AT Protocol identity.
Only ``ALLOWED_DID`` can complete a login; everyone else is redirected back to the
site with ``error=unauthorized``.

- GET /auth/client-metadata.json - OAuth client metadata
- GET /auth/login - Push the authorization request and redirect to the server
- GET /auth/callback - Exchange the code, set the session cookie
- POST /auth/logout - Delete the session and clear the cookie
- GET /auth/status - Report the session, refreshing it when needed

Failures never render server-side. The browser is redirected to
``<CLIENT_URL>/now?error=<code>`` with one of ``login_failed``, ``missing_params``,
``invalid_state``, ``unauthorized``, ``callback_failed`` or the OAuth ``error`` the
authorization server returned.
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
    OwnerSession,
    ensure_fresh,
    error_redirect,
    load_owner_session,
    report_failure,
    status_body,
)
from dev.stevedylan.edge.atproto.oauth import (
    FlowState,
    OAuthClient,
    oauth_complete,
    oauth_init,
)
from dev.stevedylan.edge.errors import (
    SessionNotFound,
    StateMismatch,
    UnauthorizedSubject,
)
from dev.stevedylan.edge.store.cookie import (
    clear_session_cookie,
    get_session_id,
    set_session_cookie,
)
from dev.stevedylan.edge.store.session import is_guest_id

logger = logging.getLogger(__name__)


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(OAuthClient.owner(settings).metadata().model_dump())


async def handle_login(request: web.Request):
    """
    Start the owner login.

    The owner's PDS is configured, so no handle is asked for.
    """
    settings = request.app[SettingsAppKey]

    try:
        flow = await oauth_init(
            request.app[SessionAppKey],
            request.app[SessionStoreAppKey],
            settings.pds_url,
            OAuthClient.owner(settings),
            timeout=settings.http_timeout,
            metrics_client=request.app[MetricsClientAppKey],
        )
    except Exception as e:
        await report_failure(request, e, "Owner login failed")
        raise web.HTTPFound(error_redirect(settings, "login_failed"))

    raise web.HTTPFound(str(flow.authorization_url))


async def handle_callback(request: web.Request):
    """
    Handle the authorization server's redirect back to this service.

    Query Parameters:
        code: Authorization code to exchange for tokens
        state: State of the login being completed
        iss: Issuer identifier, checked against the discovered metadata
        error, error_description: OAuth error reported by the server

    Flow:
        1. Forward an OAuth error from the server as the redirect's error code
        2. Consume the stored state and exchange the code
        3. Reject any subject other than the allowed DID
        4. Create the session, set the cookie and redirect to the post composer
    """
    settings = request.app[SettingsAppKey]

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

    store = request.app[SessionStoreAppKey]

    try:
        flow = await oauth_complete(
            request.app[SessionAppKey],
            store,
            settings.pds_url,
            OAuthClient.owner(settings),
            code,
            state,
            issuer,
            timeout=settings.http_timeout,
            metrics_client=request.app[MetricsClientAppKey],
        )
        token_response = flow.token_response

        if token_response.sub != settings.allowed_did:
            raise UnauthorizedSubject.not_allowed(token_response.sub)

        session_id = await store.create_session(
            token_response.access_token,
            token_response.refresh_token,
            flow.dpop_key,
            flow.dpop_nonce,
            token_response.sub,
            token_response.expires_in,
        )
        flow.advance(FlowState.SESSION_ACTIVE)
    except (StateMismatch, UnauthorizedSubject) as e:
        await report_failure(request, e, "Owner callback rejected")
        raise web.HTTPFound(error_redirect(settings, e.code))
    except Exception as e:
        await report_failure(request, e, "Owner callback failed")
        raise web.HTTPFound(error_redirect(settings, "callback_failed"))

    response = web.HTTPFound(f"{settings.client_url}/now/post")
    set_session_cookie(response, session_id, settings)
    raise response


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    store = request.app[SessionStoreAppKey]

    session_id = get_session_id(request)
    if session_id is not None and not is_guest_id(session_id):
        await store.delete_session(session_id)

    response = web.json_response({"success": True})
    clear_session_cookie(response, settings)
    return response


async def handle_status(request: web.Request):
    """
    Report whether the request carries a live owner session.

    An expired access token is refreshed first. If the refresh fails the session
    is deleted and the cookie cleared. A guest cookie is reported as not
    authenticated and left in place.
    """
    settings = request.app[SettingsAppKey]

    session_id = get_session_id(request)
    if session_id is None or is_guest_id(session_id):
        return web.json_response({"authenticated": False})

    descriptor: Optional[OwnerSession] = await load_owner_session(request, session_id)
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
