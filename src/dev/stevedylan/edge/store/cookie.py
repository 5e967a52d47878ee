"""
The ``session_id`` cookie.

The cookie is HttpOnly, SameSite=Lax and scoped to ``/`` with a Max-Age equal to the
session TTL. Outside local development it is also Secure and scoped to the
configured cookie domain so the site and the API share it.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlparse
from aiohttp import web

from dev.stevedylan.edge.app.config import Settings

SESSION_COOKIE = "session_id"

LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def is_local(settings: Settings) -> bool:
    return urlparse(settings.client_url).hostname in LOCAL_HOSTS


def cookie_attributes(settings: Settings) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {
        "httponly": True,
        "samesite": "Lax",
        "path": "/",
    }
    if not is_local(settings):
        attributes["secure"] = True
        attributes["domain"] = settings.cookie_domain
    return attributes


def get_session_id(request: web.Request) -> Optional[str]:
    value = request.cookies.get(SESSION_COOKIE)
    if not value:
        return None
    return value


def set_session_cookie(
    response: web.StreamResponse, session_id: str, settings: Settings
) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=settings.session_ttl,
        **cookie_attributes(settings),
    )


def clear_session_cookie(response: web.StreamResponse, settings: Settings) -> None:
    response.set_cookie(SESSION_COOKIE, "", max_age=0, **cookie_attributes(settings))
