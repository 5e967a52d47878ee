import json
import logging
from typing import Dict, List, Optional
from aiohttp import web

from dev.stevedylan.edge.app.config import SettingsAppKey

logger = logging.getLogger(__name__)


def get_cors_headers(
    origin_value: Optional[str], allowed_origins: List[str]
) -> Dict[str, str]:
    """Return CORS headers for a request from ``origin_value``.

    Only configured origins are echoed back, and only they may send credentials.
    """
    headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Vary": "Origin",
    }

    if origin_value and origin_value.rstrip("/") in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin_value
        headers["Access-Control-Allow-Credentials"] = "true"

    return headers


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    headers = get_cors_headers(request.headers.get("Origin"), settings.allowed_origins)

    # Preflight
    if request.method == "OPTIONS" and "Access-Control-Request-Method" in request.headers:
        return web.Response(status=204, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(headers)
        raise e
    except Exception as e:
        # Unhandled errors still answer with CORS headers
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        raise web.HTTPInternalServerError(
            body=json.dumps({"error": "Internal server error"}),
            content_type="application/json",
            headers=headers,
        ) from e

    response.headers.update(headers)
    return response
