import asyncio
import contextlib
import logging
from time import time
from typing import (
    Optional,
)
from aiohttp import web
import aiohttp
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from dev.stevedylan.edge.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
)
from dev.stevedylan.edge.app.cors import cors_middleware
from dev.stevedylan.edge.app.handlers import auth, guest_auth
from dev.stevedylan.edge.app.handlers.internal import (
    handle_index,
    handle_internal_alive,
    handle_internal_ready,
)
from dev.stevedylan.edge.app.handlers.now import (
    handle_post,
    handle_reply,
    handle_upload,
)
from dev.stevedylan.edge.app.metrics import create_metrics_client
from dev.stevedylan.edge.app.tasks import tick_health_task
from dev.stevedylan.edge.model.health import HealthGauge
from dev.stevedylan.edge.store.session import SessionStore

logger = logging.getLogger(__name__)

# Uploads are limited to 1 MiB by the handler; leave room for the multipart envelope.
CLIENT_MAX_SIZE = 2 * 1024 * 1024


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    owns_redis = RedisClientAppKey not in app
    if owns_redis:
        app[RedisClientAppKey] = redis.Redis.from_url(str(settings.redis_dsn))

    app[SessionStoreAppKey] = SessionStore(
        app[RedisClientAppKey],
        session_ttl=settings.session_ttl,
        auth_state_ttl=settings.auth_state_ttl,
    )

    await app[MetricsClientAppKey].connect()

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    await app[SessionAppKey].close()
    if owns_redis:
        await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "edge.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "edge.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "edge.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(
    settings: Optional[Settings] = None,
    redis_client: Optional[redis.Redis] = None,
):
    """
    Build the application.

    Args:
        settings: Settings to use, loaded from the environment when omitted
        redis_client: Redis client to use instead of connecting to ``redis_dsn``.
            The caller keeps ownership and closes it.
    """

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = web.Application(
        middlewares=[cors_middleware, statsd_middleware, sentry_middleware],
        client_max_size=CLIENT_MAX_SIZE,
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge(health_threshold=settings.health_threshold)
    app[MetricsClientAppKey] = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    if redis_client is not None:
        app[RedisClientAppKey] = redis_client

    app.add_routes([web.get("/", handle_index)])

    app.add_routes(
        [
            web.get("/auth/client-metadata.json", auth.handle_client_metadata),
            web.get("/auth/login", auth.handle_login),
            web.get("/auth/callback", auth.handle_callback),
            web.post("/auth/logout", auth.handle_logout),
            web.get("/auth/status", auth.handle_status),
        ]
    )

    app.add_routes(
        [
            web.get(
                "/guest-auth/client-metadata.json", guest_auth.handle_client_metadata
            ),
            web.get("/guest-auth/login", guest_auth.handle_login),
            web.get("/guest-auth/callback", guest_auth.handle_callback),
            web.post("/guest-auth/logout", guest_auth.handle_logout),
            web.get("/guest-auth/status", guest_auth.handle_status),
        ]
    )

    app.add_routes(
        [
            web.post("/now/post", handle_post),
            web.post("/now/reply", handle_reply),
            web.post("/now/upload", handle_upload),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
