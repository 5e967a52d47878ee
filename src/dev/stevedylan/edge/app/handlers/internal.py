from aiohttp import web

from dev.stevedylan.edge.app.config import HealthGaugeAppKey


async def handle_index(request: web.Request):
    return web.Response(text="Hello from stevedylan.dev")


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_ready(request: web.Request):
    """
    Readiness probe. Fails with the gauge value and the time of the last failure
    while recent unexpected errors are above the threshold.
    """
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.json_response(
        {
            "gauge": await health_gauge.value(),
            "lastFailureAt": await health_gauge.last_failure_at(),
        },
        status=503,
    )
