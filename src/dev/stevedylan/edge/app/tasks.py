import asyncio
import logging
from typing import NoReturn
from aiohttp import web

from dev.stevedylan.edge.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
)

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Let the health gauge decay and report its value as ``edge.health.gauge``.
    """
    interval = app[SettingsAppKey].health_tick_interval
    health_gauge = app[HealthGaugeAppKey]
    metrics_client = app[MetricsClientAppKey]

    logger.info("Starting health gauge task, ticking every %ds", interval)

    while True:
        await health_gauge.tick()
        metrics_client.gauge("edge.health.gauge", await health_gauge.value())
        await asyncio.sleep(interval)
