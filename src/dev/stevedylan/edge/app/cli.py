import json
import logging
from logging.config import dictConfig
import os
from aiohttp import web

from dev.stevedylan.edge.app.config import Settings

NOISY_LOGGERS = ("aiohttp.access", "asyncio")


def configure_logging(debug: bool = False):
    """
    Configure logging from the dictConfig JSON named by ``LOGGING_CONFIG_FILE``, or
    fall back to basicConfig at DEBUG or INFO.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def invoke():
    settings = Settings()  # type: ignore
    configure_logging(settings.debug)

    from dev.stevedylan.edge.app.server import start_web_server

    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
