"""Run the Growatt dashboard proxy."""
from __future__ import annotations

import logging

from aiohttp import web
from dotenv import load_dotenv

from .config import load_config
from .const import CONF_PASSWORD, CONF_USERNAME
from .web import create_app

_LOGGER = logging.getLogger(__name__)


def main() -> None:
    load_dotenv()
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not config.has_credentials:
        _LOGGER.warning(
            "%s and/or %s not set, /api/connect will fail until they are",
            CONF_USERNAME,
            CONF_PASSWORD,
        )
    _LOGGER.info("Server running on http://%s:%s", config.host, config.port)
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
