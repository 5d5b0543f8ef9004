"""JSON API consumed by the dashboard front end."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import aiohttp
from aiohttp import web

from . import DashboardCoordinator, async_create_api
from .config import DashboardConfig

_LOGGER = logging.getLogger(__name__)

COORDINATOR_KEY = web.AppKey("coordinator", DashboardCoordinator)


async def _client_session_ctx(app: web.Application) -> AsyncIterator[None]:
    """Own the upstream ClientSession for the lifetime of the app."""
    api = app[COORDINATOR_KEY].api
    # the API client keeps its own cookie jar
    api.session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
    _LOGGER.info("Growatt client ready for %s", api.base_url)
    yield
    await api.session.close()


async def _respond(
    tag: str, handler: Callable[[], Awaitable[dict[str, Any]]]
) -> web.Response:
    """Run handler and report any failure as success=false with HTTP 200."""
    _LOGGER.info(">>> %s called", tag)
    try:
        payload = await handler()
    except Exception as err:  # noqa: BLE001
        _LOGGER.exception("%s failed: %s", tag, err)
        payload = {"success": False, "error": str(err)}
    return web.json_response(payload)


async def handle_connect(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return await _respond("/api/connect", coordinator.async_connect)


async def handle_data(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return await _respond("/api/data", coordinator.async_get_data)


async def handle_status(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]

    async def _status() -> dict[str, Any]:
        return coordinator.status()

    return await _respond("/api/status", _status)


async def handle_debug(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return await _respond("/api/debug", coordinator.async_get_debug)


async def handle_fields(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return await _respond("/api/fields", coordinator.async_get_fields)


def create_app(
    config: DashboardConfig,
    coordinator: DashboardCoordinator | None = None,
) -> web.Application:
    """Create the aiohttp application.

    Without a coordinator one is built here and handed a fresh
    ClientSession on startup, closed again on cleanup.
    """
    app = web.Application()
    if coordinator is None:
        app[COORDINATOR_KEY] = DashboardCoordinator(async_create_api(None, config))
        app.cleanup_ctx.append(_client_session_ctx)
    else:
        app[COORDINATOR_KEY] = coordinator

    app.router.add_get("/api/connect", handle_connect)
    app.router.add_get("/api/data", handle_data)
    app.router.add_get("/api/status", handle_status)
    app.router.add_get("/api/debug", handle_debug)
    app.router.add_get("/api/fields", handle_fields)
    return app
