"""Growatt cloud dashboard proxy."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import aiohttp

from .config import DashboardConfig
from .const import (
    DATA_CACHE_TTL,
    SOURCE_ENERGY_OVERVIEW,
    SOURCE_PLANT_DETAIL,
    SOURCE_STORAGE_DETAIL,
    SOURCE_STORAGE_PARAMS,
)
from .growatt_api import (
    GrowattAPI,
    GrowattAPIError,
    GrowattAuthError,
    GrowattSessionExpiredError,
    as_iso,
    utcnow,
)
from .snapshot import DashboardSnapshot, RawSources, build_snapshot, field_report

_LOGGER = logging.getLogger(__name__)

__version__ = "1.0.0"


def async_create_api(
    session: aiohttp.ClientSession | None, config: DashboardConfig
) -> GrowattAPI:
    """Build the API client from validated settings."""
    return GrowattAPI(
        session=session,
        username=config.username,
        password=config.password,
        base_url=config.base_url,
        timeout=config.request_timeout,
    )


def _is_session_problem(err: Exception) -> bool:
    if isinstance(err, (GrowattAuthError, GrowattSessionExpiredError)):
        return True
    message = str(err).lower()
    return "login" in message or "session" in message


class DashboardCoordinator:
    """Serve the last snapshot while fresh, refresh it from Growatt otherwise."""

    def __init__(
        self,
        api: GrowattAPI,
        cache_ttl: timedelta = DATA_CACHE_TTL,
    ) -> None:
        """Initialize."""
        self.api = api
        self.cache_ttl = cache_ttl
        self.snapshot: DashboardSnapshot | None = None
        self.last_fetch: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    def is_fresh(self, now: datetime | None = None) -> bool:
        if self.snapshot is None or self.last_fetch is None:
            return False
        now = now or utcnow()
        return now - self.last_fetch < self.cache_ttl

    def _cached_result(self) -> dict[str, Any]:
        assert self.snapshot is not None
        age = utcnow() - self.last_fetch if self.last_fetch else None
        _LOGGER.info("Returning cached data (age: %s)", age)
        return {"success": True, "cached": True, **self.snapshot.as_dict()}

    async def async_connect(self) -> dict[str, Any]:
        """Force a login and describe the plant."""
        info = await self.api.login()
        _LOGGER.info("Connect success: %s", info)
        return {"success": True, "method": "classic", **info}

    async def async_get_data(self) -> dict[str, Any]:
        """Return the dashboard payload, cached for the freshness window."""
        if self.is_fresh():
            return self._cached_result()

        async with self._refresh_lock:
            # another request may have refreshed while we waited
            if self.is_fresh():
                return self._cached_result()
            try:
                snapshot = await self._async_update_data()
            except Exception as err:
                _LOGGER.exception("Data fetch error: %s", err)
                if _is_session_problem(err):
                    _LOGGER.warning("Clearing session due to login/session error")
                    self.api.state.last_login = None
                return {"success": False, "error": str(err)}

            self.snapshot = snapshot
            self.last_fetch = utcnow()

        return {"success": True, "cached": False, **snapshot.as_dict()}

    async def _async_update_data(self) -> DashboardSnapshot:
        """Fetch data from API."""
        await self.api.ensure_session()
        raw = await self._async_fetch_sources()
        state = self.api.state
        return build_snapshot(
            raw,
            plant_name=state.plant_name,
            plant_id=state.plant_id,
            device_sn=state.device_sn,
        )

    async def _async_fetch_sources(self, retry: bool = True) -> RawSources:
        """Fetch every upstream source, recording failures instead of raising."""
        raw = RawSources()

        async def _guarded(
            label: str, fetch: Callable[[], Awaitable[dict[str, Any]]]
        ) -> dict[str, Any]:
            try:
                if retry:
                    return await self.api.with_session_retry(fetch)
                return await fetch()
            except GrowattAPIError as err:
                _LOGGER.error("%s failed (continuing): %s", label, err)
                raw.errors[label] = str(err)
                return {}

        raw.detail = await _guarded(SOURCE_STORAGE_DETAIL, self.api.get_storage_detail)
        raw.energy = await _guarded(SOURCE_ENERGY_OVERVIEW, self.api.get_energy_overview)
        raw.params = await _guarded(SOURCE_STORAGE_PARAMS, self.api.get_storage_params)
        raw.plant_detail = await _guarded(SOURCE_PLANT_DETAIL, self.api.get_plant_detail)
        return raw

    def status(self) -> dict[str, Any]:
        """Describe the in-memory session without touching the network."""
        state = self.api.state
        return {
            "connected": bool(state.cookies),
            "plantName": state.plant_name,
            "deviceSn": state.device_sn,
            "lastLogin": as_iso(state.last_login),
            "lastFetch": as_iso(self.last_fetch),
        }

    async def async_get_debug(self) -> dict[str, Any]:
        """Return the raw upstream payloads plus a fresh device listing."""
        await self.api.ensure_session()
        raw = await self._async_fetch_sources(retry=False)
        try:
            devices: Any = await self.api.discover_devices()
        except GrowattAPIError as err:
            devices = {"error": str(err)}

        state = self.api.state
        return {
            "success": True,
            "session": {
                "plantId": state.plant_id,
                "plantName": state.plant_name,
                "deviceSn": state.device_sn,
                "userId": state.user_id,
            },
            "storageDetail": raw.detail,
            "energyOverview": raw.energy,
            "storageParams": raw.params,
            "plantDetail": raw.plant_detail,
            "devices": devices,
            "errors": raw.errors,
        }

    async def async_get_fields(self) -> dict[str, Any]:
        """Categorize every raw field by whether it carries a value."""
        await self.api.ensure_session()
        raw = await self._async_fetch_sources()
        return field_report(raw)
