"""Growatt ShineServer API client with session handling."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from urllib.parse import urlencode

import aiohttp
import async_timeout

from .const import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT,
    LOGIN_ENDPOINT,
    OP_DEVICE_LIST,
    OP_DEVICE_LIST_TWO,
    OP_ENERGY_OVERVIEW,
    OP_STORAGE_INFO,
    OP_STORAGE_PARAMS,
    PLANT_API_ENDPOINT,
    PLANT_DETAIL_ENDPOINT,
    SALVAGE_ROUNDS,
    SALVAGE_SUFFIXES,
    SESSION_TTL,
    STORAGE_API_ENDPOINT,
    USER_AGENT,
)

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class GrowattAPIError(Exception):
    """Base exception for Growatt API errors."""


class GrowattConfigError(GrowattAPIError):
    """Exception for missing or invalid credentials."""


class GrowattConnectionError(GrowattAPIError):
    """Exception for connection errors."""


class GrowattAuthError(GrowattAPIError):
    """Exception for authentication errors."""


class GrowattSessionExpiredError(GrowattAPIError):
    """Raised when a data endpoint answers with an HTML login page."""


class GrowattNoDeviceError(GrowattAPIError):
    """Raised when device data is needed but discovery found nothing."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_iso(value: datetime | None) -> str | None:
    """Render a timestamp the way browsers print Date.toISOString()."""
    if value is None:
        return None
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def growatt_hash(password: str) -> str:
    """Return the MD5 variant Growatt expects as the login password.

    The hex digest has every '0' at an even index replaced with 'c'.
    """
    raw_md5 = hashlib.md5(password.encode("utf-8"), usedforsecurity=False).hexdigest()
    hashed = "".join(
        "c" if index % 2 == 0 and char == "0" else char
        for index, char in enumerate(raw_md5)
    )
    _LOGGER.debug(
        "Password hashed: raw_md5=%s... modified=%s... (len=%s)",
        raw_md5[:8],
        hashed[:8],
        len(hashed),
    )
    return hashed


class CookieJar:
    """Session cookies keyed by name, later values overwrite earlier ones."""

    def __init__(self) -> None:
        self._cookies: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._cookies)

    def __contains__(self, name: object) -> bool:
        return name in self._cookies

    def get(self, name: str) -> str | None:
        return self._cookies.get(name)

    @property
    def header(self) -> str | None:
        """Return the Cookie header value, or None when the jar is empty."""
        if not self._cookies:
            return None
        return "; ".join(f"{name}={value}" for name, value in self._cookies.items())

    def capture(self, raw_cookies: Iterable[str]) -> str | None:
        """Upsert raw Set-Cookie values and return the rebuilt header."""
        for raw in raw_cookies:
            pair = raw.split(";", 1)[0].strip()
            if "=" not in pair:
                continue
            name, value = pair.split("=", 1)
            name = name.strip()
            if not name:
                continue
            value = value.strip()
            self._cookies[name] = value
            _LOGGER.debug(
                "  Set: %s=%s%s", name, value[:30], "..." if len(value) > 30 else ""
            )
        return self.header

    def clear(self) -> None:
        self._cookies.clear()


@dataclass
class UpstreamResponse:
    """Fully read response from the Growatt server."""

    status: int
    url: str
    text: str
    content_type: str = ""


@dataclass
class SessionState:
    """The single login session shared by every dashboard request."""

    cookies: str | None = None
    user_id: str | None = None
    plant_id: str | None = None
    plant_name: str | None = None
    device_sn: str | None = None
    country: str | None = None
    last_login: datetime | None = None

    def invalidate(self) -> None:
        """Drop the login but keep the plant and device identifiers."""
        self.cookies = None
        self.last_login = None


def parse_tolerant(response: UpstreamResponse, label: str = "API") -> Any:
    """Parse a JSON body, salvaging truncated payloads.

    An HTML body means the session was dropped and raises
    GrowattSessionExpiredError. Anything else that cannot be recovered
    becomes an empty dict so one bad endpoint does not sink a refresh.
    """
    text = response.text
    try:
        return json.loads(text)
    except ValueError:
        _LOGGER.error(
            "[%s] Non-JSON response (status %s): %s",
            label,
            response.status,
            text[:300],
        )

    if text.strip().startswith("<"):
        raise GrowattSessionExpiredError(f"session_expired: {label} returned HTML")

    current = text
    for _ in range(SALVAGE_ROUNDS):
        comma_idx = current.rfind(",")
        if comma_idx == -1:
            break
        current = current[:comma_idx]
        for ending in SALVAGE_SUFFIXES:
            try:
                parsed = json.loads(current + ending)
            except ValueError:
                continue
            _LOGGER.info("[%s] Successfully salvaged truncated JSON", label)
            return parsed

    _LOGGER.error("[%s] Could not salvage JSON. Returning empty object.", label)
    return {}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _device_list(payload: Any) -> list[dict[str, Any]]:
    devices = _as_dict(payload).get("deviceList") or []
    if not isinstance(devices, list):
        return []
    return [device for device in devices if isinstance(device, dict)]


class GrowattAPI:
    """API client for the Growatt ShineServer cloud."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None,
        username: str | None,
        password: str | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session_ttl: timedelta = SESSION_TTL,
    ) -> None:
        """Initialize the API client."""
        self.session = session
        self.username = username
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session_ttl = session_ttl
        self.state = SessionState()
        self.cookie_jar = CookieJar()
        self._auth_lock = asyncio.Lock()
        self._request_counter = 0

    # ---------- transport ----------

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint}"

    def _capture_cookies(self, response: aiohttp.ClientResponse) -> None:
        raw_cookies = response.headers.getall("Set-Cookie", [])
        _LOGGER.debug("Raw Set-Cookie headers (%s): %s", len(raw_cookies), raw_cookies)
        self.state.cookies = self.cookie_jar.capture(raw_cookies)
        _LOGGER.debug("Cookie jar now has %s entries", len(self.cookie_jar))

    async def fetch(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        data: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> UpstreamResponse:
        """Send a request with the browser User-Agent and session cookies."""
        if self.session is None:
            raise GrowattConnectionError("HTTP client session not started")
        url = self._build_url(endpoint)
        request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
        if self.state.cookies:
            request_headers["Cookie"] = self.state.cookies
        if params:
            params = {key: value for key, value in params.items() if value is not None}

        self._request_counter += 1
        req_id = self._request_counter
        _LOGGER.debug(">>> HTTP %s %s params=%s [req#%s]", method, url, params, req_id)

        try:
            async with async_timeout.timeout(self.timeout):
                async with self.session.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    headers=request_headers,
                    allow_redirects=True,
                ) as resp:
                    # cookies set on redirect hops count too
                    for hop in (*resp.history, resp):
                        self._capture_cookies(hop)
                    text = await resp.text(errors="replace")
                    _LOGGER.debug(
                        "<<< [req#%s] Status: %s, final url: %s, body (first 500): %s",
                        req_id,
                        resp.status,
                        resp.url,
                        text[:500],
                    )
                    return UpstreamResponse(
                        status=resp.status,
                        url=str(resp.url),
                        text=text,
                        content_type=resp.headers.get("Content-Type", ""),
                    )
        except asyncio.TimeoutError as err:
            _LOGGER.error("[req#%s] Timeout after %ss for %s", req_id, self.timeout, url)
            raise GrowattConnectionError(
                f"Request timeout after {self.timeout}s for {endpoint}"
            ) from err
        except aiohttp.ClientError as err:
            _LOGGER.error("[req#%s] Network error for %s: %s", req_id, url, err)
            raise GrowattConnectionError(f"Network error for {endpoint}: {err}") from err

    async def _fetch_json(self, label: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        response = await self.fetch(endpoint, **kwargs)
        data = _as_dict(parse_tolerant(response, label))
        _LOGGER.debug("%s keys: %s", label, list(data.keys()))
        return data

    # ---------- session ----------

    def session_valid(self, now: datetime | None = None) -> bool:
        """Return True while the cookies and login are within the TTL."""
        if not self.state.cookies or not self.state.last_login:
            return False
        now = now or utcnow()
        return now - self.state.last_login <= self.session_ttl

    async def ensure_session(self) -> None:
        """Log in unless the current session is still valid."""
        async with self._auth_lock:
            if self.session_valid():
                return
            _LOGGER.debug("Session missing or expired, logging in again")
            await self._login()

    async def login(self) -> dict[str, Any]:
        """Force a fresh login and return a summary of the plant."""
        async with self._auth_lock:
            return await self._login()

    async def _login(self) -> dict[str, Any]:
        if not self.username or not self.password:
            _LOGGER.error("GROWATT_USERNAME and/or GROWATT_PASSWORD not set")
            raise GrowattConfigError(
                "GROWATT_USERNAME and GROWATT_PASSWORD must be set in .env"
            )

        _LOGGER.info("=== Login attempt for user: %s ===", self.username)
        self.state.invalidate()
        self.cookie_jar.clear()

        body = urlencode(
            {"userName": self.username, "password": growatt_hash(self.password)}
        )
        response = await self.fetch(
            LOGIN_ENDPOINT,
            method="POST",
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        _LOGGER.info("Login response body length: %s chars", len(response.text))

        try:
            data = json.loads(response.text)
        except ValueError as err:
            _LOGGER.error(
                "Login JSON parse failed (status %s, content-type %s): %s",
                response.status,
                response.content_type,
                response.text[:200],
            )
            raise GrowattAuthError(
                f'Login returned non-JSON (status {response.status}): "{response.text[:120]}"'
            ) from err

        back = data.get("back") if isinstance(data, dict) else None
        if not back or not isinstance(back, dict):
            raise GrowattAuthError(
                f'Login failed: no "back" in response: {json.dumps(data)[:200]}'
            )

        if not back.get("success"):
            msg = back.get("msg") or data.get("msg") or json.dumps(data)
            _LOGGER.error("Login not successful: %s", back)
            raise GrowattAuthError(f"Login failed: {msg}")

        user = _as_dict(back.get("user"))
        plants = back.get("data")
        if not plants or not isinstance(plants, list) or not isinstance(plants[0], dict):
            _LOGGER.error("No plants found in login response")
            raise GrowattAuthError("Login succeeded but no plants found")

        _LOGGER.debug(
            "Plants received: %s",
            [(plant.get("plantId"), plant.get("plantName")) for plant in plants if isinstance(plant, dict)],
        )

        self.state.user_id = user.get("id")
        self.state.country = user.get("country")
        self.state.plant_id = plants[0].get("plantId")
        self.state.plant_name = plants[0].get("plantName")
        self.state.last_login = utcnow()

        _LOGGER.info(
            'Session set: plant="%s" (%s), userId=%s',
            self.state.plant_name,
            self.state.plant_id,
            self.state.user_id,
        )

        await self.discover_devices()

        _LOGGER.info("=== Login complete. Device: %s ===", self.state.device_sn or "NONE")
        return {
            "plantName": self.state.plant_name,
            "plantId": self.state.plant_id,
            "userId": self.state.user_id,
            "country": self.state.country or "Unknown",
            "deviceSn": self.state.device_sn,
        }

    async def with_session_retry(self, operation: Callable[[], Awaitable[_T]]) -> _T:
        """Run operation, logging in again and retrying once on session expiry."""
        try:
            return await operation()
        except GrowattSessionExpiredError as err:
            _LOGGER.info("Session may have expired (%s), logging in again", err)
            self.state.last_login = None
            await self.ensure_session()
            return await operation()

    # ---------- devices ----------

    async def discover_devices(self) -> list[dict[str, Any]]:
        """Find the plant's devices and remember the first serial."""
        plant_id = self.state.plant_id
        _LOGGER.info("=== Discovering devices for plant %s ===", plant_id)

        data = await self._fetch_json(
            "DeviceListTwo",
            PLANT_API_ENDPOINT,
            params={
                "op": OP_DEVICE_LIST_TWO,
                "plantId": plant_id,
                "pageNum": 1,
                "pageSize": 20,
            },
        )
        devices = _device_list(data)

        if not devices:
            _LOGGER.info("%s returned 0 devices, trying %s", OP_DEVICE_LIST_TWO, OP_DEVICE_LIST)
            data = await self._fetch_json(
                "DeviceListAll",
                PLANT_API_ENDPOINT,
                params={"op": OP_DEVICE_LIST, "plantId": plant_id, "language": 1},
            )
            devices = _device_list(data)

        if devices:
            first = devices[0]
            self.state.device_sn = first.get("deviceSn") or first.get("alias") or first.get("sn")
            _LOGGER.info("Found %s device(s). Using: %s", len(devices), self.state.device_sn)
        else:
            self.state.device_sn = None
            _LOGGER.warning("No devices found from either device list")
            _LOGGER.debug("Last raw device response: %s", json.dumps(data)[:500])

        return devices

    def _require_device(self) -> str:
        if not self.state.device_sn:
            _LOGGER.error("No device SN in session")
            raise GrowattNoDeviceError("No device discovered. Try reconnecting.")
        return self.state.device_sn

    # ---------- data sources ----------

    async def get_storage_detail(self) -> dict[str, Any]:
        device_sn = self._require_device()
        return await self._fetch_json(
            "StorageDetail",
            STORAGE_API_ENDPOINT,
            params={"op": OP_STORAGE_INFO, "storageId": device_sn},
        )

    async def get_energy_overview(self) -> dict[str, Any]:
        device_sn = self._require_device()
        return await self._fetch_json(
            "EnergyOverview",
            STORAGE_API_ENDPOINT,
            method="POST",
            params={
                "op": OP_ENERGY_OVERVIEW,
                "plantId": self.state.plant_id,
                "storageSn": device_sn,
            },
        )

    async def get_storage_params(self) -> dict[str, Any]:
        device_sn = self._require_device()
        return await self._fetch_json(
            "StorageParams",
            STORAGE_API_ENDPOINT,
            params={"op": OP_STORAGE_PARAMS, "storageId": device_sn},
        )

    async def get_plant_detail(self) -> dict[str, Any]:
        today = utcnow().date().isoformat()
        _LOGGER.info("Fetching PlantDetail for plant %s, date=%s", self.state.plant_id, today)
        return await self._fetch_json(
            "PlantDetail",
            PLANT_DETAIL_ENDPOINT,
            params={"plantId": self.state.plant_id, "type": 1, "date": today},
        )
