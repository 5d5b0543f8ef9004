"""Environment configuration for the Growatt dashboard proxy."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import voluptuous as vol

from .const import (
    CONF_BASE_URL,
    CONF_HOST,
    CONF_LOG_LEVEL,
    CONF_PASSWORD,
    CONF_PORT,
    CONF_REQUEST_TIMEOUT,
    CONF_USERNAME,
    DEFAULT_BASE_URL,
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
    LOG_LEVELS,
)


def _strip_slash(value: str) -> str:
    return value.rstrip("/")


def _log_level(value: str) -> str:
    level = vol.In(LOG_LEVELS)(value.upper())
    return "WARNING" if level == "WARN" else level


# Credentials may be empty at startup; login reports them as a config error.
CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_USERNAME, default=""): str,
        vol.Optional(CONF_PASSWORD, default=""): str,
        vol.Optional(CONF_BASE_URL, default=DEFAULT_BASE_URL): vol.All(
            str, vol.Url(), _strip_slash
        ),
        vol.Optional(CONF_HOST, default=DEFAULT_HOST): str,
        vol.Optional(CONF_PORT, default=DEFAULT_PORT): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=65535)
        ),
        vol.Optional(CONF_LOG_LEVEL, default=DEFAULT_LOG_LEVEL): vol.All(str, _log_level),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(frozen=True)
class DashboardConfig:
    """Validated settings for one proxy process."""

    username: str = ""
    password: str = ""
    base_url: str = DEFAULT_BASE_URL
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    request_timeout: float = DEFAULT_TIMEOUT

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def load_config(environ: Mapping[str, Any] | None = None) -> DashboardConfig:
    """Validate the process environment into a DashboardConfig.

    Raises voluptuous.Invalid for malformed server settings. Missing
    credentials are allowed; login reports them.
    """
    source = os.environ if environ is None else environ
    keys = [str(key) for key in CONFIG_SCHEMA.schema]
    data = CONFIG_SCHEMA({key: source[key] for key in keys if key in source})

    return DashboardConfig(
        username=data[CONF_USERNAME],
        password=data[CONF_PASSWORD],
        base_url=data[CONF_BASE_URL],
        host=data[CONF_HOST],
        port=data[CONF_PORT],
        log_level=data[CONF_LOG_LEVEL],
        request_timeout=data[CONF_REQUEST_TIMEOUT],
    )
