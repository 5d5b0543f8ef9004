"""Shared pytest fixtures for the Growatt dashboard proxy."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from growatt_dashboard import DashboardCoordinator
from growatt_dashboard.growatt_api import GrowattAPI

from .fakes import FakeSession, default_routes


@pytest.fixture
def make_api() -> Callable[..., GrowattAPI]:
    """Return a factory building an API client around a fake session."""

    def _make(
        session: FakeSession | None = None,
        username: str | None = "user@example.com",
        password: str | None = "secret",
    ) -> GrowattAPI:
        return GrowattAPI(session or FakeSession(), username, password)

    return _make


@pytest.fixture
def fake_session() -> FakeSession:
    """A healthy upstream with one plant and one storage device."""
    return FakeSession(default_routes())


@pytest.fixture
def coordinator(make_api, fake_session) -> DashboardCoordinator:
    return DashboardCoordinator(make_api(fake_session))
