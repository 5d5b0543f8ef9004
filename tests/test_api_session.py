"""Tests for login, session expiry and device discovery."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import aiohttp
import pytest

from growatt_dashboard.const import USER_AGENT
from growatt_dashboard.growatt_api import (
    GrowattAuthError,
    GrowattConfigError,
    GrowattConnectionError,
    GrowattNoDeviceError,
    GrowattSessionExpiredError,
    growatt_hash,
    utcnow,
)

from .fakes import (
    DEVICE_LIST,
    DEVICE_LIST_TWO,
    LOGIN,
    STORAGE_DETAIL,
    FakeResponse,
    FakeSession,
    default_routes,
    login_response,
    mark_logged_in,
)


@pytest.mark.asyncio
async def test_login_success_populates_session(make_api) -> None:
    session = FakeSession(default_routes())
    api = make_api(session)

    info = await api.login()

    assert info == {
        "plantName": "Home",
        "plantId": "9001",
        "userId": 42,
        "country": "Germany",
        "deviceSn": "XYZ123",
    }
    assert api.state.cookies == "JSESSIONID=abc123; SERVERID=srv1|a"
    assert api.state.last_login is not None
    assert api.session_valid()

    method, url, kwargs = session.calls_to(LOGIN)[0]
    assert method == "POST"
    assert url == "https://openapi.growatt.com/newTwoLoginAPI.do"
    assert kwargs["data"] == f"userName=user%40example.com&password={growatt_hash('secret')}"
    assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert kwargs["headers"]["User-Agent"] == USER_AGENT
    assert "Cookie" not in kwargs["headers"]
    assert kwargs["allow_redirects"] is True


@pytest.mark.asyncio
async def test_login_requires_credentials(make_api) -> None:
    session = FakeSession(default_routes())
    api = make_api(session, username="", password=None)

    with pytest.raises(GrowattConfigError):
        await api.login()
    assert session.calls == []


@pytest.mark.asyncio
async def test_login_resets_previous_session(make_api) -> None:
    session = FakeSession(
        default_routes({LOGIN: login_response(cookies=("JSESSIONID=fresh",))})
    )
    api = make_api(session)
    mark_logged_in(api, device_sn="OLD")
    api.cookie_jar.capture(["stale=1"])

    await api.login()

    assert "stale" not in api.cookie_jar
    assert api.state.cookies == "JSESSIONID=fresh"
    assert api.state.device_sn == "XYZ123"
    # the login request itself goes out without the old cookies
    assert "Cookie" not in session.calls_to(LOGIN)[0][2]["headers"]


@pytest.mark.asyncio
async def test_login_captures_cookies_from_redirects(make_api) -> None:
    hop = FakeResponse(status=302, cookies=("assToken=hop1; Path=/",))
    session = FakeSession(default_routes({LOGIN: login_response(history=(hop,))}))
    api = make_api(session)

    await api.login()

    assert api.cookie_jar.get("assToken") == "hop1"
    assert api.state.cookies.startswith("assToken=hop1; JSESSIONID=abc123")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "message"),
    [
        ({"result": 0}, 'no "back"'),
        ({"back": {"success": False, "msg": "501"}}, "Login failed: 501"),
        ({"back": {"success": True, "user": {"id": 1}, "data": []}}, "no plants found"),
    ],
)
async def test_login_rejects_bad_envelopes(make_api, body, message) -> None:
    api = make_api(FakeSession(default_routes({LOGIN: login_response(body)})))

    with pytest.raises(GrowattAuthError) as err:
        await api.login()
    assert message in str(err.value)
    assert api.state.last_login is None


@pytest.mark.asyncio
async def test_login_non_json_is_fatal(make_api) -> None:
    api = make_api(
        FakeSession(
            default_routes({LOGIN: FakeResponse(text_body="<html>blocked</html>", content_type="text/html")})
        )
    )

    with pytest.raises(GrowattAuthError) as err:
        await api.login()
    assert "non-JSON" in str(err.value)


@pytest.mark.asyncio
async def test_discovery_falls_back_to_second_listing(make_api) -> None:
    session = FakeSession(
        default_routes(
            {
                DEVICE_LIST_TWO: FakeResponse(json_body={"deviceList": []}),
                DEVICE_LIST: FakeResponse(json_body={"deviceList": [{"alias": "ALIAS9"}]}),
            }
        )
    )
    api = make_api(session)

    info = await api.login()

    assert info["deviceSn"] == "ALIAS9"
    assert session.calls_to(DEVICE_LIST)[0][2]["params"] == {
        "op": "getAllDeviceList",
        "plantId": "9001",
        "language": 1,
    }


@pytest.mark.asyncio
async def test_discovery_without_devices_leaves_serial_unset(make_api) -> None:
    session = FakeSession(
        default_routes({DEVICE_LIST_TWO: FakeResponse(json_body={"deviceList": []})})
    )
    api = make_api(session)

    info = await api.login()

    assert info["deviceSn"] is None
    assert info["plantName"] == "Home"
    with pytest.raises(GrowattNoDeviceError):
        await api.get_storage_detail()
    assert session.calls_to(STORAGE_DETAIL) == []


@pytest.mark.asyncio
async def test_relogin_without_devices_clears_stale_serial(make_api) -> None:
    session = FakeSession(
        default_routes({DEVICE_LIST_TWO: FakeResponse(json_body={"deviceList": []})})
    )
    api = make_api(session)
    mark_logged_in(api, device_sn="OLD")

    info = await api.login()

    assert info["deviceSn"] is None
    assert api.state.device_sn is None
    assert api.state.plant_name == "Home"


@pytest.mark.asyncio
async def test_ensure_session_skips_login_when_recent(make_api) -> None:
    api = make_api()
    mark_logged_in(api)
    api._login = AsyncMock()

    await api.ensure_session()

    api._login.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("last_login", [None, timedelta(minutes=31)])
async def test_ensure_session_logs_in_once_when_stale(make_api, last_login) -> None:
    api = make_api()
    mark_logged_in(api)
    api.state.last_login = None if last_login is None else utcnow() - last_login
    api._login = AsyncMock()

    await api.ensure_session()

    api._login.assert_awaited_once()


@pytest.mark.asyncio
async def test_ensure_session_requires_cookies(make_api) -> None:
    api = make_api()
    mark_logged_in(api)
    api.state.cookies = None
    api._login = AsyncMock()

    await api.ensure_session()

    api._login.assert_awaited_once()


@pytest.mark.asyncio
async def test_concurrent_ensure_session_logs_in_once(make_api) -> None:
    api = make_api()
    calls = 0

    async def fake_login():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        mark_logged_in(api)

    api._login = fake_login

    await asyncio.gather(api.ensure_session(), api.ensure_session(), api.ensure_session())

    assert calls == 1


@pytest.mark.asyncio
async def test_with_session_retry_relogs_and_retries_once(make_api) -> None:
    api = make_api()
    mark_logged_in(api)
    api._login = AsyncMock(side_effect=lambda: mark_logged_in(api))
    operation = AsyncMock(side_effect=[GrowattSessionExpiredError("session_expired"), {"ok": True}])

    result = await api.with_session_retry(operation)

    assert result == {"ok": True}
    assert operation.await_count == 2
    api._login.assert_awaited_once()


@pytest.mark.asyncio
async def test_with_session_retry_is_bounded(make_api) -> None:
    api = make_api()
    mark_logged_in(api)
    api._login = AsyncMock(side_effect=lambda: mark_logged_in(api))
    operation = AsyncMock(side_effect=GrowattSessionExpiredError("session_expired"))

    with pytest.raises(GrowattSessionExpiredError):
        await api.with_session_retry(operation)

    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_with_session_retry_passes_other_errors_through(make_api) -> None:
    api = make_api()
    mark_logged_in(api)
    api._login = AsyncMock()
    operation = AsyncMock(side_effect=GrowattConnectionError("down"))

    with pytest.raises(GrowattConnectionError):
        await api.with_session_retry(operation)

    assert operation.await_count == 1
    api._login.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_sends_user_agent_and_cookies(make_api) -> None:
    session = FakeSession(
        responses=[FakeResponse(json_body={"ok": 1}, cookies=("SERVERID=srv2",))]
    )
    api = make_api(session)
    mark_logged_in(api)

    response = await api.fetch("https://example.test/absolute", params={"a": 1, "b": None})

    assert response.status == 200
    method, url, kwargs = session.calls[0]
    assert url == "https://example.test/absolute"
    assert kwargs["headers"]["User-Agent"] == USER_AGENT
    assert kwargs["headers"]["Cookie"] == "JSESSIONID=abc123"
    assert kwargs["params"] == {"a": 1}
    assert api.state.cookies == "JSESSIONID=abc123; SERVERID=srv2"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()],
)
async def test_fetch_wraps_transport_errors(make_api, error) -> None:
    session = FakeSession({STORAGE_DETAIL: error})
    api = make_api(session)
    mark_logged_in(api)

    with pytest.raises(GrowattConnectionError):
        await api.get_storage_detail()


@pytest.mark.asyncio
async def test_data_fetch_html_raises_session_expired(make_api) -> None:
    session = FakeSession(
        {STORAGE_DETAIL: FakeResponse(text_body="<html>login</html>", content_type="text/html")}
    )
    api = make_api(session)
    mark_logged_in(api)

    with pytest.raises(GrowattSessionExpiredError):
        await api.get_storage_detail()
