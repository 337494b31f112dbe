import asyncio
import json

import httpx
import pytest

from checkin.core.exceptions import ProviderUnavailableError
from checkin.services.yuketang_provider import REQUEST_LOGIN_FRAME, YuketangLoginProvider, parse_frame

BASE_URL = "https://platform.test"
WS_URL = "wss://platform.test/wsapp/"


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        frame = await self.inbound.get()
        if frame is None:
            raise ConnectionError("closed")
        return frame

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def close(self):
        self.closed = True
        self.inbound.put_nowait(None)

    def push(self, frame):
        self.inbound.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)


class Connector:
    def __init__(self, socket=None, error=None):
        self.socket = socket
        self.error = error
        self.calls = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.socket


def platform_handler(web_login_success=True, captured=None, profile=None):
    def handler(request):
        if captured is not None:
            captured.append(request)
        if request.url.path == "/web":
            return httpx.Response(200, text="<html></html>", headers={"Set-Cookie": "csrftoken=warm; Path=/"})
        if request.url.path == "/pc/web_login":
            if not web_login_success:
                return httpx.Response(200, json={"success": False})
            return httpx.Response(200, json={"success": True}, headers={"Set-Cookie": "sessionid=fresh; Path=/"})
        if request.url.path == "/v2/api/web/userinfo" and profile is not None:
            return httpx.Response(200, json={"data": profile})
        return httpx.Response(404)

    return handler


def make_provider(connector, handler):
    return YuketangLoginProvider(
        base_url=BASE_URL,
        ws_url=WS_URL,
        user_agent="test-agent",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
        connector=connector,
    )


def ticket_frame():
    return {
        "op": "requestlogin",
        "ticket": "https://qr.platform.test/abc",
        "loginid": "L1",
        "qrcode": "qr-data",
        "expire_seconds": 60,
    }


@pytest.mark.asyncio
async def test_challenge_then_approval_yields_cookies():
    socket = FakeSocket()
    socket.push("not json")
    socket.push(ticket_frame())
    connector = Connector(socket)
    captured = []
    profile = {"id": 123, "name": "Alice", "school_name": "Tsinghua", "department_name": "CS"}
    provider = make_provider(connector, platform_handler(captured=captured, profile=profile))
    events = asyncio.Queue()

    challenge = await provider.initiate_challenge(events)

    assert challenge.challenge_id == "L1"
    assert challenge.scannable_token == "https://qr.platform.test/abc"
    assert challenge.expiry_seconds == 60
    assert socket.sent == [REQUEST_LOGIN_FRAME]
    url, kwargs = connector.calls[0]
    assert url == WS_URL
    assert kwargs["additional_headers"]["Cookie"] == "csrftoken=warm"

    socket.push({"op": "loginsuccess", "UserID": 123, "Auth": "tok", "Name": "Alice"})
    event = await asyncio.wait_for(events.get(), timeout=1)

    assert event.challenge_id == "L1"
    assert event.identity.external_user_id == "123"
    assert event.identity.display_name == "Alice"
    assert {cookie.key: cookie.value for cookie in event.identity.cookies}["sessionid"] == "fresh"
    assert (event.identity.school, event.identity.department) == ("Tsinghua", "CS")
    login_request = next(request for request in captured if request.url.path == "/pc/web_login")
    assert json.loads(login_request.content) == {"UserID": 123, "Auth": "tok"}

    await provider.release("L1")
    await provider.release("L1")
    assert socket.closed is True
    assert provider.open_challenges == 0


@pytest.mark.asyncio
async def test_approval_without_profile_leaves_school_unset():
    socket = FakeSocket()
    socket.push(ticket_frame())
    provider = make_provider(Connector(socket), platform_handler())
    events = asyncio.Queue()

    await provider.initiate_challenge(events)
    socket.push({"op": "loginsuccess", "UserID": 123, "Auth": "tok", "Name": "Alice"})
    event = await asyncio.wait_for(events.get(), timeout=1)

    assert event.identity.external_user_id == "123"
    assert event.identity.school is None
    assert event.identity.department is None
    await provider.aclose()


@pytest.mark.asyncio
async def test_unreachable_socket_raises_provider_unavailable():
    provider = make_provider(Connector(error=OSError("connection refused")), platform_handler())

    with pytest.raises(ProviderUnavailableError):
        await provider.initiate_challenge(asyncio.Queue())

    assert provider.open_challenges == 0


@pytest.mark.asyncio
async def test_rejected_web_login_emits_no_approval():
    socket = FakeSocket()
    socket.push(ticket_frame())
    provider = make_provider(Connector(socket), platform_handler(web_login_success=False))
    events = asyncio.Queue()

    await provider.initiate_challenge(events)
    socket.push({"op": "loginsuccess", "UserID": 123, "Auth": "tok"})
    await asyncio.sleep(0.05)

    assert events.empty()
    await provider.aclose()
    assert provider.open_challenges == 0


def test_parse_frame_only_accepts_json_objects():
    assert parse_frame('{"op": "x"}') == {"op": "x"}
    assert parse_frame(b'{"op": "y"}') == {"op": "y"}
    assert parse_frame("[1, 2]") is None
    assert parse_frame("garbage") is None
