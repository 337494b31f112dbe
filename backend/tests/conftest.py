import asyncio
import json
import os
import sys
import tempfile
from typing import AsyncGenerator, Callable, Dict, Generator, List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

# Add the backend directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Override settings for testing
_TEST_DIR = tempfile.mkdtemp(prefix="checkin-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["APP_ENV"] = "test"
os.environ["DELETE_PASSWORD"] = "s3cret"
os.environ["VERIFY_BATCH_DELAY"] = "0"
os.environ["LOG_LEVEL"] = "warning"

from checkin.core import component_provider  # noqa: E402
from checkin.core.database import DatabaseFactory, db_factory  # noqa: E402
from checkin.core.exceptions import ProviderUnavailableError  # noqa: E402
from checkin.core.rate_limit import rate_limiter  # noqa: E402
from checkin.main import app  # noqa: E402
from checkin.models import Base, Cookie  # noqa: E402
from checkin.services.identity_store import IdentityStore  # noqa: E402
from checkin.services.login_provider import (  # noqa: E402
    ApprovalEvent,
    Challenge,
    LoginProvider,
    PendingIdentity,
)


class FakeChannel:
    """Relay channel that records what it was sent."""

    def __init__(self, fail: bool = False):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail = fail
        self.sent: List[str] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket write failed")
        self.sent.append(data)

    def close(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED

    @property
    def messages(self) -> List[dict]:
        return [json.loads(item) for item in self.sent]

    def of_type(self, message_type: str) -> List[dict]:
        return [message for message in self.messages if message.get("type") == message_type]


class FakeLoginProvider(LoginProvider):
    """Issues challenges T1, T2, ... and approves them on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.issued: List[Challenge] = []
        self.released: List[str] = []
        self.closed = False
        self._events: Optional[asyncio.Queue] = None

    async def initiate_challenge(self, events: asyncio.Queue) -> Challenge:
        if self.fail:
            raise ProviderUnavailableError("platform unreachable")
        self._events = events
        number = len(self.issued) + 1
        challenge = Challenge(
            challenge_id=f"T{number}",
            scannable_token=f"https://qr.example/T{number}",
            qrcode=f"qr-T{number}",
            expiry_seconds=60,
        )
        self.issued.append(challenge)
        return challenge

    async def approve(self, challenge_id: str, identity: PendingIdentity) -> None:
        assert self._events is not None
        await self._events.put(ApprovalEvent(challenge_id=challenge_id, identity=identity))

    async def release(self, challenge_id: str) -> None:
        self.released.append(challenge_id)

    async def aclose(self) -> None:
        self.closed = True


def pending(external_user_id: str = "u1", display_name: Optional[str] = "Alice", **cookies: str) -> PendingIdentity:
    jar = cookies or {"sessionid": f"sess-{external_user_id}", "csrftoken": "tok"}
    return PendingIdentity(
        external_user_id=external_user_id,
        display_name=display_name,
        cookies=tuple(Cookie(key=key, value=value) for key, value in jar.items()),
    )


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[IdentityStore, None]:
    factory = DatabaseFactory(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await factory.init_db()
    yield IdentityStore(factory.session_factory)
    await factory.dispose()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def provider() -> FakeLoginProvider:
    return FakeLoginProvider()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


class PlatformStub:
    """Routes outbound platform requests to per-test handlers keyed by path."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)


@pytest.fixture
def platform() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
def client(provider: FakeLoginProvider, platform: PlatformStub) -> Generator[TestClient, None, None]:
    async def _reset_tables():
        async with db_factory.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_reset_tables())
    component_provider.components = component_provider.build_components(
        IdentityStore(db_factory.session_factory),
        provider=provider,
        transport=httpx.MockTransport(platform),
    )
    with TestClient(app, base_url="http://test") as c:
        yield c
    component_provider.components = None
