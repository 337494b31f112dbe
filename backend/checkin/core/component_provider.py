import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from checkin.core.config import settings
from checkin.core.database import db_factory
from checkin.services.dispatch_engine import DispatchEngine
from checkin.services.identity_store import IdentityStore
from checkin.services.login_orchestrator import LoginOrchestrator
from checkin.services.login_provider import LoginProvider
from checkin.services.platform_client import PlatformClient
from checkin.services.relay import SessionRelay
from checkin.services.status_verifier import USERINFO_PATH, StatusVerifier
from checkin.services.yuketang_provider import YuketangLoginProvider


@dataclass
class Components:
    store: IdentityStore
    relay: SessionRelay
    orchestrator: LoginOrchestrator
    engine: DispatchEngine
    verifier: StatusVerifier


components: Optional[Components] = None
_initialization_lock = asyncio.Lock()


def build_components(
    store: IdentityStore,
    *,
    provider: Optional[LoginProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Components:
    """Wire the services together from settings."""
    relay = SessionRelay()
    if provider is None:
        provider = YuketangLoginProvider(
            base_url=settings.PLATFORM_BASE_URL,
            ws_url=settings.PLATFORM_WS_URL,
            user_agent=settings.PLATFORM_USER_AGENT,
            timeout=settings.PLATFORM_CONNECT_TIMEOUT,
            transport=transport,
        )
    client = PlatformClient(user_agent=settings.PLATFORM_USER_AGENT, transport=transport)
    return Components(
        store=store,
        relay=relay,
        orchestrator=LoginOrchestrator(
            provider,
            store,
            relay,
            challenge_timeout=settings.LOGIN_CHALLENGE_TIMEOUT,
        ),
        engine=DispatchEngine(
            client,
            store,
            timeout=settings.DISPATCH_REQUEST_TIMEOUT,
            max_redirects=settings.DISPATCH_MAX_REDIRECTS,
            excerpt_limit=settings.BODY_EXCERPT_LIMIT,
            concurrency_limit=settings.DISPATCH_CONCURRENCY_LIMIT,
        ),
        verifier=StatusVerifier(
            client,
            store,
            probe_url=settings.PLATFORM_BASE_URL.rstrip("/") + USERINFO_PATH,
            timeout=settings.VERIFY_REQUEST_TIMEOUT,
            concurrency=settings.VERIFY_CONCURRENCY,
            batch_delay=settings.VERIFY_BATCH_DELAY,
        ),
    )


async def initialize_components(override: Optional[Components] = None) -> Components:
    """Create the singletons once and start the approval consumer."""
    global components
    async with _initialization_lock:
        if components is None:
            components = override or build_components(IdentityStore(db_factory.session_factory))
        components.orchestrator.start_consumer()
        return components


async def shutdown_components() -> None:
    global components
    async with _initialization_lock:
        if components is None:
            return
        await components.orchestrator.shutdown()
        await components.relay.clear()
        components = None


def _require() -> Components:
    if components is None:
        raise RuntimeError("Components are not initialized")
    return components


def get_store() -> IdentityStore:
    return _require().store


def get_relay() -> SessionRelay:
    return _require().relay


def get_orchestrator() -> LoginOrchestrator:
    return _require().orchestrator


def get_engine() -> DispatchEngine:
    return _require().engine


def get_verifier() -> StatusVerifier:
    return _require().verifier
