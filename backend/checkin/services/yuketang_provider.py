"""
Yuketang QR login over the platform's login WebSocket.

Flow per challenge:
1. warm an httpx cookie jar on the web login page,
2. open the login socket and send a ``requestlogin`` frame,
3. hand the returned ticket back as the challenge,
4. keep listening; on ``loginsuccess`` trade ``UserID``/``Auth`` for session
   cookies via ``/pc/web_login``, look up school and department, and emit an
   ``ApprovalEvent``.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from checkin.core.exceptions import ProviderUnavailableError
from checkin.models.identity import Cookie
from checkin.services.login_provider import (
    ApprovalEvent,
    Challenge,
    LoginProvider,
    PendingIdentity,
)
from checkin.services.platform_client import cookie_header
from checkin.services.status_verifier import USERINFO_PATH, parse_user_info

logger = structlog.get_logger()

REQUEST_LOGIN_FRAME: Dict[str, Any] = {
    "op": "requestlogin",
    "role": "web",
    "version": 1.4,
    "type": "qrcode",
    "from": "web",
}

WARMUP_PATH = "/web"
WEB_LOGIN_PATH = "/pc/web_login"

Connector = Callable[..., Awaitable[Any]]


def parse_frame(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode one socket frame, returning None for anything that is not a JSON object."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return frame if isinstance(frame, dict) else None


def cookies_from_jar(jar: httpx.Cookies) -> Tuple[Cookie, ...]:
    return tuple(Cookie(key=item.name, value=item.value or "") for item in jar.jar)


@dataclass
class _OpenChallenge:
    challenge_id: str
    http: httpx.AsyncClient
    socket: Any
    listener: Optional[asyncio.Task] = field(default=None)


class YuketangLoginProvider(LoginProvider):
    """Login provider speaking the Yuketang web QR protocol."""

    def __init__(
        self,
        *,
        base_url: str,
        ws_url: str,
        user_agent: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connector: Connector = ws_connect,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._ws_url = ws_url
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._connector = connector
        self._open: Dict[str, _OpenChallenge] = {}
        self._lock = asyncio.Lock()

    def _build_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "User-Agent": self._user_agent,
                "Accept": "application/json, text/plain, */*",
                "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            },
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def initiate_challenge(self, events: "asyncio.Queue[ApprovalEvent]") -> Challenge:
        http = self._build_http_client()
        socket = None
        try:
            await http.get(WARMUP_PATH, params={"next": "/v2/web/index", "type": "3"})
            headers = {"Origin": self._base_url, "User-Agent": self._user_agent}
            warm_cookies = cookie_header(cookies_from_jar(http.cookies))
            if warm_cookies:
                headers["Cookie"] = warm_cookies
            socket = await self._connector(
                self._ws_url,
                additional_headers=headers,
                open_timeout=self._timeout,
            )
            await socket.send(json.dumps(REQUEST_LOGIN_FRAME))
            ticket = await asyncio.wait_for(self._await_ticket(socket), timeout=self._timeout)
        except (httpx.HTTPError, OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.error("Login challenge request failed", error=str(exc), error_type=type(exc).__name__)
            if socket is not None:
                await socket.close()
            await http.aclose()
            raise ProviderUnavailableError(f"Could not obtain QR code: {str(exc) or type(exc).__name__}") from exc

        challenge = Challenge(
            challenge_id=str(ticket.get("loginid") or ticket["ticket"]),
            scannable_token=str(ticket["ticket"]),
            qrcode=ticket.get("qrcode"),
            expiry_seconds=ticket.get("expire_seconds"),
        )
        entry = _OpenChallenge(challenge_id=challenge.challenge_id, http=http, socket=socket)
        entry.listener = asyncio.create_task(
            self._listen(entry, events),
            name=f"yuketang-login-{challenge.challenge_id}",
        )
        async with self._lock:
            self._open[challenge.challenge_id] = entry
        logger.info("Login challenge issued", challenge_id=challenge.challenge_id)
        return challenge

    async def _await_ticket(self, socket) -> Dict[str, Any]:
        while True:
            frame = parse_frame(await socket.recv())
            if frame and frame.get("op") == "requestlogin" and frame.get("ticket"):
                return frame

    async def _listen(self, entry: _OpenChallenge, events: "asyncio.Queue[ApprovalEvent]") -> None:
        try:
            async for raw in entry.socket:
                frame = parse_frame(raw)
                if not frame or frame.get("op") != "loginsuccess":
                    continue
                user_id, auth = frame.get("UserID"), frame.get("Auth")
                if not user_id or not auth:
                    logger.warning("Login success frame without credentials", challenge_id=entry.challenge_id)
                    continue
                cookies = await self._exchange_auth(entry.http, user_id, auth)
                if cookies is None:
                    continue
                profile = await self._fetch_profile(entry.http)
                identity = PendingIdentity(
                    external_user_id=str(user_id),
                    display_name=(frame.get("Name") or None),
                    cookies=cookies,
                    school=profile.get("school") or None,
                    department=profile.get("department") or None,
                )
                await events.put(ApprovalEvent(challenge_id=entry.challenge_id, identity=identity))
                logger.info(
                    "Login approved",
                    challenge_id=entry.challenge_id,
                    external_user_id=identity.external_user_id,
                    cookie_count=len(cookies),
                )
                return
        except ConnectionClosed as exc:
            logger.info("Login socket closed", challenge_id=entry.challenge_id, code=exc.rcvd.code if exc.rcvd else None)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Login listener crashed",
                challenge_id=entry.challenge_id,
                error=str(exc),
                exception_type=type(exc).__name__,
            )

    async def _exchange_auth(self, http: httpx.AsyncClient, user_id: Any, auth: str) -> Optional[Tuple[Cookie, ...]]:
        """Trade the socket credentials for platform session cookies."""
        try:
            response = await http.post(
                WEB_LOGIN_PATH,
                content=json.dumps({"UserID": user_id, "Auth": auth}),
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "X-Requested-With": "XMLHttpRequest",
                    "Referer": f"{self._base_url}/web",
                    "Origin": self._base_url,
                },
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("web_login request failed", error=str(exc))
            return None
        if not isinstance(body, dict) or not body.get("success"):
            logger.warning("web_login rejected", status_code=response.status_code)
            return None
        return cookies_from_jar(http.cookies)

    async def _fetch_profile(self, http: httpx.AsyncClient) -> Dict[str, Any]:
        """School and department of the fresh session; empty when the platform will not say."""
        try:
            response = await http.get(USERINFO_PATH, headers={"X-Requested-With": "XMLHttpRequest"})
        except httpx.HTTPError as exc:
            logger.warning("Profile lookup failed", error=str(exc))
            return {}
        return parse_user_info(response) or {}

    async def release(self, challenge_id: str) -> None:
        async with self._lock:
            entry = self._open.pop(challenge_id, None)
        if entry is None:
            return
        if entry.listener and not entry.listener.done():
            entry.listener.cancel()
            try:
                await entry.listener
            except asyncio.CancelledError:
                pass
        try:
            await entry.socket.close()
        except WebSocketException as exc:
            logger.debug("Login socket close failed", challenge_id=challenge_id, error=str(exc))
        await entry.http.aclose()
        logger.info("Login challenge released", challenge_id=challenge_id)

    async def aclose(self) -> None:
        async with self._lock:
            challenge_ids = list(self._open)
        for challenge_id in challenge_ids:
            await self.release(challenge_id)

    @property
    def open_challenges(self) -> int:
        return len(self._open)
