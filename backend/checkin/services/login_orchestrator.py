"""
QR login orchestration.

One ``LoginSession`` per browser login attempt, moving through
``AWAITING_CHALLENGE -> CHALLENGE_READY -> APPROVED -> PERSISTED``, with
``EXPIRED`` and ``FAILED`` reachable from every non-terminal state. All
transitions are checked against the current state while holding the
orchestrator lock, so whichever of two racing operations arrives second sees
a terminal state and backs off.
"""
import asyncio
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import structlog

from checkin.core.exceptions import (
    ConflictError,
    DuplicateNameError,
    NotFoundError,
    ValidationError,
)
from checkin.models.identity import IdentitySnapshot
from checkin.services.identity_store import IdentityStore
from checkin.services.login_provider import (
    ApprovalEvent,
    Challenge,
    LoginProvider,
    PendingIdentity,
)
from checkin.services.relay import SessionRelay

logger = structlog.get_logger()

SESSION_PREFIX = "scan_login_"


class LoginState(str, enum.Enum):
    AWAITING_CHALLENGE = "awaiting_challenge"
    CHALLENGE_READY = "challenge_ready"
    APPROVED = "approved"
    PERSISTED = "persisted"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LoginState.PERSISTED, LoginState.EXPIRED, LoginState.FAILED)


_EXPIRABLE = (LoginState.CHALLENGE_READY, LoginState.APPROVED)


@dataclass
class LoginSession:
    session_id: str
    state: LoginState = LoginState.AWAITING_CHALLENGE
    challenge: Optional[Challenge] = None
    pending_identity: Optional[PendingIdentity] = None
    created_at: float = field(default_factory=time.time)
    expiry_task: Optional[asyncio.Task] = field(default=None, repr=False)


def new_session_id() -> str:
    return f"{SESSION_PREFIX}{uuid.uuid4().hex}"


def user_info_payload(identity: PendingIdentity) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"userId": identity.external_user_id, "name": identity.display_name}
    if identity.school:
        payload["school"] = identity.school
    if identity.department:
        payload["department"] = identity.department
    return payload


class LoginOrchestrator:
    """Owns every in-flight QR login and bridges provider events to the relay."""

    def __init__(
        self,
        provider: LoginProvider,
        store: IdentityStore,
        relay: SessionRelay,
        *,
        challenge_timeout: float = 180.0,
    ) -> None:
        self._provider = provider
        self._store = store
        self._relay = relay
        self._challenge_timeout = challenge_timeout
        self._sessions: Dict[str, LoginSession] = {}
        self._by_challenge: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._events: "asyncio.Queue[ApprovalEvent]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    @property
    def events(self) -> "asyncio.Queue[ApprovalEvent]":
        return self._events

    def start_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="login-approval-consumer")

    async def _consume(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_approval(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Approval handling failed",
                    challenge_id=event.challenge_id,
                    error=str(exc),
                    exception_type=type(exc).__name__,
                )
            finally:
                self._events.task_done()

    async def get(self, session_id: str) -> Optional[LoginSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def start(self) -> Tuple[str, Challenge]:
        """Open a login session and obtain its QR challenge."""
        session = LoginSession(session_id=new_session_id())
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Login session created", session_id=session.session_id)

        try:
            challenge = await self._provider.initiate_challenge(self._events)
        except Exception:
            async with self._lock:
                session.state = LoginState.FAILED
                self._sessions.pop(session.session_id, None)
            logger.warning("Login session failed to obtain a challenge", session_id=session.session_id)
            raise

        async with self._lock:
            if session.state is not LoginState.AWAITING_CHALLENGE:
                cancelled = True
            else:
                cancelled = False
                session.state = LoginState.CHALLENGE_READY
                session.challenge = challenge
                self._by_challenge[challenge.challenge_id] = session.session_id
                session.expiry_task = asyncio.create_task(
                    self._expire_after(session.session_id, self._challenge_timeout),
                    name=f"login-expiry-{session.session_id}",
                )
        if cancelled:
            await self._provider.release(challenge.challenge_id)
            raise ConflictError("Login session was cancelled before the QR code was ready")

        logger.info(
            "Login challenge ready",
            session_id=session.session_id,
            challenge_id=challenge.challenge_id,
            timeout=self._challenge_timeout,
        )
        return session.session_id, challenge

    async def announce(self, session_id: str) -> bool:
        """Push the QR code to a freshly registered relay channel."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state is not LoginState.CHALLENGE_READY:
                return False
            challenge = session.challenge
        return await self._relay.push(
            session_id,
            "qr_update",
            {"qrCodeUrl": challenge.scannable_token, "message": "Scan the QR code to log in"},
        )

    async def handle_approval(self, event: ApprovalEvent) -> bool:
        async with self._lock:
            session_id = self._by_challenge.get(event.challenge_id)
            session = self._sessions.get(session_id) if session_id else None
            if session is None or session.state is not LoginState.CHALLENGE_READY:
                logger.info("Approval ignored", challenge_id=event.challenge_id)
                return False
            session.state = LoginState.APPROVED
            session.pending_identity = event.identity

        identity = event.identity
        logger.info(
            "Login approved",
            session_id=session_id,
            external_user_id=identity.external_user_id,
        )
        await self._relay.push(
            session_id,
            "login_success",
            {
                "step": "auto_save",
                "userInfo": user_info_payload(identity),
                "cookies": [cookie.to_dict() for cookie in identity.cookies],
                "message": f"Login succeeded for {identity.display_name or identity.external_user_id}",
            },
        )
        return True

    async def _expire_after(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state not in _EXPIRABLE:
                return
            expired_from = session.state
            session.state = LoginState.EXPIRED
            session.expiry_task = None
            challenge_id = self._drop(session)
        logger.info("Login session expired", session_id=session_id, state=expired_from.value)
        if challenge_id:
            await self._provider.release(challenge_id)
        message = (
            "Login was not saved in time, start a new login"
            if expired_from is LoginState.APPROVED
            else "QR code expired, start a new login"
        )
        await self._relay.push(session_id, "status_update", {"message": message})

    async def save(self, session_id: str, override_name: Optional[str] = None) -> IdentitySnapshot:
        """Persist the approved identity of ``session_id``."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Login session {session_id} not found")
            if session.state is not LoginState.APPROVED:
                raise ConflictError(f"Login session {session_id} is {session.state.value}, not approved")
            pending = session.pending_identity

            display_name = pending.display_name
            if not display_name:
                display_name = (override_name or "").strip()
                if not display_name:
                    raise ValidationError("A display name is required for this identity")
                if await self._store.get_by_display_name(display_name) is not None:
                    raise DuplicateNameError(f"Display name {display_name} is already in use")

            # DuplicateIdentityError propagates with the session still approved
            identity = await self._store.create(
                external_user_id=pending.external_user_id,
                display_name=display_name,
                cookies=pending.cookies,
            )
            session.state = LoginState.PERSISTED
            self._cancel_expiry(session)
            challenge_id = self._drop(session)

        if challenge_id:
            await self._provider.release(challenge_id)
        logger.info("Login session persisted", session_id=session_id, identity_id=identity.id)
        return identity

    async def cancel(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state.terminal:
                return False
            session.state = LoginState.FAILED
            self._cancel_expiry(session)
            challenge_id = self._drop(session)
        if challenge_id:
            await self._provider.release(challenge_id)
        logger.info("Login session cancelled", session_id=session_id)
        return True

    async def shutdown(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        async with self._lock:
            challenge_ids = []
            for session in list(self._sessions.values()):
                session.state = LoginState.FAILED
                self._cancel_expiry(session)
                challenge_id = self._drop(session)
                if challenge_id:
                    challenge_ids.append(challenge_id)
        for challenge_id in challenge_ids:
            await self._provider.release(challenge_id)
        await self._provider.aclose()
        logger.info("Login orchestrator stopped", released=len(challenge_ids))

    def _drop(self, session: LoginSession) -> Optional[str]:
        """Remove a session from the tables; caller holds the lock."""
        self._sessions.pop(session.session_id, None)
        if session.challenge is None:
            return None
        self._by_challenge.pop(session.challenge.challenge_id, None)
        return session.challenge.challenge_id

    @staticmethod
    def _cancel_expiry(session: LoginSession) -> None:
        task = session.expiry_task
        session.expiry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def __len__(self) -> int:
        return len(self._sessions)
