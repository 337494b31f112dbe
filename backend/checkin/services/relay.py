"""
Session relay: routes pushes to the browser channel registered for a session id.

Delivery is at-most-once. Pushing to an unknown or closed channel is a no-op,
and nothing is buffered for clients that reconnect later.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Protocol

import structlog
from starlette.websockets import WebSocketState

logger = structlog.get_logger()


class RelayChannel(Protocol):
    """The subset of ``starlette.websockets.WebSocket`` the relay relies on."""

    client_state: WebSocketState
    application_state: WebSocketState

    async def send_text(self, data: str) -> None: ...


def is_channel_open(channel: RelayChannel) -> bool:
    return (
        channel.client_state == WebSocketState.CONNECTED
        and channel.application_state == WebSocketState.CONNECTED
    )


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False, default=str)


class SessionRelay:
    """Process-wide session id -> channel routing table."""

    def __init__(self) -> None:
        self._channels: Dict[str, RelayChannel] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, channel: RelayChannel) -> None:
        """Bind ``channel`` to ``session_id``, replacing any earlier binding."""
        async with self._lock:
            replaced = self._channels.get(session_id)
            self._channels[session_id] = channel
        if replaced is not None and replaced is not channel:
            logger.info("Relay channel replaced", session_id=session_id)
        else:
            logger.info("Relay channel registered", session_id=session_id)
        await self.send(channel, {"type": "registered", "sessionId": session_id})

    async def push(self, session_id: str, message_type: str, payload: Any) -> bool:
        """Send ``{type, data}`` to the channel bound to ``session_id``.

        Returns whether a send was attempted successfully; callers are not
        expected to act on it.
        """
        async with self._lock:
            channel = self._channels.get(session_id)
        if channel is None:
            logger.debug("Relay push dropped, no channel", session_id=session_id, message_type=message_type)
            return False
        delivered = await self.send(channel, {"type": message_type, "data": payload})
        if delivered:
            logger.info("Relay message sent", session_id=session_id, message_type=message_type)
        return delivered

    async def send(self, channel: RelayChannel, message: Dict[str, Any]) -> bool:
        """Send one message on a specific channel, swallowing transport failures."""
        if not is_channel_open(channel):
            return False
        try:
            await channel.send_text(encode_message(message))
        except Exception as exc:
            # The socket closed between the state check and the send.
            logger.warning("Relay send failed", error=str(exc), message_type=message.get("type"))
            return False
        return True

    async def unregister(self, channel: RelayChannel) -> List[str]:
        """Drop every mapping that points at ``channel``."""
        async with self._lock:
            stale = [sid for sid, bound in self._channels.items() if bound is channel]
            for session_id in stale:
                del self._channels[session_id]
        for session_id in stale:
            logger.info("Relay channel disconnected", session_id=session_id)
        return stale

    async def get(self, session_id: str) -> Optional[RelayChannel]:
        async with self._lock:
            return self._channels.get(session_id)

    async def clear(self) -> None:
        async with self._lock:
            self._channels.clear()

    def __len__(self) -> int:
        return len(self._channels)
