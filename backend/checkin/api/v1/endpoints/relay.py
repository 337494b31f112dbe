"""
Browser relay socket.

Inbound frames:
    {"type": "register", "sessionId": ...}  bind this socket to a login session
    {"type": "signin", "url": ..., "sessionId": ...}  dispatch ``url`` for every identity
"""
import asyncio
import json
from typing import Set

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from checkin.core.component_provider import get_engine, get_orchestrator, get_relay
from checkin.core.exceptions import CheckinError

logger = structlog.get_logger()

router = APIRouter(tags=["relay"])


async def _handle_signin(websocket: WebSocket, frame: dict) -> None:
    relay = get_relay()
    try:
        report = await get_engine().run_signin(frame.get("url"))
    except CheckinError as exc:
        logger.info("Sign-in rejected", error=exc.code, session_id=frame.get("sessionId"))
        await relay.send(websocket, {"type": "signin_error", "message": exc.message})
        return
    except Exception as exc:
        logger.error("Sign-in failed", error=str(exc), exception_type=type(exc).__name__)
        await relay.send(websocket, {"type": "signin_error", "message": "Sign-in failed"})
        return
    await relay.send(websocket, {"type": "signin_result", "data": report.to_payload()})


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket):
    await websocket.accept()
    relay = get_relay()
    logger.info("Relay socket connected")
    # signins run beside the receive loop so register frames are never starved
    signins: Set[asyncio.Task] = set()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning("Relay frame is not JSON", length=len(raw))
                continue
            if not isinstance(frame, dict):
                logger.warning("Relay frame is not an object")
                continue

            message_type = frame.get("type")
            if message_type == "register":
                session_id = frame.get("sessionId")
                if not isinstance(session_id, str) or not session_id:
                    logger.warning("Register frame without sessionId")
                    continue
                await relay.register(session_id, websocket)
                await get_orchestrator().announce(session_id)
            elif message_type == "signin":
                task = asyncio.create_task(_handle_signin(websocket, frame))
                signins.add(task)
                task.add_done_callback(signins.discard)
            else:
                logger.warning("Unknown relay frame type", message_type=message_type)
    except WebSocketDisconnect:
        pass
    finally:
        outstanding = list(signins)
        for task in outstanding:
            task.cancel()
        if outstanding:
            await asyncio.gather(*outstanding, return_exceptions=True)
        released = await relay.unregister(websocket)
        logger.info("Relay socket disconnected", session_ids=released)
