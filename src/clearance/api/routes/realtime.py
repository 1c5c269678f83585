"""
Realtime WebSocket endpoint.

Streams workflow events from the service's event bus. Clients
authenticate with a bearer token, either as the ``token`` query
parameter or in a first ``authenticate`` message.
"""

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from clearance.config import settings
from clearance.models.workflow import utcnow
from clearance.realtime.events import Subscription
from clearance.security.auth import AuthenticationError, User, user_from_token

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008


def _authenticate(token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    try:
        return user_from_token(token)
    except AuthenticationError as e:
        logger.warning(f"WebSocket authentication failed: {e}")
        return None


async def _first_message_token(websocket: WebSocket) -> Optional[str]:
    try:
        message = await asyncio.wait_for(
            websocket.receive_json(), timeout=settings.heartbeat_timeout_seconds,
        )
    except (asyncio.TimeoutError, ValueError):
        return None
    if not isinstance(message, dict) or message.get("type") != "authenticate":
        return None
    return message.get("token")


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event.to_message())


def _control(kind: str, **data: Any) -> dict[str, Any]:
    return {"type": kind, "data": data, "timestamp": utcnow().isoformat()}


@router.websocket("/ws")
async def workflow_events(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Realtime workflow updates.

    Client messages:
        {"type": "ping"}                             -> pong
        {"type": "subscribe", "workflow_ids": [...]} -> restrict the stream
        {"type": "authenticate", "token": "..."}     -> re-authentication on reconnect
    A heartbeat is sent when the client has been idle for the heartbeat interval.
    """
    user = None
    if token:
        user = _authenticate(token)
        if user is None:
            await websocket.close(code=POLICY_VIOLATION, reason="Invalid or expired token")
            return

    await websocket.accept()
    if user is None:
        user = _authenticate(await _first_message_token(websocket))
        if user is None:
            await websocket.close(code=POLICY_VIOLATION, reason="Authentication required")
            return

    bus = websocket.app.state.service.bus
    subscription = bus.subscribe()
    forwarder = asyncio.create_task(_forward(websocket, subscription))
    logger.info(f"Realtime WebSocket connected: user={user.id} role={user.role.value}")

    try:
        await websocket.send_json(_control("authenticated", user_id=user.id, role=user.role.value))
        while True:
            try:
                message = await asyncio.wait_for(
                    websocket.receive_json(), timeout=settings.heartbeat_interval_seconds,
                )
            except asyncio.TimeoutError:
                await websocket.send_json(_control("heartbeat"))
                continue
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Messages must be JSON"})
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await websocket.send_json(_control("pong"))
            elif kind == "authenticate":
                if _authenticate(message.get("token")) is None:
                    await websocket.close(code=POLICY_VIOLATION, reason="Invalid or expired token")
                    return
                await websocket.send_json(_control("authenticated", user_id=user.id, role=user.role.value))
            elif kind == "subscribe":
                ids = message.get("workflow_ids") or []
                subscription.workflow_ids = {str(i) for i in ids} or None
                await websocket.send_json(_control("subscribed", workflow_ids=sorted(subscription.workflow_ids or [])))
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind}"})
    except WebSocketDisconnect:
        logger.info(f"Realtime WebSocket disconnected: user={user.id}")
    finally:
        forwarder.cancel()
        bus.unsubscribe(subscription)
