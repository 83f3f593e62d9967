"""
Realtime WebSocket endpoint.

Connect with /api/ws?token=<jwt>. The socket joins user:<id> and role:<role>
on connect; further channels are requested with

    {"type": "subscribe", "channel": "context:WORK_..."}
    {"type": "unsubscribe", "channel": "..."}
    {"type": "ping"}

Every subscribe goes through ChannelGuard.
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from auth import decode_access_token, is_known_role
from middleware import actor_from_user
from services.notification_service import user_channel, role_channel
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])

# Policy violation close code
WS_POLICY_VIOLATION = 1008


@router.websocket("/api/ws")
async def websocket_endpoint(websocket: WebSocket):
    token = websocket.query_params.get("token")
    user = decode_access_token(token) if token else None
    if not user or not is_known_role(user.get("role")):
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Not authenticated")
        return

    engine = websocket.app.state.engine
    hub = engine.hub
    guard = engine.guard
    actor = actor_from_user(user)

    connection_id = await hub.connect(websocket, actor.user_id)
    hub.join(connection_id, user_channel(actor.user_id))
    hub.join(connection_id, role_channel(actor.role))
    await websocket.send_json({
        "type": "connected",
        "connection_id": connection_id,
        "channels": sorted(hub.channels_of(connection_id)),
    })

    try:
        while True:
            message = await websocket.receive_json()
            msg_type = message.get("type") if isinstance(message, dict) else None
            channel = message.get("channel") if isinstance(message, dict) else None

            if msg_type == "ping":
                await websocket.send_json({"type": "pong"})
            elif msg_type == "subscribe" and channel:
                if await guard.can_join(actor, channel):
                    hub.join(connection_id, channel)
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    await websocket.send_json({"type": "error", "channel": channel, "error": "FORBIDDEN"})
            elif msg_type == "unsubscribe" and channel:
                hub.leave(connection_id, channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})
            else:
                await websocket.send_json({"type": "error", "error": "UNKNOWN_MESSAGE"})
    except WebSocketDisconnect:
        logger.info(f"WebSocket client {actor.user_id} disconnected")
    finally:
        hub.disconnect(connection_id)
