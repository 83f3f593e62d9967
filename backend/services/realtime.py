"""Realtime channel hub for WebSocket connections."""
from collections import defaultdict
from typing import Any, Dict, Optional, Set
import logging
import uuid

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ChannelHub:
    """Tracks open sockets and the channels each has joined.

    emit(channel, event, payload) is the realtime port used by the engine.
    Membership decisions are made by ChannelGuard before join() is called;
    evict() removes a user who has since lost access to a channel.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, WebSocket] = {}
        self._channels: Dict[str, Set[str]] = defaultdict(set)
        self._memberships: Dict[str, Set[str]] = defaultdict(set)
        self._users: Dict[str, str] = {}

    async def connect(self, websocket: WebSocket, user_id: Optional[str] = None) -> str:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        if user_id:
            self._users[connection_id] = user_id
        logger.info(f"WebSocket connected: {connection_id}")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        """Remove a connection from every channel it joined."""
        self.active_connections.pop(connection_id, None)
        self._users.pop(connection_id, None)
        for channel in self._memberships.pop(connection_id, set()):
            members = self._channels.get(channel)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._channels[channel]
        logger.info(f"WebSocket disconnected: {connection_id}")

    def join(self, connection_id: str, channel: str) -> None:
        self._channels[channel].add(connection_id)
        self._memberships[connection_id].add(channel)

    def leave(self, connection_id: str, channel: str) -> None:
        self._memberships[connection_id].discard(channel)
        members = self._channels.get(channel)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._channels[channel]

    def channels_of(self, connection_id: str) -> Set[str]:
        return set(self._memberships.get(connection_id, set()))

    def members(self, channel: str) -> Set[str]:
        return set(self._channels.get(channel, set()))

    async def evict(self, channel: str, user_id: str, reason: str = "ACCESS_REVOKED") -> int:
        """Remove every socket of user_id from channel and tell the client. Returns sockets removed."""
        removed = 0
        for connection_id in list(self._channels.get(channel, ())):
            if self._users.get(connection_id) != user_id:
                continue
            self.leave(connection_id, channel)
            removed += 1
            websocket = self.active_connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json({"type": "unsubscribed", "channel": channel, "reason": reason})
            except Exception as e:
                logger.warning(f"Dropping dead socket {connection_id} on {channel}: {e}")
                self.disconnect(connection_id)
        if removed:
            logger.info(f"Evicted {user_id} from {channel} ({removed} sockets)")
        return removed

    async def emit(self, channel: str, event: str, payload: Dict[str, Any]) -> int:
        """Send an event to every socket in a channel. Returns sockets reached."""
        message = {"type": "event", "event": event, "channel": channel, "data": payload}
        delivered = 0
        for connection_id in list(self._channels.get(channel, ())):
            websocket = self.active_connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                # Socket is gone; the client re-syncs from the inbox on reconnect
                logger.warning(f"Dropping dead socket {connection_id} on {channel}: {e}")
                self.disconnect(connection_id)
        return delivered


# Global channel hub
hub = ChannelHub()
