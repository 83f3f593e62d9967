"""
Realtime channel membership checks.

    user:<id>        only that user
    role:<role>      any authenticated user holding that role
    context:<code>   an order's client, bde, writer, or any admin

Nothing is cached: every join re-reads the order so reassignment takes effect
immediately. Denied joins are audited.
"""
from typing import Any, Dict, Optional, Tuple
import logging

from database import database
from models import Actor, AuditAction, UserRole
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

CHANNEL_KINDS = ("user", "role", "context")


def parse_channel(channel: str) -> Optional[Tuple[str, str]]:
    kind, sep, ident = (channel or "").partition(":")
    if not sep or kind not in CHANNEL_KINDS or not ident:
        return None
    return kind, ident


async def resolve_order_parties(order_id: str) -> Optional[Dict[str, Any]]:
    """Membership port: who is attached to an order."""
    db = database.get_db()
    order = await db.orders.find_one(
        {"order_id": order_id},
        {"_id": 0, "order_id": 1, "client_id": 1, "bde_id": 1, "writer_id": 1},
    )
    if not order:
        return None
    return {
        "order_id": order["order_id"],
        "client_id": order.get("client_id"),
        "bde_id": order.get("bde_id"),
        "writer_id": order.get("writer_id"),
    }


async def resolve_context_parties(code: str) -> Optional[Dict[str, Any]]:
    """Resolve a query-phase or work-phase code to the order's parties."""
    db = database.get_db()
    order = await db.orders.find_one(
        {"$or": [{"query_code": code}, {"work_code": code}]},
        {"_id": 0, "order_id": 1},
    )
    if not order:
        return None
    return await resolve_order_parties(order["order_id"])


class ChannelGuard:
    async def can_join(self, requester: Actor, channel: str) -> bool:
        parsed = parse_channel(channel)
        if parsed is None:
            await self._deny(requester, channel, "MALFORMED_CHANNEL")
            return False
        kind, ident = parsed

        if kind == "user":
            allowed = requester.user_id == ident
        elif kind == "role":
            allowed = requester.role == ident
        else:
            allowed = await self._can_join_context(requester, ident)

        if not allowed:
            await self._deny(requester, channel, f"NOT_A_MEMBER_OF_{kind.upper()}")
        return allowed

    async def _can_join_context(self, requester: Actor, code: str) -> bool:
        if requester.role == UserRole.ADMIN.value:
            return True
        parties = await resolve_context_parties(code)
        if parties is None:
            return False
        role_field = {
            UserRole.CLIENT.value: "client_id",
            UserRole.BDE.value: "bde_id",
            UserRole.WRITER.value: "writer_id",
        }.get(requester.role)
        return role_field is not None and parties.get(role_field) == requester.user_id

    async def _deny(self, requester: Actor, channel: str, reason: str):
        logger.warning(f"Channel join denied: {requester.role}:{requester.user_id} -> {channel} ({reason})")
        await create_audit_log(
            action=AuditAction.UNAUTHORIZED_CHANNEL_ACCESS,
            actor_role=requester.role,
            actor_id=requester.user_id,
            resource_type="channel",
            resource_id=channel,
            metadata={"reason": reason},
        )
