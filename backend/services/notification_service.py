"""
In-app notifications: creation with realtime fan-out, admin/role broadcasts,
and the per-user inbox operations behind /api/notifications.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database
from models import Notification, NotificationSeverity, UserRole, UserStatus

logger = logging.getLogger(__name__)

NOTIFICATION_NEW_EVENT = "notification:new"
NOTIFICATION_BROADCAST_EVENT = "notification:broadcast"

TRACKED_SEVERITIES = {NotificationSeverity.WARNING, NotificationSeverity.CRITICAL}


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def role_channel(role: str) -> str:
    return f"role:{role}"


def context_channel(code: str) -> str:
    return f"context:{code}"


def serialize_notification(doc: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a notification document."""
    out = {k: v for k, v in doc.items() if k != "_id"}
    for key in ("created_at", "read_at"):
        if isinstance(out.get(key), datetime):
            out[key] = out[key].isoformat()
    return out


class NotificationService:
    def __init__(self, side_effects):
        self.side_effects = side_effects

    async def create(
        self,
        recipient_id: str,
        severity: NotificationSeverity,
        title: str,
        message: str,
        link_url: Optional[str] = None,
        event: Optional[str] = None,
        order_id: Optional[str] = None,
        context_code: Optional[str] = None,
        parent_notification_id: Optional[str] = None,
        track_reminders: bool = True,
        priority: str = "normal",
    ) -> Dict[str, Any]:
        """Persist a notification and emit it.

        The insert is the only step that may raise. WARNING and CRITICAL
        notifications are registered for unread reminders unless they are
        themselves follow-ups.
        """
        severity = NotificationSeverity(severity)
        notification = Notification(
            recipient_id=recipient_id,
            severity=severity,
            title=title,
            message=message,
            link_url=link_url,
            event=event,
            order_id=order_id,
            context_code=context_code,
            parent_notification_id=parent_notification_id,
            reminder_tracked=(
                track_reminders and parent_notification_id is None and severity in TRACKED_SEVERITIES
            ),
        )
        doc = notification.model_dump(mode="python")
        doc["severity"] = severity.value
        db = database.get_db()
        await db.notifications.insert_one(doc)
        logger.info(f"Notification created: {notification.notification_id} ({severity.value}) for {recipient_id}")

        payload = serialize_notification(doc)
        payload["priority"] = priority
        emit_context = {"notification_id": notification.notification_id, "event": event}
        await self.side_effects.emit(user_channel(recipient_id), NOTIFICATION_NEW_EVENT, payload, emit_context)
        if context_code:
            await self.side_effects.emit(context_channel(context_code), NOTIFICATION_NEW_EVENT, payload, emit_context)
        return doc

    async def notify_admins(self, severity, title, message, link_url=None, **kwargs) -> List[Dict[str, Any]]:
        """Create one notification per active admin."""
        created = []
        for admin_id in await get_active_user_ids(UserRole.ADMIN.value):
            try:
                created.append(await self.create(admin_id, severity, title, message, link_url, **kwargs))
            except Exception as e:
                logger.error(f"Failed to notify admin {admin_id}: {e}")
        return created

    async def notify_role(self, role: str, severity, title, message, link_url=None, **kwargs) -> List[Dict[str, Any]]:
        """Notify every active user of a role and broadcast on the role channel."""
        created = []
        for user_id in await get_active_user_ids(role):
            try:
                created.append(await self.create(user_id, severity, title, message, link_url, **kwargs))
            except Exception as e:
                logger.error(f"Failed to notify {role} user {user_id}: {e}")
        await self.side_effects.emit(
            role_channel(role),
            NOTIFICATION_BROADCAST_EVENT,
            {
                "severity": NotificationSeverity(severity).value,
                "title": title,
                "message": message,
                "link_url": link_url,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            {"role": role},
        )
        return created


# ============================================================================
# Directory lookups (users collection is owned by the auth service)
# ============================================================================

async def get_active_user_ids(role: str) -> List[str]:
    db = database.get_db()
    cursor = db.users.find(
        {"role": role, "status": UserStatus.ACTIVE.value},
        {"_id": 0, "user_id": 1},
    )
    return [u["user_id"] async for u in cursor]


async def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.users.find_one({"user_id": user_id}, {"_id": 0})


async def get_user_email(user_id: str) -> Optional[str]:
    user = await get_user(user_id)
    return user.get("email") if user else None


# ============================================================================
# Inbox
# ============================================================================

async def list_notifications(
    user_id: str,
    page: int = 1,
    limit: int = 20,
    severity: Optional[str] = None,
    unread_only: bool = False,
) -> Dict[str, Any]:
    """Paginated notifications for a user, newest first."""
    db = database.get_db()
    query: Dict[str, Any] = {"recipient_id": user_id}
    if severity:
        query["severity"] = severity
    if unread_only:
        query["is_read"] = False
    total = await db.notifications.count_documents(query)
    cursor = db.notifications.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    items = await cursor.to_list(length=limit)
    return {
        "notifications": [serialize_notification(n) for n in items],
        "total": total,
        "page": page,
        "limit": limit,
    }


async def get_unread_count(user_id: str) -> int:
    db = database.get_db()
    return await db.notifications.count_documents({"recipient_id": user_id, "is_read": False})


async def get_critical_alerts(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Unread CRITICAL notifications for a user."""
    db = database.get_db()
    cursor = db.notifications.find(
        {"recipient_id": user_id, "is_read": False, "severity": NotificationSeverity.CRITICAL.value},
        {"_id": 0},
    ).sort("created_at", -1).limit(limit)
    return [serialize_notification(n) for n in await cursor.to_list(length=limit)]


async def mark_notification_read(notification_id: str, user_id: str) -> bool:
    """Mark one of the user's notifications as read."""
    db = database.get_db()
    result = await db.notifications.update_one(
        {"notification_id": notification_id, "recipient_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": datetime.now(timezone.utc)}},
    )
    return result.modified_count > 0


async def mark_all_notifications_read(user_id: str) -> int:
    db = database.get_db()
    result = await db.notifications.update_many(
        {"recipient_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "read_at": datetime.now(timezone.utc)}},
    )
    return result.modified_count


async def delete_notification(notification_id: str, user_id: str) -> bool:
    db = database.get_db()
    result = await db.notifications.delete_one({"notification_id": notification_id, "recipient_id": user_id})
    return result.deleted_count > 0
