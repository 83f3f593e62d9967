"""
Notifications Routes - the authenticated user's in-app inbox.
"""
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional
from middleware import require_auth
from models import AuditAction, NotificationSeverity
from services.notification_service import (
    list_notifications,
    get_unread_count,
    get_critical_alerts,
    mark_notification_read,
    mark_all_notifications_read,
    delete_notification,
)
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def get_notifications(
    page: int = 1,
    limit: int = 20,
    severity: Optional[str] = None,
    unread_only: bool = False,
    current_user: dict = Depends(require_auth),
):
    """Paginated notifications, newest first."""
    if severity is not None and severity not in {s.value for s in NotificationSeverity}:
        raise HTTPException(status_code=400, detail=f"Unknown severity: {severity}")
    return await list_notifications(
        current_user["user_id"],
        page=max(page, 1),
        limit=max(1, min(limit, 100)),
        severity=severity,
        unread_only=unread_only,
    )


@router.get("/unread-count")
async def unread_count(current_user: dict = Depends(require_auth)):
    return {"count": await get_unread_count(current_user["user_id"])}


@router.get("/critical")
async def critical_alerts(limit: int = 10, current_user: dict = Depends(require_auth)):
    """Unread CRITICAL notifications."""
    alerts = await get_critical_alerts(current_user["user_id"], limit=max(1, min(limit, 50)))
    return {"notifications": alerts, "count": len(alerts)}


@router.patch("/all/read")
async def mark_all_read(current_user: dict = Depends(require_auth)):
    count = await mark_all_notifications_read(current_user["user_id"])
    return {"success": True, "marked_read": count}


@router.patch("/{notification_id}/read")
async def mark_read(notification_id: str, current_user: dict = Depends(require_auth)):
    if not await mark_notification_read(notification_id, current_user["user_id"]):
        raise HTTPException(status_code=404, detail="Notification not found or already read")
    return {"success": True}


@router.delete("/{notification_id}")
async def remove_notification(notification_id: str, current_user: dict = Depends(require_auth)):
    if not await delete_notification(notification_id, current_user["user_id"]):
        raise HTTPException(status_code=404, detail="Notification not found")
    await create_audit_log(
        action=AuditAction.NOTIFICATION_DELETED,
        actor_role=current_user.get("role"),
        actor_id=current_user["user_id"],
        resource_type="notification",
        resource_id=notification_id,
    )
    return {"success": True}
