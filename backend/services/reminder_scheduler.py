"""
Reminder and escalation sweeps.

Deadline sweep (hourly): orders with a writer and a deadline inside the
horizon get a reminder for the tightest band that applies:
    24h WARNING
    12h CRITICAL
     6h CRITICAL + email
     1h CRITICAL + email + every admin notified
Each band fires at most once per order; the order keeps a single marker
document whose active band moves as reminders escalate.

Unread sweep (every 30 minutes): tracked, unread WARNING/CRITICAL
notifications that have been waiting longer than the next band get a
follow-up. reminder_count only moves forward by compare-and-set, so it never
skips a band or exceeds the band list. When a CRITICAL notification's count
reaches the escalation threshold, admins are notified and emailed once.

Errors are isolated per row: a bad row is logged and counted, the rest of the
page still runs. A band claimed for a row that then fails is released, and an
unread count already advanced is moved back, so the next sweep retries it.
"""
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import os
import uuid

from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, NotificationSeverity, UserRole
from services.email_service import render_notification_email
from services.notification_service import (
    NotificationService,
    get_active_user_ids,
    get_user,
    get_user_email,
)
from services.order_workflow import ACTIVE_WORK_STATES
from services.workflow_events import RECIPIENT, TemplateRegistry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _int_list(value: str) -> List[int]:
    return [int(v) for v in value.split(",") if v.strip()]


DEADLINE_HORIZON_HOURS = int(os.getenv("DEADLINE_SWEEP_HORIZON_HOURS", "24"))
UNREAD_CRITICAL_BANDS_MINUTES = _int_list(os.getenv("UNREAD_CRITICAL_BANDS_MINUTES", "30,60,90,120"))
UNREAD_WARNING_BANDS_MINUTES = _int_list(os.getenv("UNREAD_WARNING_BANDS_MINUTES", "60,120"))
CRITICAL_ESCALATION_THRESHOLD = int(os.getenv("CRITICAL_ESCALATION_THRESHOLD", "3"))
REMINDER_SWEEP_PAGE_SIZE = int(os.getenv("REMINDER_SWEEP_PAGE_SIZE", "200"))

SUBJECT_ORDER = "order"
SUBJECT_NOTIFICATION = "notification"


@dataclass(frozen=True)
class DeadlineBand:
    label: str
    hours: int
    severity: NotificationSeverity
    send_email: bool = False
    notify_admins: bool = False

    @property
    def event(self) -> str:
        return f"DEADLINE_REMINDER_{self.label.upper()}"


# Tightest first
DEADLINE_BANDS: Tuple[DeadlineBand, ...] = (
    DeadlineBand("1h", 1, NotificationSeverity.CRITICAL, send_email=True, notify_admins=True),
    DeadlineBand("6h", 6, NotificationSeverity.CRITICAL, send_email=True),
    DeadlineBand("12h", 12, NotificationSeverity.CRITICAL),
    DeadlineBand("24h", 24, NotificationSeverity.WARNING),
)


def tightest_band(hours_remaining: float, bands: Sequence[DeadlineBand] = DEADLINE_BANDS) -> Optional[DeadlineBand]:
    """The smallest band whose window contains hours_remaining."""
    if hours_remaining <= 0:
        return None
    for band in sorted(bands, key=lambda b: b.hours):
        if hours_remaining <= band.hours:
            return band
    return None


def as_utc(value) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderMarkers:
    """reminder_markers: one document per (subject, recipient) recording fired bands."""

    async def claim(self, subject_type: str, subject_id: str, recipient_id: str, band: str,
                    now: Optional[datetime] = None) -> bool:
        """Mark band as fired. Returns False if it had already fired."""
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        key = {"subject_type": subject_type, "subject_id": subject_id, "recipient_id": recipient_id}
        try:
            await db.reminder_markers.update_one(
                key,
                {"$setOnInsert": {
                    **key,
                    "marker_id": str(uuid.uuid4()),
                    "band": None,
                    "fired": False,
                    "fired_bands": [],
                    "created_at": now,
                }},
                upsert=True,
            )
        except DuplicateKeyError:
            pass  # Created concurrently
        result = await db.reminder_markers.update_one(
            {**key, "fired_bands": {"$ne": band}},
            {
                "$set": {"band": band, "fired": True, "fired_at": now},
                "$push": {"fired_bands": band},
            },
        )
        return result.modified_count == 1

    async def release(self, subject_type: str, subject_id: str, recipient_id: str, band: str) -> bool:
        """Undo a claim whose reminder was not delivered, so the next sweep retries it."""
        db = database.get_db()
        key = {"subject_type": subject_type, "subject_id": subject_id, "recipient_id": recipient_id}
        result = await db.reminder_markers.update_one(
            {**key, "fired_bands": band},
            {"$pull": {"fired_bands": band}},
        )
        marker = await db.reminder_markers.find_one(key, {"_id": 0})
        if marker is not None and marker.get("band") == band:
            remaining = marker.get("fired_bands") or []
            await db.reminder_markers.update_one(
                key,
                {"$set": {"band": remaining[-1] if remaining else None, "fired": bool(remaining)}},
            )
        return result.modified_count == 1

    async def get(self, subject_type: str, subject_id: str, recipient_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.reminder_markers.find_one(
            {"subject_type": subject_type, "subject_id": subject_id, "recipient_id": recipient_id},
            {"_id": 0},
        )


class ReminderScheduler:
    def __init__(
        self,
        registry: TemplateRegistry,
        notifications: NotificationService,
        side_effects,
        markers: Optional[ReminderMarkers] = None,
        horizon_hours: int = DEADLINE_HORIZON_HOURS,
        unread_bands: Optional[Mapping[NotificationSeverity, Sequence[int]]] = None,
        escalation_thresholds: Optional[Mapping[NotificationSeverity, int]] = None,
        page_size: int = REMINDER_SWEEP_PAGE_SIZE,
    ):
        self.registry = registry
        self.notifications = notifications
        self.side_effects = side_effects
        self.markers = markers or ReminderMarkers()
        self.horizon_hours = horizon_hours
        self.unread_bands = dict(unread_bands or {
            NotificationSeverity.CRITICAL: UNREAD_CRITICAL_BANDS_MINUTES,
            NotificationSeverity.WARNING: UNREAD_WARNING_BANDS_MINUTES,
        })
        self.escalation_thresholds = dict(escalation_thresholds or {
            NotificationSeverity.CRITICAL: CRITICAL_ESCALATION_THRESHOLD,
        })
        self.page_size = page_size

    # ------------------------------------------------------------------
    # Deadline sweep
    # ------------------------------------------------------------------

    async def run_deadline_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        cursor = db.orders.find(
            {
                "status": {"$in": sorted(int(s) for s in ACTIVE_WORK_STATES)},
                "writer_id": {"$ne": None},
                "deadline_at": {"$gt": now, "$lte": now + timedelta(hours=self.horizon_hours)},
            },
            {"_id": 0},
        ).sort("deadline_at", 1).limit(self.page_size)
        orders = await cursor.to_list(self.page_size)

        summary = {"checked": 0, "fired": 0, "errors": 0}
        for order in orders:
            summary["checked"] += 1
            try:
                if await self._process_deadline(order, now):
                    summary["fired"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Deadline reminder failed for order {order.get('order_id')}: {e}")
        logger.info(f"Deadline sweep: {summary}")
        return summary

    async def _process_deadline(self, order: Dict[str, Any], now: datetime) -> bool:
        order_id = order["order_id"]
        writer_id = order["writer_id"]
        hours_remaining = (as_utc(order["deadline_at"]) - now).total_seconds() / 3600
        band = tightest_band(hours_remaining)
        if band is None:
            return False

        if not await self.markers.claim(SUBJECT_ORDER, order_id, writer_id, band.label, now):
            return False
        try:
            await self._deliver_deadline(order, band, hours_remaining)
        except Exception:
            await self.markers.release(SUBJECT_ORDER, order_id, writer_id, band.label)
            raise
        logger.info(f"Deadline band {band.label} fired for order {order_id}")
        return True

    async def _deliver_deadline(self, order: Dict[str, Any], band: DeadlineBand, hours_remaining: float):
        order_id = order["order_id"]
        writer_id = order["writer_id"]
        values = {
            "order_id": order_id,
            "query_code": order.get("query_code"),
            "work_code": order.get("work_code") or order.get("query_code"),
            "paper_topic": order.get("paper_topic"),
            "hours_remaining": f"{hours_remaining:.1f}",
            "deadline": as_utc(order["deadline_at"]).strftime("%Y-%m-%d %H:%M UTC"),
        }
        context_code = order.get("work_code") or order.get("query_code")
        rendered = self.registry.render(band.event, UserRole.WRITER.value, values)
        await self.notifications.create(
            recipient_id=writer_id,
            severity=band.severity,
            title=rendered.title,
            message=rendered.message,
            link_url=rendered.link_url,
            event=band.event,
            order_id=order_id,
            context_code=context_code,
            priority=rendered.priority,
        )

        if band.send_email:
            email = await get_user_email(writer_id)
            if email:
                await self.side_effects.send_mail(
                    email,
                    rendered.title,
                    render_notification_email(rendered.title, rendered.message, rendered.link_url),
                    {"order_id": order_id, "band": band.label},
                )
            else:
                logger.warning(f"No email on file for writer {writer_id}; skipping {band.label} deadline email")

        if band.notify_admins:
            admin_rendered = self.registry.render(band.event, UserRole.ADMIN.value, values)
            await self.notifications.notify_role(
                UserRole.ADMIN.value,
                admin_rendered.severity,
                admin_rendered.title,
                admin_rendered.message,
                admin_rendered.link_url,
                event=band.event,
                order_id=order_id,
                priority=admin_rendered.priority,
            )

        await create_audit_log(
            action=AuditAction.DEADLINE_REMINDER_FIRED,
            resource_type="order",
            resource_id=order_id,
            metadata={"band": band.label, "writer_id": writer_id, "hours_remaining": round(hours_remaining, 2)},
        )

    # ------------------------------------------------------------------
    # Unread sweep
    # ------------------------------------------------------------------

    async def run_unread_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        summary = {"checked": 0, "fired": 0, "escalated": 0, "errors": 0}

        for severity, bands in self.unread_bands.items():
            if not bands:
                continue
            cursor = db.notifications.find(
                {
                    "reminder_tracked": True,
                    "is_read": False,
                    "severity": severity.value,
                    "reminder_count": {"$lt": len(bands)},
                    "created_at": {"$lte": now - timedelta(minutes=bands[0])},
                },
                {"_id": 0},
            ).sort("created_at", 1).limit(self.page_size)
            rows = await cursor.to_list(self.page_size)
            for notification in rows:
                summary["checked"] += 1
                try:
                    fired, escalated = await self._process_unread(notification, severity, bands, now)
                    summary["fired"] += int(fired)
                    summary["escalated"] += int(escalated)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error(f"Unread reminder failed for {notification.get('notification_id')}: {e}")
        logger.info(f"Unread sweep: {summary}")
        return summary

    async def _process_unread(self, notification: Dict[str, Any], severity: NotificationSeverity,
                              bands: Sequence[int], now: datetime) -> Tuple[bool, bool]:
        notification_id = notification["notification_id"]
        recipient_id = notification["recipient_id"]
        count = notification.get("reminder_count", 0)
        if count >= len(bands):
            return False, False

        minutes_unread = (now - as_utc(notification["created_at"])).total_seconds() / 60
        if minutes_unread < bands[count]:
            return False, False

        band_label = f"unread_{bands[count]}m"
        if not await self.markers.claim(SUBJECT_NOTIFICATION, notification_id, recipient_id, band_label, now):
            return False, False
        try:
            escalated = await self._deliver_unread(notification, severity, count, minutes_unread, now)
        except Exception:
            await self.markers.release(SUBJECT_NOTIFICATION, notification_id, recipient_id, band_label)
            raise
        if escalated is None:
            return False, False
        return True, escalated

    async def _deliver_unread(self, notification: Dict[str, Any], severity: NotificationSeverity,
                              count: int, minutes_unread: float, now: datetime) -> Optional[bool]:
        """Advance reminder_count and send the follow-up.

        Returns None when the notification was read in the meantime, otherwise
        whether this reminder escalated. If the follow-up cannot be sent the
        count is moved back so the band stays due.
        """
        notification_id = notification["notification_id"]
        db = database.get_db()
        bumped = await db.notifications.update_one(
            {"notification_id": notification_id, "reminder_count": count, "is_read": False},
            {"$inc": {"reminder_count": 1}, "$set": {"last_reminded_at": now}},
        )
        if bumped.modified_count == 0:
            return None
        new_count = count + 1

        try:
            values = {
                "title": notification.get("title"),
                "message": notification.get("message"),
                "link_url": notification.get("link_url") or "",
                "reminder_number": new_count,
                "minutes_unread": int(minutes_unread),
            }
            rendered = self.registry.render("UNREAD_REMINDER", RECIPIENT, values)
            await self.notifications.create(
                recipient_id=notification["recipient_id"],
                severity=severity,
                title=rendered.title,
                message=rendered.message,
                link_url=rendered.link_url or None,
                event="UNREAD_REMINDER",
                order_id=notification.get("order_id"),
                parent_notification_id=notification_id,
            )

            threshold = self.escalation_thresholds.get(severity)
            if threshold and count < threshold <= new_count:
                await self._escalate(notification, new_count, minutes_unread)
                return True
            return False
        except Exception:
            await db.notifications.update_one(
                {"notification_id": notification_id, "reminder_count": new_count},
                {"$inc": {"reminder_count": -1}},
            )
            raise

    async def _escalate(self, notification: Dict[str, Any], reminder_count: int, minutes_unread: float):
        recipient = await get_user(notification["recipient_id"]) or {}
        values = {
            "title": notification.get("title"),
            "link_url": notification.get("link_url") or "",
            "reminder_number": reminder_count,
            "minutes_unread": int(minutes_unread),
            "recipient_name": recipient.get("name") or notification["recipient_id"],
        }
        rendered = self.registry.render("UNREAD_ESCALATION", UserRole.ADMIN.value, values)
        await self.notifications.notify_admins(
            rendered.severity,
            rendered.title,
            rendered.message,
            rendered.link_url or None,
            event="UNREAD_ESCALATION",
            order_id=notification.get("order_id"),
            parent_notification_id=notification["notification_id"],
            priority=rendered.priority,
        )

        html = render_notification_email(rendered.title, rendered.message, rendered.link_url or None)
        for admin_id in await get_active_user_ids(UserRole.ADMIN.value):
            email = await get_user_email(admin_id)
            if email:
                await self.side_effects.send_mail(
                    email, rendered.title, html,
                    {"notification_id": notification["notification_id"], "escalation": True},
                )

        await create_audit_log(
            action=AuditAction.REMINDER_ESCALATED,
            resource_type="notification",
            resource_id=notification["notification_id"],
            metadata={
                "recipient_id": notification["recipient_id"],
                "reminder_count": reminder_count,
                "severity": notification.get("severity"),
            },
        )
        logger.warning(
            f"Notification {notification['notification_id']} escalated to admins after {reminder_count} reminders"
        )
