"""
Deadline and unread sweeps.
- Tightest band only, each band at most once per order
- Unread reminders move one band per sweep and stop at the end of the list
- CRITICAL escalation fires once when the count crosses the threshold
"""
from datetime import datetime, timedelta, timezone

import pytest

from models import AuditAction
from services.order_workflow import OrderStatus
from services.reminder_scheduler import DEADLINE_BANDS, tightest_band

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def _notes(fake_db, recipient_id=None, event=None):
    return [
        n for n in fake_db.notifications.docs
        if (recipient_id is None or n["recipient_id"] == recipient_id) and (event is None or n.get("event") == event)
    ]


def _unread(fake_db, severity="critical", minutes_old=95, reminder_count=0, **fields):
    doc = {
        "notification_id": fields.pop("notification_id", "N-1"),
        "recipient_id": "writer-1",
        "severity": severity,
        "title": "Revision Required",
        "message": "Your submission for WORK_AB12 needs revision.",
        "link_url": "/writer/tasks/ORD-1",
        "is_read": False,
        "reminder_count": reminder_count,
        "reminder_tracked": True,
        "parent_notification_id": None,
        "order_id": "ORD-1",
        "created_at": NOW - timedelta(minutes=minutes_old),
    }
    doc.update(fields)
    fake_db.notifications.docs.append(doc)
    return doc


def test_tightest_band():
    assert tightest_band(0.9).label == "1h"
    assert tightest_band(5).label == "6h"
    assert tightest_band(11.5).label == "12h"
    assert tightest_band(23).label == "24h"
    assert tightest_band(30) is None
    assert tightest_band(0) is None
    assert [b.label for b in DEADLINE_BANDS] == ["1h", "6h", "12h", "24h"]


# ============================================================================
# Deadline sweep
# ============================================================================

@pytest.mark.asyncio
async def test_one_hour_band_notifies_writer_emails_and_alerts_admins(engine, fake_db, email, make_order):
    make_order(OrderStatus.IN_PROGRESS, writer_id="writer-1", work_code="WORK_AB12",
               deadline_at=NOW + timedelta(minutes=55))

    summary = await engine.reminders.run_deadline_sweep(NOW)

    assert summary == {"checked": 1, "fired": 1, "errors": 0}
    marker = await engine.reminders.markers.get("order", "ORD-1", "writer-1")
    assert marker["band"] == "1h" and marker["fired_bands"] == ["1h"]
    [writer_note] = _notes(fake_db, "writer-1")
    assert writer_note["severity"] == "critical"
    assert writer_note["event"] == "DEADLINE_REMINDER_1H"
    assert [m["to"] for m in email.sent] == ["wes@example.com"]
    admin_notes = _notes(fake_db, event="DEADLINE_REMINDER_1H")
    assert sorted(n["recipient_id"] for n in admin_notes if n["recipient_id"] != "writer-1") == ["admin-1", "admin-2"]
    assert all(n["severity"] == "critical" for n in admin_notes)
    assert fake_db.audit_logs.docs[-1]["action"] == AuditAction.DEADLINE_REMINDER_FIRED.value


@pytest.mark.asyncio
async def test_band_fires_at_most_once(engine, fake_db, email, make_order):
    make_order(OrderStatus.IN_PROGRESS, writer_id="writer-1", deadline_at=NOW + timedelta(minutes=55))

    await engine.reminders.run_deadline_sweep(NOW)
    count = len(fake_db.notifications.docs)
    again = await engine.reminders.run_deadline_sweep(NOW + timedelta(minutes=10))

    assert again["fired"] == 0
    assert len(fake_db.notifications.docs) == count
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_bands_escalate_as_deadline_approaches(engine, fake_db, email, make_order):
    make_order(OrderStatus.IN_PROGRESS, writer_id="writer-1", deadline_at=NOW + timedelta(hours=20))

    await engine.reminders.run_deadline_sweep(NOW)
    [first] = _notes(fake_db, "writer-1")
    assert first["severity"] == "warning"
    assert email.sent == []

    await engine.reminders.run_deadline_sweep(NOW + timedelta(hours=15))
    marker = await engine.reminders.markers.get("order", "ORD-1", "writer-1")
    assert marker["band"] == "6h"
    assert marker["fired_bands"] == ["24h", "6h"]
    assert [m["to"] for m in email.sent] == ["wes@example.com"]


@pytest.mark.asyncio
async def test_deadline_sweep_skips_unassigned_inactive_and_far_orders(engine, fake_db, make_order):
    make_order(OrderStatus.IN_PROGRESS, order_id="ORD-1", writer_id=None, deadline_at=NOW + timedelta(hours=2))
    make_order(OrderStatus.PENDING_QC, order_id="ORD-2", writer_id="writer-1", deadline_at=NOW + timedelta(hours=2))
    make_order(OrderStatus.IN_PROGRESS, order_id="ORD-3", writer_id="writer-1", deadline_at=NOW + timedelta(days=3))
    make_order(OrderStatus.IN_PROGRESS, order_id="ORD-4", writer_id="writer-1", deadline_at=NOW - timedelta(hours=1))

    summary = await engine.reminders.run_deadline_sweep(NOW)

    assert summary["checked"] == 0
    assert fake_db.notifications.docs == []


@pytest.mark.asyncio
async def test_bad_order_row_does_not_stop_sweep(engine, fake_db, make_order):
    make_order(OrderStatus.IN_PROGRESS, order_id="ORD-1", writer_id="writer-1", deadline_at=NOW + timedelta(hours=2))
    make_order(OrderStatus.IN_PROGRESS, order_id="ORD-2", writer_id="writer-2", deadline_at=NOW + timedelta(hours=3))
    fake_db.reminder_markers.failures["update_one"] = RuntimeError("marker store hiccup")

    summary = await engine.reminders.run_deadline_sweep(NOW)

    assert summary["errors"] == 1
    assert summary["fired"] == 1


# ============================================================================
# Unread sweep
# ============================================================================

@pytest.mark.asyncio
async def test_third_critical_reminder_escalates_once(engine, fake_db, email):
    _unread(fake_db, minutes_old=95, reminder_count=2)

    summary = await engine.reminders.run_unread_sweep(NOW)

    assert summary["fired"] == 1 and summary["escalated"] == 1
    original = fake_db.notifications.docs[0]
    assert original["reminder_count"] == 3
    [follow_up] = _notes(fake_db, "writer-1", "UNREAD_REMINDER")
    assert follow_up["parent_notification_id"] == "N-1"
    assert follow_up["severity"] == "critical"
    assert follow_up["reminder_tracked"] is False
    assert "(reminder 3)" in follow_up["message"]
    escalations = _notes(fake_db, event="UNREAD_ESCALATION")
    assert sorted(n["recipient_id"] for n in escalations) == ["admin-1", "admin-2"]
    assert sorted(m["to"] for m in email.sent) == ["abe@example.com", "ada@example.com"]

    again = await engine.reminders.run_unread_sweep(NOW + timedelta(minutes=10))
    assert again["fired"] == 0 and again["escalated"] == 0
    assert len(email.sent) == 2
    escalated = [a for a in fake_db.audit_logs.docs if a["action"] == AuditAction.REMINDER_ESCALATED.value]
    assert len(escalated) == 1


@pytest.mark.asyncio
async def test_reminder_count_moves_one_band_per_sweep(engine, fake_db):
    _unread(fake_db, minutes_old=500, reminder_count=0)

    counts = []
    for i in range(6):
        await engine.reminders.run_unread_sweep(NOW + timedelta(minutes=i))
        counts.append(fake_db.notifications.docs[0]["reminder_count"])

    assert counts == [1, 2, 3, 4, 4, 4]
    assert len(_notes(fake_db, "writer-1", "UNREAD_REMINDER")) == 4
    assert len(_notes(fake_db, event="UNREAD_ESCALATION")) == 2


@pytest.mark.asyncio
async def test_first_band_waits_for_its_age(engine, fake_db):
    _unread(fake_db, minutes_old=20)

    summary = await engine.reminders.run_unread_sweep(NOW)

    assert summary["fired"] == 0
    assert fake_db.notifications.docs[0]["reminder_count"] == 0


@pytest.mark.asyncio
async def test_warning_uses_its_own_bands_and_never_escalates(engine, fake_db):
    _unread(fake_db, severity="warning", minutes_old=45)
    _unread(fake_db, severity="warning", minutes_old=130, notification_id="N-2", reminder_count=1)

    summary = await engine.reminders.run_unread_sweep(NOW)

    assert summary["fired"] == 1
    assert summary["escalated"] == 0
    assert [n["reminder_count"] for n in fake_db.notifications.docs[:2]] == [0, 2]


@pytest.mark.asyncio
async def test_read_and_untracked_notifications_are_ignored(engine, fake_db):
    _unread(fake_db, notification_id="N-1", is_read=True)
    _unread(fake_db, notification_id="N-2", reminder_tracked=False)
    _unread(fake_db, notification_id="N-3", severity="info")

    summary = await engine.reminders.run_unread_sweep(NOW)

    assert summary["checked"] == 0


@pytest.mark.asyncio
async def test_marker_blocks_a_second_reminder_for_the_same_band(engine, fake_db):
    _unread(fake_db, minutes_old=95, reminder_count=2)
    claimed = await engine.reminders.markers.claim("notification", "N-1", "writer-1", "unread_90m", NOW)
    assert claimed

    summary = await engine.reminders.run_unread_sweep(NOW)

    assert summary["fired"] == 0
    assert fake_db.notifications.docs[0]["reminder_count"] == 2


@pytest.mark.asyncio
async def test_failed_deadline_reminder_is_retried_next_sweep(engine, fake_db, email, make_order):
    make_order(OrderStatus.IN_PROGRESS, writer_id="writer-1", deadline_at=NOW + timedelta(minutes=55))
    fake_db.notifications.failures["insert_one"] = RuntimeError("notifications primary stepped down")

    first = await engine.reminders.run_deadline_sweep(NOW)

    assert first == {"checked": 1, "fired": 0, "errors": 1}
    marker = await engine.reminders.markers.get("order", "ORD-1", "writer-1")
    assert marker["fired_bands"] == [] and marker["band"] is None
    assert email.sent == []

    second = await engine.reminders.run_deadline_sweep(NOW + timedelta(minutes=10))

    assert second["fired"] == 1
    [writer_note] = _notes(fake_db, "writer-1")
    assert writer_note["event"] == "DEADLINE_REMINDER_1H"
    assert [m["to"] for m in email.sent] == ["wes@example.com"]


@pytest.mark.asyncio
async def test_release_keeps_earlier_bands(engine, fake_db, make_order):
    make_order(OrderStatus.IN_PROGRESS, writer_id="writer-1", deadline_at=NOW + timedelta(hours=20))
    await engine.reminders.run_deadline_sweep(NOW)
    fake_db.notifications.failures["insert_one"] = RuntimeError("write concern timeout")

    summary = await engine.reminders.run_deadline_sweep(NOW + timedelta(hours=15))

    assert summary["errors"] == 1
    marker = await engine.reminders.markers.get("order", "ORD-1", "writer-1")
    assert marker["fired_bands"] == ["24h"]
    assert marker["band"] == "24h"


@pytest.mark.asyncio
async def test_failed_count_bump_leaves_band_due(engine, fake_db, email):
    _unread(fake_db, minutes_old=95, reminder_count=2)
    fake_db.notifications.failures["update_one"] = RuntimeError("notifications primary stepped down")

    first = await engine.reminders.run_unread_sweep(NOW)

    assert first["errors"] == 1 and first["fired"] == 0
    assert fake_db.notifications.docs[0]["reminder_count"] == 2
    marker = await engine.reminders.markers.get("notification", "N-1", "writer-1")
    assert "unread_90m" not in marker["fired_bands"]

    second = await engine.reminders.run_unread_sweep(NOW + timedelta(minutes=30))

    assert second["fired"] == 1 and second["escalated"] == 1
    assert fake_db.notifications.docs[0]["reminder_count"] == 3
    assert len(_notes(fake_db, "writer-1", "UNREAD_REMINDER")) == 1


@pytest.mark.asyncio
async def test_failed_follow_up_moves_count_back(engine, fake_db):
    _unread(fake_db, minutes_old=35, reminder_count=0)
    fake_db.notifications.failures["insert_one"] = RuntimeError("write concern timeout")

    first = await engine.reminders.run_unread_sweep(NOW)

    assert first["errors"] == 1
    assert fake_db.notifications.docs[0]["reminder_count"] == 0
    assert _notes(fake_db, "writer-1", "UNREAD_REMINDER") == []

    second = await engine.reminders.run_unread_sweep(NOW + timedelta(minutes=30))

    assert second["fired"] == 1
    assert fake_db.notifications.docs[0]["reminder_count"] == 1
    [follow_up] = _notes(fake_db, "writer-1", "UNREAD_REMINDER")
    assert follow_up["parent_notification_id"] == "N-1"
