"""
Audit log writes never break the caller; listing filters and orders newest first.
"""
from datetime import datetime, timedelta, timezone

import pytest

from models import AuditAction
from utils.audit import calculate_diff, create_audit_log, list_audit_logs


def test_calculate_diff():
    diff = calculate_diff({"status": 27, "note": "x"}, {"status": 28, "writer_id": "writer-1"})
    assert diff == {
        "added": {"writer_id": "writer-1"},
        "removed": {"note": "x"},
        "changed": {"status": {"from": 27, "to": 28}},
    }
    assert calculate_diff({}, {}) == {}


@pytest.mark.asyncio
async def test_create_audit_log_stores_diff(fake_db):
    audit_id = await create_audit_log(
        action=AuditAction.ORDER_STATUS_CHANGED,
        actor_role="admin",
        actor_id="admin-1",
        resource_type="order",
        resource_id="ORD-1",
        before_state={"status": 27},
        after_state={"status": 28},
    )

    [log] = fake_db.audit_logs.docs
    assert log["audit_id"] == audit_id
    assert log["action"] == AuditAction.ORDER_STATUS_CHANGED.value
    assert log["actor_role"] == "admin"
    assert log["metadata"]["changes_count"] == 1


@pytest.mark.asyncio
async def test_unknown_role_is_dropped_not_raised(fake_db):
    await create_audit_log(action=AuditAction.UNAUTHORIZED_CHANNEL_ACCESS, actor_role="intruder")
    assert fake_db.audit_logs.docs[0]["actor_role"] is None


@pytest.mark.asyncio
async def test_write_failure_returns_empty_id(fake_db):
    fake_db.audit_logs.failures["insert_one"] = RuntimeError("audit store down")

    assert await create_audit_log(action=AuditAction.ORDER_STATUS_CHANGED) == ""


@pytest.mark.asyncio
async def test_list_filters_newest_first(fake_db):
    await create_audit_log(action=AuditAction.ORDER_STATUS_CHANGED, resource_type="order", resource_id="ORD-1")
    await create_audit_log(action=AuditAction.ORDER_STATUS_CHANGED, resource_type="order", resource_id="ORD-2")
    await create_audit_log(action=AuditAction.ADMIN_JOB_RUN, resource_type="job", resource_id="unread_sweep")
    base = datetime.now(timezone.utc)
    for i, log in enumerate(fake_db.audit_logs.docs):
        log["timestamp"] = (base + timedelta(seconds=i)).isoformat()

    changes = await list_audit_logs(action=AuditAction.ORDER_STATUS_CHANGED.value)
    assert [log["resource_id"] for log in changes] == ["ORD-2", "ORD-1"]

    jobs = await list_audit_logs(resource_type="job")
    assert [log["resource_id"] for log in jobs] == ["unread_sweep"]
