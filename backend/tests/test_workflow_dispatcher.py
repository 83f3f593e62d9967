"""
Workflow dispatcher: per-role fan-out, missing roles, per-recipient isolation.
"""
import pytest

from services.workflow_dispatcher import _recipient_ids

ORDER = {
    "order_id": "ORD-1",
    "query_code": "QRY_1",
    "work_code": "WORK_AB12",
    "paper_topic": "Supply chains",
}


def test_recipient_ids_normalises_and_dedupes():
    assert _recipient_ids(None) == []
    assert _recipient_ids("a") == ["a"]
    assert _recipient_ids(["a", None, "b", "a"]) == ["a", "b"]


@pytest.mark.asyncio
async def test_dispatch_notifies_each_templated_role(engine, fake_db, hub):
    result = await engine.dispatcher.dispatch(
        "QC_APPROVED", ORDER,
        {"client": "client-1", "writer": "writer-1", "admin": ["admin-1", "admin-2"], "bde": "bde-1"},
        context_code="WORK_AB12",
    )

    assert result.notifications_created == 4
    assert result.skipped_roles == []
    recipients = sorted(n["recipient_id"] for n in fake_db.notifications.docs)
    assert recipients == ["admin-1", "admin-2", "client-1", "writer-1"]
    # history row for the event itself
    assert fake_db.orders_history.docs[0]["action_type"] == "QC_APPROVED"
    assert "user:writer-1" in hub.channels()
    assert "context:WORK_AB12" in hub.channels()


@pytest.mark.asyncio
async def test_roles_without_an_actor_are_skipped(engine, fake_db):
    result = await engine.dispatcher.dispatch(
        "QC_APPROVED", ORDER, {"client": "client-1", "admin": []}, record_history=False,
    )

    assert result.notifications_created == 1
    assert sorted(result.skipped_roles) == ["admin", "writer"]
    assert fake_db.orders_history.docs == []


@pytest.mark.asyncio
async def test_one_failed_recipient_does_not_stop_the_rest(engine, fake_db):
    fake_db.notifications.failures["insert_one"] = RuntimeError("write failed")

    result = await engine.dispatcher.dispatch(
        "QC_APPROVED", ORDER, {"client": "client-1", "writer": "writer-1", "admin": "admin-1"},
    )

    assert result.notifications_created == 2
    assert len(result.errors) == 1
    assert len(fake_db.notifications.docs) == 2


@pytest.mark.asyncio
async def test_unknown_event_reports_error(engine, fake_db):
    result = await engine.dispatcher.dispatch("NOT_AN_EVENT", ORDER, {"client": "client-1"})

    assert result.notifications_created == 0
    assert result.errors
    assert fake_db.notifications.docs == []


@pytest.mark.asyncio
async def test_realtime_failure_is_captured_not_raised(engine, fake_db, hub):
    hub.fail_next = 1

    result = await engine.dispatcher.dispatch("ORDER_DELIVERED", ORDER, {"client": "client-1"})

    assert result.notifications_created == 1
    [queued] = fake_db.side_effect_queue.docs
    assert queued["kind"] == "emit"
    assert queued["status"] == "PENDING"
    assert queued["payload"]["channel"] == "user:client-1"
