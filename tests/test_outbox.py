from __future__ import annotations

from unittest import mock

from sqlalchemy import func, select

from conftest import add_employee, future_lwd, seed_org
from models import OffboardingTask
from services import outbox, stage_graph
from services.state_machine import OffboardingWorkflow


def _stuck_checklist(db):
    """A request whose checklist setup failed; with no approvers it lands on checklist_generation directly."""

    add_employee(db, "EMP-0009")
    db.commit()
    wf = OffboardingWorkflow(db, notifier=db.info["notifier"])
    with mock.patch("services.dispatcher.generate_tasks", side_effect=RuntimeError("template store down")):
        result = wf.initiate(
            employee_id="EMP-0009",
            reason="contract_end",
            last_working_day=future_lwd(),
            actor="USR-ADMIN",
        )
    return wf, result


def _task_count(db, request_id: str) -> int:
    return db.execute(select(func.count(OffboardingTask.id)).where(OffboardingTask.requestId == request_id)).scalar_one()


def test_failed_setup_leaves_a_pending_intent(tenant_db):
    wf, result = _stuck_checklist(tenant_db)
    req = result.request

    assert req.currentStage == stage_graph.CHECKLIST_GENERATION
    assert result.outcomes[-1].error == "template store down"
    intent = outbox.latest_intent(tenant_db, req.requestId)
    assert intent.status == outbox.INTENT_PENDING
    assert intent.stage == stage_graph.CHECKLIST_GENERATION
    assert intent.attempts == 1
    assert intent.lastError == "template store down"
    assert _task_count(tenant_db, req.requestId) == 0


def test_replay_runs_the_owed_setup_once(tenant_db):
    wf, result = _stuck_checklist(tenant_db)
    rid = result.request.requestId

    summary = outbox.replay_pending_intents(tenant_db, wf)
    assert summary["scanned"] == 1
    assert summary["done"] == 1
    assert summary["items"][0]["status"] == outbox.INTENT_DONE
    assert _task_count(tenant_db, rid) == 6
    assert outbox.latest_intent(tenant_db, rid).completedAt

    again = outbox.replay_pending_intents(tenant_db, wf)
    assert again["scanned"] == 0
    assert _task_count(tenant_db, rid) == 6


def test_replay_that_fails_again_stays_pending(tenant_db):
    wf, result = _stuck_checklist(tenant_db)

    with mock.patch("services.dispatcher.generate_tasks", side_effect=RuntimeError("still down")):
        summary = outbox.replay_pending_intents(tenant_db, wf, request_id=result.request.requestId)

    assert summary["failed"] == 1
    intent = outbox.latest_intent(tenant_db, result.request.requestId)
    assert intent.status == outbox.INTENT_PENDING
    assert intent.attempts == 2
    assert intent.lastError == "still down"


def test_moving_on_supersedes_the_older_intent(tenant_db):
    wf, result = _stuck_checklist(tenant_db)
    rid = result.request.requestId
    stale = outbox.latest_intent(tenant_db, rid)

    wf.advance(rid, actor="USR-ADMIN")
    assert stale.status == outbox.INTENT_SUPERSEDED
    assert outbox.pending_intents(tenant_db, request_id=rid) == []


def test_replay_of_a_cancelled_request_is_superseded(tenant_db):
    wf, result = _stuck_checklist(tenant_db)
    rid = result.request.requestId
    intent = outbox.latest_intent(tenant_db, rid)

    wf.cancel(rid, actor="USR-ADMIN", reason="duplicate request")
    tenant_db.refresh(intent)
    assert intent.status == outbox.INTENT_SUPERSEDED

    replay = wf.replay_intent(intent)
    assert replay.status == outbox.INTENT_SUPERSEDED
    assert _task_count(tenant_db, rid) == 0


def test_serialize_intent_shape(tenant_db):
    seed_org(tenant_db)
    wf = OffboardingWorkflow(tenant_db, notifier=tenant_db.info["notifier"])
    rid = wf.initiate(employee_id="EMP-0001", reason="retirement", last_working_day=future_lwd(), actor="USR-HRM").request.requestId

    row = outbox.serialize_intent(outbox.latest_intent(tenant_db, rid))
    assert row["requestId"] == rid
    assert row["stage"] == stage_graph.MANAGER_APPROVAL
    assert row["status"] == outbox.INTENT_DONE
    assert row["intentId"].startswith("INT-")
