from __future__ import annotations

import pytest
from sqlalchemy import func, select

from conftest import add_employee, future_lwd, seed_org
from models import Candidate, Employee, OffboardingIntent, OffboardingTask, TalentPool
from services import outbox, stage_graph
from services.notifier import RecordingNotifier
from services.state_machine import CLOSE_SOURCE_LEGACY, OffboardingWorkflow
from utils import ConflictError, InvalidTransitionError, ValidationError


def _workflow(db) -> OffboardingWorkflow:
    return OffboardingWorkflow(db, notifier=db.info["notifier"])


def _initiate(wf, employee_id: str = "EMP-0001", **kw):
    return wf.initiate(
        employee_id=employee_id,
        reason=kw.pop("reason", "voluntary_resignation"),
        last_working_day=kw.pop("last_working_day", future_lwd()),
        actor=kw.pop("actor", "USR-HRM"),
        **kw,
    )


def _walk(wf, request_id: str, until: str) -> None:
    """Advance along forward edges (approvals included) until the request reaches `until`."""

    for _ in range(len(stage_graph.STAGES)):
        req = wf.get_request(request_id)
        if req.currentStage == until:
            return
        wf.advance(request_id, actor="USR-ADMIN")
    raise AssertionError(f"never reached {until}")


def test_initiation_opens_manager_approval(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)

    result = _initiate(wf)
    req = result.request
    assert req.requestId.startswith("OFB-")
    assert req.requestId.endswith("-00001")
    assert req.currentStage == stage_graph.MANAGER_APPROVAL
    assert req.status == stage_graph.STATUS_APPROVALS_PENDING

    approvals = wf.approvals(req.requestId)
    assert [(a.stage, a.approverId, a.status) for a in approvals] == [("manager", "USR-MGR", "pending")]
    sent = tenant_db.info["notifier"].sent
    assert sent[-1]["recipientId"] == "USR-MGR"
    assert sent[-1]["context"]["type"] == "offboarding_approval_required"

    history = wf.history(req.requestId)
    assert [(h.seq, h.stage, h.autoAdvanced) for h in history] == [
        (1, stage_graph.INITIATION, False),
        (2, stage_graph.MANAGER_APPROVAL, True),
    ]


def test_missing_manager_auto_advances_to_hr_approval(tenant_db):
    seed_org(tenant_db)
    add_employee(tenant_db, "EMP-0003", reportingManagerId="")
    tenant_db.commit()
    wf = _workflow(tenant_db)

    result = _initiate(wf, "EMP-0003")
    req = result.request
    assert req.currentStage == stage_graph.HR_APPROVAL
    last = wf.history(req.requestId)[-1]
    assert last.autoAdvanced is True
    assert last.changedBy == "SYSTEM"
    assert last.reason == "No manager assigned - auto-advancing to HR approval"
    assert [o["stage"] for o in result.outcomes_as_dicts()] == [
        stage_graph.INITIATION,
        stage_graph.MANAGER_APPROVAL,
        stage_graph.HR_APPROVAL,
    ]
    assert [(a.stage, a.approverId) for a in wf.approvals(req.requestId)] == [("hr", "USR-HRM")]


def test_no_approvers_at_all_lands_on_checklist_generation(tenant_db):
    add_employee(tenant_db, "EMP-0009")
    tenant_db.commit()
    wf = _workflow(tenant_db)

    req = _initiate(wf, "EMP-0009").request
    assert req.currentStage == stage_graph.CHECKLIST_GENERATION
    assert req.status == stage_graph.STATUS_CHECKLIST_ACTIVE
    count = tenant_db.execute(select(func.count(OffboardingTask.id)).where(OffboardingTask.requestId == req.requestId)).scalar_one()
    assert count == 6


def test_second_active_request_is_a_conflict(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    _initiate(wf)
    with pytest.raises(ConflictError):
        _initiate(wf)


def test_initiation_validates_inputs(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    with pytest.raises(ValidationError):
        _initiate(wf, reason="bored")
    with pytest.raises(ValidationError):
        _initiate(wf, priority="whenever")
    with pytest.raises(ValidationError):
        _initiate(wf, last_working_day="next friday")


def test_transition_outside_the_graph_is_rejected(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    req = _initiate(wf).request

    with pytest.raises(InvalidTransitionError) as exc:
        wf.advance(req.requestId, actor="USR-ADMIN", target_stage=stage_graph.FINAL_SETTLEMENT)
    assert exc.value.from_stage == stage_graph.MANAGER_APPROVAL
    assert exc.value.to_stage == stage_graph.FINAL_SETTLEMENT
    assert wf.get_request(req.requestId).currentStage == stage_graph.MANAGER_APPROVAL


def test_decisions_walk_the_approval_chain(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId

    wf.decide(rid, actor="USR-MGR", approved=True, comment="ok from me")
    req = wf.get_request(rid)
    assert req.currentStage == stage_graph.HR_APPROVAL

    # HR rejection takes the back-edge and re-opens a manager approval.
    wf.decide(rid, actor="USR-HRM", approved=False, comment="missing handover plan")
    req = wf.get_request(rid)
    assert req.currentStage == stage_graph.MANAGER_APPROVAL
    statuses = [(a.stage, a.status) for a in wf.approvals(rid)]
    assert statuses == [("manager", "approved"), ("hr", "rejected"), ("manager", "pending")]


def test_manager_stage_decision_requires_the_assigned_approver(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    with pytest.raises(ValidationError):
        wf.decide(rid, actor="USR-HRM", approved=True)


def test_decision_outside_an_approval_stage_is_rejected(tenant_db):
    add_employee(tenant_db, "EMP-0009")
    tenant_db.commit()
    wf = _workflow(tenant_db)
    rid = _initiate(wf, "EMP-0009").request.requestId
    with pytest.raises(ValidationError):
        wf.decide(rid, actor="USR-ADMIN", approved=True)


def test_cancel_is_terminal(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId

    wf.cancel(rid, actor="USR-ADMIN", reason="employee withdrew resignation")
    req = wf.get_request(rid)
    assert req.status == stage_graph.STATUS_CANCELLED
    assert wf.history(rid)[-1].reason == "employee withdrew resignation"

    pending = tenant_db.execute(
        select(func.count(OffboardingIntent.intentId))
        .where(OffboardingIntent.requestId == rid)
        .where(OffboardingIntent.status == outbox.INTENT_PENDING)
    ).scalar_one()
    assert pending == 0

    with pytest.raises(InvalidTransitionError):
        wf.advance(rid, actor="USR-ADMIN")
    with pytest.raises(InvalidTransitionError):
        wf.cancel(rid, actor="USR-ADMIN")
    with pytest.raises(InvalidTransitionError):
        wf.close(rid, actor="USR-ADMIN")

    # A cancelled request no longer blocks a new one.
    assert _initiate(wf).request.requestId != rid


def test_close_only_from_exit_interview(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    _walk(wf, rid, stage_graph.DEPARTMENTAL_CLEARANCE)

    with pytest.raises(InvalidTransitionError):
        wf.close(rid, actor="USR-HRM")


def test_close_with_pending_clearance_runs_the_migration(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    _walk(wf, rid, stage_graph.EXIT_INTERVIEW)

    result = wf.close(rid, actor="USR-HRM", reason="all done")
    tenant_db.commit()

    req = wf.get_request(rid)
    assert req.status == stage_graph.STATUS_CLOSED
    assert req.currentStage == stage_graph.CLOSURE
    assert req.isCompleted is True
    assert req.completionPercentage == 100
    assert result.migration is not None
    assert result.migration.employee_flipped is True

    emp = tenant_db.get(Employee, "EMP-0001")
    assert emp.isExEmployee is True
    assert emp.isActive is False
    assert emp.status == "terminated"
    assert tenant_db.execute(select(func.count(TalentPool.talentPoolId))).scalar_one() == 1
    assert tenant_db.execute(select(func.count(Candidate.candidateId))).scalar_one() == 1

    # Re-closing resumes rather than duplicating.
    again = wf.close(rid, actor="USR-HRM")
    assert again.migration.already_migrated is True
    assert tenant_db.execute(select(func.count(Candidate.candidateId))).scalar_one() == 1


def test_advance_into_closure_goes_through_the_migration(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    _walk(wf, rid, stage_graph.EXIT_INTERVIEW)

    result = wf.advance(rid, actor="USR-HRM")
    assert result.request.status == stage_graph.STATUS_CLOSED
    assert result.migration is not None
    assert result.migration.candidate_id.startswith("CAND")


def test_legacy_close_is_forced_from_any_active_stage(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    assert wf.get_request(rid).currentStage == stage_graph.MANAGER_APPROVAL

    result = wf.close(rid, actor="USR-ADMIN", source=CLOSE_SOURCE_LEGACY)
    assert result.request.status == stage_graph.STATUS_CLOSED
    last = wf.history(rid)[-1]
    assert last.fromStage == stage_graph.MANAGER_APPROVAL
    assert last.stage == stage_graph.CLOSURE
    assert "legacy" in last.reason


def test_stage_walk_creates_the_satellite_records(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    _walk(wf, rid, stage_graph.EXIT_INTERVIEW)

    req = wf.get_request(rid)
    assert req.assetClearanceId.startswith("CLR-")
    assert req.handoverRecordId.startswith("HND-")
    assert req.settlementRecordId.startswith("STL-")
    assert req.feedbackRecordId.startswith("FBK-")


def test_history_grows_by_one_row_per_stage_change(tenant_db):
    seed_org(tenant_db)
    wf = _workflow(tenant_db)
    rid = _initiate(wf).request.requestId
    _walk(wf, rid, stage_graph.CHECKLIST_GENERATION)

    history = wf.history(rid)
    assert [h.seq for h in history] == list(range(1, len(history) + 1))
    assert [h.stage for h in history] == list(stage_graph.STAGES[: len(history)])


def test_default_notifier_is_used_when_none_is_given(tenant_db):
    wf = OffboardingWorkflow(tenant_db)
    assert wf.notifier.backend == "log"
    assert isinstance(tenant_db.info["notifier"], RecordingNotifier)
