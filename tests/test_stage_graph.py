from __future__ import annotations

from services import stage_graph as sg


def test_every_active_stage_has_exactly_one_forward_edge():
    for stage in sg.STAGES[:-1]:
        nxt = sg.next_stages(stage)
        assert nxt, stage
        assert sg.forward_stage(stage) == sg.STAGES[sg.STAGES.index(stage) + 1]


def test_only_approval_stages_have_back_edges():
    with_back_edges = {s for s in sg.STAGES if len(sg.next_stages(s)) > 1}
    assert with_back_edges == set(sg.APPROVAL_STAGES)
    assert sg.is_back_edge(sg.MANAGER_APPROVAL, sg.INITIATION)
    assert sg.is_back_edge(sg.HR_APPROVAL, sg.MANAGER_APPROVAL)
    assert sg.is_back_edge(sg.FINANCE_APPROVAL, sg.HR_APPROVAL)
    assert not sg.is_back_edge(sg.FINANCE_APPROVAL, sg.CHECKLIST_GENERATION)


def test_closure_is_terminal():
    assert sg.next_stages(sg.CLOSURE) == ()
    assert sg.forward_stage(sg.CLOSURE) is None
    assert sg.next_stages("no_such_stage") == ()
    assert not sg.is_stage("no_such_stage")


def test_status_follows_stage():
    assert sg.status_for_stage(sg.INITIATION) == sg.STATUS_INITIATED
    for stage in sg.APPROVAL_STAGES:
        assert sg.status_for_stage(stage) == sg.STATUS_APPROVALS_PENDING
    assert sg.status_for_stage(sg.CHECKLIST_GENERATION) == sg.STATUS_CHECKLIST_ACTIVE
    assert sg.status_for_stage(sg.KNOWLEDGE_TRANSFER) == sg.STATUS_CLEARANCE_IN_PROGRESS
    assert sg.status_for_stage(sg.FINAL_SETTLEMENT) == sg.STATUS_SETTLEMENT_PENDING
    assert sg.status_for_stage(sg.EXIT_INTERVIEW) == sg.STATUS_FEEDBACK_PENDING
    assert sg.status_for_stage(sg.CLOSURE) == sg.STATUS_CLOSED


def test_stage_progress_is_monotonic():
    progress = [sg.stage_progress(s) for s in sg.STAGES]
    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert sg.stage_progress("unknown") == 0
