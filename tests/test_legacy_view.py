from __future__ import annotations

from types import SimpleNamespace

import pytest

from services import legacy_view, stage_graph


def _request(**kw):
    values = {
        "requestId": "OFB-2026-00001",
        "employeeId": "EMP-0001",
        "initiatedBy": "USR-HRM",
        "lastWorkingDay": "2026-11-30",
        "reason": "voluntary_resignation",
        "reasonDetails": "",
        "currentStage": stage_graph.MANAGER_APPROVAL,
        "status": stage_graph.STATUS_APPROVALS_PENDING,
        "completedAt": "",
        "initiatedAt": "2026-10-01T09:00:00.000Z",
        "updatedAt": "2026-10-02T09:00:00.000Z",
    }
    values.update(kw)
    return SimpleNamespace(**values)


@pytest.mark.parametrize(
    "stage,expected",
    [
        (stage_graph.INITIATION, "exitDiscussion"),
        (stage_graph.FINANCE_APPROVAL, "exitDiscussion"),
        (stage_graph.CHECKLIST_GENERATION, "exitDiscussion"),
        (stage_graph.DEPARTMENTAL_CLEARANCE, "assetReturn"),
        (stage_graph.ASSET_RETURN, "assetReturn"),
        (stage_graph.KNOWLEDGE_TRANSFER, "documentation"),
        (stage_graph.FINAL_SETTLEMENT, "finalSettlement"),
        (stage_graph.EXIT_INTERVIEW, "finalSettlement"),
        (stage_graph.CLOSURE, "success"),
        ("unknown", "exitDiscussion"),
    ],
)
def test_stage_mapping(stage, expected):
    assert legacy_view.legacy_stage(stage) == expected


def test_status_and_resignation_type():
    assert legacy_view.legacy_status(stage_graph.STATUS_CLOSED) == "completed"
    assert legacy_view.legacy_status(stage_graph.STATUS_CANCELLED) == "cancelled"
    assert legacy_view.legacy_status(stage_graph.STATUS_SETTLEMENT_PENDING) == "in-progress"

    assert legacy_view.resignation_type("layoff") == "involuntary"
    assert legacy_view.resignation_type("misconduct") == "involuntary"
    assert legacy_view.resignation_type("retirement") == "retirement"
    assert legacy_view.resignation_type("contract_end") == "contract-end"
    assert legacy_view.resignation_type("mutual_agreement") == "voluntary"


def test_visited_stages_are_ordered_and_unique():
    history = [
        stage_graph.INITIATION,
        stage_graph.MANAGER_APPROVAL,
        stage_graph.DEPARTMENTAL_CLEARANCE,
        stage_graph.ASSET_RETURN,
        stage_graph.KNOWLEDGE_TRANSFER,
    ]
    assert legacy_view.visited_stages(history) == ["exitDiscussion", "assetReturn", "documentation"]


def test_projection_of_a_closed_request():
    request = _request(
        currentStage=stage_graph.CLOSURE,
        status=stage_graph.STATUS_CLOSED,
        reason="retirement",
        reasonDetails="Retiring after 30 years",
        completedAt="2026-11-30T17:00:00.000Z",
    )
    clearances = [
        SimpleNamespace(department="it", status="cleared", clearedBy="USR-IT", clearanceDate="2026-11-20", notes="laptop wiped"),
        SimpleNamespace(department="finance", status="pending", clearedBy="", clearanceDate="", notes="loan open"),
        SimpleNamespace(department="legal", status="cleared", clearedBy="USR-X", clearanceDate="2026-11-21", notes=""),
    ]
    assets = [
        SimpleNamespace(category="physical", status="returned", itemCode="LAP-001", itemName="Laptop", handledAt="2026-11-25", conditionAtReturn="good"),
        SimpleNamespace(category="physical", status="pending", itemCode="BAD-7", itemName="Badge", handledAt="", conditionAtReturn=""),
        SimpleNamespace(category="digital", status="returned", itemCode="", itemName="VPN", handledAt="2026-11-25", conditionAtReturn=""),
    ]
    settlement = SimpleNamespace(finalAmount=65850, paymentDate="2026-12-05", paymentStatus="on_hold")
    feedback = SimpleNamespace(
        conductedBy="USR-HRM",
        positiveAspects="Great team",
        negativeAspects="",
        workplaceImprovements="More remote days",
        completionStatus="completed",
    )

    out = legacy_view.to_legacy(
        request,
        history_stages=[stage_graph.INITIATION, stage_graph.EXIT_INTERVIEW, stage_graph.CLOSURE],
        department_clearances=clearances,
        assets=assets,
        settlement=settlement,
        feedback=feedback,
    )

    assert out["id"] == "OFB-2026-00001"
    assert out["status"] == "completed"
    assert out["currentStage"] == "success"
    assert out["stages"] == ["exitDiscussion", "finalSettlement", "success"]
    assert out["resignationType"] == "retirement"
    assert out["reason"] == "Retiring after 30 years"
    assert out["deprecated"] is True

    assert set(out["clearance"]) == {"hr", "finance", "it", "admin"}
    assert out["clearance"]["it"] == {"cleared": True, "clearedBy": "USR-IT", "clearedAt": "2026-11-20", "notes": "laptop wiped"}
    assert out["clearance"]["finance"] == {"cleared": False, "clearedBy": "", "clearedAt": "", "notes": "loan open"}
    assert out["clearance"]["hr"]["cleared"] is False

    assert out["assetsReturned"] == [{"asset": "LAP-001", "returnedDate": "2026-11-25", "condition": "good"}]
    assert out["finalSettlement"] == {"amount": 65850.0, "paymentDate": "2026-12-05", "paymentStatus": "pending"}
    assert out["exitInterview"] == {"conductedBy": "USR-HRM", "feedback": "Great team\nMore remote days", "completed": True}


def test_projection_without_satellites():
    out = legacy_view.to_legacy(_request())
    assert out["stages"] == ["exitDiscussion"]
    assert out["status"] == "in-progress"
    assert out["finalSettlement"] == {"amount": None, "paymentDate": "", "paymentStatus": "pending"}
    assert out["exitInterview"]["completed"] is False
    assert out["assetsReturned"] == []
