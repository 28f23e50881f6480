"""
Deprecated simple offboarding shape, derived on the fly from the comprehensive aggregate.

Nothing here is stored. Old clients read this projection; the only write they keep is
completion/cancellation, which goes through the workflow like any other close.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from services import stage_graph


LEGACY_STAGES = ("exitDiscussion", "assetReturn", "documentation", "finalSettlement", "success")
LEGACY_STATUSES = ("in-progress", "completed", "cancelled")
LEGACY_RESIGNATION_TYPES = ("voluntary", "involuntary", "retirement", "contract-end")
LEGACY_CLEARANCE_DEPARTMENTS = ("hr", "finance", "it", "admin")

_STAGE_MAP = {
    stage_graph.INITIATION: "exitDiscussion",
    stage_graph.MANAGER_APPROVAL: "exitDiscussion",
    stage_graph.HR_APPROVAL: "exitDiscussion",
    stage_graph.FINANCE_APPROVAL: "exitDiscussion",
    stage_graph.CHECKLIST_GENERATION: "exitDiscussion",
    stage_graph.DEPARTMENTAL_CLEARANCE: "assetReturn",
    stage_graph.ASSET_RETURN: "assetReturn",
    stage_graph.KNOWLEDGE_TRANSFER: "documentation",
    stage_graph.FINAL_SETTLEMENT: "finalSettlement",
    stage_graph.EXIT_INTERVIEW: "finalSettlement",
    stage_graph.CLOSURE: "success",
}

_INVOLUNTARY_REASONS = {"involuntary_termination", "layoff", "performance_issues", "misconduct"}

# Legacy payment statuses are a subset; anything else reads as still pending.
_LEGACY_PAYMENT = {"pending", "processed", "completed"}


def legacy_stage(stage: str) -> str:
    return _STAGE_MAP.get(str(stage or ""), "exitDiscussion")


def legacy_status(status: str) -> str:
    s = str(status or "")
    if s == stage_graph.STATUS_CLOSED:
        return "completed"
    if s == stage_graph.STATUS_CANCELLED:
        return "cancelled"
    return "in-progress"


def resignation_type(reason: str) -> str:
    r = str(reason or "").strip().lower()
    if r in _INVOLUNTARY_REASONS:
        return "involuntary"
    if r == "retirement":
        return "retirement"
    if r == "contract_end":
        return "contract-end"
    return "voluntary"


def visited_stages(stages: Iterable[str]) -> list[str]:
    """Legacy stages reached so far, in legacy order and without repeats."""

    seen = {legacy_stage(s) for s in stages if s}
    return [s for s in LEGACY_STAGES if s in seen]


def _clearance(department_clearances: Iterable[Any]) -> dict[str, dict]:
    by_dep = {str(d.department or ""): d for d in department_clearances}
    out = {}
    for dep in LEGACY_CLEARANCE_DEPARTMENTS:
        row = by_dep.get(dep)
        cleared = bool(row is not None and row.status == "cleared")
        out[dep] = {
            "cleared": cleared,
            "clearedBy": (row.clearedBy or "") if cleared else "",
            "clearedAt": (row.clearanceDate or "") if cleared else "",
            "notes": (row.notes or "") if row is not None else "",
        }
    return out


def _final_settlement(settlement: Any) -> dict:
    if settlement is None:
        return {"amount": None, "paymentDate": "", "paymentStatus": "pending"}
    payment = str(settlement.paymentStatus or "pending")
    return {
        "amount": float(settlement.finalAmount or 0),
        "paymentDate": settlement.paymentDate or "",
        "paymentStatus": payment if payment in _LEGACY_PAYMENT else "pending",
    }


def _exit_interview(feedback: Any) -> dict:
    if feedback is None:
        return {"conductedBy": "", "feedback": "", "completed": False}
    text = "\n".join(s for s in (feedback.positiveAspects, feedback.negativeAspects, feedback.workplaceImprovements) if s)
    return {
        "conductedBy": feedback.conductedBy or "",
        "feedback": text,
        "completed": feedback.completionStatus == "completed",
    }


def to_legacy(
    request: Any,
    *,
    history_stages: Iterable[str] = (),
    department_clearances: Iterable[Any] = (),
    assets: Iterable[Any] = (),
    settlement: Optional[Any] = None,
    feedback: Optional[Any] = None,
) -> dict[str, Any]:
    stages = list(history_stages) or [request.currentStage]
    return {
        "id": request.requestId,
        "employee": request.employeeId,
        "initiatedBy": request.initiatedBy or "",
        "lastWorkingDate": request.lastWorkingDay or "",
        "resignationType": resignation_type(request.reason),
        "reason": request.reasonDetails or request.reason or "",
        "stages": visited_stages(stages),
        "currentStage": legacy_stage(request.currentStage),
        "status": legacy_status(request.status),
        "exitInterview": _exit_interview(feedback),
        "assetsReturned": [
            {"asset": a.itemCode or a.itemName or "", "returnedDate": a.handledAt or "", "condition": a.conditionAtReturn or ""}
            for a in assets
            if a.category == "physical" and a.status == "returned"
        ],
        "clearance": _clearance(department_clearances),
        "finalSettlement": _final_settlement(settlement),
        "notes": "",
        "completedAt": request.completedAt or "",
        "createdAt": request.initiatedAt or "",
        "updatedAt": request.updatedAt or "",
        "deprecated": True,
    }
