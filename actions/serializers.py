from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from models import (
    AssetClearance,
    ClearanceItem,
    DepartmentClearance,
    Employee,
    ExitFeedback,
    FinalSettlement,
    HandoverDetail,
    HandoverItem,
    OffboardingApproval,
    OffboardingRequest,
    OffboardingStatusHistory,
    OffboardingTask,
    SettlementApproval,
)
from services import records
from services.completion import list_completion
from services.identity_migrator import employee_snapshot
from utils import json_loads_maybe


TASK_DONE_STATUSES = frozenset({"completed", "not_applicable"})


def serialize_employee(row: Optional[Employee]) -> Optional[dict]:
    if row is None:
        return None
    return {
        "employeeId": row.employeeId,
        "employeeCode": row.employeeCode or "",
        "fullName": row.fullName,
        "email": row.email or "",
        "department": row.department or "",
        "designation": row.designation or "",
        "reportingManagerId": row.reportingManagerId or "",
        "status": row.status or "",
        "isActive": bool(row.isActive),
        "isExEmployee": bool(row.isExEmployee),
    }


def serialize_request(row: OffboardingRequest) -> dict:
    return {
        "requestId": row.requestId,
        "employeeId": row.employeeId,
        "initiatedBy": row.initiatedBy or "",
        "reason": row.reason or "",
        "reasonDetails": row.reasonDetails or "",
        "lastWorkingDay": row.lastWorkingDay or "",
        "noticeGivenDays": int(row.noticeGivenDays or 0),
        "noticeRequiredDays": int(row.noticeRequiredDays or 0),
        "noticeWaived": bool(row.noticeWaived),
        "noticeWaivedBy": row.noticeWaivedBy or "",
        "noticeWaivedReason": row.noticeWaivedReason or "",
        "priority": row.priority or "",
        "isUrgent": bool(row.isUrgent),
        "status": row.status or "",
        "currentStage": row.currentStage or "",
        "completionPercentage": int(row.completionPercentage or 0),
        "assetClearanceId": row.assetClearanceId or "",
        "handoverRecordId": row.handoverRecordId or "",
        "settlementRecordId": row.settlementRecordId or "",
        "feedbackRecordId": row.feedbackRecordId or "",
        "isCompleted": bool(row.isCompleted),
        "completedAt": row.completedAt or "",
        "completedBy": row.completedBy or "",
        "employeeSnapshot": employee_snapshot(row) or None,
        "initiatedAt": row.initiatedAt or "",
        "expectedCompletionDate": row.expectedCompletionDate or "",
        "updatedAt": row.updatedAt or "",
        "version": int(row.version or 0),
    }


def serialize_approval(row: OffboardingApproval) -> dict:
    return {
        "stage": row.stage,
        "approverId": row.approverId,
        "status": row.status,
        "comments": row.comments or "",
        "decidedAt": row.decidedAt or "",
        "createdAt": row.createdAt or "",
    }


def serialize_history(row: OffboardingStatusHistory) -> dict:
    return {
        "seq": int(row.seq or 0),
        "status": row.status,
        "stage": row.stage,
        "fromStage": row.fromStage or "",
        "changedBy": row.changedBy or "",
        "changedAt": row.changedAt or "",
        "reason": row.reason or "",
        "autoAdvanced": bool(row.autoAdvanced),
    }


def serialize_task(row: OffboardingTask) -> dict:
    return {
        "taskId": int(row.id),
        "taskKey": row.taskKey,
        "taskName": row.taskName,
        "taskDescription": row.taskDescription or "",
        "taskType": row.taskType,
        "department": row.department,
        "assignedTo": row.assignedTo or "",
        "dueDate": row.dueDate or "",
        "priority": row.priority,
        "status": row.status,
        "requiresVerification": bool(row.requiresVerification),
        "checklist": json_loads_maybe(row.checklistJson, []),
        "completionNotes": row.completionNotes or "",
        "completedBy": row.completedBy or "",
        "completedAt": row.completedAt or "",
        "verifiedBy": row.verifiedBy or "",
        "verifiedAt": row.verifiedAt or "",
    }


def serialize_clearance_item(row: ClearanceItem) -> dict:
    return {
        "itemId": int(row.id),
        "category": row.category,
        "itemCode": row.itemCode or "",
        "itemName": row.itemName or "",
        "itemType": row.itemType or "",
        "status": row.status,
        "conditionAtReturn": row.conditionAtReturn or "",
        "handledBy": row.handledBy or "",
        "handledAt": row.handledAt or "",
        "notes": row.notes or "",
        "recoveryAmount": float(row.recoveryAmount or 0),
        "repairCost": float(row.repairCost or 0),
        "replacementCost": float(row.replacementCost or 0),
    }


def serialize_department_clearance(row: DepartmentClearance) -> dict:
    return {
        "department": row.department,
        "status": row.status,
        "clearedBy": row.clearedBy or "",
        "clearanceDate": row.clearanceDate or "",
        "notes": row.notes or "",
    }


def serialize_clearance(db, row: Optional[AssetClearance]) -> Optional[dict]:
    if row is None:
        return None
    items = records.clearance_items(db, row)
    return {
        "clearanceId": row.clearanceId,
        "overallStatus": row.overallStatus,
        "completionPercentage": int(row.completionPercentage or 0),
        "items": {c: [serialize_clearance_item(i) for i in items if i.category == c] for c in records.CLEARANCE_CATEGORIES},
        "departmentClearances": [serialize_department_clearance(d) for d in records.department_clearances(db, row.requestId)],
        "financialImpact": {
            "totalRecoveryAmount": float(row.totalRecoveryAmount or 0),
            "totalRepairCost": float(row.totalRepairCost or 0),
            "totalReplacementCost": float(row.totalReplacementCost or 0),
            "netFinancialImpact": float(row.netFinancialImpact or 0),
        },
        "clearanceStartDate": row.clearanceStartDate or "",
        "expectedCompletionDate": row.expectedCompletionDate or "",
        "actualCompletionDate": row.actualCompletionDate or "",
        "finalCleared": bool(row.finalCleared),
    }


def serialize_handover_item(row: HandoverItem) -> dict:
    return {
        "itemId": int(row.id),
        "category": row.category,
        "title": row.title or "",
        "handoverTo": row.handoverTo or "",
        "status": row.status,
        "notes": row.notes or "",
        "handoverDate": row.handoverDate or "",
    }


def serialize_handover(db, row: Optional[HandoverDetail]) -> Optional[dict]:
    if row is None:
        return None
    items = records.handover_items(db, row)
    return {
        "handoverId": row.handoverId,
        "successorId": row.successorId or "",
        "handoverType": row.handoverType,
        "overallStatus": row.overallStatus,
        "completionPercentage": int(row.completionPercentage or 0),
        "items": {c: [serialize_handover_item(i) for i in items if i.category == c] for c in records.HANDOVER_CATEGORIES},
        "plannedStartDate": row.plannedStartDate or "",
        "plannedCompletionDate": row.plannedCompletionDate or "",
        "actualStartDate": row.actualStartDate or "",
        "actualCompletionDate": row.actualCompletionDate or "",
        "generalNotes": row.generalNotes or "",
    }


def serialize_settlement_approval(row: SettlementApproval) -> dict:
    return {
        "level": row.level,
        "approverId": row.approverId or "",
        "status": row.status,
        "comments": row.comments or "",
        "decidedAt": row.decidedAt or "",
    }


def serialize_settlement(db, row: Optional[FinalSettlement]) -> Optional[dict]:
    if row is None:
        return None
    out = {
        "settlementId": row.settlementId,
        "periodFrom": row.periodFrom or "",
        "periodTo": row.periodTo or "",
        "roundOffAdjustment": float(row.roundOffAdjustment or 0),
        "grossEarnings": float(row.grossEarnings or 0),
        "totalDeductions": float(row.totalDeductions or 0),
        "netPayable": float(row.netPayable or 0),
        "finalAmount": float(row.finalAmount or 0),
        "calculationStatus": row.calculationStatus,
        "approvalStatus": row.approvalStatus,
        "paymentStatus": row.paymentStatus,
        "paymentDate": row.paymentDate or "",
        "paymentReference": row.paymentReference or "",
        "calculatedBy": row.calculatedBy or "",
        "calculatedAt": row.calculatedAt or "",
        "approvals": [serialize_settlement_approval(a) for a in records.settlement_approvals(db, row)],
    }
    out.update(records.settlement_inputs(row))
    return out


def serialize_feedback(row: Optional[ExitFeedback]) -> Optional[dict]:
    if row is None:
        return None
    return {
        "feedbackId": row.feedbackId,
        "primaryReason": row.primaryReason or "",
        "overallSatisfaction": int(row.overallSatisfaction or 0),
        "positiveAspects": row.positiveAspects or "",
        "negativeAspects": row.negativeAspects or "",
        "workplaceImprovements": row.workplaceImprovements or "",
        "wouldRecommend": row.wouldRecommend or "",
        "wouldReturn": row.wouldReturn or "",
        "responses": json_loads_maybe(row.responsesJson, {}),
        "completionStatus": row.completionStatus,
        "completionPercentage": int(row.completionPercentage or 0),
        "conductedBy": row.conductedBy or "",
        "completedAt": row.completedAt or "",
    }


def request_tasks(db, request_id: str) -> list[OffboardingTask]:
    return (
        db.execute(select(OffboardingTask).where(OffboardingTask.requestId == request_id).order_by(OffboardingTask.dueDate.asc(), OffboardingTask.id.asc()))
        .scalars()
        .all()
    )


def request_metrics(db, request: OffboardingRequest) -> dict[str, Any]:
    """Derived completion figures for the aggregate; informational only, never a gate."""

    tasks = request_tasks(db, request.requestId)
    clearance = records.get_asset_clearance(db, request)
    handover = records.get_handover(db, request)
    settlement = records.get_settlement(db, request)
    feedback = records.get_feedback(db, request)
    return {
        "workflowProgress": int(request.completionPercentage or 0),
        "tasks": {
            "total": len(tasks),
            "completed": sum(1 for t in tasks if t.status in TASK_DONE_STATUSES),
            "completionPercentage": int(round(list_completion((t.status for t in tasks), TASK_DONE_STATUSES))),
        },
        "clearanceCompletion": int(clearance.completionPercentage) if clearance else None,
        "clearanceStatus": clearance.overallStatus if clearance else None,
        "handoverCompletion": int(handover.completionPercentage) if handover else None,
        "handoverStatus": handover.overallStatus if handover else None,
        "settlementFinalAmount": float(settlement.finalAmount) if settlement else None,
        "settlementStatus": settlement.calculationStatus if settlement else None,
        "feedbackStatus": feedback.completionStatus if feedback else None,
    }
