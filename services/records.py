"""
Satellite records of an offboarding request: shell creation and derived-field recomputation.

Every write path (stage setup, clearance/handover/settlement/feedback actions) goes
through these helpers so the derived columns are always recomputed from the items.
"""
from __future__ import annotations

import json
import os
from datetime import date
from typing import Any, Optional

from sqlalchemy import select

from models import (
    AssetClearance,
    ClearanceItem,
    DepartmentClearance,
    ExitFeedback,
    FinalSettlement,
    HandoverDetail,
    HandoverItem,
    OffboardingRequest,
    SettlementApproval,
)
from services import completion, settlement_calculator
from utils import iso_utc_now, json_loads_maybe, parse_date_maybe, today_utc


CLEARANCE_DEPARTMENTS = ("hr", "it", "finance", "admin", "security")
DEPARTMENT_CLEARANCE_STATUSES = {"pending", "cleared", "partial", "issues"}
CLEARANCE_CATEGORIES = ("physical", "digital", "security", "property")
HANDOVER_CATEGORIES = ("project", "client", "knowledge")


def _new_id(prefix: str) -> str:
    return f"{prefix}-{os.urandom(8).hex()}"


def dumps_json(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def _lwd(request: OffboardingRequest) -> str:
    d = parse_date_maybe(request.lastWorkingDay)
    return d.isoformat() if d else ""


# --- asset clearance ------------------------------------------------------------


def get_asset_clearance(db, request: OffboardingRequest) -> Optional[AssetClearance]:
    return db.execute(select(AssetClearance).where(AssetClearance.requestId == request.requestId)).scalar_one_or_none()


def ensure_asset_clearance(db, request: OffboardingRequest, *, now: str = "", actor: str = "") -> tuple[AssetClearance, bool]:
    """Return the request's clearance, creating the shell plus pending department sign-offs when absent."""

    existing = get_asset_clearance(db, request)
    if existing:
        if not request.assetClearanceId:
            request.assetClearanceId = existing.clearanceId
        return existing, False

    now = now or iso_utc_now()
    row = AssetClearance(
        clearanceId=_new_id("CLR"),
        requestId=request.requestId,
        employeeId=request.employeeId,
        clearanceStartDate=today_utc().isoformat(),
        expectedCompletionDate=_lwd(request),
        createdAt=now,
        updatedAt=now,
        updatedBy=actor,
    )
    db.add(row)
    db.add_all(
        [
            DepartmentClearance(
                requestId=request.requestId,
                clearanceId=row.clearanceId,
                department=dep,
                status="pending",
                updatedAt=now,
            )
            for dep in CLEARANCE_DEPARTMENTS
        ]
    )
    db.flush()
    recompute_clearance(db, row)
    request.assetClearanceId = row.clearanceId
    return row, True


def clearance_items(db, clearance: AssetClearance) -> list[ClearanceItem]:
    return (
        db.execute(select(ClearanceItem).where(ClearanceItem.clearanceId == clearance.clearanceId).order_by(ClearanceItem.id.asc()))
        .scalars()
        .all()
    )


def department_clearances(db, request_id: str) -> list[DepartmentClearance]:
    rows = db.execute(select(DepartmentClearance).where(DepartmentClearance.requestId == request_id)).scalars().all()
    order = {d: i for i, d in enumerate(CLEARANCE_DEPARTMENTS)}
    return sorted(rows, key=lambda r: order.get(str(r.department or ""), 99))


def recompute_clearance(db, clearance: AssetClearance) -> completion.CompletionSummary:
    items = clearance_items(db, clearance)
    by_category: dict[str, list[str]] = {c: [] for c in CLEARANCE_CATEGORIES}
    for it in items:
        by_category.setdefault(str(it.category or "physical"), []).append(str(it.status or ""))
    summary = completion.summarize_clearance(by_category)
    money = completion.clearance_financials(items)

    clearance.completionPercentage = summary.completion_percentage
    clearance.overallStatus = summary.overall_status
    clearance.totalRecoveryAmount = money.total_recovery_amount
    clearance.totalRepairCost = money.total_repair_cost
    clearance.totalReplacementCost = money.total_replacement_cost
    clearance.netFinancialImpact = money.net_financial_impact
    if summary.overall_status == "completed":
        if not clearance.actualCompletionDate:
            clearance.actualCompletionDate = today_utc().isoformat()
    else:
        clearance.actualCompletionDate = ""
    return summary


def add_physical_assets(db, clearance: AssetClearance, assets: list[dict], *, now: str = "") -> int:
    """Add assigned assets as pending physical items; items already present (by code) are skipped."""

    now = now or iso_utc_now()
    present = {str(it.itemCode or "") for it in clearance_items(db, clearance) if str(it.category or "") == "physical"}
    added = 0
    for a in assets:
        if not isinstance(a, dict):
            continue
        code = str(a.get("assetCode") or a.get("assetId") or a.get("itemCode") or "").strip()
        if code and code in present:
            continue
        db.add(
            ClearanceItem(
                clearanceId=clearance.clearanceId,
                category="physical",
                itemCode=code,
                itemName=str(a.get("name") or a.get("assetName") or a.get("itemName") or code),
                itemType=str(a.get("type") or a.get("assetType") or ""),
                status="pending",
                createdAt=now,
                updatedAt=now,
            )
        )
        present.add(code)
        added += 1
    if added:
        db.flush()
        recompute_clearance(db, clearance)
    return added


# --- handover -------------------------------------------------------------------


def get_handover(db, request: OffboardingRequest) -> Optional[HandoverDetail]:
    return db.execute(select(HandoverDetail).where(HandoverDetail.requestId == request.requestId)).scalar_one_or_none()


def ensure_handover(db, request: OffboardingRequest, *, now: str = "", actor: str = "") -> tuple[HandoverDetail, bool]:
    existing = get_handover(db, request)
    if existing:
        if not request.handoverRecordId:
            request.handoverRecordId = existing.handoverId
        return existing, False

    now = now or iso_utc_now()
    row = HandoverDetail(
        handoverId=_new_id("HND"),
        requestId=request.requestId,
        employeeId=request.employeeId,
        overallStatus="not_started",
        completionPercentage=100,
        plannedStartDate=today_utc().isoformat(),
        plannedCompletionDate=_lwd(request),
        createdAt=now,
        updatedAt=now,
        updatedBy=actor,
    )
    db.add(row)
    db.flush([row])
    request.handoverRecordId = row.handoverId
    return row, True


def handover_items(db, handover: HandoverDetail) -> list[HandoverItem]:
    return (
        db.execute(select(HandoverItem).where(HandoverItem.handoverId == handover.handoverId).order_by(HandoverItem.id.asc()))
        .scalars()
        .all()
    )


def recompute_handover(db, handover: HandoverDetail) -> completion.CompletionSummary:
    items = handover_items(db, handover)
    by_category: dict[str, list[str]] = {c: [] for c in HANDOVER_CATEGORIES}
    for it in items:
        by_category.setdefault(str(it.category or "project"), []).append(str(it.status or ""))
    summary = completion.summarize_handover(by_category)

    # An untouched shell stays not_started even though its empty lists are vacuously complete.
    if not items:
        summary = completion.CompletionSummary(completion_percentage=summary.completion_percentage, overall_status="not_started", by_list=summary.by_list)
    elif summary.overall_status != "completed" and any(str(it.status or "") != "pending" for it in items):
        summary = completion.CompletionSummary(completion_percentage=summary.completion_percentage, overall_status="in_progress", by_list=summary.by_list)

    today = today_utc().isoformat()
    if summary.overall_status in {"in_progress", "completed"} and not handover.actualStartDate:
        handover.actualStartDate = today
    if summary.overall_status == "completed":
        if not handover.actualCompletionDate:
            handover.actualCompletionDate = today
    else:
        handover.actualCompletionDate = ""

    handover.completionPercentage = summary.completion_percentage
    handover.overallStatus = summary.overall_status
    return summary


# --- final settlement -----------------------------------------------------------


def get_settlement(db, request: OffboardingRequest) -> Optional[FinalSettlement]:
    return db.execute(select(FinalSettlement).where(FinalSettlement.requestId == request.requestId)).scalar_one_or_none()


def ensure_settlement(db, request: OffboardingRequest, *, now: str = "", actor: str = "") -> tuple[FinalSettlement, bool]:
    existing = get_settlement(db, request)
    if existing:
        if not request.settlementRecordId:
            request.settlementRecordId = existing.settlementId
        return existing, False

    now = now or iso_utc_now()
    today = today_utc()
    row = FinalSettlement(
        settlementId=_new_id("STL"),
        requestId=request.requestId,
        employeeId=request.employeeId,
        periodFrom=date(today.year, today.month, 1).isoformat(),
        periodTo=_lwd(request),
        salaryComponentsJson=dumps_json({}),
        leaveEncashmentJson=dumps_json({}),
        gratuityJson=dumps_json({}),
        reimbursementsJson=dumps_json([]),
        deductionsJson=dumps_json({}),
        calculationStatus="draft",
        approvalStatus="not_required",
        paymentStatus="pending",
        createdAt=now,
        updatedAt=now,
        updatedBy=actor,
    )
    db.add(row)
    db.flush([row])
    request.settlementRecordId = row.settlementId
    return row, True


def settlement_approvals(db, settlement: FinalSettlement) -> list[SettlementApproval]:
    rows = db.execute(select(SettlementApproval).where(SettlementApproval.settlementId == settlement.settlementId)).scalars().all()
    order = {lvl: i for i, lvl in enumerate(settlement_calculator.APPROVAL_LEVELS)}
    return sorted(rows, key=lambda r: order.get(str(r.level or ""), 99))


def settlement_inputs(settlement: FinalSettlement) -> dict[str, Any]:
    return {
        "salaryComponents": json_loads_maybe(settlement.salaryComponentsJson, {}),
        "leaveEncashment": json_loads_maybe(settlement.leaveEncashmentJson, {}),
        "gratuity": json_loads_maybe(settlement.gratuityJson, {}),
        "reimbursements": json_loads_maybe(settlement.reimbursementsJson, []),
        "deductions": json_loads_maybe(settlement.deductionsJson, {}),
    }


def recompute_settlement(db, settlement: FinalSettlement) -> settlement_calculator.SettlementSummary:
    inputs = settlement_inputs(settlement)
    summary = settlement_calculator.calculate(
        salary_components=inputs["salaryComponents"],
        leave_encashment=inputs["leaveEncashment"],
        gratuity=inputs["gratuity"],
        reimbursements=inputs["reimbursements"],
        deductions=inputs["deductions"],
        round_off_adjustment=settlement.roundOffAdjustment,
    )
    settlement.grossEarnings = summary.gross_earnings
    settlement.totalDeductions = summary.total_deductions
    settlement.netPayable = summary.net_payable
    settlement.finalAmount = float(summary.final_amount)
    settlement.approvalStatus = settlement_calculator.approval_status(a.status for a in settlement_approvals(db, settlement))
    return summary


# --- exit feedback --------------------------------------------------------------


def get_feedback(db, request: OffboardingRequest) -> Optional[ExitFeedback]:
    return db.execute(select(ExitFeedback).where(ExitFeedback.requestId == request.requestId)).scalar_one_or_none()


def ensure_feedback(db, request: OffboardingRequest, *, now: str = "") -> tuple[ExitFeedback, bool]:
    existing = get_feedback(db, request)
    if existing:
        if not request.feedbackRecordId:
            request.feedbackRecordId = existing.feedbackId
        return existing, False

    now = now or iso_utc_now()
    row = ExitFeedback(
        feedbackId=_new_id("FBK"),
        requestId=request.requestId,
        employeeId=request.employeeId,
        completionStatus="not_started",
        completionPercentage=0,
        createdAt=now,
        updatedAt=now,
    )
    db.add(row)
    db.flush([row])
    request.feedbackRecordId = row.feedbackId
    return row, True


def recompute_feedback(feedback: ExitFeedback) -> completion.CompletionSummary:
    sections = completion.feedback_sections_filled(
        primary_reason=feedback.primaryReason,
        overall_satisfaction=feedback.overallSatisfaction,
        open_ended_answers=[feedback.positiveAspects, feedback.negativeAspects, feedback.workplaceImprovements],
        would_recommend=feedback.wouldRecommend,
    )
    summary = completion.summarize_feedback(sections, str(feedback.completionStatus or "not_started"))
    feedback.completionPercentage = summary.completion_percentage
    if summary.overall_status == "completed" and feedback.completionStatus != "completed":
        feedback.completedAt = iso_utc_now()
    feedback.completionStatus = summary.overall_status
    return summary
