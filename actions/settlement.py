from __future__ import annotations

from sqlalchemy import select

from actions.helpers import actor_id, append_audit
from actions.offboarding import _request_id, _require_auth, load_request
from actions.serializers import request_metrics, serialize_settlement
from models import SettlementApproval
from services import rbac_guard, records, settlement_calculator, stage_graph
from services.rbac_guard import P
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, to_float


# `amount` on the simple PUT surface lands here as one named allowance.
SETTLEMENT_AMOUNT_ENTRY = "settlement_amount"

_INPUT_COLUMNS = {
    "salaryComponents": ("salaryComponentsJson", dict),
    "leaveEncashment": ("leaveEncashmentJson", dict),
    "gratuity": ("gratuityJson", dict),
    "reimbursements": ("reimbursementsJson", list),
    "deductions": ("deductionsJson", dict),
}


def _result(db, req, settlement, summary=None) -> dict:
    out = {"requestId": req.requestId, "settlement": serialize_settlement(db, settlement), "metrics": request_metrics(db, req)}
    if summary is not None:
        out["summary"] = summary.as_dict()
    return out


def offboarding_settlement_get(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data))
    rbac_guard.require_permission(
        rbac_guard.actor_from_auth(auth),
        P.SETTLEMENT_CALCULATE,
        req,
        emp,
        any_of=(P.SETTLEMENT_REVIEW, P.SETTLEMENT_APPROVE, P.SETTLEMENT_PROCESS),
    )
    settlement = records.get_settlement(db, req)
    return {"requestId": req.requestId, "settlement": serialize_settlement(db, settlement), "metrics": request_metrics(db, req)}


def _set_amount(salary: dict, amount: float) -> dict:
    others = [o for o in (salary.get("otherAllowances") or []) if isinstance(o, dict) and o.get("name") != SETTLEMENT_AMOUNT_ENTRY]
    others.append({"name": SETTLEMENT_AMOUNT_ENTRY, "amount": amount})
    salary["otherAllowances"] = others
    return salary


def offboarding_settlement_put(data, auth: AuthContext | None, db, cfg):
    """
    PUT settlement(requestId, amount?, status?, components...).

    Inputs are stored as given and every derived total is recomputed before the write.
    """

    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data), lock=True)
    if req.status in stage_graph.TERMINAL_STATUSES:
        raise ValidationError(f"Offboarding request is {req.status}")

    actor = rbac_guard.actor_from_auth(auth)
    rbac_guard.require_permission(actor, P.SETTLEMENT_CALCULATE, req, emp, any_of=(P.SETTLEMENT_REVIEW,))

    now = iso_utc_now()
    who = actor_id(auth)
    settlement, _ = records.ensure_settlement(db, req, now=now, actor=who)
    before = {"calculationStatus": settlement.calculationStatus, "finalAmount": settlement.finalAmount}
    inputs = records.settlement_inputs(settlement)

    touched = False
    for key, (column, kind) in _INPUT_COLUMNS.items():
        if key not in (data or {}):
            continue
        value = data.get(key)
        if not isinstance(value, kind):
            raise ValidationError(f"{key} must be a {'list' if kind is list else 'object'}")
        inputs[key] = value
        setattr(settlement, column, records.dumps_json(value))
        touched = True

    if (data or {}).get("amount") not in (None, ""):
        amount = to_float(data.get("amount"), default=-1.0)
        if amount < 0:
            raise ValidationError("amount must be a non-negative number")
        salary = inputs["salaryComponents"] if isinstance(inputs["salaryComponents"], dict) else {}
        settlement.salaryComponentsJson = records.dumps_json(_set_amount(salary, amount))
        touched = True

    if "roundOffAdjustment" in (data or {}):
        settlement.roundOffAdjustment = to_float(data.get("roundOffAdjustment"))
        touched = True
    for key in ("periodFrom", "periodTo"):
        if key in (data or {}):
            setattr(settlement, key, str(data.get(key) or ""))

    if touched and settlement.calculationStatus == "paid":
        raise ValidationError("Settlement is already paid")
    reopened = touched and settlement.calculationStatus == "approved"
    if reopened:
        # Approvals were given for the previous figures; they must be given again.
        for row in records.settlement_approvals(db, settlement):
            row.status = "pending"
            row.approverId = ""
            row.decidedAt = ""
        db.flush()

    summary = records.recompute_settlement(db, settlement)
    if touched:
        settlement.calculatedBy = who
        settlement.calculatedAt = now
        if settlement.calculationStatus in {"draft", "approved"}:
            settlement.calculationStatus = "calculated"

    status = str((data or {}).get("status") or "").strip().lower()
    if status:
        settlement_calculator.check_calculation_status(settlement.calculationStatus, status, settlement.approvalStatus)
        if status == "approved" and settlement.calculationStatus != "approved":
            rbac_guard.require_permission(actor, P.SETTLEMENT_APPROVE, req, emp)
        if status == "paid" and settlement.calculationStatus != "paid":
            rbac_guard.require_permission(actor, P.SETTLEMENT_PROCESS, req, emp)
            settlement.paymentStatus = "completed"
            settlement.paymentDate = now[:10]
            settlement.paymentReference = str((data or {}).get("paymentReference") or settlement.paymentReference or "")
        settlement.calculationStatus = status

    settlement.updatedAt = now
    settlement.updatedBy = who
    append_audit(
        db,
        entityType="OFFBOARDING_SETTLEMENT",
        entityId=req.requestId,
        action="OFFBOARDING_SETTLEMENT_PUT",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before["calculationStatus"],
        toState=settlement.calculationStatus,
        before=before,
        after={"calculationStatus": settlement.calculationStatus, "finalAmount": settlement.finalAmount},
    )
    return _result(db, req, settlement, summary)


def offboarding_settlement_approve(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    level = str((data or {}).get("level") or "").strip().lower()
    if level not in settlement_calculator.APPROVAL_LEVELS:
        raise ValidationError(f"Invalid approval level: {level}", details={"allowed": list(settlement_calculator.APPROVAL_LEVELS)})
    decision = str((data or {}).get("decision") or "").strip().lower()
    if decision not in {"approve", "approved", "reject", "rejected", "pending"}:
        raise ValidationError("decision must be approve, reject or pending")

    req, emp = load_request(db, _request_id(data), lock=True)
    rbac_guard.require_permission(rbac_guard.actor_from_auth(auth), P.SETTLEMENT_APPROVE, req, emp, any_of=(P.SETTLEMENT_REVIEW,))

    settlement = records.get_settlement(db, req)
    if settlement is None:
        raise NotFoundError("Settlement not found", details={"requestId": req.requestId})
    if settlement.calculationStatus == "paid":
        raise ValidationError("Settlement is already paid")

    now = iso_utc_now()
    who = actor_id(auth)
    row = (
        db.execute(select(SettlementApproval).where(SettlementApproval.settlementId == settlement.settlementId, SettlementApproval.level == level))
        .scalars()
        .first()
    )
    if row is None:
        row = SettlementApproval(settlementId=settlement.settlementId, level=level, createdAt=now)
        db.add(row)

    if decision == "pending":
        row.status = "pending"
        row.approverId = ""
        row.decidedAt = ""
    else:
        row.status = "approved" if decision.startswith("approve") else "rejected"
        row.approverId = who
        row.decidedAt = now
    row.comments = str((data or {}).get("comments") or "")
    db.flush()

    records.recompute_settlement(db, settlement)
    # An approved calculation cannot outlive a rejected or reopened approval entry.
    if settlement.calculationStatus == "approved" and settlement.approvalStatus != "approved":
        settlement.calculationStatus = "reviewed"
    settlement.updatedAt = now
    settlement.updatedBy = who

    append_audit(
        db,
        entityType="OFFBOARDING_SETTLEMENT",
        entityId=req.requestId,
        action="OFFBOARDING_SETTLEMENT_APPROVE",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        toState=row.status,
        remark=row.comments,
        meta={"level": level, "approvalStatus": settlement.approvalStatus},
    )
    return _result(db, req, settlement)
