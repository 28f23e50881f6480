from __future__ import annotations

from sqlalchemy import select

from actions.helpers import actor_id, append_audit
from actions.offboarding import _request_id, _require_auth, load_request
from actions.serializers import (
    request_metrics,
    serialize_clearance,
    serialize_clearance_item,
    serialize_handover,
    serialize_handover_item,
)
from models import ClearanceItem, DepartmentClearance, HandoverItem
from services import rbac_guard, records, stage_graph
from services.completion import CLEARANCE_STATUSES, HANDOVER_STATUSES
from services.directory import EmployeeDirectory
from services.rbac_guard import P
from utils import ApiError, AuthContext, NotFoundError, ValidationError, iso_utc_now, to_bool, to_float


HANDOVER_TYPES = ("complete", "partial", "temporary", "knowledge_only")


def _writable(req) -> None:
    if req.status in stage_graph.TERMINAL_STATUSES:
        raise ValidationError(f"Offboarding request is {req.status}")


def _item_id(data) -> int:
    try:
        item_id = int((data or {}).get("itemId") or 0)
    except (TypeError, ValueError):
        item_id = 0
    if item_id <= 0:
        raise ApiError("BAD_REQUEST", "Missing itemId")
    return item_id


def _clearance_result(db, req, clearance) -> dict:
    return {"requestId": req.requestId, "assetClearance": serialize_clearance(db, clearance), "metrics": request_metrics(db, req)}


def _handover_result(db, req, handover) -> dict:
    return {"requestId": req.requestId, "handover": serialize_handover(db, handover), "metrics": request_metrics(db, req)}


def offboarding_clearance_set(data, auth: AuthContext | None, db, cfg):
    """
    POST setClearance(requestId, department, cleared, notes).

    `cleared=true` signs the department off; otherwise `status` may carry partial/issues/pending.
    """

    auth = _require_auth(auth)
    department = str((data or {}).get("department") or "").strip().lower()
    if department not in records.CLEARANCE_DEPARTMENTS:
        raise ValidationError(f"Unknown department: {department}", details={"allowed": list(records.CLEARANCE_DEPARTMENTS)})

    if "cleared" in (data or {}) and to_bool(data.get("cleared")):
        status = "cleared"
    else:
        status = str((data or {}).get("status") or "pending").strip().lower()
    if status not in records.DEPARTMENT_CLEARANCE_STATUSES:
        raise ValidationError(f"Invalid clearance status: {status}", details={"allowed": sorted(records.DEPARTMENT_CLEARANCE_STATUSES)})

    req, _emp = load_request(db, _request_id(data), lock=True)
    _writable(req)
    rbac_guard.require_department_clearance(rbac_guard.actor_from_auth(auth), req, department)

    now = iso_utc_now()
    who = actor_id(auth)
    clearance, _ = records.ensure_asset_clearance(db, req, now=now, actor=who)
    row = (
        db.execute(select(DepartmentClearance).where(DepartmentClearance.requestId == req.requestId, DepartmentClearance.department == department))
        .scalars()
        .first()
    )
    if row is None:
        row = DepartmentClearance(requestId=req.requestId, clearanceId=clearance.clearanceId, department=department)
        db.add(row)
    before = row.status or "pending"

    row.status = status
    row.notes = str((data or {}).get("notes") or row.notes or "")
    row.clearedBy = who if status == "cleared" else ""
    row.clearanceDate = now if status == "cleared" else ""
    row.updatedAt = now
    clearance.updatedAt = now
    clearance.updatedBy = who
    db.flush()
    records.recompute_clearance(db, clearance)

    append_audit(
        db,
        entityType="OFFBOARDING_CLEARANCE",
        entityId=req.requestId,
        action="OFFBOARDING_CLEARANCE_SET",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before,
        toState=status,
        remark=row.notes,
        meta={"department": department},
    )
    return _clearance_result(db, req, clearance)


def _apply_item_fields(item: ClearanceItem, data: dict) -> None:
    for key in ("itemCode", "itemName", "itemType", "conditionAtReturn", "notes"):
        if key in data:
            setattr(item, key, str(data.get(key) or ""))
    for key in ("recoveryAmount", "repairCost", "replacementCost"):
        if key in data:
            value = to_float(data.get(key))
            if value < 0:
                raise ValidationError(f"{key} must not be negative")
            setattr(item, key, value)


def _require_asset_manage(auth, req, emp) -> None:
    rbac_guard.require_permission(rbac_guard.actor_from_auth(auth), P.ASSET_MANAGE, req, emp, any_of=(P.ASSET_APPROVE,))


def offboarding_asset_add(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    category = str((data or {}).get("category") or "physical").strip().lower()
    if category not in CLEARANCE_STATUSES:
        raise ValidationError(f"Unknown clearance category: {category}", details={"allowed": list(records.CLEARANCE_CATEGORIES)})
    status = str((data or {}).get("status") or "pending").strip().lower()
    if status not in CLEARANCE_STATUSES[category]:
        raise ValidationError(f"Invalid {category} item status: {status}", details={"allowed": sorted(CLEARANCE_STATUSES[category])})
    if not str((data or {}).get("itemName") or (data or {}).get("itemCode") or "").strip():
        raise ValidationError("itemName or itemCode is required")

    req, emp = load_request(db, _request_id(data), lock=True)
    _writable(req)
    _require_asset_manage(auth, req, emp)

    now = iso_utc_now()
    who = actor_id(auth)
    clearance, _ = records.ensure_asset_clearance(db, req, now=now, actor=who)
    item = ClearanceItem(clearanceId=clearance.clearanceId, category=category, status=status, createdAt=now, updatedAt=now)
    _apply_item_fields(item, data)
    if status != "pending":
        item.handledBy = who
        item.handledAt = now
    db.add(item)
    db.flush()
    clearance.updatedAt = now
    clearance.updatedBy = who
    records.recompute_clearance(db, clearance)

    append_audit(
        db,
        entityType="OFFBOARDING_CLEARANCE",
        entityId=req.requestId,
        action="OFFBOARDING_ASSET_ADD",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        toState=status,
        meta={"category": category, "itemId": item.id, "itemCode": item.itemCode},
    )
    out = _clearance_result(db, req, clearance)
    out["item"] = serialize_clearance_item(item)
    return out


def offboarding_asset_update(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    item_id = _item_id(data)
    req, emp = load_request(db, _request_id(data), lock=True)
    _writable(req)
    _require_asset_manage(auth, req, emp)

    clearance = records.get_asset_clearance(db, req)
    item = db.get(ClearanceItem, item_id)
    if clearance is None or item is None or item.clearanceId != clearance.clearanceId:
        raise NotFoundError("Clearance item not found", details={"itemId": item_id})

    now = iso_utc_now()
    who = actor_id(auth)
    before = item.status
    if "status" in (data or {}):
        status = str(data.get("status") or "").strip().lower()
        if status not in CLEARANCE_STATUSES.get(item.category, ()):
            raise ValidationError(
                f"Invalid {item.category} item status: {status}",
                details={"allowed": sorted(CLEARANCE_STATUSES.get(item.category, ()))},
            )
        item.status = status
        item.handledBy = who if status != "pending" else ""
        item.handledAt = now if status != "pending" else ""
    _apply_item_fields(item, data)
    item.updatedAt = now
    db.flush()
    clearance.updatedAt = now
    clearance.updatedBy = who
    records.recompute_clearance(db, clearance)

    append_audit(
        db,
        entityType="OFFBOARDING_CLEARANCE",
        entityId=req.requestId,
        action="OFFBOARDING_ASSET_UPDATE",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before,
        toState=item.status,
        meta={"category": item.category, "itemId": item.id},
    )
    out = _clearance_result(db, req, clearance)
    out["item"] = serialize_clearance_item(item)
    return out


def _require_handover(auth, req, emp) -> None:
    rbac_guard.require_permission(
        rbac_guard.actor_from_auth(auth),
        P.HANDOVER_MANAGE,
        req,
        emp,
        any_of=(P.HANDOVER_CREATE, P.HANDOVER_APPROVE),
    )


def _apply_handover_header(db, handover, data: dict) -> None:
    if "successorId" in data:
        successor = str(data.get("successorId") or "").strip()
        if successor and EmployeeDirectory(db).get(successor) is None:
            raise ValidationError("Successor not found", details={"successorId": successor})
        if successor and successor == handover.employeeId:
            raise ValidationError("An employee cannot be their own successor")
        handover.successorId = successor
    if "handoverType" in data:
        kind = str(data.get("handoverType") or "").strip().lower()
        if kind not in HANDOVER_TYPES:
            raise ValidationError(f"Invalid handoverType: {kind}", details={"allowed": list(HANDOVER_TYPES)})
        handover.handoverType = kind
    if "generalNotes" in data:
        handover.generalNotes = str(data.get("generalNotes") or "")


def _handover_status(data: dict, default: str = "pending") -> str:
    status = str((data or {}).get("status") or default).strip().lower()
    if status not in HANDOVER_STATUSES:
        raise ValidationError(f"Invalid handover item status: {status}", details={"allowed": sorted(HANDOVER_STATUSES)})
    return status


def offboarding_handover_add(data, auth: AuthContext | None, db, cfg):
    """Adds a handover item; a request carrying only header fields (successor, type, notes) adds nothing."""

    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data), lock=True)
    _writable(req)
    _require_handover(auth, req, emp)

    now = iso_utc_now()
    who = actor_id(auth)
    handover, _ = records.ensure_handover(db, req, now=now, actor=who)
    _apply_handover_header(db, handover, data or {})

    item = None
    title = str((data or {}).get("title") or "").strip()
    if title:
        category = str((data or {}).get("category") or "project").strip().lower()
        if category not in records.HANDOVER_CATEGORIES:
            raise ValidationError(f"Unknown handover category: {category}", details={"allowed": list(records.HANDOVER_CATEGORIES)})
        status = _handover_status(data)
        item = HandoverItem(
            handoverId=handover.handoverId,
            category=category,
            title=title,
            handoverTo=str((data or {}).get("handoverTo") or handover.successorId or ""),
            status=status,
            notes=str((data or {}).get("notes") or ""),
            handoverDate=now if status == "completed" else "",
            createdAt=now,
            updatedAt=now,
        )
        db.add(item)
        db.flush()

    handover.updatedAt = now
    handover.updatedBy = who
    records.recompute_handover(db, handover)

    append_audit(
        db,
        entityType="OFFBOARDING_HANDOVER",
        entityId=req.requestId,
        action="OFFBOARDING_HANDOVER_ADD",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        toState=handover.overallStatus,
        meta={"itemId": item.id if item else None, "successorId": handover.successorId},
    )
    out = _handover_result(db, req, handover)
    out["item"] = serialize_handover_item(item) if item else None
    return out


def offboarding_handover_update(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data), lock=True)
    _writable(req)
    _require_handover(auth, req, emp)

    handover = records.get_handover(db, req)
    if handover is None:
        raise NotFoundError("Handover record not found", details={"requestId": req.requestId})

    now = iso_utc_now()
    _apply_handover_header(db, handover, data or {})

    item = None
    if (data or {}).get("itemId") not in (None, ""):
        item_id = _item_id(data)
        item = db.get(HandoverItem, item_id)
        if item is None or item.handoverId != handover.handoverId:
            raise NotFoundError("Handover item not found", details={"itemId": item_id})
        if "status" in data:
            item.status = _handover_status(data, item.status)
            item.handoverDate = now if item.status == "completed" else ""
        for key in ("title", "handoverTo", "notes"):
            if key in data:
                setattr(item, key, str(data.get(key) or ""))
        item.updatedAt = now
        db.flush()

    before = handover.overallStatus
    handover.updatedAt = now
    handover.updatedBy = actor_id(auth)
    records.recompute_handover(db, handover)

    append_audit(
        db,
        entityType="OFFBOARDING_HANDOVER",
        entityId=req.requestId,
        action="OFFBOARDING_HANDOVER_UPDATE",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before,
        toState=handover.overallStatus,
        meta={"itemId": item.id if item else None},
    )
    out = _handover_result(db, req, handover)
    out["item"] = serialize_handover_item(item) if item else None
    return out
