from __future__ import annotations

from collections import Counter

from sqlalchemy import select

from actions.helpers import actor_id, append_audit
from actions.serializers import (
    TASK_DONE_STATUSES,
    request_metrics,
    request_tasks,
    serialize_approval,
    serialize_clearance,
    serialize_employee,
    serialize_feedback,
    serialize_handover,
    serialize_history,
    serialize_request,
    serialize_settlement,
    serialize_task,
)
from models import Employee, OffboardingRequest, OffboardingTask
from services import outbox, records, rbac_guard, stage_graph
from services.directory import EmployeeDirectory
from services.rbac_guard import P
from services.state_machine import CLOSE_SOURCE_WORKFLOW, workflow_for
from utils import (
    ApiError,
    AuthContext,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    iso_utc_now,
    json_loads_maybe,
    to_bool,
)


TASK_STATUSES = ("pending", "in_progress", "completed", "not_applicable")


def _require_auth(auth: AuthContext | None) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def _request_id(data) -> str:
    rid = str((data or {}).get("requestId") or "").strip()
    if not rid:
        raise ApiError("BAD_REQUEST", "Missing requestId")
    return rid


def load_request(db, request_id: str, *, lock: bool = False) -> tuple[OffboardingRequest, Employee | None]:
    wf = workflow_for(db)
    req = wf.lock_request(request_id) if lock else wf.get_request(request_id)
    return req, EmployeeDirectory(db).get(req.employeeId)


def aggregate(db, request: OffboardingRequest, employee: Employee | None = None, *, full: bool = False) -> dict:
    out = {"request": serialize_request(request), "metrics": request_metrics(db, request)}
    if full:
        wf = workflow_for(db)
        intent = outbox.latest_intent(db, request.requestId)
        out.update(
            {
                "employee": serialize_employee(employee),
                "approvals": [serialize_approval(a) for a in wf.approvals(request.requestId)],
                "statusHistory": [serialize_history(h) for h in wf.history(request.requestId)],
                "tasks": [serialize_task(t) for t in request_tasks(db, request.requestId)],
                "assetClearance": serialize_clearance(db, records.get_asset_clearance(db, request)),
                "handover": serialize_handover(db, records.get_handover(db, request)),
                "settlement": serialize_settlement(db, records.get_settlement(db, request)),
                "feedback": serialize_feedback(records.get_feedback(db, request)),
                "stageSetup": outbox.serialize_intent(intent) if intent else None,
            }
        )
    return out


def offboarding_initiate(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    employee_id = str((data or {}).get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")

    employee = EmployeeDirectory(db).require(employee_id)
    rbac_guard.require_initiate(rbac_guard.actor_from_auth(auth), employee)

    notice_required = (data or {}).get("noticeRequiredDays")
    try:
        notice_required = None if notice_required in (None, "") else int(notice_required)
    except (TypeError, ValueError):
        raise ValidationError("Invalid noticeRequiredDays")

    result = workflow_for(db).initiate(
        employee_id=employee.employeeId,
        reason=(data or {}).get("reason"),
        last_working_day=(data or {}).get("lastWorkingDay"),
        actor=actor_id(auth),
        auth=auth,
        reason_details=str((data or {}).get("reasonDetails") or ""),
        priority=str((data or {}).get("priority") or "medium"),
        notice_required_days=notice_required,
        notice_waived=to_bool((data or {}).get("noticeWaived")),
        notice_waived_reason=str((data or {}).get("noticeWaivedReason") or ""),
    )
    out = aggregate(db, result.request, employee)
    out["dispatch"] = result.outcomes_as_dicts()
    return out


def offboarding_list(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    actor = rbac_guard.actor_from_auth(auth)
    status = str((data or {}).get("status") or "").strip().lower()
    stage = str((data or {}).get("stage") or "").strip().lower()
    priority = str((data or {}).get("priority") or "").strip().lower()
    search = str((data or {}).get("search") or "").strip().lower()
    try:
        page = max(1, int((data or {}).get("page") or 1))
        page_size = min(200, max(1, int((data or {}).get("pageSize") or 50)))
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid page/pageSize")

    q = select(OffboardingRequest, Employee).outerjoin(Employee, Employee.employeeId == OffboardingRequest.employeeId)
    if status:
        q = q.where(OffboardingRequest.status == status)
    if stage:
        q = q.where(OffboardingRequest.currentStage == stage)
    if priority:
        q = q.where(OffboardingRequest.priority == priority)
    q = q.order_by(OffboardingRequest.initiatedAt.desc())

    items = []
    for req, emp in db.execute(q).all():
        if not rbac_guard.can_view(actor, emp):
            continue
        if search:
            hay = " ".join([req.requestId, req.employeeId, emp.fullName if emp else "", (emp.email if emp else "") or ""]).lower()
            if search not in hay:
                continue
        row = serialize_request(req)
        row["employeeName"] = emp.fullName if emp else ""
        row["department"] = (emp.department if emp else "") or ""
        items.append(row)

    start = (page - 1) * page_size
    return {"items": items[start : start + page_size], "total": len(items), "page": page, "pageSize": page_size}


def offboarding_get(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data))
    rbac_guard.require_view(rbac_guard.actor_from_auth(auth), req, emp)
    return aggregate(db, req, emp, full=True)


def _require_active(req: OffboardingRequest, target: str = "") -> None:
    if req.status in stage_graph.TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Offboarding request is {req.status}", from_stage=req.currentStage, to_stage=target)


def _require_advance(actor, req: OffboardingRequest, emp, target: str) -> None:
    current = str(req.currentStage or "")
    if current in stage_graph.APPROVAL_STAGES:
        rbac_guard.require_approve(actor, req, emp)
    elif current == stage_graph.EXIT_INTERVIEW or target == stage_graph.CLOSURE:
        rbac_guard.require_permission(actor, P.CLOSE, req, emp)
    else:
        rbac_guard.require_manage(actor, req, emp, action="advance offboarding request")


def offboarding_advance(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    target = str((data or {}).get("targetStage") or "").strip()
    if target and not stage_graph.is_stage(target):
        raise ValidationError(f"Unknown stage: {target}", details={"allowed": list(stage_graph.STAGES)})

    req, emp = load_request(db, _request_id(data), lock=True)
    _require_active(req, target)
    _require_advance(rbac_guard.actor_from_auth(auth), req, emp, target)

    result = workflow_for(db).advance(
        req.requestId,
        actor=actor_id(auth),
        comment=str((data or {}).get("comment") or ""),
        target_stage=target or None,
        auth=auth,
        request=req,
    )
    out = aggregate(db, result.request, emp)
    out["dispatch"] = result.outcomes_as_dicts()
    if result.migration is not None:
        out["migration"] = result.migration.as_dict()
    return out


def offboarding_decide(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    decision = str((data or {}).get("decision") or "").strip().lower()
    if decision not in {"approve", "approved", "reject", "rejected"}:
        raise ValidationError("decision must be approve or reject")

    req, emp = load_request(db, _request_id(data), lock=True)
    _require_active(req)
    rbac_guard.require_approve(rbac_guard.actor_from_auth(auth), req, emp)

    result = workflow_for(db).decide(
        req.requestId,
        actor=actor_id(auth),
        approved=decision.startswith("approve"),
        comment=str((data or {}).get("comment") or ""),
        auth=auth,
        request=req,
    )
    out = aggregate(db, result.request, emp)
    out["dispatch"] = result.outcomes_as_dicts()
    return out


def offboarding_close_or_cancel(data, auth: AuthContext | None, db, cfg):
    """
    POST closeOrCancel(requestId, reason?, operation?).

    operation=close (default) runs closure; operation=cancel cancels from any non-terminal stage.
    """

    auth = _require_auth(auth)
    operation = str((data or {}).get("operation") or "close").strip().lower()
    if operation not in {"close", "cancel"}:
        raise ValidationError("operation must be close or cancel")
    reason = str((data or {}).get("reason") or "")

    req, emp = load_request(db, _request_id(data))
    actor = rbac_guard.actor_from_auth(auth)
    wf = workflow_for(db)
    if operation == "cancel":
        rbac_guard.require_permission(actor, P.CANCEL, req, emp)
        result = wf.cancel(req.requestId, actor=actor_id(auth), reason=reason, auth=auth)
    else:
        rbac_guard.require_permission(actor, P.CLOSE, req, emp)
        result = wf.close(req.requestId, actor=actor_id(auth), reason=reason, source=CLOSE_SOURCE_WORKFLOW, auth=auth)

    out = aggregate(db, result.request, emp)
    if result.migration is not None:
        out["migration"] = result.migration.as_dict()
    return out


def offboarding_tasks_get(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data))
    rbac_guard.require_view(rbac_guard.actor_from_auth(auth), req, emp)
    department = str((data or {}).get("department") or "").strip().lower()
    tasks = [t for t in request_tasks(db, req.requestId) if not department or t.department == department]
    return {"requestId": req.requestId, "items": [serialize_task(t) for t in tasks]}


def _apply_checklist(task: OffboardingTask, updates, *, actor: str, now: str) -> None:
    checklist = [c for c in json_loads_maybe(task.checklistJson, []) if isinstance(c, dict)]
    by_item = {str(c.get("item") or ""): c for c in checklist}
    for u in updates or []:
        if not isinstance(u, dict):
            continue
        entry = by_item.get(str(u.get("item") or ""))
        if entry is None:
            raise ValidationError(f"Unknown checklist item: {u.get('item')}")
        done = to_bool(u.get("completed"))
        entry["completed"] = done
        entry["completedBy"] = actor if done else ""
        entry["completedAt"] = now if done else ""
    task.checklistJson = records.dumps_json(checklist)


def offboarding_task_update(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    try:
        task_id = int((data or {}).get("taskId") or 0)
    except (TypeError, ValueError):
        task_id = 0
    if task_id <= 0:
        raise ApiError("BAD_REQUEST", "Missing taskId")

    task = db.execute(select(OffboardingTask).where(OffboardingTask.id == task_id).with_for_update(of=OffboardingTask)).scalars().first()
    if not task:
        raise NotFoundError("Task not found", details={"taskId": task_id})
    req, emp = load_request(db, task.requestId)
    if req.status in stage_graph.TERMINAL_STATUSES:
        raise ValidationError(f"Offboarding request is {req.status}")

    actor = rbac_guard.actor_from_auth(auth)
    rbac_guard.require_permission(actor, P.TASK_COMPLETE, req, emp, any_of=(P.TASK_MANAGE,))
    if not rbac_guard.has_permission(actor.role, P.TASK_MANAGE, actor.department) and actor.department != task.department:
        raise PermissionDeniedError(
            f"Task belongs to the {task.department} department",
            role=actor.role,
            action="update task",
            stage=req.currentStage,
            department=task.department,
        )

    now = iso_utc_now()
    who = actor_id(auth)
    before = {"status": task.status}

    if "checklist" in (data or {}):
        _apply_checklist(task, data.get("checklist"), actor=who, now=now)
    if "completionNotes" in (data or {}):
        task.completionNotes = str(data.get("completionNotes") or "")
    if "assignedTo" in (data or {}):
        task.assignedTo = str(data.get("assignedTo") or "")

    status = str((data or {}).get("status") or "").strip().lower()
    if status:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Invalid task status: {status}", details={"allowed": list(TASK_STATUSES)})
        task.status = status
        if status in TASK_DONE_STATUSES:
            task.completedBy = who
            task.completedAt = now
        else:
            task.completedBy = ""
            task.completedAt = ""
            task.verifiedBy = ""
            task.verifiedAt = ""

    if to_bool((data or {}).get("verify")):
        if not task.requiresVerification:
            raise ValidationError("Task does not require verification")
        if task.status not in TASK_DONE_STATUSES:
            raise ValidationError("Task must be completed before verification")
        rbac_guard.require_permission(actor, P.TASK_VERIFY, req, emp, any_of=(P.TASK_MANAGE,))
        task.verifiedBy = who
        task.verifiedAt = now

    task.updatedAt = now
    task.updatedBy = who
    append_audit(
        db,
        entityType="OFFBOARDING_TASK",
        entityId=str(task.id),
        action="OFFBOARDING_TASK_UPDATE",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before["status"],
        toState=task.status,
        meta={"requestId": req.requestId, "taskKey": task.taskKey},
    )
    db.flush()
    return {"task": serialize_task(task), "metrics": request_metrics(db, req)}


def offboarding_analytics(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    actor = rbac_guard.actor_from_auth(auth)
    if not rbac_guard.has_permission(actor.role, P.ANALYTICS_VIEW, actor.department) and not rbac_guard.has_permission(
        actor.role, P.REPORTS_VIEW, actor.department
    ):
        raise PermissionDeniedError("Not allowed to view offboarding analytics", role=actor.role, action=P.ANALYTICS_VIEW)

    rows = db.execute(select(OffboardingRequest, Employee).outerjoin(Employee, Employee.employeeId == OffboardingRequest.employeeId)).all()
    visible = [req for req, emp in rows if rbac_guard.can_view(actor, emp)]
    by_status = Counter(r.status for r in visible)
    by_reason = Counter(r.reason for r in visible)
    by_stage = Counter(r.currentStage for r in visible if r.status not in stage_graph.TERMINAL_STATUSES)
    active = [r for r in visible if r.status not in stage_graph.TERMINAL_STATUSES]
    return {
        "total": len(visible),
        "completed": by_status.get(stage_graph.STATUS_CLOSED, 0),
        "cancelled": by_status.get(stage_graph.STATUS_CANCELLED, 0),
        "active": len(active),
        "urgent": sum(1 for r in active if r.isUrgent),
        "byStatus": dict(sorted(by_status.items())),
        "byReason": dict(sorted(by_reason.items())),
        "activeByStage": {s: by_stage[s] for s in stage_graph.STAGES if by_stage.get(s)},
        "averageProgress": int(round(sum(int(r.completionPercentage or 0) for r in active) / len(active))) if active else 0,
    }


def offboarding_outbox_replay(data, auth: AuthContext | None, db, cfg):
    _require_auth(auth)
    try:
        limit = int((data or {}).get("limit") or cfg.OUTBOX_REPLAY_LIMIT)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid limit")
    request_id = str((data or {}).get("requestId") or "").strip() or None
    return outbox.replay_pending_intents(db, workflow_for(db), limit=limit, request_id=request_id)
