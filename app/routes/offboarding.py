"""
REST surface over the offboarding actions. Every route is a thin mapping onto one
action; the router owns tenancy, auth, auditing and the transaction.
"""
from __future__ import annotations

from flask import Blueprint, request

from app.router import handle_action, request_token, tenant_header

offboarding_bp = Blueprint("offboarding", __name__)
legacy_bp = Blueprint("legacy_offboarding", __name__)


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _rest_handle(action: str, data: dict):
    return handle_action(action, data, token=request_token(_body()), tenant_id=tenant_header(), stage_tag="API_CALL_REST")


def _with(data: dict, **extra) -> dict:
    out = dict(data)
    out.update(extra)
    out.pop("token", None)
    return out


@offboarding_bp.get("")
def rest_offboarding_list():
    return _rest_handle(
        "OFFBOARDING_LIST",
        {
            "status": request.args.get("status") or "",
            "stage": request.args.get("stage") or "",
            "priority": request.args.get("priority") or "",
            "search": request.args.get("search") or "",
            "page": request.args.get("page") or 1,
            "pageSize": request.args.get("pageSize") or 50,
        },
    )


@offboarding_bp.post("")
def rest_offboarding_initiate():
    return _rest_handle("OFFBOARDING_INITIATE", _with(_body()))


@offboarding_bp.get("/analytics")
def rest_offboarding_analytics():
    return _rest_handle("OFFBOARDING_ANALYTICS", {})


@offboarding_bp.post("/outbox/replay")
def rest_offboarding_outbox_replay():
    return _rest_handle("OFFBOARDING_OUTBOX_REPLAY", _with(_body()))


@offboarding_bp.get("/<request_id>")
def rest_offboarding_get(request_id: str):
    return _rest_handle("OFFBOARDING_GET", {"requestId": request_id})


@offboarding_bp.post("/<request_id>/advance")
def rest_offboarding_advance(request_id: str):
    return _rest_handle("OFFBOARDING_ADVANCE", _with(_body(), requestId=request_id))


@offboarding_bp.post("/<request_id>/decision")
def rest_offboarding_decide(request_id: str):
    return _rest_handle("OFFBOARDING_DECIDE", _with(_body(), requestId=request_id))


@offboarding_bp.post("/<request_id>/close")
def rest_offboarding_close(request_id: str):
    return _rest_handle("OFFBOARDING_CLOSE_OR_CANCEL", _with(_body(), requestId=request_id, operation="close"))


@offboarding_bp.post("/<request_id>/cancel")
def rest_offboarding_cancel(request_id: str):
    return _rest_handle("OFFBOARDING_CLOSE_OR_CANCEL", _with(_body(), requestId=request_id, operation="cancel"))


@offboarding_bp.get("/<request_id>/tasks")
def rest_offboarding_tasks_get(request_id: str):
    return _rest_handle("OFFBOARDING_TASKS_GET", {"requestId": request_id, "department": request.args.get("department") or ""})


@offboarding_bp.patch("/<request_id>/tasks/<int:task_id>")
def rest_offboarding_task_update(request_id: str, task_id: int):
    return _rest_handle("OFFBOARDING_TASK_UPDATE", _with(_body(), requestId=request_id, taskId=task_id))


@offboarding_bp.post("/<request_id>/clearance")
def rest_offboarding_clearance_set(request_id: str):
    return _rest_handle("OFFBOARDING_CLEARANCE_SET", _with(_body(), requestId=request_id))


@offboarding_bp.post("/<request_id>/assets")
def rest_offboarding_asset_add(request_id: str):
    return _rest_handle("OFFBOARDING_ASSET_ADD", _with(_body(), requestId=request_id))


@offboarding_bp.patch("/<request_id>/assets/<int:item_id>")
def rest_offboarding_asset_update(request_id: str, item_id: int):
    return _rest_handle("OFFBOARDING_ASSET_UPDATE", _with(_body(), requestId=request_id, itemId=item_id))


@offboarding_bp.post("/<request_id>/handover")
def rest_offboarding_handover_add(request_id: str):
    return _rest_handle("OFFBOARDING_HANDOVER_ADD", _with(_body(), requestId=request_id))


@offboarding_bp.patch("/<request_id>/handover")
def rest_offboarding_handover_update(request_id: str):
    return _rest_handle("OFFBOARDING_HANDOVER_UPDATE", _with(_body(), requestId=request_id))


@offboarding_bp.get("/<request_id>/settlement")
def rest_offboarding_settlement_get(request_id: str):
    return _rest_handle("OFFBOARDING_SETTLEMENT_GET", {"requestId": request_id})


@offboarding_bp.put("/<request_id>/settlement")
def rest_offboarding_settlement_put(request_id: str):
    return _rest_handle("OFFBOARDING_SETTLEMENT_PUT", _with(_body(), requestId=request_id))


@offboarding_bp.post("/<request_id>/settlement/approvals")
def rest_offboarding_settlement_approve(request_id: str):
    return _rest_handle("OFFBOARDING_SETTLEMENT_APPROVE", _with(_body(), requestId=request_id))


@offboarding_bp.get("/<request_id>/feedback")
def rest_offboarding_feedback_get(request_id: str):
    return _rest_handle("OFFBOARDING_FEEDBACK_GET", {"requestId": request_id})


@offboarding_bp.post("/<request_id>/feedback")
def rest_offboarding_feedback_submit(request_id: str):
    return _rest_handle("OFFBOARDING_FEEDBACK_SUBMIT", _with(_body(), requestId=request_id))


@legacy_bp.get("")
def rest_legacy_offboarding_list():
    return _rest_handle(
        "LEGACY_OFFBOARDING_LIST",
        {"status": request.args.get("status") or "", "currentStage": request.args.get("currentStage") or ""},
    )


@legacy_bp.get("/<request_id>")
def rest_legacy_offboarding_get(request_id: str):
    return _rest_handle("LEGACY_OFFBOARDING_GET", {"requestId": request_id})


@legacy_bp.put("/<request_id>")
def rest_legacy_offboarding_update(request_id: str):
    return _rest_handle("LEGACY_OFFBOARDING_UPDATE", _with(_body(), requestId=request_id))
