from __future__ import annotations

import logging

from sqlalchemy import select

from actions.offboarding import _request_id, _require_auth, load_request
from models import OffboardingRequest
from services import legacy_view, rbac_guard, records
from services.rbac_guard import P
from services.state_machine import CLOSE_SOURCE_LEGACY, workflow_for
from utils import AuthContext, ValidationError


logger = logging.getLogger("offboarding.legacy")


def _project(db, req: OffboardingRequest) -> dict:
    wf = workflow_for(db)
    clearance = records.get_asset_clearance(db, req)
    return legacy_view.to_legacy(
        req,
        history_stages=[h.stage for h in wf.history(req.requestId)],
        department_clearances=records.department_clearances(db, req.requestId),
        assets=records.clearance_items(db, clearance) if clearance else (),
        settlement=records.get_settlement(db, req),
        feedback=records.get_feedback(db, req),
    )


def _require_view_all(auth) -> rbac_guard.Actor:
    actor = rbac_guard.actor_from_auth(auth)
    rbac_guard.require_permission(actor, P.VIEW_ALL)
    return actor


def legacy_offboarding_list(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    _require_view_all(auth)
    status = str((data or {}).get("status") or "").strip().lower()
    stage = str((data or {}).get("currentStage") or (data or {}).get("stage") or "").strip()

    rows = db.execute(select(OffboardingRequest).order_by(OffboardingRequest.initiatedAt.desc())).scalars().all()
    items = []
    for req in rows:
        if status and legacy_view.legacy_status(req.status) != status:
            continue
        if stage and legacy_view.legacy_stage(req.currentStage) != stage:
            continue
        items.append(_project(db, req))
    return {"items": items, "total": len(items), "deprecated": True}


def legacy_offboarding_get(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    _require_view_all(auth)
    req, _emp = load_request(db, _request_id(data))
    return _project(db, req)


def legacy_offboarding_update(data, auth: AuthContext | None, db, cfg):
    """
    The only surviving legacy write: status=completed (or currentStage=success) closes the
    request through the same routine as the workflow; status=cancelled cancels it.
    """

    auth = _require_auth(auth)
    status = str((data or {}).get("status") or "").strip().lower()
    stage = str((data or {}).get("currentStage") or "").strip()
    completing = status == "completed" or stage == "success"
    cancelling = status == "cancelled"
    if not (completing or cancelling):
        raise ValidationError(
            "Legacy offboarding records are read-only; only completion or cancellation is accepted",
            details={"allowed": {"status": ["completed", "cancelled"], "currentStage": ["success"]}},
        )

    req, emp = load_request(db, _request_id(data))
    actor = rbac_guard.actor_from_auth(auth)
    wf = workflow_for(db)
    reason = str((data or {}).get("notes") or (data or {}).get("reason") or "")
    logger.info("legacy update request=%s status=%s stage=%s actor=%s", req.requestId, status, stage, actor.user_id)

    if completing:
        rbac_guard.require_permission(actor, P.CLOSE, req, emp)
        result = wf.close(req.requestId, actor=actor.user_id, reason=reason or "Completed via legacy offboarding", source=CLOSE_SOURCE_LEGACY, auth=auth)
    else:
        rbac_guard.require_permission(actor, P.CANCEL, req, emp)
        result = wf.cancel(req.requestId, actor=actor.user_id, reason=reason, auth=auth)

    out = _project(db, result.request)
    if result.migration is not None:
        out["migration"] = result.migration.as_dict()
    return out
