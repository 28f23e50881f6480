from __future__ import annotations

from actions.helpers import actor_id, append_audit
from actions.offboarding import _request_id, _require_auth, load_request
from actions.serializers import request_metrics, serialize_feedback
from services import rbac_guard, records, stage_graph
from services.rbac_guard import P
from utils import AuthContext, ValidationError, iso_utc_now, to_bool


_TEXT_FIELDS = ("primaryReason", "positiveAspects", "negativeAspects", "workplaceImprovements", "wouldReturn")


def _require_feedback_access(auth, req, emp, *, write: bool) -> None:
    actor = rbac_guard.actor_from_auth(auth)
    # The leaving employee may always fill in and read their own interview.
    if rbac_guard.is_own_request(actor, emp):
        return
    if write:
        rbac_guard.require_permission(actor, P.FEEDBACK_CONDUCT, req, emp)
    else:
        rbac_guard.require_permission(actor, P.FEEDBACK_VIEW, req, emp, any_of=(P.FEEDBACK_CONDUCT, P.FEEDBACK_ANALYZE))


def offboarding_feedback_submit(data, auth: AuthContext | None, db, cfg):
    """
    Saves exit-interview answers; completionStatus is recomputed from the filled sections.

    `declined=true` marks the interview declined; `declined=false` reopens a declined one.
    """

    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data), lock=True)
    if req.status in stage_graph.TERMINAL_STATUSES:
        raise ValidationError(f"Offboarding request is {req.status}")
    _require_feedback_access(auth, req, emp, write=True)

    now = iso_utc_now()
    feedback, _ = records.ensure_feedback(db, req, now=now)
    before = feedback.completionStatus

    for key in _TEXT_FIELDS:
        if key in (data or {}):
            setattr(feedback, key, str(data.get(key) or "").strip())
    if "overallSatisfaction" in (data or {}):
        try:
            score = int(data.get("overallSatisfaction") or 0)
        except (TypeError, ValueError):
            raise ValidationError("overallSatisfaction must be an integer between 1 and 5")
        if score and not 1 <= score <= 5:
            raise ValidationError("overallSatisfaction must be an integer between 1 and 5")
        feedback.overallSatisfaction = score
    if "wouldRecommend" in (data or {}):
        rec = str(data.get("wouldRecommend") or "").strip().lower()
        if rec and rec not in {"yes", "no", "maybe"}:
            raise ValidationError("wouldRecommend must be yes, no or maybe")
        feedback.wouldRecommend = rec
    if "responses" in (data or {}):
        if not isinstance(data.get("responses"), dict):
            raise ValidationError("responses must be an object")
        feedback.responsesJson = records.dumps_json(data.get("responses"))

    if "declined" in (data or {}):
        if to_bool(data.get("declined")):
            feedback.completionStatus = "declined"
        elif feedback.completionStatus == "declined":
            feedback.completionStatus = "not_started"

    if not rbac_guard.is_own_request(rbac_guard.actor_from_auth(auth), emp):
        feedback.conductedBy = actor_id(auth)
    feedback.updatedAt = now
    records.recompute_feedback(feedback)

    append_audit(
        db,
        entityType="OFFBOARDING_FEEDBACK",
        entityId=req.requestId,
        action="OFFBOARDING_FEEDBACK_SUBMIT",
        stageTag=req.currentStage,
        actor=auth,
        at=now,
        fromState=before,
        toState=feedback.completionStatus,
    )
    return {"requestId": req.requestId, "feedback": serialize_feedback(feedback), "metrics": request_metrics(db, req)}


def offboarding_feedback_get(data, auth: AuthContext | None, db, cfg):
    auth = _require_auth(auth)
    req, emp = load_request(db, _request_id(data))
    _require_feedback_access(auth, req, emp, write=False)
    return {"requestId": req.requestId, "feedback": serialize_feedback(records.get_feedback(db, req))}
