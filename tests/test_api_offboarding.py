from __future__ import annotations

from conftest import future_lwd, seed_org


def _initiate(rest, token: str, employee_id: str = "EMP-0001"):
    status, body = rest(
        "POST",
        "/api/offboarding",
        token=token,
        json_body={"employeeId": employee_id, "reason": "voluntary_resignation", "lastWorkingDay": future_lwd(), "priority": "high"},
    )
    assert status == 200, body
    return body["data"]["request"]


def _advance(rest, token: str, request_id: str, expected_stage: str):
    status, body = rest("POST", f"/api/offboarding/{request_id}/advance", token=token, json_body={})
    assert status == 200, body
    assert body["data"]["request"]["currentStage"] == expected_stage
    return body["data"]


def _decide(rest, token: str, request_id: str, expected_stage: str):
    status, body = rest("POST", f"/api/offboarding/{request_id}/decision", token=token, json_body={"decision": "approve"})
    assert status == 200, body
    assert body["data"]["request"]["currentStage"] == expected_stage
    return body["data"]


def test_missing_tenant_header_is_rejected(rest):
    status, body = rest("GET", "/api/offboarding", tenant="")
    assert status == 400
    assert body["ok"] is False
    assert body["error"]["code"] == "BAD_REQUEST"
    assert "X-Tenant-ID" in body["error"]["message"]


def test_missing_session_is_rejected(rest, org):
    status, body = rest("GET", "/api/offboarding")
    assert status == 401
    assert body["error"]["code"] == "AUTH_INVALID"


def test_unknown_action_on_the_envelope(api, org, login):
    token = login("hr@acme.test")
    status, body = api("OFFBOARDING_TELEPORT", {}, token=token)
    assert status == 400
    assert body["error"]["code"] == "BAD_REQUEST"


def test_duplicate_initiation_is_a_conflict(rest, org, login):
    hr = login("hr@acme.test")
    _initiate(rest, hr)
    status, body = rest(
        "POST",
        "/api/offboarding",
        token=hr,
        json_body={"employeeId": "EMP-0001", "reason": "voluntary_resignation", "lastWorkingDay": future_lwd()},
    )
    assert status == 409
    assert body["error"]["code"] == "CONFLICT"


def test_full_offboarding_over_rest(rest, org, login):
    hr = login("hr@acme.test")
    mgr = login("manager@acme.test")
    fin = login("finance@acme.test")
    it = login("it@acme.test")
    emp = login("dana@acme.test")

    req = _initiate(rest, hr)
    rid = req["requestId"]
    assert req["currentStage"] == "manager_approval"
    assert req["status"] == "approvals_pending"
    assert req["isUrgent"] is False

    # Only the reporting manager decides the manager stage.
    status, body = rest("POST", f"/api/offboarding/{rid}/decision", token=fin, json_body={"decision": "approve"})
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"

    _decide(rest, mgr, rid, "hr_approval")
    _decide(rest, hr, rid, "finance_approval")
    data = _decide(rest, fin, rid, "checklist_generation")
    assert data["metrics"] is not None

    status, body = rest("GET", f"/api/offboarding/{rid}/tasks", token=hr)
    assert status == 200
    assert len(body["data"]["items"]) == 6

    _advance(rest, hr, rid, "departmental_clearance")

    status, body = rest("POST", f"/api/offboarding/{rid}/clearance", token=hr, json_body={"department": "it", "cleared": True})
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"
    assert body["error"]["details"]["department"] == "it"

    status, body = rest("POST", f"/api/offboarding/{rid}/clearance", token=it, json_body={"department": "it", "cleared": True, "notes": "accounts disabled"})
    assert status == 200, body
    deps = {d["department"]: d for d in body["data"]["assetClearance"]["departmentClearances"]}
    assert deps["it"]["status"] == "cleared"
    assert deps["it"]["clearedBy"] == "USR-IT"

    _advance(rest, hr, rid, "asset_return")

    status, body = rest("GET", f"/api/offboarding/{rid}", token=it)
    assert status == 200, body
    laptop = body["data"]["assetClearance"]["items"]["physical"][0]
    assert laptop["itemCode"] == "LAP-001"
    assert laptop["status"] == "pending"

    status, body = rest(
        "PATCH",
        f"/api/offboarding/{rid}/assets/{laptop['itemId']}",
        token=it,
        json_body={"status": "returned", "conditionAtReturn": "good"},
    )
    assert status == 200, body
    assert body["data"]["item"]["status"] == "returned"
    assert body["data"]["item"]["handledBy"] == "USR-IT"

    _advance(rest, hr, rid, "knowledge_transfer")

    status, body = rest(
        "POST",
        f"/api/offboarding/{rid}/handover",
        token=hr,
        json_body={"successorId": "EMP-0002", "title": "Payments service runbook", "category": "knowledge"},
    )
    assert status == 200, body
    handover = body["data"]["handover"]
    assert handover["successorId"] == "EMP-0002"
    assert handover["items"]["knowledge"][0]["handoverTo"] == "EMP-0002"

    _advance(rest, hr, rid, "final_settlement")

    status, body = rest("PUT", f"/api/offboarding/{rid}/settlement", token=fin, json_body={"amount": 5000})
    assert status == 200, body
    settlement = body["data"]["settlement"]
    assert settlement["finalAmount"] == 5000.0
    assert settlement["calculationStatus"] == "calculated"

    _advance(rest, hr, rid, "exit_interview")

    status, body = rest(
        "POST",
        f"/api/offboarding/{rid}/feedback",
        token=hr,
        json_body={"primaryReason": "career_growth", "overallSatisfaction": 4, "wouldRecommend": "yes"},
    )
    assert status == 200, body
    assert body["data"]["feedback"]["conductedBy"] == "USR-HRM"

    status, body = rest("POST", f"/api/offboarding/{rid}/close", token=hr, json_body={"reason": "all set"})
    assert status == 200, body
    closed = body["data"]
    assert closed["request"]["status"] == "closed"
    assert closed["request"]["completionPercentage"] == 100
    assert closed["migration"]["employeeFlipped"] is True
    assert closed["migration"]["candidateId"]

    status, body = rest("GET", f"/api/offboarding/{rid}", token=hr)
    assert status == 200
    detail = body["data"]
    assert [h["stage"] for h in detail["statusHistory"]][-1] == "closure"
    assert detail["request"]["employeeSnapshot"]["employeeId"] == "EMP-0001"
    assert detail["stageSetup"]["status"] == "done"

    # The ex-employee's remembered session no longer works.
    status, body = rest("GET", f"/api/offboarding/{rid}", token=emp)
    assert status == 401
    assert body["error"]["code"] == "AUTH_INVALID"


def test_manager_sees_only_their_reports(rest, org, login):
    hr = login("hr@acme.test")
    _initiate(rest, hr)

    status, body = rest("GET", "/api/offboarding", token=login("manager@acme.test"))
    assert status == 200
    assert body["data"]["total"] == 1

    status, body = rest("GET", "/api/offboarding", token=login("it@acme.test"))
    assert status == 200
    assert body["data"]["total"] == 1

    status, body = rest("GET", "/api/offboarding", token=login("dana@acme.test"))
    assert status == 200
    assert [r["employeeId"] for r in body["data"]["items"]] == ["EMP-0001"]


def test_tenants_are_isolated(rest, org, login, tenant_session):
    db = tenant_session("globex")
    try:
        seed_org(db)
    finally:
        db.close()

    rid = _initiate(rest, login("hr@acme.test"))["requestId"]
    globex_hr = login("hr@acme.test", tenant="globex")

    status, body = rest("GET", "/api/offboarding", token=globex_hr, tenant="globex")
    assert status == 200
    assert body["data"]["total"] == 0

    status, body = rest("GET", f"/api/offboarding/{rid}", token=globex_hr, tenant="globex")
    assert status == 404
    assert body["error"]["code"] == "NOT_FOUND"

    # A session token is only valid in the tenant that issued it.
    status, body = rest("GET", "/api/offboarding", token=globex_hr)
    assert status == 401


def test_cancel_then_reinitiate(rest, org, login):
    hr = login("hr@acme.test")
    admin = login("admin@acme.test")
    rid = _initiate(rest, hr)["requestId"]

    # Cancelling is an ADMIN-only permission; HR managers may close but not cancel.
    status, body = rest("POST", f"/api/offboarding/{rid}/cancel", token=hr, json_body={"reason": "withdrawn"})
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"

    status, body = rest("POST", f"/api/offboarding/{rid}/cancel", token=admin, json_body={"reason": "withdrawn"})
    assert status == 200, body
    assert body["data"]["request"]["status"] == "cancelled"

    status, body = rest("POST", f"/api/offboarding/{rid}/advance", token=admin, json_body={})
    assert status == 400
    assert body["error"]["code"] == "INVALID_TRANSITION"

    assert _initiate(rest, hr)["requestId"] != rid


def test_close_before_exit_interview_is_an_invalid_transition(rest, org, login):
    hr = login("hr@acme.test")
    rid = _initiate(rest, hr)["requestId"]

    status, body = rest("POST", f"/api/offboarding/{rid}/close", token=hr, json_body={})
    assert status == 400
    assert body["error"]["code"] == "INVALID_TRANSITION"
    assert body["error"]["details"] == {"fromStage": "manager_approval", "toStage": "closure"}


def test_legacy_view_and_completion(rest, org, login):
    hr = login("hr@acme.test")
    rid = _initiate(rest, hr)["requestId"]

    status, body = rest("GET", f"/api/legacy/offboarding/{rid}", token=hr)
    assert status == 200, body
    legacy = body["data"]
    assert legacy["status"] == "in-progress"
    assert legacy["currentStage"] == "exitDiscussion"
    assert legacy["deprecated"] is True

    status, body = rest("PUT", f"/api/legacy/offboarding/{rid}", token=hr, json_body={"notes": "edited"})
    assert status == 400
    assert body["error"]["code"] == "VALIDATION_ERROR"

    status, body = rest("PUT", f"/api/legacy/offboarding/{rid}", token=hr, json_body={"status": "completed"})
    assert status == 200, body
    assert body["data"]["status"] == "completed"
    assert body["data"]["currentStage"] == "success"
    assert body["data"]["migration"]["employeeFlipped"] is True

    status, body = rest("GET", "/api/legacy/offboarding", token=hr, query={"status": "completed"})
    assert status == 200
    assert [r["id"] for r in body["data"]["items"]] == [rid]


def test_outbox_replay_is_admin_only(api, org, login):
    status, body = api("OFFBOARDING_OUTBOX_REPLAY", {}, token=login("hr@acme.test"))
    assert status == 403
    assert body["error"]["code"] == "FORBIDDEN"

    status, body = api("OFFBOARDING_OUTBOX_REPLAY", {"limit": 10}, token=login("admin@acme.test"))
    assert status == 200, body
    assert body["data"]["scanned"] == 0


def test_failed_action_leaves_no_partial_writes(rest, org, login, tenant_session):
    hr = login("hr@acme.test")
    status, body = rest(
        "POST",
        "/api/offboarding",
        token=hr,
        json_body={"employeeId": "EMP-0001", "reason": "not-a-reason", "lastWorkingDay": future_lwd()},
    )
    assert status == 400
    assert body["error"]["code"] == "VALIDATION_ERROR"

    from models import AuditLog, OffboardingRequest
    from sqlalchemy import select

    db = tenant_session()
    try:
        assert db.execute(select(OffboardingRequest)).scalars().all() == []
        errors = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_ERROR")).scalars().all()
        assert [e.action for e in errors] == ["OFFBOARDING_INITIATE"]
    finally:
        db.close()


def test_notifications_wait_for_the_commit(rest, org, login, app_client):
    from unittest import mock

    from sqlalchemy.orm import Session
    from sqlalchemy.orm.exc import StaleDataError

    app, _client = app_client
    sent = app.extensions["notifier"].sent
    hr = login("hr@acme.test")

    with mock.patch.object(Session, "commit", side_effect=StaleDataError("row changed underneath")):
        status, body = rest(
            "POST",
            "/api/offboarding",
            token=hr,
            json_body={"employeeId": "EMP-0001", "reason": "voluntary_resignation", "lastWorkingDay": future_lwd()},
        )
    assert status == 409
    assert body["error"]["code"] == "CONFLICT"
    assert sent == []

    _initiate(rest, hr)
    assert [n["recipientId"] for n in sent] == ["USR-MGR"]


def test_changing_an_approved_settlement_reopens_its_approvals(rest, org, login):
    rid = _initiate(rest, login("hr@acme.test"))["requestId"]
    fin = login("finance@acme.test")
    base = f"/api/offboarding/{rid}/settlement"

    status, body = rest("PUT", base, token=fin, json_body={"amount": 5000})
    assert status == 200, body
    status, body = rest("POST", f"{base}/approvals", token=fin, json_body={"level": "finance_manager", "decision": "approve"})
    assert status == 200, body
    assert body["data"]["settlement"]["approvalStatus"] == "approved"
    status, body = rest("PUT", base, token=fin, json_body={"status": "approved"})
    assert status == 200, body
    assert body["data"]["settlement"]["calculationStatus"] == "approved"

    status, body = rest("PUT", base, token=fin, json_body={"amount": 6000})
    assert status == 200, body
    settlement = body["data"]["settlement"]
    assert settlement["finalAmount"] == 6000.0
    assert settlement["calculationStatus"] == "calculated"
    assert settlement["approvalStatus"] == "pending"
    assert [(a["level"], a["status"], a["approverId"]) for a in settlement["approvals"]] == [("finance_manager", "pending", "")]

    status, body = rest("PUT", base, token=fin, json_body={"status": "approved"})
    assert status == 400
    assert body["error"]["code"] == "VALIDATION_ERROR"
