from __future__ import annotations

from types import SimpleNamespace

import pytest

from services import rbac_guard as guard
from services.rbac_guard import P, Actor
from utils import PermissionDeniedError, ValidationError


def _employee(**kw):
    values = {"employeeId": "EMP-0001", "userId": "USR-EMP", "reportingManagerId": "USR-MGR", "department": "engineering"}
    values.update(kw)
    return SimpleNamespace(**values)


def _request(stage: str = "departmental_clearance"):
    return SimpleNamespace(requestId="OFB-2026-00001", currentStage=stage)


def test_department_clearance_needs_the_mapped_permission_not_manage_rights():
    hr_manager = Actor("USR-HRM", "HR_MANAGER", "hr")
    assert guard.has_permission(hr_manager.role, P.MANAGE_ALL, hr_manager.department)

    with pytest.raises(PermissionDeniedError) as exc:
        guard.require_department_clearance(hr_manager, _request(), "it")
    assert exc.value.http_status == 403
    assert exc.value.department == "it"
    assert exc.value.stage == "departmental_clearance"

    guard.require_department_clearance(hr_manager, _request(), "hr")
    guard.require_department_clearance(Actor("USR-IT", "IT_ADMIN", "it"), _request(), "it")


def test_functional_department_grants_extra_permissions():
    it_exec = Actor("USR-X", "HR_EXECUTIVE", "it")
    assert guard.can_clear_department(it_exec, "it")
    assert not guard.can_clear_department(Actor("USR-Y", "HR_EXECUTIVE", ""), "it")


def test_unknown_clearance_department_is_a_validation_error():
    with pytest.raises(ValidationError):
        guard.clearance_permission("legal")


def test_manager_approval_only_by_the_reporting_manager():
    emp = _employee()
    assert guard.can_approve(Actor("USR-MGR", "MANAGER"), "manager_approval", emp)
    assert not guard.can_approve(Actor("USR-OTHER", "MANAGER"), "manager_approval", emp)

    with pytest.raises(PermissionDeniedError) as exc:
        guard.require_approve(Actor("USR-OTHER", "MANAGER"), _request("manager_approval"), emp)
    assert "reporting manager" in exc.value.message


def test_hr_and_finance_approval_by_any_holder_of_the_permission():
    emp = _employee()
    assert guard.can_approve(Actor("USR-HR2", "HR_MANAGER", "hr"), "hr_approval", emp)
    assert not guard.can_approve(Actor("USR-HR2", "HR_MANAGER", "hr"), "finance_approval", emp)
    assert guard.can_approve(Actor("USR-FIN", "FINANCE_MANAGER", "finance"), "finance_approval", emp)
    assert not guard.can_approve(Actor("USR-MGR", "MANAGER"), "hr_approval", emp)


def test_employee_sees_only_their_own_request():
    emp = _employee()
    assert guard.can_view(Actor("USR-EMP", "EMPLOYEE"), emp)
    assert not guard.can_view(Actor("USR-SOMEONE", "EMPLOYEE"), emp)
    assert guard.is_own_request(Actor("USR-EMP", "EMPLOYEE"), emp)


def test_department_head_scope_is_their_department():
    head = Actor("USR-HEAD", "DEPARTMENT_HEAD", "engineering")
    assert guard.can_view(head, _employee())
    assert not guard.can_view(head, _employee(department="sales", reportingManagerId=""))
    assert guard.can_manage(head, _employee())
    assert not guard.can_manage(head, _employee(department="sales"))


def test_initiation_scopes():
    emp = _employee()
    assert guard.can_initiate(Actor("USR-EMP", "EMPLOYEE"), emp)
    assert not guard.can_initiate(Actor("USR-ELSE", "EMPLOYEE"), emp)
    assert guard.can_initiate(Actor("USR-MGR", "MANAGER"), emp)
    assert not guard.can_initiate(Actor("USR-OTHER", "MANAGER"), emp)
    assert guard.can_initiate(Actor("USR-HRM", "HR_MANAGER", "hr"), emp)


def test_require_permission_accepts_any_listed_permission():
    actor = Actor("USR-IT", "IT_ADMIN", "it")
    guard.require_permission(actor, P.TASK_MANAGE, _request(), _employee(), any_of=(P.TASK_COMPLETE,))
    with pytest.raises(PermissionDeniedError):
        guard.require_permission(actor, P.CLOSE, _request(), _employee())


def test_actor_normalizes_role_and_department():
    actor = guard.actor_from_auth(SimpleNamespace(userId="USR-1", role=" hr_manager ", department=" HR "))
    assert actor.role == "HR_MANAGER"
    assert actor.department == "hr"
