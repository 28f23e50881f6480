"""
Fine-grained offboarding RBAC.

The router's STATIC_RBAC_PERMISSIONS decides which roles may call an action at all;
this module decides whether a given actor may perform it on a given request, taking
the request's current stage, the actor's department and the employee's reporting
line into account.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from services import stage_graph
from utils import PermissionDeniedError, ValidationError, normalize_role


class OffboardingPermission:
    INITIATE = "OFFBOARDING_INITIATE"
    INITIATE_SELF = "OFFBOARDING_INITIATE_SELF"
    INITIATE_TEAM = "OFFBOARDING_INITIATE_TEAM"
    INITIATE_DEPARTMENT = "OFFBOARDING_INITIATE_DEPARTMENT"
    INITIATE_ANY = "OFFBOARDING_INITIATE_ANY"

    MANAGE = "OFFBOARDING_MANAGE"
    MANAGE_TEAM = "OFFBOARDING_MANAGE_TEAM"
    MANAGE_DEPARTMENT = "OFFBOARDING_MANAGE_DEPARTMENT"
    MANAGE_ALL = "OFFBOARDING_MANAGE_ALL"

    APPROVE_MANAGER = "OFFBOARDING_APPROVE_MANAGER"
    APPROVE_HR = "OFFBOARDING_APPROVE_HR"
    APPROVE_FINANCE = "OFFBOARDING_APPROVE_FINANCE"
    APPROVE_FINAL = "OFFBOARDING_APPROVE_FINAL"

    VIEW_SELF = "OFFBOARDING_VIEW_SELF"
    VIEW_TEAM = "OFFBOARDING_VIEW_TEAM"
    VIEW_DEPARTMENT = "OFFBOARDING_VIEW_DEPARTMENT"
    VIEW_ALL = "OFFBOARDING_VIEW_ALL"

    TASK_ASSIGN = "OFFBOARDING_TASK_ASSIGN"
    TASK_COMPLETE = "OFFBOARDING_TASK_COMPLETE"
    TASK_VERIFY = "OFFBOARDING_TASK_VERIFY"
    TASK_MANAGE = "OFFBOARDING_TASK_MANAGE"

    CLEARANCE_HR = "OFFBOARDING_CLEARANCE_HR"
    CLEARANCE_IT = "OFFBOARDING_CLEARANCE_IT"
    CLEARANCE_FINANCE = "OFFBOARDING_CLEARANCE_FINANCE"
    CLEARANCE_ADMIN = "OFFBOARDING_CLEARANCE_ADMIN"
    CLEARANCE_SECURITY = "OFFBOARDING_CLEARANCE_SECURITY"

    ASSET_VIEW = "OFFBOARDING_ASSET_VIEW"
    ASSET_MANAGE = "OFFBOARDING_ASSET_MANAGE"
    ASSET_APPROVE = "OFFBOARDING_ASSET_APPROVE"

    SETTLEMENT_CALCULATE = "OFFBOARDING_SETTLEMENT_CALCULATE"
    SETTLEMENT_REVIEW = "OFFBOARDING_SETTLEMENT_REVIEW"
    SETTLEMENT_APPROVE = "OFFBOARDING_SETTLEMENT_APPROVE"
    SETTLEMENT_PROCESS = "OFFBOARDING_SETTLEMENT_PROCESS"

    HANDOVER_CREATE = "OFFBOARDING_HANDOVER_CREATE"
    HANDOVER_MANAGE = "OFFBOARDING_HANDOVER_MANAGE"
    HANDOVER_APPROVE = "OFFBOARDING_HANDOVER_APPROVE"

    FEEDBACK_CONDUCT = "OFFBOARDING_FEEDBACK_CONDUCT"
    FEEDBACK_VIEW = "OFFBOARDING_FEEDBACK_VIEW"
    FEEDBACK_ANALYZE = "OFFBOARDING_FEEDBACK_ANALYZE"

    CLOSE = "OFFBOARDING_CLOSE"
    REOPEN = "OFFBOARDING_REOPEN"
    CANCEL = "OFFBOARDING_CANCEL"

    REPORTS_VIEW = "OFFBOARDING_REPORTS_VIEW"
    REPORTS_EXPORT = "OFFBOARDING_REPORTS_EXPORT"
    ANALYTICS_VIEW = "OFFBOARDING_ANALYTICS_VIEW"


P = OffboardingPermission

OFFBOARDING_ROLES = (
    "ADMIN",
    "HR_MANAGER",
    "HR_EXECUTIVE",
    "FINANCE_MANAGER",
    "FINANCE_EXECUTIVE",
    "IT_ADMIN",
    "MANAGER",
    "DEPARTMENT_HEAD",
    "EMPLOYEE",
)

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "ADMIN": frozenset({
        P.INITIATE_ANY, P.MANAGE_ALL, P.APPROVE_FINAL, P.VIEW_ALL, P.TASK_MANAGE,
        P.CLEARANCE_HR, P.CLEARANCE_IT, P.CLEARANCE_FINANCE, P.CLEARANCE_ADMIN,
        P.ASSET_MANAGE, P.SETTLEMENT_APPROVE, P.HANDOVER_APPROVE, P.FEEDBACK_ANALYZE,
        P.CLOSE, P.REOPEN, P.CANCEL, P.REPORTS_EXPORT, P.ANALYTICS_VIEW,
    }),
    "HR_MANAGER": frozenset({
        P.INITIATE_ANY, P.MANAGE_ALL, P.APPROVE_HR, P.VIEW_ALL, P.TASK_ASSIGN, P.TASK_MANAGE,
        P.CLEARANCE_HR, P.ASSET_VIEW, P.SETTLEMENT_REVIEW, P.HANDOVER_MANAGE,
        P.FEEDBACK_CONDUCT, P.FEEDBACK_VIEW, P.FEEDBACK_ANALYZE, P.CLOSE,
        P.REPORTS_VIEW, P.REPORTS_EXPORT, P.ANALYTICS_VIEW,
    }),
    "HR_EXECUTIVE": frozenset({
        P.INITIATE, P.MANAGE, P.VIEW_ALL, P.TASK_ASSIGN, P.TASK_COMPLETE, P.CLEARANCE_HR,
        P.ASSET_VIEW, P.HANDOVER_CREATE, P.FEEDBACK_CONDUCT, P.FEEDBACK_VIEW, P.REPORTS_VIEW,
    }),
    "FINANCE_MANAGER": frozenset({
        P.VIEW_ALL, P.APPROVE_FINANCE, P.TASK_COMPLETE, P.CLEARANCE_FINANCE,
        P.SETTLEMENT_CALCULATE, P.SETTLEMENT_REVIEW, P.SETTLEMENT_APPROVE, P.SETTLEMENT_PROCESS,
        P.REPORTS_VIEW, P.REPORTS_EXPORT,
    }),
    "FINANCE_EXECUTIVE": frozenset({
        P.VIEW_ALL, P.TASK_COMPLETE, P.CLEARANCE_FINANCE, P.SETTLEMENT_CALCULATE,
        P.SETTLEMENT_REVIEW, P.REPORTS_VIEW,
    }),
    "IT_ADMIN": frozenset({
        P.VIEW_DEPARTMENT, P.TASK_COMPLETE, P.TASK_VERIFY, P.CLEARANCE_IT,
        P.ASSET_MANAGE, P.ASSET_APPROVE,
    }),
    "MANAGER": frozenset({
        P.INITIATE_TEAM, P.MANAGE_TEAM, P.APPROVE_MANAGER, P.VIEW_TEAM,
        P.HANDOVER_APPROVE, P.FEEDBACK_CONDUCT,
    }),
    "DEPARTMENT_HEAD": frozenset({
        P.INITIATE_DEPARTMENT, P.MANAGE_DEPARTMENT, P.APPROVE_MANAGER, P.VIEW_DEPARTMENT,
        P.TASK_ASSIGN, P.HANDOVER_APPROVE, P.REPORTS_VIEW,
    }),
    "EMPLOYEE": frozenset({P.INITIATE_SELF, P.VIEW_SELF, P.HANDOVER_CREATE, P.FEEDBACK_VIEW}),
}

# Permissions granted by the actor's functional department, on top of the role matrix.
DEPARTMENT_PERMISSIONS: dict[str, frozenset[str]] = {
    "hr": frozenset({P.CLEARANCE_HR, P.FEEDBACK_CONDUCT}),
    "finance": frozenset({P.CLEARANCE_FINANCE, P.SETTLEMENT_CALCULATE}),
    "it": frozenset({P.CLEARANCE_IT, P.ASSET_MANAGE}),
    "admin": frozenset({P.CLEARANCE_ADMIN, P.CLEARANCE_SECURITY}),
}

CLEARANCE_PERMISSION_BY_DEPARTMENT: dict[str, str] = {
    "hr": P.CLEARANCE_HR,
    "it": P.CLEARANCE_IT,
    "finance": P.CLEARANCE_FINANCE,
    "admin": P.CLEARANCE_ADMIN,
    "security": P.CLEARANCE_SECURITY,
}

ROLE_HIERARCHY: dict[str, int] = {
    "ADMIN": 1,
    "HR_MANAGER": 2,
    "FINANCE_MANAGER": 2,
    "DEPARTMENT_HEAD": 3,
    "MANAGER": 4,
    "HR_EXECUTIVE": 5,
    "FINANCE_EXECUTIVE": 5,
    "IT_ADMIN": 5,
    "EMPLOYEE": 6,
}

_APPROVAL_PERMISSION_BY_STAGE = {
    stage_graph.MANAGER_APPROVAL: P.APPROVE_MANAGER,
    stage_graph.HR_APPROVAL: P.APPROVE_HR,
    stage_graph.FINANCE_APPROVAL: P.APPROVE_FINANCE,
}

_VIEW_PERMISSIONS = (P.VIEW_ALL, P.VIEW_DEPARTMENT, P.VIEW_TEAM, P.VIEW_SELF)
_MANAGE_PERMISSIONS = (P.MANAGE_ALL, P.MANAGE, P.MANAGE_DEPARTMENT, P.MANAGE_TEAM)


@dataclass
class Actor:
    """The authenticated caller as the guard sees it."""

    user_id: str
    role: str
    department: str = ""

    def __post_init__(self):
        self.role = normalize_role(self.role)
        self.department = str(self.department or "").strip().lower()


def actor_from_auth(auth: Any) -> Actor:
    return Actor(
        user_id=str(getattr(auth, "userId", "") or ""),
        role=str(getattr(auth, "role", "") or ""),
        department=str(getattr(auth, "department", "") or ""),
    )


def permissions_for(role: str, department: str = "") -> frozenset[str]:
    perms = set(ROLE_PERMISSIONS.get(normalize_role(role), frozenset()))
    perms |= DEPARTMENT_PERMISSIONS.get(str(department or "").strip().lower(), frozenset())
    return frozenset(perms)


def has_permission(role: str, permission: str, department: str = "") -> bool:
    return permission in permissions_for(role, department)


def is_own_request(actor: Actor, employee: Any) -> bool:
    if employee is None:
        return False
    return actor.user_id and actor.user_id in {str(employee.userId or ""), str(employee.employeeId or "")}


def _is_reporting_manager(actor: Actor, employee: Any) -> bool:
    if employee is None or not actor.user_id:
        return False
    return str(employee.reportingManagerId or "") == actor.user_id


def _same_department(actor: Actor, employee: Any) -> bool:
    if employee is None or not actor.department:
        return False
    return str(employee.department or "").strip().lower() == actor.department


def can_access_request(actor: Actor, employee: Any) -> bool:
    """Scope check: is the request's employee within the actor's visibility."""

    if actor.role in {"ADMIN", "HR_MANAGER"}:
        return True
    if actor.role == "EMPLOYEE":
        return bool(is_own_request(actor, employee))
    if actor.role == "MANAGER":
        return _is_reporting_manager(actor, employee) or bool(is_own_request(actor, employee))
    if actor.role == "DEPARTMENT_HEAD":
        return _same_department(actor, employee) or _is_reporting_manager(actor, employee)
    perms = permissions_for(actor.role, actor.department)
    if P.VIEW_ALL in perms:
        return True
    if actor.department:
        return True
    return bool(is_own_request(actor, employee))


def can_view(actor: Actor, employee: Any) -> bool:
    perms = permissions_for(actor.role, actor.department)
    if not any(p in perms for p in _VIEW_PERMISSIONS):
        return False
    return can_access_request(actor, employee)


def can_manage(actor: Actor, employee: Any) -> bool:
    perms = permissions_for(actor.role, actor.department)
    if P.MANAGE_ALL in perms or P.MANAGE in perms:
        return True
    if P.MANAGE_DEPARTMENT in perms and _same_department(actor, employee):
        return True
    if P.MANAGE_TEAM in perms and _is_reporting_manager(actor, employee):
        return True
    return False


def can_perform_action(actor: Actor, permission: str, employee: Any) -> bool:
    """A permission check combined with the request-scope check."""

    return has_permission(actor.role, permission, actor.department) and can_access_request(actor, employee)


def can_initiate(actor: Actor, employee: Any) -> bool:
    perms = permissions_for(actor.role, actor.department)
    if is_own_request(actor, employee):
        return P.INITIATE_SELF in perms or P.INITIATE_ANY in perms
    if _is_reporting_manager(actor, employee) and P.INITIATE_TEAM in perms:
        return True
    if _same_department(actor, employee) and P.INITIATE_DEPARTMENT in perms:
        return True
    return P.INITIATE_ANY in perms or P.INITIATE in perms


def approval_permission_for_stage(stage: str) -> str:
    return _APPROVAL_PERMISSION_BY_STAGE.get(stage, P.APPROVE_FINAL)


def can_approve(actor: Actor, stage: str, employee: Any) -> bool:
    """
    manager_approval: only the employee's actual reporting manager.
    hr_approval / finance_approval: the functional permission, irrespective of identity.
    Any other stage: the final-approval permission.
    """

    permission = approval_permission_for_stage(stage)
    if not has_permission(actor.role, permission, actor.department):
        return False
    if stage == stage_graph.MANAGER_APPROVAL:
        return _is_reporting_manager(actor, employee)
    return True


def clearance_permission(department: str) -> str:
    dep = str(department or "").strip().lower()
    perm = CLEARANCE_PERMISSION_BY_DEPARTMENT.get(dep)
    if not perm:
        raise ValidationError(
            f"Invalid department: {department}",
            details={"allowed": sorted(CLEARANCE_PERMISSION_BY_DEPARTMENT)},
        )
    return perm


def can_clear_department(actor: Actor, department: str) -> bool:
    """Department clearance needs the mapped permission; general manage rights do not count."""

    return has_permission(actor.role, clearance_permission(department), actor.department)


def _deny(actor: Actor, action: str, *, stage: str = "", department: str = "", message: str = ""):
    raise PermissionDeniedError(
        message or f"{actor.role or 'UNKNOWN'} is not allowed to {action}",
        role=actor.role,
        action=action,
        stage=stage,
        department=department or actor.department,
    )


def require_view(actor: Actor, request: Any, employee: Any) -> None:
    if not can_view(actor, employee):
        _deny(actor, "view offboarding request", stage=str(getattr(request, "currentStage", "") or ""))


def require_initiate(actor: Actor, employee: Any) -> None:
    if not can_initiate(actor, employee):
        _deny(actor, "initiate offboarding for this employee", stage=stage_graph.INITIATION)


def require_manage(actor: Actor, request: Any, employee: Any, action: str = "manage offboarding request") -> None:
    if not can_manage(actor, employee):
        _deny(actor, action, stage=str(getattr(request, "currentStage", "") or ""))


def require_approve(actor: Actor, request: Any, employee: Any) -> None:
    stage = str(getattr(request, "currentStage", "") or "")
    if not can_approve(actor, stage, employee):
        if stage == stage_graph.MANAGER_APPROVAL and has_permission(actor.role, P.APPROVE_MANAGER, actor.department):
            _deny(actor, "approve", stage=stage, message="Only the employee's reporting manager can approve this stage")
        _deny(actor, "approve", stage=stage)


def require_department_clearance(actor: Actor, request: Any, department: str) -> None:
    dep = str(department or "").strip().lower()
    if not can_clear_department(actor, dep):
        _deny(
            actor,
            f"clear department '{dep}'",
            stage=str(getattr(request, "currentStage", "") or ""),
            department=dep,
            message=f"Missing {clearance_permission(dep)} for {dep} clearance",
        )


def require_permission(actor: Actor, permission: str, request: Optional[Any] = None, employee: Any = None, *, any_of: tuple[str, ...] = ()) -> None:
    wanted = (permission,) + tuple(any_of)
    if request is not None and not can_access_request(actor, employee):
        _deny(actor, permission, stage=str(getattr(request, "currentStage", "") or ""))
    if not any(has_permission(actor.role, p, actor.department) for p in wanted):
        _deny(actor, permission, stage=str(getattr(request, "currentStage", "") or "") if request is not None else "")
