from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from utils import require_date


@dataclass(frozen=True)
class TaskTemplate:
    key: str
    department: str
    name: str
    description: str
    task_type: str
    days_before_lwd: int
    priority: str
    requires_verification: bool
    checklist: tuple[str, ...]


TASK_TEMPLATES: tuple[TaskTemplate, ...] = (
    TaskTemplate(
        key="HR_COLLECT_RESIGNATION_LETTER",
        department="hr",
        name="Collect resignation letter",
        description="Obtain the signed resignation letter and issue the acceptance letter",
        task_type="document_collection",
        days_before_lwd=15,
        priority="high",
        requires_verification=True,
        checklist=("Resignation letter received", "Acceptance letter issued"),
    ),
    TaskTemplate(
        key="HR_UPDATE_EMPLOYEE_STATUS",
        department="hr",
        name="Update employee status",
        description="Update the employee record and notify payroll of the separation",
        task_type="compliance_check",
        days_before_lwd=10,
        priority="high",
        requires_verification=True,
        checklist=("Employee record updated", "Payroll notified"),
    ),
    TaskTemplate(
        key="IT_REVOKE_SYSTEM_ACCESS",
        department="it",
        name="Revoke system access",
        description="Disable email, VPN and application accounts",
        task_type="access_revocation",
        days_before_lwd=1,
        priority="critical",
        requires_verification=True,
        checklist=("Email account disabled", "VPN access revoked", "Application accounts disabled"),
    ),
    TaskTemplate(
        key="IT_COLLECT_ASSETS",
        department="it",
        name="Collect IT assets",
        description="Collect laptop, peripherals and other IT equipment",
        task_type="asset_return",
        days_before_lwd=2,
        priority="high",
        requires_verification=True,
        checklist=("Laptop returned", "Peripherals returned", "Data backup confirmed"),
    ),
    TaskTemplate(
        key="FINANCE_CALCULATE_SETTLEMENT",
        department="finance",
        name="Calculate final settlement",
        description="Compute final settlement including leave encashment and recoveries",
        task_type="final_settlement",
        days_before_lwd=7,
        priority="high",
        requires_verification=True,
        checklist=("Pending reimbursements reviewed", "Advances and loans reconciled", "Settlement computed"),
    ),
    TaskTemplate(
        key="ADMIN_FACILITY_ACCESS_CLEANUP",
        department="admin",
        name="Facility access cleanup",
        description="Recover keys and passes and clear the employee's workspace",
        task_type="clearance_approval",
        days_before_lwd=1,
        priority="medium",
        requires_verification=False,
        checklist=("Office keys returned", "Parking pass returned", "Locker cleaned out"),
    ),
)


@dataclass
class GeneratedTask:
    task_key: str
    employee_id: str
    department: str
    task_name: str
    task_description: str
    task_type: str
    due_date: date
    priority: str
    requires_verification: bool
    checklist: list[dict[str, Any]] = field(default_factory=list)


def generate_tasks(employee: Any, last_working_day: Any) -> list[GeneratedTask]:
    """
    Expand the department templates for one employee. Due date = LWD - daysBeforeLWD.

    Deterministic: the same employee and LWD always produce the same task set, so
    callers can compare task keys to guard against duplicate generation.
    """

    lwd = require_date(last_working_day, "lastWorkingDay")
    employee_id = str(getattr(employee, "employeeId", "") or "")
    out: list[GeneratedTask] = []
    for t in TASK_TEMPLATES:
        out.append(
            GeneratedTask(
                task_key=t.key,
                employee_id=employee_id,
                department=t.department,
                task_name=t.name,
                task_description=t.description,
                task_type=t.task_type,
                due_date=lwd - timedelta(days=t.days_before_lwd),
                priority=t.priority,
                requires_verification=t.requires_verification,
                checklist=[{"item": label, "completed": False, "completedBy": "", "completedAt": ""} for label in t.checklist],
            )
        )
    return out
