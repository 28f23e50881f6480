from __future__ import annotations

from typing import Optional

from sqlalchemy import select

from models import Employee, User
from utils import NotFoundError


class EmployeeDirectory:
    """Employee lookups scoped to one tenant session."""

    def __init__(self, db):
        self.db = db

    def get(self, employee_id: str) -> Optional[Employee]:
        eid = str(employee_id or "").strip()
        if not eid:
            return None
        return self.db.execute(select(Employee).where(Employee.employeeId == eid)).scalar_one_or_none()

    def require(self, employee_id: str) -> Employee:
        emp = self.get(employee_id)
        if not emp:
            raise NotFoundError("Employee not found", details={"employeeId": str(employee_id or "")})
        return emp

    def lock(self, employee_id: str) -> Optional[Employee]:
        eid = str(employee_id or "").strip()
        if not eid:
            return None
        return (
            self.db.execute(select(Employee).where(Employee.employeeId == eid).with_for_update(of=Employee))
            .scalars()
            .first()
        )

    def by_user_id(self, user_id: str) -> Optional[Employee]:
        uid = str(user_id or "").strip()
        if not uid:
            return None
        return self.db.execute(select(Employee).where(Employee.userId == uid)).scalars().first()


class UserDirectory:
    """Role-holder lookups used to pick approvers."""

    def __init__(self, db):
        self.db = db

    def get(self, user_id: str) -> Optional[User]:
        uid = str(user_id or "").strip()
        if not uid:
            return None
        return self.db.execute(select(User).where(User.userId == uid)).scalar_one_or_none()

    def active_by_role(self, role: str) -> list[User]:
        return (
            self.db.execute(
                select(User)
                .where(User.role == str(role or "").upper())
                .where(User.status == "ACTIVE")
                .order_by(User.createdAt.asc(), User.userId.asc())
            )
            .scalars()
            .all()
        )

    def first_active(self, role: str) -> Optional[User]:
        rows = self.active_by_role(role)
        return rows[0] if rows else None

    def hr_approver(self) -> Optional[User]:
        return self.first_active("HR_MANAGER")

    def finance_approver(self) -> Optional[User]:
        return self.first_active("FINANCE_MANAGER")
