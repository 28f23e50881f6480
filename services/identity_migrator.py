"""
Closure step: convert an active employee into an ex-employee and seed re-hire records.

The routine is idempotent. Every sub-step checks whether it already ran, so a
re-invocation after a partial failure resumes only what is missing:

1. lock the employee (missing employee is fatal)
2. snapshot the record onto the request (only if no snapshot exists)
3. flip the employee to terminated / ex-employee (fatal on failure)
4. revoke sessions, seed TalentPool and Candidate (best-effort)
5. close the request
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_audit, next_prefixed_id
from auth import revoke_user_sessions
from models import Candidate, Employee, OffboardingRequest, TalentPool
from services import stage_graph
from services.directory import EmployeeDirectory
from services.notifier import run_non_critical
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, json_loads_maybe, parse_date_maybe, today_utc


_log = logging.getLogger("offboarding.migrator")


def calculate_experience(start: Any, end: Any) -> tuple[int, int]:
    """Whole years and months between two dates; a partial month does not count."""

    s = parse_date_maybe(start)
    e = parse_date_maybe(end)
    if not s or not e or e < s:
        return 0, 0
    years = e.year - s.year
    months = e.month - s.month
    if months < 0:
        years -= 1
        months += 12
    if e.day < s.day:
        months -= 1
        if months < 0:
            years -= 1
            months += 12
    return max(0, years), max(0, months)


@dataclass
class MigrationResult:
    employee_id: str
    already_migrated: bool = False
    snapshot_written: bool = False
    employee_flipped: bool = False
    used_fallback_update: bool = False
    sessions_revoked: int = 0
    talent_pool_id: str = ""
    candidate_id: str = ""
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "employeeId": self.employee_id,
            "alreadyMigrated": self.already_migrated,
            "snapshotWritten": self.snapshot_written,
            "employeeFlipped": self.employee_flipped,
            "usedFallbackUpdate": self.used_fallback_update,
            "sessionsRevoked": self.sessions_revoked,
            "talentPoolId": self.talent_pool_id,
            "candidateId": self.candidate_id,
            "warnings": list(self.warnings),
        }


class IdentityMigrator:
    def __init__(self, db, notifier, *, employees: Optional[EmployeeDirectory] = None):
        self.db = db
        self.notifier = notifier
        self.employees = employees or EmployeeDirectory(db)

    def migrate(self, request: OffboardingRequest, *, actor: str, auth: Optional[AuthContext] = None) -> MigrationResult:
        db = self.db
        emp = self.employees.lock(request.employeeId)
        if not emp:
            raise NotFoundError("Employee not found", details={"employeeId": request.employeeId})

        result = MigrationResult(employee_id=str(emp.employeeId))
        now = iso_utc_now()

        if emp.isExEmployee:
            pool = self._find_talent_pool(emp)
            cand = self._find_candidate(emp)
            if pool and cand:
                result.already_migrated = True
                result.talent_pool_id = pool.talentPoolId
                result.candidate_id = cand.candidateId
                self._close_request(request, actor=actor, now=now)
                _log.info("employee already migrated employee=%s request=%s", emp.employeeId, request.requestId)
                return result
        else:
            if not str(request.employeeSnapshotJson or "").strip():
                request.employeeSnapshotJson = json.dumps(self._snapshot(emp, request), default=str, separators=(",", ":"))
                result.snapshot_written = True
            self._flip_employee(emp, request, result, now=now)

            revoked = run_non_critical(
                "revoke_sessions",
                lambda: self._revoke_access(emp, actor=actor),
                db=db,
            )
            if revoked.ok:
                result.sessions_revoked = int(revoked.result or 0)
            else:
                result.warnings.append(f"revoke_sessions: {revoked.error}")

        years, months = calculate_experience(emp.joiningDate, request.lastWorkingDay or today_utc())

        pool_outcome = run_non_critical("talent_pool", lambda: self._ensure_talent_pool(emp, request, years, months, actor=actor, now=now), db=db)
        if pool_outcome.ok:
            result.talent_pool_id = pool_outcome.result or ""
        else:
            result.warnings.append(f"talent_pool: {pool_outcome.error}")

        cand_outcome = run_non_critical(
            "candidate",
            lambda: self._ensure_candidate(emp, result.talent_pool_id, actor=actor, now=now),
            db=db,
        )
        if cand_outcome.ok:
            result.candidate_id = cand_outcome.result or ""
        else:
            result.warnings.append(f"candidate: {cand_outcome.error}")

        self.notifier.notify(
            str(request.initiatedBy or actor),
            f"Offboarding completed for {emp.fullName or emp.employeeId}",
            {"type": "offboarding_completed", "requestId": request.requestId, "employeeId": emp.employeeId},
        )

        self._close_request(request, actor=actor, now=now)

        append_audit(
            db,
            entityType="EMPLOYEE",
            entityId=str(emp.employeeId),
            action="EMPLOYEE_OFFBOARDED",
            stageTag="OFFBOARDING_CLOSURE",
            actor=auth,
            at=now,
            meta={"requestId": request.requestId, **result.as_dict()},
        )
        _log.info(
            "employee migrated employee=%s request=%s fallback=%s talent_pool=%s candidate=%s warnings=%s",
            emp.employeeId,
            request.requestId,
            result.used_fallback_update,
            result.talent_pool_id,
            result.candidate_id,
            len(result.warnings),
        )
        return result

    # --- steps ------------------------------------------------------------------

    @staticmethod
    def _snapshot(emp: Employee, request: OffboardingRequest) -> dict[str, Any]:
        return {
            "employeeId": emp.employeeId,
            "employeeCode": emp.employeeCode,
            "firstName": emp.firstName,
            "lastName": emp.lastName,
            "email": emp.email,
            "phone": emp.phone,
            "joiningDate": emp.joiningDate,
            "designation": emp.designation,
            "department": emp.department,
            "reportingManagerId": emp.reportingManagerId,
            "salary": float(emp.salary or 0),
            "isActive": bool(emp.isActive),
            "originalStatus": emp.status,
            "createdBy": emp.createdBy,
            "createdAt": emp.createdAt,
            "updatedAt": emp.updatedAt,
            "terminationReason": request.reason,
            "terminationDetails": request.reasonDetails,
            "lastWorkingDay": request.lastWorkingDay,
            "snapshotAt": iso_utc_now(),
        }

    def _termination_values(self, request: OffboardingRequest, emp: Employee, now: str) -> dict[str, Any]:
        lwd = parse_date_maybe(request.lastWorkingDay)
        return {
            "isExEmployee": True,
            "isActive": False,
            "status": "terminated",
            "terminatedAt": lwd.isoformat() if lwd else now,
            "terminationReason": str(request.reason or "") or "Offboarding completed",
            "lastWorkingDay": lwd.isoformat() if lwd else "",
        }

    def _flip_employee(self, emp: Employee, request: OffboardingRequest, result: MigrationResult, *, now: str) -> None:
        values = self._termination_values(request, emp, now)
        try:
            with self.db.begin_nested():
                for k, v in values.items():
                    setattr(emp, k, v)
                emp.updatedAt = now
                emp.validate_for_save()
                self.db.flush([emp])
            result.employee_flipped = True
            return
        except (ValidationError, IntegrityError) as e:
            _log.warning("employee save failed, falling back to field update employee=%s error=%s", emp.employeeId, e)

        # The savepoint rollback expired the instance; write only the termination fields.
        res = self.db.execute(
            update(Employee)
            .where(Employee.employeeId == emp.employeeId)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            raise RuntimeError(f"Failed to mark employee {emp.employeeId} as ex-employee")
        self.db.refresh(emp)
        if not emp.isExEmployee:
            raise RuntimeError(f"Failed to mark employee {emp.employeeId} as ex-employee")
        result.employee_flipped = True
        result.used_fallback_update = True

    def _revoke_access(self, emp: Employee, *, actor: str) -> int:
        """Bumps auth_version so in-flight tokens fail, then revokes stored sessions."""

        self.db.execute(
            update(Employee)
            .where(Employee.employeeId == emp.employeeId)
            .values(auth_version=func.coalesce(Employee.auth_version, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(emp, ["auth_version"])
        return revoke_user_sessions(self.db, user_id=str(emp.userId or emp.employeeId), revoked_by=actor)

    def _find_talent_pool(self, emp: Employee) -> Optional[TalentPool]:
        clauses = [TalentPool.exEmployeeId == emp.employeeId]
        if str(emp.employeeCode or "").strip():
            clauses.append(TalentPool.exEmployeeCode == emp.employeeCode)
        return self.db.execute(select(TalentPool).where(TalentPool.isExEmployee == True).where(or_(*clauses))).scalars().first()  # noqa: E712

    def _find_candidate(self, emp: Employee) -> Optional[Candidate]:
        clauses = [Candidate.exEmployeeId == emp.employeeId]
        if str(emp.employeeCode or "").strip():
            clauses.append(Candidate.exEmployeeCode == emp.employeeCode)
        email = str(emp.email or "").strip()
        if email:
            clauses.append((Candidate.email == email) & (Candidate.isExEmployee == True))  # noqa: E712
        return self.db.execute(select(Candidate).where(or_(*clauses))).scalars().first()

    def _ensure_talent_pool(self, emp: Employee, request: OffboardingRequest, years: int, months: int, *, actor: str, now: str) -> str:
        existing = self._find_talent_pool(emp)
        if existing:
            return existing.talentPoolId

        dept = str(emp.department or "") or "General"
        reason = str(request.reason or "")
        timeline = [
            {
                "action": "Added from Offboarding",
                "description": (
                    f"Employee offboarding completed. Previous employee code: {emp.employeeCode}. "
                    f"Experience: {years} years {months} months."
                ),
                "timestamp": now,
            }
        ]
        row = TalentPool(
            talentPoolId=f"TP-{os.urandom(8).hex()}",
            name=emp.fullName,
            email=str(emp.email or ""),
            phone=str(emp.phone or ""),
            desiredDepartment=dept,
            desiredPosition=str(emp.designation or "") or "Previous Role",
            experienceYears=years,
            experienceMonths=months,
            currentCTC=float(emp.salary or 0),
            status="new",
            isExEmployee=True,
            exEmployeeId=str(emp.employeeId),
            exEmployeeCode=str(emp.employeeCode or ""),
            comments=f"Ex-employee from {dept} department." + (f" Reason: {reason}" if reason else ""),
            timelineJson=json.dumps(timeline, separators=(",", ":")),
            createdAt=now,
            createdBy=actor,
        )
        self.db.add(row)
        self.db.flush([row])
        return row.talentPoolId

    def _ensure_candidate(self, emp: Employee, talent_pool_id: str, *, actor: str, now: str) -> str:
        first = str(emp.firstName or "").strip()
        last = str(emp.lastName or "").strip()

        existing = self._find_candidate(emp)
        if existing:
            if existing.firstName != first or existing.lastName != last:
                existing.firstName = first
                existing.lastName = last
                existing.updatedAt = now
                existing.updatedBy = actor
            return existing.candidateId

        ids = [str(x or "") for x in self.db.execute(select(Candidate.candidateId).where(Candidate.candidateId.like("CAND%"))).scalars().all()]
        cid = next_prefixed_id(self.db, counter_key="CANDIDATE", prefix="CAND", pad=5, existing_ids=ids)
        row = Candidate(
            candidateId=cid,
            firstName=first,
            lastName=last,
            email=str(emp.email or "").strip(),
            phone=str(emp.phone or "").strip(),
            source="internal",
            status="active",
            isExEmployee=True,
            exEmployeeId=str(emp.employeeId),
            exEmployeeCode=str(emp.employeeCode or ""),
            talentPoolId=talent_pool_id,
            createdAt=now,
            createdBy=actor,
            updatedAt=now,
            updatedBy=actor,
        )
        self.db.add(row)
        self.db.flush([row])
        return cid

    @staticmethod
    def _close_request(request: OffboardingRequest, *, actor: str, now: str) -> None:
        request.status = stage_graph.STATUS_CLOSED
        request.currentStage = stage_graph.CLOSURE
        request.completionPercentage = 100
        if not request.isCompleted:
            request.isCompleted = True
            request.completedAt = now
            request.completedBy = actor
        request.updatedAt = now
        request.updatedBy = actor


def employee_snapshot(request: OffboardingRequest) -> dict[str, Any]:
    return json_loads_maybe(request.employeeSnapshotJson, {})

