from __future__ import annotations

import re

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, UniqueConstraint, event

from db import Base
from utils import ValidationError


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    # Functional department (hr/it/finance/admin/security); grants department-scoped permissions.
    department = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    userStatus = Column(String, nullable=False, default="", index=True)
    authVersion = Column(Integer, nullable=False, default=0)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
EMPLOYEE_STATUSES = {"active", "on_notice", "terminated", "inactive"}


class Employee(Base):
    __tablename__ = "employees"

    employeeId = Column(String, primary_key=True)
    employeeCode = Column(String, nullable=False, default="", index=True)
    # Login identity of the employee (User.userId), empty when the employee has no account.
    userId = Column(String, nullable=False, default="", index=True)
    firstName = Column(Text, nullable=False, default="")
    lastName = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    phone = Column(String, nullable=False, default="")
    department = Column(String, nullable=False, default="", index=True)
    designation = Column(Text, nullable=False, default="")
    # User.userId of the reporting manager.
    reportingManagerId = Column(String, nullable=False, default="", index=True)
    joiningDate = Column(String, nullable=False, default="")
    salary = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default="active", index=True)
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    isExEmployee = Column(Boolean, nullable=False, default=False, index=True)
    terminatedAt = Column(String, nullable=False, default="")
    terminationReason = Column(String, nullable=False, default="")
    lastWorkingDay = Column(String, nullable=False, default="")
    # Auth hard-revocation version: bump to invalidate all existing sessions.
    auth_version = Column(Integer, nullable=False, default=0)
    assignedAssetsJson = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")

    @property
    def fullName(self) -> str:
        return " ".join(p for p in [str(self.firstName or "").strip(), str(self.lastName or "").strip()] if p)

    def validate_for_save(self) -> None:
        """Full-record validation, applied before an ORM save of the whole row."""

        problems = []
        if not str(self.firstName or "").strip():
            problems.append("firstName is required")
        email = str(self.email or "").strip()
        if email and not _EMAIL_RE.fullmatch(email):
            problems.append("email is invalid")
        if str(self.status or "") not in EMPLOYEE_STATUSES:
            problems.append(f"status '{self.status}' is invalid")
        if float(self.salary or 0) < 0:
            problems.append("salary cannot be negative")
        if problems:
            raise ValidationError("Employee record is invalid: " + "; ".join(problems), details={"employeeId": self.employeeId})


class OffboardingRequest(Base):
    __tablename__ = "offboarding_requests"

    requestId = Column(String, primary_key=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    initiatedBy = Column(String, nullable=False, default="", index=True)
    reason = Column(String, nullable=False, default="", index=True)
    reasonDetails = Column(Text, nullable=False, default="")
    lastWorkingDay = Column(String, nullable=False, default="", index=True)

    noticeGivenDays = Column(Integer, nullable=False, default=0)
    noticeRequiredDays = Column(Integer, nullable=False, default=30)
    noticeWaived = Column(Boolean, nullable=False, default=False)
    noticeWaivedBy = Column(String, nullable=False, default="")
    noticeWaivedReason = Column(Text, nullable=False, default="")

    priority = Column(String, nullable=False, default="medium", index=True)
    isUrgent = Column(Boolean, nullable=False, default=False)

    status = Column(String, nullable=False, default="initiated", index=True)
    currentStage = Column(String, nullable=False, default="initiation", index=True)
    completionPercentage = Column(Integer, nullable=False, default=0)

    assetClearanceId = Column(String, nullable=False, default="")
    handoverRecordId = Column(String, nullable=False, default="")
    settlementRecordId = Column(String, nullable=False, default="")
    feedbackRecordId = Column(String, nullable=False, default="")

    isCompleted = Column(Boolean, nullable=False, default=False, index=True)
    completedAt = Column(Text, nullable=False, default="")
    completedBy = Column(String, nullable=False, default="")
    employeeSnapshotJson = Column(Text, nullable=False, default="")

    initiatedAt = Column(Text, nullable=False, default="", index=True)
    expectedCompletionDate = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")

    # Optimistic concurrency: a stale concurrent write fails instead of skipping a stage.
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class OffboardingApproval(Base):
    __tablename__ = "offboarding_approvals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requestId = Column(String, nullable=False, default="", index=True)
    stage = Column(String, nullable=False, default="", index=True)  # manager/hr/finance
    approverId = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending/approved/rejected
    comments = Column(Text, nullable=False, default="")
    decidedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class OffboardingStatusHistory(Base):
    """Append-only status log; rows are never updated or deleted."""

    __tablename__ = "offboarding_status_history"
    __table_args__ = (UniqueConstraint("requestId", "seq", name="uq_offboarding_status_history_request_seq"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    requestId = Column(String, nullable=False, default="", index=True)
    seq = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="")
    stage = Column(String, nullable=False, default="")
    fromStage = Column(String, nullable=False, default="")
    changedBy = Column(String, nullable=False, default="")
    changedAt = Column(Text, nullable=False, default="")
    reason = Column(Text, nullable=False, default="")
    autoAdvanced = Column(Boolean, nullable=False, default=False)


@event.listens_for(OffboardingStatusHistory, "before_update")
def _history_is_append_only(_mapper, _connection, target):
    raise RuntimeError(f"status history is append-only (requestId={target.requestId}, seq={target.seq})")


@event.listens_for(OffboardingStatusHistory, "before_delete")
def _history_is_never_deleted(_mapper, _connection, target):
    raise RuntimeError(f"status history is append-only (requestId={target.requestId}, seq={target.seq})")


class OffboardingTask(Base):
    __tablename__ = "offboarding_tasks"
    __table_args__ = (UniqueConstraint("requestId", "taskKey", name="uq_offboarding_tasks_request_taskkey"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    requestId = Column(String, nullable=False, default="", index=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    taskKey = Column(String, nullable=False, default="")
    taskName = Column(Text, nullable=False, default="")
    taskDescription = Column(Text, nullable=False, default="")
    taskType = Column(String, nullable=False, default="")
    department = Column(String, nullable=False, default="", index=True)  # hr/it/finance/admin
    assignedTo = Column(String, nullable=False, default="", index=True)
    assignedBy = Column(String, nullable=False, default="")
    dueDate = Column(String, nullable=False, default="", index=True)
    priority = Column(String, nullable=False, default="medium")
    status = Column(String, nullable=False, default="pending", index=True)
    requiresVerification = Column(Boolean, nullable=False, default=False)
    checklistJson = Column(Text, nullable=False, default="")
    completionNotes = Column(Text, nullable=False, default="")
    completedBy = Column(String, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    verifiedBy = Column(String, nullable=False, default="")
    verifiedAt = Column(Text, nullable=False, default="")
    isAutoGenerated = Column(Boolean, nullable=False, default=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class AssetClearance(Base):
    __tablename__ = "asset_clearances"

    clearanceId = Column(String, primary_key=True)
    requestId = Column(String, nullable=False, unique=True, index=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    # Derived from the four item lists; never hand-set.
    overallStatus = Column(String, nullable=False, default="pending", index=True)
    completionPercentage = Column(Integer, nullable=False, default=100)
    totalRecoveryAmount = Column(Float, nullable=False, default=0.0)
    totalRepairCost = Column(Float, nullable=False, default=0.0)
    totalReplacementCost = Column(Float, nullable=False, default=0.0)
    netFinancialImpact = Column(Float, nullable=False, default=0.0)
    clearanceStartDate = Column(String, nullable=False, default="")
    expectedCompletionDate = Column(String, nullable=False, default="")
    actualCompletionDate = Column(String, nullable=False, default="")
    finalCleared = Column(Boolean, nullable=False, default=False)
    finalClearedBy = Column(String, nullable=False, default="")
    finalClearanceDate = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class ClearanceItem(Base):
    __tablename__ = "clearance_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clearanceId = Column(String, nullable=False, default="", index=True)
    category = Column(String, nullable=False, default="physical", index=True)  # physical/digital/security/property
    itemCode = Column(String, nullable=False, default="", index=True)
    itemName = Column(Text, nullable=False, default="")
    itemType = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)
    conditionAtReturn = Column(String, nullable=False, default="")
    handledBy = Column(String, nullable=False, default="")
    handledAt = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    recoveryAmount = Column(Float, nullable=False, default=0.0)
    repairCost = Column(Float, nullable=False, default=0.0)
    replacementCost = Column(Float, nullable=False, default=0.0)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class DepartmentClearance(Base):
    __tablename__ = "department_clearances"
    __table_args__ = (UniqueConstraint("requestId", "department", name="uq_department_clearances_request_department"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    requestId = Column(String, nullable=False, default="", index=True)
    clearanceId = Column(String, nullable=False, default="", index=True)
    department = Column(String, nullable=False, default="")  # hr/it/finance/admin/security
    status = Column(String, nullable=False, default="pending", index=True)  # pending/cleared/partial/issues
    clearedBy = Column(String, nullable=False, default="")
    clearanceDate = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class HandoverDetail(Base):
    __tablename__ = "handover_details"

    handoverId = Column(String, primary_key=True)
    requestId = Column(String, nullable=False, unique=True, index=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    successorId = Column(String, nullable=False, default="", index=True)
    handoverType = Column(String, nullable=False, default="complete")  # complete/partial/temporary/knowledge_only
    # Derived from the three item lists; never hand-set.
    overallStatus = Column(String, nullable=False, default="not_started", index=True)
    completionPercentage = Column(Integer, nullable=False, default=100)
    plannedStartDate = Column(String, nullable=False, default="")
    plannedCompletionDate = Column(String, nullable=False, default="")
    actualStartDate = Column(String, nullable=False, default="")
    actualCompletionDate = Column(String, nullable=False, default="")
    generalNotes = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class HandoverItem(Base):
    __tablename__ = "handover_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    handoverId = Column(String, nullable=False, default="", index=True)
    category = Column(String, nullable=False, default="project", index=True)  # project/client/knowledge
    title = Column(Text, nullable=False, default="")
    handoverTo = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)  # pending/in_progress/completed
    notes = Column(Text, nullable=False, default="")
    handoverDate = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class FinalSettlement(Base):
    __tablename__ = "final_settlements"

    settlementId = Column(String, primary_key=True)
    requestId = Column(String, nullable=False, unique=True, index=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    periodFrom = Column(String, nullable=False, default="")
    periodTo = Column(String, nullable=False, default="")

    salaryComponentsJson = Column(Text, nullable=False, default="")
    leaveEncashmentJson = Column(Text, nullable=False, default="")
    gratuityJson = Column(Text, nullable=False, default="")
    reimbursementsJson = Column(Text, nullable=False, default="")
    deductionsJson = Column(Text, nullable=False, default="")
    roundOffAdjustment = Column(Float, nullable=False, default=0.0)

    # Settlement summary; recomputed before every write.
    grossEarnings = Column(Float, nullable=False, default=0.0)
    totalDeductions = Column(Float, nullable=False, default=0.0)
    netPayable = Column(Float, nullable=False, default=0.0)
    finalAmount = Column(Float, nullable=False, default=0.0)

    calculationStatus = Column(String, nullable=False, default="draft", index=True)
    approvalStatus = Column(String, nullable=False, default="not_required", index=True)
    paymentStatus = Column(String, nullable=False, default="pending", index=True)
    paymentDate = Column(String, nullable=False, default="")
    paymentReference = Column(String, nullable=False, default="")
    calculatedBy = Column(String, nullable=False, default="")
    calculatedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class SettlementApproval(Base):
    __tablename__ = "settlement_approvals"
    __table_args__ = (UniqueConstraint("settlementId", "level", name="uq_settlement_approvals_settlement_level"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    settlementId = Column(String, nullable=False, default="", index=True)
    level = Column(String, nullable=False, default="")  # finance_team/finance_manager/hr_manager/cfo
    approverId = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="pending")
    comments = Column(Text, nullable=False, default="")
    decidedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class ExitFeedback(Base):
    __tablename__ = "exit_feedback"

    feedbackId = Column(String, primary_key=True)
    requestId = Column(String, nullable=False, unique=True, index=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    primaryReason = Column(String, nullable=False, default="")
    overallSatisfaction = Column(Integer, nullable=False, default=0)  # 1..5, 0 = unanswered
    positiveAspects = Column(Text, nullable=False, default="")
    negativeAspects = Column(Text, nullable=False, default="")
    workplaceImprovements = Column(Text, nullable=False, default="")
    wouldRecommend = Column(String, nullable=False, default="")  # yes/no/maybe
    wouldReturn = Column(String, nullable=False, default="")
    responsesJson = Column(Text, nullable=False, default="")
    completionStatus = Column(String, nullable=False, default="not_started", index=True)
    completionPercentage = Column(Integer, nullable=False, default=0)
    conductedBy = Column(String, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class TalentPool(Base):
    __tablename__ = "talent_pool"

    talentPoolId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    phone = Column(String, nullable=False, default="")
    desiredDepartment = Column(String, nullable=False, default="")
    desiredPosition = Column(Text, nullable=False, default="")
    experienceYears = Column(Integer, nullable=False, default=0)
    experienceMonths = Column(Integer, nullable=False, default=0)
    currentCTC = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, default="new", index=True)
    isExEmployee = Column(Boolean, nullable=False, default=False, index=True)
    exEmployeeId = Column(String, nullable=False, default="", index=True)
    exEmployeeCode = Column(String, nullable=False, default="", index=True)
    comments = Column(Text, nullable=False, default="")
    timelineJson = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")


class Candidate(Base):
    __tablename__ = "candidates"

    candidateId = Column(String, primary_key=True)
    firstName = Column(Text, nullable=False, default="")
    lastName = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    phone = Column(String, nullable=False, default="")
    source = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="new", index=True)
    isExEmployee = Column(Boolean, nullable=False, default=False, index=True)
    exEmployeeId = Column(String, nullable=False, default="", index=True)
    exEmployeeCode = Column(String, nullable=False, default="", index=True)
    talentPoolId = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class OffboardingIntent(Base):
    """
    Outbox row: stage setup owed for a transition.

    Written in the same flush as the transition; marked done once the stage's setup ran.
    Pending rows are replayed by OFFBOARDING_OUTBOX_REPLAY and the replay Celery task.
    """

    __tablename__ = "offboarding_intents"

    intentId = Column(String, primary_key=True)
    requestId = Column(String, nullable=False, default="", index=True)
    # Per-request order; several intents can share one createdAt millisecond.
    seq = Column(Integer, nullable=False, default=0)
    stage = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending/done/superseded
    attempts = Column(Integer, nullable=False, default=0)
    lastError = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
