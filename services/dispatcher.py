"""
Stage action dispatcher.

Each stage has a guard returning GuardResult(proceed, skip_reason) and a setup action.
The dispatcher evaluates the guard, runs the setup inside a SAVEPOINT and reports
a DispatchOutcome; it never moves the request itself. Auto-advance decisions are
returned to the state machine, which records them in the status history.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select

from models import Employee, OffboardingApproval, OffboardingRequest, OffboardingTask
from services import records, stage_graph
from services.task_templates import generate_tasks
from utils import AuthContext, iso_utc_now, json_loads_maybe


_log = logging.getLogger("offboarding.dispatcher")


@dataclass
class GuardResult:
    proceed: bool
    skip_reason: str = ""
    # True when the stage cannot be satisfied at all (missing approver / data);
    # False for an idempotent skip of setup that already ran.
    missing_party: bool = False


PROCEED = GuardResult(True)


@dataclass
class StageContext:
    db: Any
    request: OffboardingRequest
    employee: Optional[Employee]
    actor: str
    auth: Optional[AuthContext]
    now: str


@dataclass
class DispatchOutcome:
    stage: str
    ran: bool = False
    auto_advance: bool = False
    reason: str = ""
    error: str = ""
    result: Any = None

    @property
    def failed(self) -> bool:
        return bool(self.error) and not self.auto_advance


@dataclass(frozen=True)
class StageSetup:
    stage: str
    guard: Callable[[StageContext], GuardResult]
    setup: Callable[[StageContext], Any]
    # Skip forward when the guard reports a missing party, or when setup raises.
    auto_advance_on_skip: bool = False
    error_reason: str = ""
    # Move on as soon as setup has run (initiation).
    auto_advance_after: str = ""
    # Failures propagate instead of being logged (closure).
    critical: bool = False


def _always(_ctx: StageContext) -> GuardResult:
    return PROCEED


def _noop(_ctx: StageContext) -> None:
    return None


@dataclass
class StageDispatcher:
    users: Any
    employees: Any
    notifier: Any
    migrator: Any
    _stages: dict[str, StageSetup] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._stages = {
            s.stage: s
            for s in (
                StageSetup(
                    stage_graph.INITIATION,
                    _always,
                    _noop,
                    auto_advance_after="Offboarding initiated - auto-advancing to manager approval",
                ),
                StageSetup(
                    stage_graph.MANAGER_APPROVAL,
                    self._guard_manager_approval,
                    self._setup_manager_approval,
                    auto_advance_on_skip=True,
                    error_reason="Error in manager approval setup - auto-advancing to HR approval",
                ),
                StageSetup(
                    stage_graph.HR_APPROVAL,
                    self._guard_hr_approval,
                    self._setup_hr_approval,
                    auto_advance_on_skip=True,
                    error_reason="Error in HR approval setup - auto-advancing to finance approval",
                ),
                StageSetup(
                    stage_graph.FINANCE_APPROVAL,
                    self._guard_finance_approval,
                    self._setup_finance_approval,
                    auto_advance_on_skip=True,
                    error_reason="Error in finance approval setup - auto-advancing to checklist generation",
                ),
                StageSetup(stage_graph.CHECKLIST_GENERATION, self._guard_checklist, self._setup_checklist),
                StageSetup(stage_graph.DEPARTMENTAL_CLEARANCE, self._guard_clearance, self._setup_clearance),
                StageSetup(stage_graph.ASSET_RETURN, self._guard_asset_return, self._setup_asset_return),
                StageSetup(stage_graph.KNOWLEDGE_TRANSFER, self._guard_handover, self._setup_handover),
                StageSetup(stage_graph.FINAL_SETTLEMENT, self._guard_settlement, self._setup_settlement),
                StageSetup(stage_graph.EXIT_INTERVIEW, self._guard_feedback, self._setup_feedback),
                StageSetup(stage_graph.CLOSURE, _always, self._setup_closure, critical=True),
            )
        }

    def stage_setup(self, stage: str) -> Optional[StageSetup]:
        return self._stages.get(stage)

    def dispatch(self, db, request: OffboardingRequest, *, actor: str, auth: Optional[AuthContext] = None) -> DispatchOutcome:
        stage = str(request.currentStage or "")
        entry = self._stages.get(stage)
        if entry is None:
            return DispatchOutcome(stage=stage)

        ctx = StageContext(
            db=db,
            request=request,
            employee=self.employees.get(request.employeeId),
            actor=actor,
            auth=auth,
            now=iso_utc_now(),
        )

        if entry.critical:
            with db.begin_nested():
                result = entry.setup(ctx)
            return DispatchOutcome(stage=stage, ran=True, result=result)

        try:
            guard = entry.guard(ctx)
        except Exception as e:
            _log.warning("stage guard failed request=%s stage=%s error=%s", request.requestId, stage, e, exc_info=True)
            return self._failure(entry, request, e)

        if not guard.proceed:
            auto = bool(guard.missing_party and entry.auto_advance_on_skip)
            _log.info("stage setup skipped request=%s stage=%s reason=%s auto_advance=%s", request.requestId, stage, guard.skip_reason, auto)
            return DispatchOutcome(stage=stage, auto_advance=auto, reason=guard.skip_reason)

        try:
            with db.begin_nested():
                result = entry.setup(ctx)
        except Exception as e:
            _log.warning("stage setup failed request=%s stage=%s error=%s", request.requestId, stage, e, exc_info=True)
            return self._failure(entry, request, e)

        if entry.auto_advance_after:
            return DispatchOutcome(stage=stage, ran=True, auto_advance=True, reason=entry.auto_advance_after, result=result)
        return DispatchOutcome(stage=stage, ran=True, result=result)

    @staticmethod
    def _failure(entry: StageSetup, request: OffboardingRequest, e: Exception) -> DispatchOutcome:
        error = str(e) or type(e).__name__
        if entry.auto_advance_on_skip:
            return DispatchOutcome(stage=entry.stage, auto_advance=True, reason=entry.error_reason, error=error)
        return DispatchOutcome(stage=entry.stage, error=error)

    # --- approvals ------------------------------------------------------------

    @staticmethod
    def _pending_approval(db, request: OffboardingRequest, stage: str) -> Optional[OffboardingApproval]:
        return (
            db.execute(
                select(OffboardingApproval)
                .where(OffboardingApproval.requestId == request.requestId)
                .where(OffboardingApproval.stage == stage)
                .where(OffboardingApproval.status == "pending")
            )
            .scalars()
            .first()
        )

    def _add_approval(self, ctx: StageContext, stage: str, approver_id: str) -> OffboardingApproval:
        row = OffboardingApproval(
            requestId=ctx.request.requestId,
            stage=stage,
            approverId=approver_id,
            status="pending",
            comments="",
            decidedAt="",
            createdAt=ctx.now,
        )
        ctx.db.add(row)
        ctx.db.flush([row])
        name = ctx.employee.fullName if ctx.employee else ctx.request.employeeId
        self.notifier.notify(
            approver_id,
            f"Offboarding approval required for {name}",
            {"type": "offboarding_approval_required", "requestId": ctx.request.requestId, "stage": stage},
        )
        return row

    def _guard_manager_approval(self, ctx: StageContext) -> GuardResult:
        if self._pending_approval(ctx.db, ctx.request, "manager"):
            return GuardResult(False, "Manager approval already pending")
        if ctx.employee is None:
            return GuardResult(False, "Employee not found - auto-advancing to HR approval", missing_party=True)
        if not str(ctx.employee.reportingManagerId or "").strip():
            return GuardResult(False, "No manager assigned - auto-advancing to HR approval", missing_party=True)
        return PROCEED

    def _setup_manager_approval(self, ctx: StageContext) -> OffboardingApproval:
        return self._add_approval(ctx, "manager", str(ctx.employee.reportingManagerId).strip())

    def _guard_hr_approval(self, ctx: StageContext) -> GuardResult:
        if self._pending_approval(ctx.db, ctx.request, "hr"):
            return GuardResult(False, "HR approval already pending")
        if self.users.hr_approver() is None:
            return GuardResult(False, "No active HR manager - auto-advancing to finance approval", missing_party=True)
        return PROCEED

    def _setup_hr_approval(self, ctx: StageContext) -> OffboardingApproval:
        return self._add_approval(ctx, "hr", self.users.hr_approver().userId)

    def _guard_finance_approval(self, ctx: StageContext) -> GuardResult:
        if self._pending_approval(ctx.db, ctx.request, "finance"):
            return GuardResult(False, "Finance approval already pending")
        if self.users.finance_approver() is None:
            return GuardResult(False, "No active finance manager - auto-advancing to checklist generation", missing_party=True)
        return PROCEED

    def _setup_finance_approval(self, ctx: StageContext) -> OffboardingApproval:
        return self._add_approval(ctx, "finance", self.users.finance_approver().userId)

    # --- checklist --------------------------------------------------------------

    @staticmethod
    def _guard_checklist(ctx: StageContext) -> GuardResult:
        exists = ctx.db.execute(select(OffboardingTask.id).where(OffboardingTask.requestId == ctx.request.requestId).limit(1)).first()
        if exists:
            return GuardResult(False, "Checklist already generated")
        if ctx.employee is None:
            return GuardResult(False, "Employee not found - checklist not generated")
        return PROCEED

    @staticmethod
    def _setup_checklist(ctx: StageContext) -> int:
        tasks = generate_tasks(ctx.employee, ctx.request.lastWorkingDay)
        ctx.db.add_all(
            [
                OffboardingTask(
                    requestId=ctx.request.requestId,
                    employeeId=t.employee_id,
                    taskKey=t.task_key,
                    taskName=t.task_name,
                    taskDescription=t.task_description,
                    taskType=t.task_type,
                    department=t.department,
                    assignedTo="",
                    assignedBy=ctx.actor,
                    dueDate=t.due_date.isoformat(),
                    priority=t.priority,
                    status="pending",
                    requiresVerification=t.requires_verification,
                    checklistJson=records.dumps_json(t.checklist),
                    isAutoGenerated=True,
                    createdAt=ctx.now,
                    updatedAt=ctx.now,
                    updatedBy=ctx.actor,
                )
                for t in tasks
            ]
        )
        ctx.db.flush()
        return len(tasks)

    # --- satellites -------------------------------------------------------------

    @staticmethod
    def _guard_clearance(ctx: StageContext) -> GuardResult:
        if records.get_asset_clearance(ctx.db, ctx.request):
            return GuardResult(False, "Asset clearance already exists")
        return PROCEED

    @staticmethod
    def _setup_clearance(ctx: StageContext):
        row, _ = records.ensure_asset_clearance(ctx.db, ctx.request, now=ctx.now, actor=ctx.actor)
        return row.clearanceId

    @staticmethod
    def _assigned_assets(employee: Optional[Employee]) -> list[dict]:
        if employee is None:
            return []
        return [a for a in json_loads_maybe(employee.assignedAssetsJson, []) if isinstance(a, dict)]

    def _guard_asset_return(self, ctx: StageContext) -> GuardResult:
        if ctx.employee is None:
            return GuardResult(False, "Employee not found - no assets to collect")
        if not self._assigned_assets(ctx.employee):
            return GuardResult(False, "No assigned assets recorded")
        return PROCEED

    def _setup_asset_return(self, ctx: StageContext) -> int:
        clearance, _ = records.ensure_asset_clearance(ctx.db, ctx.request, now=ctx.now, actor=ctx.actor)
        return records.add_physical_assets(ctx.db, clearance, self._assigned_assets(ctx.employee), now=ctx.now)

    @staticmethod
    def _guard_handover(ctx: StageContext) -> GuardResult:
        if records.get_handover(ctx.db, ctx.request):
            return GuardResult(False, "Handover record already exists")
        return PROCEED

    @staticmethod
    def _setup_handover(ctx: StageContext):
        row, _ = records.ensure_handover(ctx.db, ctx.request, now=ctx.now, actor=ctx.actor)
        return row.handoverId

    @staticmethod
    def _guard_settlement(ctx: StageContext) -> GuardResult:
        if records.get_settlement(ctx.db, ctx.request):
            return GuardResult(False, "Final settlement already exists")
        return PROCEED

    @staticmethod
    def _setup_settlement(ctx: StageContext):
        row, _ = records.ensure_settlement(ctx.db, ctx.request, now=ctx.now, actor=ctx.actor)
        return row.settlementId

    @staticmethod
    def _guard_feedback(ctx: StageContext) -> GuardResult:
        if records.get_feedback(ctx.db, ctx.request):
            return GuardResult(False, "Exit feedback already exists")
        return PROCEED

    @staticmethod
    def _setup_feedback(ctx: StageContext):
        row, _ = records.ensure_feedback(ctx.db, ctx.request, now=ctx.now)
        return row.feedbackId

    # --- closure ----------------------------------------------------------------

    def _setup_closure(self, ctx: StageContext):
        return self.migrator.migrate(ctx.request, actor=ctx.actor, auth=ctx.auth)
