"""
Offboarding workflow state machine.

Owns the stage graph transitions of an OffboardingRequest: every stage change goes
through `_move`, which derives the status, appends the status history and writes
an audit row. Stage setup is delegated to the StageDispatcher through an outbox
intent so a setup that failed can be replayed later.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_audit, next_prefixed_id
from models import OffboardingApproval, OffboardingIntent, OffboardingRequest, OffboardingStatusHistory
from services import outbox, stage_graph
from services.directory import EmployeeDirectory, UserDirectory
from services.dispatcher import DispatchOutcome, StageDispatcher
from services.identity_migrator import IdentityMigrator, MigrationResult
from services.notifier import LoggingNotifier
from utils import (
    AuthContext,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    iso_utc_now,
    require_date,
    today_utc,
)


_log = logging.getLogger("offboarding.workflow")

SYSTEM_ACTOR = "SYSTEM"

OFFBOARDING_REASONS = (
    "voluntary_resignation",
    "involuntary_termination",
    "retirement",
    "contract_end",
    "layoff",
    "performance_issues",
    "misconduct",
    "mutual_agreement",
    "other",
)
PRIORITIES = ("low", "medium", "high", "urgent")

CLOSE_SOURCE_WORKFLOW = "workflow"
CLOSE_SOURCE_LEGACY = "legacy"


@dataclass
class TransitionResult:
    request: OffboardingRequest
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    migration: Optional[MigrationResult] = None

    def outcomes_as_dicts(self) -> list[dict[str, Any]]:
        return [
            {"stage": o.stage, "ran": o.ran, "autoAdvanced": o.auto_advance, "reason": o.reason, "error": o.error}
            for o in self.outcomes
        ]


@dataclass
class IntentReplay:
    status: str
    error: str = ""


class OffboardingWorkflow:
    def __init__(
        self,
        db,
        *,
        tenant_id: str = "",
        notifier=None,
        users: Optional[UserDirectory] = None,
        employees: Optional[EmployeeDirectory] = None,
        dispatcher: Optional[StageDispatcher] = None,
        migrator: Optional[IdentityMigrator] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id or str(db.info.get("tenant_id", "") or "")
        self.notifier = notifier or LoggingNotifier()
        self.employees = employees or EmployeeDirectory(db)
        self.users = users or UserDirectory(db)
        self.migrator = migrator or IdentityMigrator(db, self.notifier, employees=self.employees)
        self.dispatcher = dispatcher or StageDispatcher(
            users=self.users,
            employees=self.employees,
            notifier=self.notifier,
            migrator=self.migrator,
        )

    # --- loading ----------------------------------------------------------------

    def get_request(self, request_id: str) -> OffboardingRequest:
        rid = str(request_id or "").strip()
        row = self.db.execute(select(OffboardingRequest).where(OffboardingRequest.requestId == rid)).scalar_one_or_none()
        if not row:
            raise NotFoundError("Offboarding request not found", details={"requestId": rid})
        return row

    def lock_request(self, request_id: str) -> OffboardingRequest:
        rid = str(request_id or "").strip()
        row = (
            self.db.execute(
                select(OffboardingRequest).where(OffboardingRequest.requestId == rid).with_for_update(of=OffboardingRequest)
            )
            .scalars()
            .first()
        )
        if not row:
            raise NotFoundError("Offboarding request not found", details={"requestId": rid})
        return row

    def active_request_for(self, employee_id: str) -> Optional[OffboardingRequest]:
        return (
            self.db.execute(
                select(OffboardingRequest)
                .where(OffboardingRequest.employeeId == employee_id)
                .where(OffboardingRequest.status.notin_(stage_graph.TERMINAL_STATUSES))
            )
            .scalars()
            .first()
        )

    def history(self, request_id: str) -> list[OffboardingStatusHistory]:
        return (
            self.db.execute(
                select(OffboardingStatusHistory)
                .where(OffboardingStatusHistory.requestId == request_id)
                .order_by(OffboardingStatusHistory.seq.asc())
            )
            .scalars()
            .all()
        )

    def approvals(self, request_id: str) -> list[OffboardingApproval]:
        return (
            self.db.execute(
                select(OffboardingApproval).where(OffboardingApproval.requestId == request_id).order_by(OffboardingApproval.id.asc())
            )
            .scalars()
            .all()
        )

    # --- initiation -------------------------------------------------------------

    def _new_request_id(self) -> str:
        year = datetime.now(timezone.utc).strftime("%Y")
        prefix = f"OFB-{year}-"
        existing = [
            str(x or "")
            for x in self.db.execute(
                select(OffboardingRequest.requestId).where(OffboardingRequest.requestId.like(f"{prefix}%"))
            ).scalars().all()
        ]
        return next_prefixed_id(self.db, counter_key=f"OFFBOARDING_{year}", prefix=prefix, pad=5, existing_ids=existing)

    def initiate(
        self,
        *,
        employee_id: str,
        reason: str,
        last_working_day: Any,
        actor: str,
        auth: Optional[AuthContext] = None,
        reason_details: str = "",
        priority: str = "medium",
        notice_required_days: Optional[int] = None,
        notice_waived: bool = False,
        notice_waived_reason: str = "",
    ) -> TransitionResult:
        reason = str(reason or "").strip().lower()
        if reason not in OFFBOARDING_REASONS:
            raise ValidationError(f"Invalid reason: {reason}", details={"allowed": list(OFFBOARDING_REASONS)})
        priority = str(priority or "medium").strip().lower()
        if priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority: {priority}", details={"allowed": list(PRIORITIES)})
        lwd = require_date(last_working_day, "lastWorkingDay")

        emp = self.employees.require(employee_id)
        if emp.isExEmployee or str(emp.status or "") == "terminated":
            raise ValidationError("Employee is already an ex-employee", details={"employeeId": emp.employeeId})
        if self.active_request_for(emp.employeeId):
            raise ConflictError("An active offboarding request already exists for this employee", details={"employeeId": emp.employeeId})

        required = 30 if notice_required_days is None else int(notice_required_days)
        if required < 0 or required > 365:
            raise ValidationError("Invalid noticeRequiredDays")

        now = iso_utc_now()
        request = OffboardingRequest(
            requestId=self._new_request_id(),
            employeeId=emp.employeeId,
            initiatedBy=actor,
            reason=reason,
            reasonDetails=str(reason_details or ""),
            lastWorkingDay=lwd.isoformat(),
            noticeGivenDays=max(0, (lwd - today_utc()).days),
            noticeRequiredDays=required,
            noticeWaived=bool(notice_waived),
            noticeWaivedBy=actor if notice_waived else "",
            noticeWaivedReason=str(notice_waived_reason or "") if notice_waived else "",
            priority=priority,
            isUrgent=priority == "urgent",
            status=stage_graph.STATUS_INITIATED,
            currentStage=stage_graph.INITIATION,
            completionPercentage=stage_graph.stage_progress(stage_graph.INITIATION),
            initiatedAt=now,
            expectedCompletionDate=lwd.isoformat(),
            createdAt=now,
            updatedAt=now,
            updatedBy=actor,
        )
        try:
            with self.db.begin_nested():
                self.db.add(request)
                self.db.flush([request])
        except IntegrityError:
            raise ConflictError("An active offboarding request already exists for this employee", details={"employeeId": emp.employeeId})

        self._append_history(request, from_stage="", actor=actor, reason="Offboarding initiated", auto=False, now=now)
        append_audit(
            self.db,
            entityType="OFFBOARDING_REQUEST",
            entityId=request.requestId,
            action="OFFBOARDING_INITIATE",
            stageTag=stage_graph.INITIATION,
            actor=auth,
            at=now,
            toState=request.status,
            meta={"employeeId": emp.employeeId, "reason": reason, "lastWorkingDay": request.lastWorkingDay},
        )
        _log.info("offboarding initiated tenant=%s request=%s employee=%s", self.tenant_id, request.requestId, emp.employeeId)

        intent = outbox.record_intent(self.db, request_id=request.requestId, stage=request.currentStage, now=now)
        outcomes = self._run_stage(request, intent, actor=actor, auth=auth)
        return TransitionResult(request=request, outcomes=outcomes)

    # --- transitions ------------------------------------------------------------

    @staticmethod
    def _assert_not_terminal(request: OffboardingRequest, target: str = "") -> None:
        if request.status == stage_graph.STATUS_CANCELLED:
            raise InvalidTransitionError("Offboarding request is cancelled", from_stage=request.currentStage, to_stage=target)
        if request.status == stage_graph.STATUS_CLOSED:
            raise InvalidTransitionError("Offboarding request is already closed", from_stage=request.currentStage, to_stage=target)

    def _resolve_target(self, request: OffboardingRequest, target_stage: Optional[str]) -> str:
        current = str(request.currentStage or "")
        allowed = stage_graph.next_stages(current)
        target = str(target_stage or "").strip()
        self._assert_not_terminal(request, target)
        if not allowed:
            raise InvalidTransitionError(f"No transitions from stage '{current}'", from_stage=current, to_stage=target)
        if not target:
            target = allowed[0]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Invalid transition from '{current}' to '{target}'",
                from_stage=current,
                to_stage=target,
            )
        return target

    def advance(
        self,
        request_id: str,
        *,
        actor: str,
        comment: str = "",
        target_stage: Optional[str] = None,
        auth: Optional[AuthContext] = None,
        request: Optional[OffboardingRequest] = None,
    ) -> TransitionResult:
        request = request or self.lock_request(request_id)
        target = self._resolve_target(request, target_stage)
        if target == stage_graph.CLOSURE:
            return self._close_via_closure_stage(request, actor=actor, reason=comment or "Offboarding closed", auth=auth)

        self._resolve_approvals(request, str(request.currentStage), target, actor=actor, comment=comment)
        now = iso_utc_now()
        self._move(request, target, actor=actor, reason=comment, auto=False, auth=auth, now=now)
        intent = outbox.record_intent(self.db, request_id=request.requestId, stage=target, now=now)
        outcomes = self._run_stage(request, intent, actor=actor, auth=auth)
        return TransitionResult(request=request, outcomes=outcomes)

    def decide(
        self,
        request_id: str,
        *,
        actor: str,
        approved: bool,
        comment: str = "",
        auth: Optional[AuthContext] = None,
        request: Optional[OffboardingRequest] = None,
    ) -> TransitionResult:
        """Record the actor's approval decision; approve moves forward, reject takes the back-edge."""

        request = request or self.lock_request(request_id)
        self._assert_not_terminal(request)
        current = str(request.currentStage or "")
        approval_key = stage_graph.APPROVAL_STAGES.get(current)
        if not approval_key:
            raise ValidationError(f"Stage '{current}' does not take approval decisions", details={"stage": current})

        pending = [
            a
            for a in self.approvals(request.requestId)
            if a.stage == approval_key and a.status == "pending"
        ]
        mine = [a for a in pending if a.approverId == actor]
        if not mine and current != stage_graph.MANAGER_APPROVAL:
            mine = pending
        if not mine:
            raise ValidationError("No pending approval for this user at the current stage", details={"stage": current})

        now = iso_utc_now()
        approval = mine[0]
        approval.status = "approved" if approved else "rejected"
        approval.comments = str(comment or "")
        approval.decidedAt = now
        if approval.approverId != actor:
            approval.comments = (approval.comments + f" (decided by {actor})").strip()

        forward, *back = stage_graph.next_stages(current)
        target = forward if approved else back[0]
        reason = comment or (f"{approval_key} approval granted" if approved else f"{approval_key} approval rejected")
        return self.advance(request.requestId, actor=actor, comment=reason, target_stage=target, auth=auth, request=request)

    def cancel(self, request_id: str, *, actor: str, reason: str = "", auth: Optional[AuthContext] = None) -> TransitionResult:
        request = self.lock_request(request_id)
        self._assert_not_terminal(request, "")
        now = iso_utc_now()
        from_status = request.status
        request.status = stage_graph.STATUS_CANCELLED
        request.updatedAt = now
        request.updatedBy = actor
        self._append_history(request, from_stage=request.currentStage, actor=actor, reason=reason or "Offboarding cancelled", auto=False, now=now)
        self.db.execute(
            update(OffboardingIntent)
            .where(OffboardingIntent.requestId == request.requestId)
            .where(OffboardingIntent.status == outbox.INTENT_PENDING)
            .values(status=outbox.INTENT_SUPERSEDED, updatedAt=now)
            .execution_options(synchronize_session="fetch")
        )
        append_audit(
            self.db,
            entityType="OFFBOARDING_REQUEST",
            entityId=request.requestId,
            action="OFFBOARDING_CANCEL",
            stageTag=request.currentStage,
            actor=auth,
            at=now,
            fromState=from_status,
            toState=request.status,
            remark=reason,
        )
        _log.info("offboarding cancelled tenant=%s request=%s stage=%s", self.tenant_id, request.requestId, request.currentStage)
        return TransitionResult(request=request)

    def close(
        self,
        request_id: str,
        *,
        actor: str,
        reason: str = "",
        source: str = CLOSE_SOURCE_WORKFLOW,
        auth: Optional[AuthContext] = None,
    ) -> TransitionResult:
        """
        Close a request and run the identity migration.

        Workflow closes are accepted from exit_interview (regular advance) or at closure
        (idempotent re-run that resumes a partial migration). Legacy closes force the
        request into closure from any active stage. Outstanding clearance, handover or
        feedback work never blocks a close.
        """

        request = self.lock_request(request_id)
        if request.status == stage_graph.STATUS_CANCELLED:
            raise InvalidTransitionError("Offboarding request is cancelled", from_stage=request.currentStage, to_stage=stage_graph.CLOSURE)

        current = str(request.currentStage or "")
        if current == stage_graph.CLOSURE:
            with self.db.begin_nested():
                migration = self.migrator.migrate(request, actor=actor, auth=auth)
            return TransitionResult(request=request, migration=migration)

        if current == stage_graph.EXIT_INTERVIEW:
            return self._close_via_closure_stage(request, actor=actor, reason=reason or "Offboarding closed", auth=auth)

        if source == CLOSE_SOURCE_LEGACY:
            return self._close_via_closure_stage(
                request,
                actor=actor,
                reason=reason or f"Closed via legacy completion from stage '{current}'",
                auth=auth,
                forced=True,
            )

        raise InvalidTransitionError(
            f"Offboarding can only be closed from '{stage_graph.EXIT_INTERVIEW}'",
            from_stage=current,
            to_stage=stage_graph.CLOSURE,
        )

    def _close_via_closure_stage(
        self,
        request: OffboardingRequest,
        *,
        actor: str,
        reason: str,
        auth: Optional[AuthContext],
        forced: bool = False,
    ) -> TransitionResult:
        # Transition and migration commit together or not at all.
        now = iso_utc_now()
        with self.db.begin_nested():
            from_stage = str(request.currentStage or "")
            if not forced:
                self._resolve_approvals(request, from_stage, stage_graph.CLOSURE, actor=actor, comment=reason)
            self._move(request, stage_graph.CLOSURE, actor=actor, reason=reason, auto=False, auth=auth, now=now)
            intent = outbox.record_intent(self.db, request_id=request.requestId, stage=stage_graph.CLOSURE, now=now)
            outcome = self.dispatcher.dispatch(self.db, request, actor=actor, auth=auth)
            outbox.mark_done(intent, now=now)
        return TransitionResult(request=request, outcomes=[outcome], migration=outcome.result)

    # --- internals --------------------------------------------------------------

    def _resolve_approvals(self, request: OffboardingRequest, from_stage: str, to_stage: str, *, actor: str, comment: str) -> None:
        approval_key = stage_graph.APPROVAL_STAGES.get(from_stage)
        if not approval_key:
            return
        decision = "rejected" if stage_graph.is_back_edge(from_stage, to_stage) else "approved"
        now = iso_utc_now()
        for a in self.approvals(request.requestId):
            if a.stage != approval_key or a.status != "pending":
                continue
            a.status = decision
            a.decidedAt = now
            if not a.comments:
                a.comments = str(comment or "")

    def _append_history(self, request: OffboardingRequest, *, from_stage: str, actor: str, reason: str, auto: bool, now: str) -> OffboardingStatusHistory:
        self.db.flush()
        count = self.db.execute(
            select(func.count(OffboardingStatusHistory.id)).where(OffboardingStatusHistory.requestId == request.requestId)
        ).scalar_one()
        row = OffboardingStatusHistory(
            requestId=request.requestId,
            seq=int(count or 0) + 1,
            status=request.status,
            stage=request.currentStage,
            fromStage=from_stage,
            changedBy=actor,
            changedAt=now,
            reason=str(reason or ""),
            autoAdvanced=bool(auto),
        )
        self.db.add(row)
        self.db.flush([row])
        return row

    def _move(
        self,
        request: OffboardingRequest,
        target: str,
        *,
        actor: str,
        reason: str,
        auto: bool,
        auth: Optional[AuthContext],
        now: str,
    ) -> None:
        from_stage = str(request.currentStage or "")
        from_status = str(request.status or "")
        request.currentStage = target
        request.status = stage_graph.status_for_stage(target)
        request.completionPercentage = stage_graph.stage_progress(target)
        request.updatedAt = now
        request.updatedBy = actor

        self._append_history(request, from_stage=from_stage, actor=actor, reason=reason, auto=auto, now=now)
        append_audit(
            self.db,
            entityType="OFFBOARDING_REQUEST",
            entityId=request.requestId,
            action="OFFBOARDING_AUTO_ADVANCE" if auto else "OFFBOARDING_STAGE_CHANGE",
            stageTag=target,
            actor=None if auto else auth,
            at=now,
            fromState=from_status,
            toState=request.status,
            remark=reason,
            meta={"fromStage": from_stage, "toStage": target},
        )
        _log.info(
            "stage change tenant=%s request=%s from=%s to=%s auto=%s reason=%s",
            self.tenant_id,
            request.requestId,
            from_stage,
            target,
            auto,
            reason,
        )

    def _run_stage(
        self,
        request: OffboardingRequest,
        intent: OffboardingIntent,
        *,
        actor: str,
        auth: Optional[AuthContext],
    ) -> list[DispatchOutcome]:
        """Dispatch the current stage's setup, following auto-advances until a stage settles."""

        outcomes: list[DispatchOutcome] = []
        for _ in range(len(stage_graph.STAGES)):
            outcome = self.dispatcher.dispatch(self.db, request, actor=actor, auth=auth)
            outcomes.append(outcome)
            now = iso_utc_now()

            if outcome.auto_advance:
                current = str(request.currentStage)
                nxt = stage_graph.forward_stage(current)
                if not nxt or nxt == stage_graph.CLOSURE:
                    outbox.mark_done(intent, now=now)
                    break
                if outcome.error:
                    _log.warning("auto-advancing after setup error request=%s stage=%s error=%s", request.requestId, current, outcome.error)
                outbox.mark_done(intent, now=now)
                self._resolve_approvals(request, current, nxt, actor=SYSTEM_ACTOR, comment=outcome.reason)
                self._move(request, nxt, actor=SYSTEM_ACTOR, reason=outcome.reason, auto=True, auth=None, now=now)
                intent = outbox.record_intent(self.db, request_id=request.requestId, stage=nxt, now=now)
                continue

            if outcome.failed:
                outbox.mark_failed(intent, outcome.error, now=now)
                _log.warning(
                    "stage setup left pending for replay request=%s stage=%s attempts=%s error=%s",
                    request.requestId,
                    outcome.stage,
                    intent.attempts,
                    outcome.error,
                )
            else:
                outbox.mark_done(intent, now=now)
            break
        return outcomes

    def replay_intent(self, intent: OffboardingIntent) -> IntentReplay:
        request = self.lock_request(intent.requestId)
        now = iso_utc_now()
        if request.status == stage_graph.STATUS_CANCELLED or intent.stage != request.currentStage:
            intent.status = outbox.INTENT_SUPERSEDED
            intent.updatedAt = now
            return IntentReplay(status=intent.status)

        if intent.stage == stage_graph.CLOSURE:
            try:
                with self.db.begin_nested():
                    self.migrator.migrate(request, actor=SYSTEM_ACTOR)
            except Exception as e:
                _log.warning("closure replay failed request=%s error=%s", request.requestId, e, exc_info=True)
                outbox.mark_failed(intent, str(e) or type(e).__name__, now=now)
                return IntentReplay(status=intent.status, error=intent.lastError)
            outbox.mark_done(intent, now=now)
            return IntentReplay(status=intent.status)

        self._run_stage(request, intent, actor=SYSTEM_ACTOR, auth=None)
        return IntentReplay(status=intent.status, error=str(intent.lastError or ""))


def workflow_for(db) -> OffboardingWorkflow:
    """Build the workflow from the collaborators the router attached to the tenant session."""

    return OffboardingWorkflow(db, notifier=db.info.get("notifier"))
