"""
Offboarding stage graph: ordered stages, the fixed transition table and the
stage -> status mapping.
"""
from __future__ import annotations


INITIATION = "initiation"
MANAGER_APPROVAL = "manager_approval"
HR_APPROVAL = "hr_approval"
FINANCE_APPROVAL = "finance_approval"
CHECKLIST_GENERATION = "checklist_generation"
DEPARTMENTAL_CLEARANCE = "departmental_clearance"
ASSET_RETURN = "asset_return"
KNOWLEDGE_TRANSFER = "knowledge_transfer"
FINAL_SETTLEMENT = "final_settlement"
EXIT_INTERVIEW = "exit_interview"
CLOSURE = "closure"

STAGES: tuple[str, ...] = (
    INITIATION,
    MANAGER_APPROVAL,
    HR_APPROVAL,
    FINANCE_APPROVAL,
    CHECKLIST_GENERATION,
    DEPARTMENTAL_CLEARANCE,
    ASSET_RETURN,
    KNOWLEDGE_TRANSFER,
    FINAL_SETTLEMENT,
    EXIT_INTERVIEW,
    CLOSURE,
)

# First entry is the forward edge; any further entries are back-edges (rejection / return-for-correction).
TRANSITIONS: dict[str, tuple[str, ...]] = {
    INITIATION: (MANAGER_APPROVAL,),
    MANAGER_APPROVAL: (HR_APPROVAL, INITIATION),
    HR_APPROVAL: (FINANCE_APPROVAL, MANAGER_APPROVAL),
    FINANCE_APPROVAL: (CHECKLIST_GENERATION, HR_APPROVAL),
    CHECKLIST_GENERATION: (DEPARTMENTAL_CLEARANCE,),
    DEPARTMENTAL_CLEARANCE: (ASSET_RETURN,),
    ASSET_RETURN: (KNOWLEDGE_TRANSFER,),
    KNOWLEDGE_TRANSFER: (FINAL_SETTLEMENT,),
    FINAL_SETTLEMENT: (EXIT_INTERVIEW,),
    EXIT_INTERVIEW: (CLOSURE,),
    CLOSURE: (),
}

STATUS_DRAFT = "draft"
STATUS_INITIATED = "initiated"
STATUS_APPROVALS_PENDING = "approvals_pending"
STATUS_CHECKLIST_ACTIVE = "checklist_active"
STATUS_CLEARANCE_IN_PROGRESS = "clearance_in_progress"
STATUS_SETTLEMENT_PENDING = "settlement_pending"
STATUS_FEEDBACK_PENDING = "feedback_pending"
STATUS_CLOSED = "closed"
STATUS_CANCELLED = "cancelled"

STAGE_STATUS: dict[str, str] = {
    INITIATION: STATUS_INITIATED,
    MANAGER_APPROVAL: STATUS_APPROVALS_PENDING,
    HR_APPROVAL: STATUS_APPROVALS_PENDING,
    FINANCE_APPROVAL: STATUS_APPROVALS_PENDING,
    CHECKLIST_GENERATION: STATUS_CHECKLIST_ACTIVE,
    DEPARTMENTAL_CLEARANCE: STATUS_CLEARANCE_IN_PROGRESS,
    ASSET_RETURN: STATUS_CLEARANCE_IN_PROGRESS,
    KNOWLEDGE_TRANSFER: STATUS_CLEARANCE_IN_PROGRESS,
    FINAL_SETTLEMENT: STATUS_SETTLEMENT_PENDING,
    EXIT_INTERVIEW: STATUS_FEEDBACK_PENDING,
    CLOSURE: STATUS_CLOSED,
}

TERMINAL_STATUSES = {STATUS_CLOSED, STATUS_CANCELLED}

# Approval stage -> OffboardingApproval.stage value.
APPROVAL_STAGES: dict[str, str] = {
    MANAGER_APPROVAL: "manager",
    HR_APPROVAL: "hr",
    FINANCE_APPROVAL: "finance",
}


def is_stage(stage: str) -> bool:
    return stage in TRANSITIONS


def next_stages(stage: str) -> tuple[str, ...]:
    return TRANSITIONS.get(stage, ())


def forward_stage(stage: str) -> str | None:
    nxt = next_stages(stage)
    return nxt[0] if nxt else None


def is_back_edge(from_stage: str, to_stage: str) -> bool:
    nxt = next_stages(from_stage)
    return to_stage in nxt[1:]


def status_for_stage(stage: str) -> str:
    return STAGE_STATUS.get(stage, STATUS_INITIATED)


def stage_progress(stage: str) -> int:
    """Workflow progress of a stage as a percentage of the pipeline (closure = 100)."""

    if stage not in STAGES:
        return 0
    return int(round(STAGES.index(stage) / (len(STAGES) - 1) * 100))
