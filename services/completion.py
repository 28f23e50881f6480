"""
Pure recomputation of derived completion fields.

Every mutating save of an AssetClearance, HandoverDetail or ExitFeedback calls one of
these functions and copies the result onto the row; the derived columns are never
hand-set anywhere else.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


CLEARANCE_TERMINAL: dict[str, frozenset[str]] = {
    "physical": frozenset({"returned", "not_applicable"}),
    "digital": frozenset({"revoked", "transferred", "not_applicable"}),
    "security": frozenset({"returned", "deactivated", "not_applicable"}),
    "property": frozenset({"returned", "destroyed", "transferred", "not_applicable"}),
}

CLEARANCE_STATUSES: dict[str, frozenset[str]] = {
    "physical": frozenset({"pending", "returned", "damaged", "lost", "not_applicable"}),
    "digital": frozenset({"pending", "revoked", "transferred", "not_applicable"}),
    "security": frozenset({"pending", "returned", "deactivated", "lost", "not_applicable"}),
    "property": frozenset({"pending", "returned", "destroyed", "transferred", "not_applicable"}),
}

HANDOVER_TERMINAL: dict[str, frozenset[str]] = {
    "project": frozenset({"completed"}),
    "client": frozenset({"completed"}),
    "knowledge": frozenset({"completed"}),
}

HANDOVER_STATUSES = frozenset({"pending", "in_progress", "completed"})


def list_completion(statuses: Iterable[str], terminal: frozenset[str]) -> float:
    """Share of items in a terminal status, 0..100. An empty list is vacuously complete."""

    values = [str(s or "") for s in statuses]
    if not values:
        return 100.0
    done = sum(1 for s in values if s in terminal)
    return done * 100.0 / len(values)


@dataclass
class CompletionSummary:
    completion_percentage: int
    overall_status: str
    by_list: dict[str, int] = field(default_factory=dict)


def _display_percent(raw: float, complete: bool) -> int:
    """Rounded for display; never shows 100 while something is still open."""

    pct = int(round(raw))
    return pct if complete else min(pct, 99)


def _summarize(statuses_by_list: Mapping[str, Iterable[str]], terminal_sets: Mapping[str, frozenset[str]], idle_status: str) -> CompletionSummary:
    per_list: dict[str, float] = {}
    open_lists: set[str] = set()
    for name, terminal in terminal_sets.items():
        values = [str(s or "") for s in statuses_by_list.get(name, ())]
        per_list[name] = list_completion(values, terminal)
        if any(v not in terminal for v in values):
            open_lists.add(name)

    raw = sum(per_list.values()) / len(per_list) if per_list else 100.0
    if not open_lists:
        status = "completed"
    elif raw > 0:
        status = "in_progress"
    else:
        status = idle_status
    return CompletionSummary(
        completion_percentage=_display_percent(raw, not open_lists),
        overall_status=status,
        by_list={k: _display_percent(v, k not in open_lists) for k, v in per_list.items()},
    )


def summarize_clearance(statuses_by_category: Mapping[str, Iterable[str]]) -> CompletionSummary:
    return _summarize(statuses_by_category, CLEARANCE_TERMINAL, "pending")


def summarize_handover(statuses_by_category: Mapping[str, Iterable[str]]) -> CompletionSummary:
    return _summarize(statuses_by_category, HANDOVER_TERMINAL, "not_started")


@dataclass
class ClearanceFinancials:
    total_recovery_amount: float
    total_repair_cost: float
    total_replacement_cost: float

    @property
    def net_financial_impact(self) -> float:
        return round(self.total_recovery_amount + self.total_repair_cost + self.total_replacement_cost, 2)


def clearance_financials(items: Iterable[Any]) -> ClearanceFinancials:
    recovery = repair = replacement = 0.0
    for it in items:
        recovery += float(getattr(it, "recoveryAmount", 0) or 0)
        repair += float(getattr(it, "repairCost", 0) or 0)
        replacement += float(getattr(it, "replacementCost", 0) or 0)
    return ClearanceFinancials(round(recovery, 2), round(repair, 2), round(replacement, 2))


FEEDBACK_SECTIONS = ("reason", "satisfaction", "open_ended", "recommendation")
_RECOMMEND_VALUES = {"yes", "no", "maybe"}


def feedback_sections_filled(
    *,
    primary_reason: str,
    overall_satisfaction: int,
    open_ended_answers: Iterable[str],
    would_recommend: str,
) -> dict[str, bool]:
    try:
        score = int(overall_satisfaction or 0)
    except (TypeError, ValueError):
        score = 0
    return {
        "reason": bool(str(primary_reason or "").strip()),
        "satisfaction": 1 <= score <= 5,
        "open_ended": any(str(a or "").strip() for a in open_ended_answers),
        "recommendation": str(would_recommend or "").strip().lower() in _RECOMMEND_VALUES,
    }


def summarize_feedback(sections: Mapping[str, bool], current_status: str = "not_started") -> CompletionSummary:
    """
    completionStatus from the required sub-sections.

    `declined` is sticky: it only changes when the interview is explicitly reopened.
    """

    filled = sum(1 for name in FEEDBACK_SECTIONS if sections.get(name))
    pct = int(round(filled * 100 / len(FEEDBACK_SECTIONS)))
    if current_status == "declined":
        status = "declined"
    elif pct >= 100:
        status = "completed"
    elif pct > 0:
        status = "in_progress"
    else:
        status = "not_started"
    return CompletionSummary(completion_percentage=pct, overall_status=status, by_list={k: int(bool(sections.get(k))) for k in FEEDBACK_SECTIONS})
