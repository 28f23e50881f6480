from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from utils import ValidationError, to_float


CALCULATION_STATUSES = ("draft", "calculated", "reviewed", "approved", "paid")
PAYMENT_STATUSES = ("pending", "processed", "completed", "failed", "cancelled")
APPROVAL_LEVELS = ("finance_team", "finance_manager", "hr_manager", "cfo")

_SALARY_KEYS = (
    "basicSalary",
    "hra",
    "conveyanceAllowance",
    "medicalAllowance",
    "specialAllowance",
    "bonus",
    "incentives",
    "commission",
)
_STATUTORY_KEYS = ("providentFund", "professionalTax", "incomeTax", "esi")
_RECOVERY_KEYS = ("noticePeriodRecovery", "assetRecovery", "advanceRecovery", "loanRecovery")


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def _named_amounts(items: Any) -> float:
    if not isinstance(items, list):
        return 0.0
    return sum(to_float(it.get("amount")) for it in items if isinstance(it, Mapping))


def overtime_amount(overtime: Any) -> float:
    if not isinstance(overtime, Mapping):
        return 0.0
    if overtime.get("amount") not in (None, ""):
        return to_float(overtime.get("amount"))
    return to_float(overtime.get("hours")) * to_float(overtime.get("rate"))


def leave_encashment_total(leave: Any) -> float:
    if not isinstance(leave, Mapping):
        return 0.0
    if leave.get("totalEncashment") not in (None, ""):
        return to_float(leave.get("totalEncashment"))
    return to_float(leave.get("days")) * to_float(leave.get("dailyRate"))


def gratuity_amount(gratuity: Any) -> float:
    """
    Explicit gratuityAmount wins. Otherwise an eligible employee with five or more
    years of service gets 15/26 of last drawn salary per completed year.
    """

    if not isinstance(gratuity, Mapping):
        return 0.0
    if gratuity.get("gratuityAmount") not in (None, ""):
        return to_float(gratuity.get("gratuityAmount"))
    if not gratuity.get("isEligible"):
        return 0.0
    years = int(to_float(gratuity.get("yearsOfService")))
    if years < 5:
        return 0.0
    return round(to_float(gratuity.get("lastDrawnSalary")) * 15 / 26 * years, 2)


def approved_reimbursements(reimbursements: Any) -> float:
    if not isinstance(reimbursements, list):
        return 0.0
    return sum(
        to_float(r.get("amount"))
        for r in reimbursements
        if isinstance(r, Mapping) and str(r.get("status") or "").lower() == "approved"
    )


def total_earnings(salary: Any, leave: Any, gratuity: Any, reimbursements: Any) -> float:
    salary = salary if isinstance(salary, Mapping) else {}
    total = sum(to_float(salary.get(k)) for k in _SALARY_KEYS)
    total += _named_amounts(salary.get("otherAllowances"))
    total += overtime_amount(salary.get("overtime"))
    total += leave_encashment_total(leave)
    total += gratuity_amount(gratuity)
    total += approved_reimbursements(reimbursements)
    return round(total, 2)


def total_deductions(deductions: Any) -> float:
    deductions = deductions if isinstance(deductions, Mapping) else {}
    statutory = deductions.get("statutory") if isinstance(deductions.get("statutory"), Mapping) else {}
    recoveries = deductions.get("recoveries") if isinstance(deductions.get("recoveries"), Mapping) else {}
    total = sum(to_float(statutory.get(k)) for k in _STATUTORY_KEYS)
    total += sum(to_float(recoveries.get(k)) for k in _RECOVERY_KEYS)
    total += _named_amounts(deductions.get("otherDeductions"))
    return round(total, 2)


@dataclass
class SettlementSummary:
    gross_earnings: float
    total_deductions: float
    net_payable: float
    round_off_adjustment: float
    final_amount: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "grossEarnings": self.gross_earnings,
            "totalDeductions": self.total_deductions,
            "netPayable": self.net_payable,
            "roundOffAdjustment": self.round_off_adjustment,
            "finalAmount": self.final_amount,
        }


def calculate(
    *,
    salary_components: Any = None,
    leave_encashment: Any = None,
    gratuity: Any = None,
    reimbursements: Any = None,
    deductions: Any = None,
    round_off_adjustment: Any = 0,
) -> SettlementSummary:
    gross = total_earnings(salary_components, leave_encashment, gratuity, reimbursements)
    ded = total_deductions(deductions)
    net = round(gross - ded, 2)
    adj = to_float(round_off_adjustment)
    return SettlementSummary(
        gross_earnings=gross,
        total_deductions=ded,
        net_payable=net,
        round_off_adjustment=adj,
        final_amount=round_half_up(net + adj),
    )


def approval_status(statuses: Iterable[str]) -> str:
    values = [str(s or "").lower() for s in statuses]
    if not values:
        return "not_required"
    if any(s == "rejected" for s in values):
        return "rejected"
    if all(s == "approved" for s in values):
        return "approved"
    return "pending"


def check_calculation_status(current: str, target: str, derived_approval_status: str) -> None:
    if target not in CALCULATION_STATUSES:
        raise ValidationError(f"Invalid calculationStatus: {target}")
    if current == target:
        return
    if current == "paid":
        raise ValidationError("Settlement is already paid")
    if target == "approved" and derived_approval_status != "approved":
        raise ValidationError(
            "Settlement cannot be approved until every approval entry is approved",
            details={"approvalStatus": derived_approval_status},
        )
    if target == "paid" and current != "approved":
        raise ValidationError("Settlement must be approved before it is paid", details={"calculationStatus": current})
