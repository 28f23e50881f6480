from __future__ import annotations

from datetime import date
from types import SimpleNamespace

import pytest

from services.task_templates import TASK_TEMPLATES, generate_tasks
from utils import ValidationError


def test_one_task_per_template_with_due_date_before_lwd():
    emp = SimpleNamespace(employeeId="EMP-0001")
    tasks = generate_tasks(emp, "2026-12-31")

    assert len(tasks) == len(TASK_TEMPLATES)
    assert {t.department for t in tasks} == {"hr", "it", "finance", "admin"}
    by_key = {t.task_key: t for t in tasks}
    assert by_key["IT_REVOKE_SYSTEM_ACCESS"].due_date == date(2026, 12, 30)
    assert by_key["HR_COLLECT_RESIGNATION_LETTER"].due_date == date(2026, 12, 16)
    assert all(t.employee_id == "EMP-0001" for t in tasks)


def test_checklist_items_start_incomplete():
    tasks = generate_tasks(SimpleNamespace(employeeId="EMP-0001"), "2026-12-31")
    for t in tasks:
        assert t.checklist
        assert all(c["completed"] is False and c["completedBy"] == "" for c in t.checklist)


def test_generation_is_deterministic():
    emp = SimpleNamespace(employeeId="EMP-0001")
    first = [(t.task_key, t.due_date) for t in generate_tasks(emp, "2026-12-31")]
    second = [(t.task_key, t.due_date) for t in generate_tasks(emp, "2026-12-31")]
    assert first == second


def test_missing_last_working_day_is_rejected():
    with pytest.raises(ValidationError):
        generate_tasks(SimpleNamespace(employeeId="EMP-0001"), "")
