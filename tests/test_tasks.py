from __future__ import annotations

from unittest import mock

import pytest
from sqlalchemy import func, select

from conftest import add_employee, future_lwd


@pytest.fixture()
def worker_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TENANT_DATABASE_URL_TEMPLATE", f"sqlite:///{tmp_path}/worker_{{tenant}}.db")
    monkeypatch.setenv("NOTIFIER_BACKEND", "log")
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("TENANT_DATABASE_URLS", raising=False)
    monkeypatch.delenv("ALLOWED_TENANTS", raising=False)

    from app.tasks.offboarding_tasks import _worker_state

    _worker_state.cache_clear()
    yield tmp_path
    if _worker_state.cache_info().currsize:
        _worker_state()[1].dispose()
    _worker_state.cache_clear()


def test_send_notification_logs_without_webhook(worker_env):
    from app.tasks.offboarding_tasks import send_notification_task

    message = "Offboarding approval required for Dana Reyes, last working day 2026-11-30"
    with mock.patch("app.tasks.offboarding_tasks.requests.post") as post:
        out = send_notification_task("USR-MGR", message, "email", {"requestId": "OFB-1"})

    post.assert_not_called()
    assert out["status"] == "sent"
    assert out["recipient_id"] == "USR-MGR"
    assert out["message_preview"] == message[:50] + "..."

    short = send_notification_task("USR-MGR", "Dana Reyes offboarding closed", "email")
    assert short["message_preview"] == "Dana Reyes offboarding closed"


def test_send_notification_posts_to_webhook(worker_env, monkeypatch):
    from app.tasks.offboarding_tasks import send_notification_task

    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.acme.test/notify")
    with mock.patch("app.tasks.offboarding_tasks.requests.post") as post:
        send_notification_task("USR-HRM", "done", "slack", {"requestId": "OFB-2"})

    post.assert_called_once()
    assert post.call_args.kwargs["json"]["channel"] == "slack"


def test_replay_task_runs_pending_setup(worker_env):
    from app import init_tenant_database
    from app.tasks.offboarding_tasks import replay_offboarding_outbox
    from db import TenantConnectionProvider
    from models import OffboardingTask
    from services.notifier import RecordingNotifier
    from services.state_machine import OffboardingWorkflow

    seeder = TenantConnectionProvider(url_template=f"sqlite:///{worker_env}/worker_{{tenant}}.db", initializer=init_tenant_database)
    db = seeder.get_connection("acme").session()
    try:
        add_employee(db, "EMP-0009")
        db.commit()
        with mock.patch("services.dispatcher.generate_tasks", side_effect=RuntimeError("template store down")):
            rid = OffboardingWorkflow(db, notifier=RecordingNotifier()).initiate(
                employee_id="EMP-0009",
                reason="layoff",
                last_working_day=future_lwd(),
                actor="USR-ADMIN",
            ).request.requestId
        db.commit()
    finally:
        db.close()

    out = replay_offboarding_outbox("acme")
    assert out["tenantId"] == "acme"
    assert out["done"] == 1

    db = seeder.get_connection("acme").session()
    try:
        count = db.execute(select(func.count(OffboardingTask.id)).where(OffboardingTask.requestId == rid)).scalar_one()
        assert count == 6
    finally:
        db.close()
        seeder.dispose()
