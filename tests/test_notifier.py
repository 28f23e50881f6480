from __future__ import annotations

from types import SimpleNamespace
from unittest import mock

import requests

from conftest import future_lwd, seed_org
from services.notifier import (
    CeleryNotifier,
    DeferredNotifier,
    LoggingNotifier,
    RecordingNotifier,
    WebhookNotifier,
    build_notifier,
    run_non_critical,
)
from services.state_machine import OffboardingWorkflow


class _BrokenNotifier(RecordingNotifier):
    def send(self, recipient_id, message, context):
        raise RuntimeError("smtp relay unavailable")


def test_notify_swallows_delivery_errors():
    assert _BrokenNotifier().notify("USR-MGR", "hello") is False


def test_notify_skips_blank_recipient():
    n = RecordingNotifier()
    assert n.notify("  ", "hello") is False
    assert n.sent == []


def test_broken_notifier_does_not_block_the_approval(tenant_db):
    seed_org(tenant_db)
    wf = OffboardingWorkflow(tenant_db, notifier=_BrokenNotifier())

    req = wf.initiate(
        employee_id="EMP-0001",
        reason="voluntary_resignation",
        last_working_day=future_lwd(),
        actor="USR-HRM",
    ).request

    assert [(a.stage, a.status) for a in wf.approvals(req.requestId)] == [("manager", "pending")]


def test_webhook_posts_the_notification():
    resp = mock.Mock()
    with mock.patch("services.notifier.requests.post", return_value=resp) as post:
        ok = WebhookNotifier("https://hooks.acme.test/notify", timeout_seconds=3).notify("USR-HRM", "hi", {"requestId": "OFB-1"})

    assert ok is True
    post.assert_called_once_with(
        "https://hooks.acme.test/notify",
        json={"recipientId": "USR-HRM", "message": "hi", "context": {"requestId": "OFB-1"}},
        timeout=3,
    )
    resp.raise_for_status.assert_called_once_with()


def test_webhook_connection_error_is_reported_not_raised():
    with mock.patch("services.notifier.requests.post", side_effect=requests.ConnectionError("refused")):
        assert WebhookNotifier("https://hooks.acme.test/notify").notify("USR-HRM", "hi") is False


def test_webhook_http_error_is_reported_not_raised():
    resp = mock.Mock()
    resp.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
    with mock.patch("services.notifier.requests.post", return_value=resp):
        assert WebhookNotifier("https://hooks.acme.test/notify").notify("USR-HRM", "hi") is False


def test_run_non_critical_reports_failures():
    def boom():
        raise ValueError("bad row")

    outcome = run_non_critical("talent_pool", boom)
    assert outcome.ok is False
    assert outcome.name == "talent_pool"
    assert outcome.error == "bad row"

    fine = run_non_critical("count", lambda: 3)
    assert fine.ok is True
    assert fine.result == 3


def test_build_notifier_selects_backend():
    assert isinstance(build_notifier(SimpleNamespace(NOTIFIER_BACKEND="log")), LoggingNotifier)
    assert isinstance(build_notifier(SimpleNamespace(NOTIFIER_BACKEND="celery")), CeleryNotifier)
    hook = build_notifier(SimpleNamespace(NOTIFIER_BACKEND="webhook", NOTIFY_WEBHOOK_URL="https://hooks.acme.test/n", NOTIFY_TIMEOUT_SECONDS=7))
    assert isinstance(hook, WebhookNotifier)
    assert hook.timeout_seconds == 7
    assert isinstance(build_notifier(SimpleNamespace()), LoggingNotifier)


def test_deferred_notifier_delivers_only_on_flush():
    target = RecordingNotifier()
    deferred = DeferredNotifier(target)

    assert deferred.notify("USR-MGR", "Approval required", {"requestId": "OFB-1"}) is True
    assert deferred.notify("", "nobody") is False
    assert target.sent == []

    assert deferred.flush() == 1
    assert target.sent == [{"recipientId": "USR-MGR", "message": "Approval required", "context": {"requestId": "OFB-1"}}]
    assert deferred.pending == []


def test_deferred_notifier_discard_drops_queued_messages():
    target = RecordingNotifier()
    deferred = DeferredNotifier(target)
    deferred.notify("USR-HRM", "HR approval required")

    assert deferred.discard() == 1
    assert deferred.flush() == 0
    assert target.sent == []
