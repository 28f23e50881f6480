"""
Outbound notifications and the non-critical side-effect wrapper.

Notification delivery is fire-and-forget: every backend swallows its own delivery
errors (logged), so a broken mail relay never blocks a workflow transition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests


_log = logging.getLogger("offboarding.effects")


@dataclass
class EffectOutcome:
    name: str
    ok: bool
    error: str = ""
    result: Any = None


def run_non_critical(name: str, fn: Callable[[], Any], *, db=None) -> EffectOutcome:
    """
    Run a best-effort side effect.

    With a session, the effect runs inside a SAVEPOINT so a failing flush only rolls
    back its own writes. Failures are logged and reported, never raised.
    """

    try:
        if db is not None:
            with db.begin_nested():
                result = fn()
        else:
            result = fn()
        return EffectOutcome(name=name, ok=True, result=result)
    except Exception as e:
        _log.warning("non-critical effect failed effect=%s error=%s", name, e, exc_info=True)
        return EffectOutcome(name=name, ok=False, error=str(e) or type(e).__name__)


class Notifier:
    backend = "base"

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        raise NotImplementedError

    def notify(self, recipient_id: str, message: str, context: Optional[dict[str, Any]] = None) -> bool:
        rid = str(recipient_id or "").strip()
        if not rid:
            return False
        try:
            self.send(rid, str(message or ""), dict(context or {}))
            return True
        except Exception as e:
            _log.warning("notification failed backend=%s recipient=%s error=%s", self.backend, rid, e)
            return False


class LoggingNotifier(Notifier):
    backend = "log"

    def __init__(self):
        self._log = logging.getLogger("offboarding.notify")

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        self._log.info("notify recipient=%s message=%s context=%s", recipient_id, message, context)


class CeleryNotifier(Notifier):
    backend = "celery"

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        from app.tasks.offboarding_tasks import send_notification_task

        send_notification_task.delay(recipient_id, message, context.get("channel") or "email", context)


class WebhookNotifier(Notifier):
    backend = "webhook"

    def __init__(self, url: str, timeout_seconds: int = 5):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        resp = requests.post(
            self.url,
            json={"recipientId": recipient_id, "message": message, "context": context},
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()


class RecordingNotifier(Notifier):
    """Keeps sent notifications in memory; used by tests and dry runs."""

    backend = "memory"

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        self.sent.append({"recipientId": recipient_id, "message": message, "context": context})


class DeferredNotifier(Notifier):
    """
    Holds notifications until the surrounding transaction commits.

    `flush()` after a successful commit delivers through the wrapped backend;
    `discard()` after a rollback drops them, so nobody hears about a transition
    that never happened.
    """

    def __init__(self, target: Notifier):
        self.target = target
        self.backend = f"deferred:{target.backend}"
        self.pending: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, recipient_id: str, message: str, context: dict[str, Any]) -> None:
        self.pending.append((recipient_id, message, context))

    def flush(self) -> int:
        queued, self.pending = self.pending, []
        return sum(1 for rid, message, context in queued if self.target.notify(rid, message, context))

    def discard(self) -> int:
        dropped = len(self.pending)
        self.pending = []
        if dropped:
            _log.info("dropped notifications after rollback count=%s", dropped)
        return dropped


def build_notifier(cfg) -> Notifier:
    backend = str(getattr(cfg, "NOTIFIER_BACKEND", "log") or "log").lower()
    if backend == "celery":
        return CeleryNotifier()
    if backend == "webhook":
        return WebhookNotifier(cfg.NOTIFY_WEBHOOK_URL, timeout_seconds=int(getattr(cfg, "NOTIFY_TIMEOUT_SECONDS", 5) or 5))
    return LoggingNotifier()
