"""
Offboarding background jobs: notification delivery and per-tenant outbox replay.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache

import requests

from app.tasks import celery_app
from config import Config

_log = logging.getLogger("offboarding.outbox")


@lru_cache(maxsize=1)
def _worker_state():
    """Tenant provider and notifier for this worker process, built once on first use."""
    from app import build_tenant_provider
    from services.notifier import LoggingNotifier, WebhookNotifier

    cfg = Config()
    cfg.validate()
    # The worker delivers celery-backend notifications itself, so it must not re-enqueue them.
    if cfg.NOTIFIER_BACKEND == "webhook":
        notifier = WebhookNotifier(cfg.NOTIFY_WEBHOOK_URL, timeout_seconds=cfg.NOTIFY_TIMEOUT_SECONDS)
    else:
        notifier = LoggingNotifier()
    return cfg, build_tenant_provider(cfg), notifier


@celery_app.task(bind=True, autoretry_for=(requests.RequestException,), retry_backoff=True)
def send_notification_task(self, recipient_id: str, message: str, channel: str = "email", context: dict | None = None):
    """
    Deliver one notification. A webhook is used when NOTIFY_WEBHOOK_URL is set;
    otherwise the message is logged. Transport errors are retried with backoff.
    """
    cfg = Config()
    context = dict(context or {})
    if cfg.NOTIFY_WEBHOOK_URL:
        resp = requests.post(
            cfg.NOTIFY_WEBHOOK_URL,
            json={"recipientId": recipient_id, "message": message, "channel": channel, "context": context},
            timeout=cfg.NOTIFY_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    else:
        logging.getLogger("offboarding.notify").info("notify recipient=%s channel=%s message=%s", recipient_id, channel, message)

    return {
        "task_id": self.request.id,
        "recipient_id": recipient_id,
        "channel": channel,
        "message_preview": message[:50] + "..." if len(message) > 50 else message,
        "sent_at": datetime.now(timezone.utc).isoformat(),
        "status": "sent",
    }


@celery_app.task(bind=True, autoretry_for=(Exception,), retry_backoff=True, max_retries=3)
def replay_offboarding_outbox(self, tenant_id: str, limit: int | None = None, request_id: str | None = None):
    """Replay pending stage-setup intents for one tenant in a single transaction."""
    from services.notifier import DeferredNotifier
    from services.outbox import replay_pending_intents
    from services.state_machine import OffboardingWorkflow

    cfg, provider, target = _worker_state()
    notifier = DeferredNotifier(target)
    conn = provider.get_connection(tenant_id)
    db = conn.session()
    db.info["notifier"] = notifier
    try:
        out = replay_pending_intents(
            db,
            OffboardingWorkflow(db, tenant_id=conn.tenant_id, notifier=notifier),
            limit=int(limit or cfg.OUTBOX_REPLAY_LIMIT),
            request_id=request_id,
        )
        db.commit()
        notifier.flush()
    except Exception:
        db.rollback()
        _log.exception("outbox replay failed tenant=%s task=%s", conn.tenant_id, self.request.id)
        raise
    finally:
        notifier.discard()
        db.close()

    out["tenantId"] = conn.tenant_id
    return out
