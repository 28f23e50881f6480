"""
Celery configuration and task registration.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO
    celery -A app.tasks.celery_app beat --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery


def make_celery() -> Celery:
    """
    Create and configure the Celery app with a Redis broker.

    Environment variables:
        REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: Optional separate result backend
        OUTBOX_REPLAY_TENANTS: CSV of tenants whose outbox beat replays
        OUTBOX_REPLAY_INTERVAL_SECONDS: beat interval (0 disables the schedule)
    """
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    result_backend = os.getenv("CELERY_RESULT_BACKEND", redis_url)

    app = Celery(
        "offboarding",
        broker=redis_url,
        backend=result_backend,
        include=["app.tasks.offboarding_tasks"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        result_expires=86400,

        task_acks_late=True,
        task_reject_on_worker_lost=True,

        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "4")),

        task_default_rate_limit="100/m",

        task_default_retry_delay=60,
        task_max_retries=3,
    )

    interval = int(os.getenv("OUTBOX_REPLAY_INTERVAL_SECONDS", "300") or "0")
    tenants = [t.strip().lower() for t in os.getenv("OUTBOX_REPLAY_TENANTS", "").split(",") if t.strip()]
    if interval > 0 and tenants:
        app.conf.beat_schedule = {
            f"replay-offboarding-outbox-{tid}": {
                "task": "app.tasks.offboarding_tasks.replay_offboarding_outbox",
                "schedule": float(interval),
                "args": (tid,),
            }
            for tid in tenants
        }

    return app


celery_app = make_celery()
