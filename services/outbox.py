from __future__ import annotations

import logging
import os
from typing import Optional

from sqlalchemy import func, select, update

from models import OffboardingIntent
from utils import iso_utc_now


_log = logging.getLogger("offboarding.outbox")

INTENT_PENDING = "pending"
INTENT_DONE = "done"
INTENT_SUPERSEDED = "superseded"


def record_intent(db, *, request_id: str, stage: str, now: str = "") -> OffboardingIntent:
    """
    Persist the stage setup owed by a transition.

    Older pending intents of the same request are superseded: only the latest
    stage's setup is ever replayed.
    """

    now = now or iso_utc_now()
    db.execute(
        update(OffboardingIntent)
        .where(OffboardingIntent.requestId == request_id)
        .where(OffboardingIntent.status == INTENT_PENDING)
        .values(status=INTENT_SUPERSEDED, updatedAt=now)
        .execution_options(synchronize_session="fetch")
    )
    seq = db.execute(
        select(func.coalesce(func.max(OffboardingIntent.seq), 0)).where(OffboardingIntent.requestId == request_id)
    ).scalar_one()
    row = OffboardingIntent(
        intentId=f"INT-{os.urandom(12).hex()}",
        requestId=request_id,
        seq=int(seq or 0) + 1,
        stage=stage,
        status=INTENT_PENDING,
        attempts=0,
        lastError="",
        createdAt=now,
        updatedAt=now,
        completedAt="",
    )
    db.add(row)
    db.flush([row])
    return row


def mark_done(intent: OffboardingIntent, *, now: str = "") -> None:
    now = now or iso_utc_now()
    intent.status = INTENT_DONE
    intent.attempts = int(intent.attempts or 0) + 1
    intent.lastError = ""
    intent.updatedAt = now
    intent.completedAt = now


def mark_failed(intent: OffboardingIntent, error: str, *, now: str = "") -> None:
    intent.attempts = int(intent.attempts or 0) + 1
    intent.lastError = str(error or "")[:2000]
    intent.updatedAt = now or iso_utc_now()


def pending_intents(db, *, limit: int = 100, request_id: Optional[str] = None) -> list[OffboardingIntent]:
    q = select(OffboardingIntent).where(OffboardingIntent.status == INTENT_PENDING)
    if request_id:
        q = q.where(OffboardingIntent.requestId == request_id)
    q = q.order_by(OffboardingIntent.createdAt.asc(), OffboardingIntent.seq.asc()).limit(max(1, int(limit or 1)))
    return db.execute(q).scalars().all()


def latest_intent(db, request_id: str) -> Optional[OffboardingIntent]:
    return (
        db.execute(
            select(OffboardingIntent)
            .where(OffboardingIntent.requestId == request_id)
            .order_by(OffboardingIntent.seq.desc())
        )
        .scalars()
        .first()
    )


def serialize_intent(row: OffboardingIntent) -> dict:
    return {
        "intentId": str(row.intentId or ""),
        "requestId": str(row.requestId or ""),
        "seq": int(row.seq or 0),
        "stage": str(row.stage or ""),
        "status": str(row.status or ""),
        "attempts": int(row.attempts or 0),
        "lastError": str(row.lastError or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
        "completedAt": str(row.completedAt or ""),
    }


def replay_pending_intents(db, workflow, *, limit: int = 100, request_id: Optional[str] = None) -> dict:
    """
    Re-run the stage setup of every pending intent.

    Each intent is replayed through the workflow, which re-checks the stage guards, so a
    setup that already ran is a no-op. Returns per-status counts.
    """

    rows = pending_intents(db, limit=limit, request_id=request_id)
    done = failed = skipped = 0
    results = []
    for intent in rows:
        outcome = workflow.replay_intent(intent)
        if outcome.status == INTENT_DONE:
            done += 1
        elif outcome.status == INTENT_PENDING:
            failed += 1
        else:
            skipped += 1
        results.append({"intentId": intent.intentId, "requestId": intent.requestId, "stage": intent.stage, "status": outcome.status, "error": outcome.error})

    _log.info("outbox replay tenant=%s scanned=%s done=%s failed=%s skipped=%s", db.info.get("tenant_id", ""), len(rows), done, failed, skipped)
    return {"scanned": len(rows), "done": done, "failed": failed, "skipped": skipped, "items": results}
