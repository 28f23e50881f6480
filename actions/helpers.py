from __future__ import annotations

import json
import os
from typing import Any, Optional

from sqlalchemy import select

from models import AuditLog, IdCounter
from utils import AuthContext, iso_utc_now, normalize_role


def actor_id(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")


def _dumps(value: Any) -> str:
    if value is None or value == "":
        return ""
    return json.dumps(value, default=str, separators=(",", ":"))


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    before: Any = None,
    after: Any = None,
    meta: Any = None,
    correlationId: str = "",
) -> AuditLog:
    row = AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType=str(entityType or ""),
        entityId=str(entityId or ""),
        action=str(action or "").upper(),
        fromState=str(fromState or ""),
        toState=str(toState or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or ""),
        actorUserId=actor_id(actor),
        actorRole=normalize_role(actor.role) if actor else "SYSTEM",
        actorEmail=str(getattr(actor, "email", "") or "") if actor else "",
        at=at or iso_utc_now(),
        correlationId=str(correlationId or ""),
        beforeJson=_dumps(before),
        afterJson=_dumps(after),
        metaJson=_dumps(meta),
    )
    db.add(row)
    return row


def _max_existing_suffix(prefix: str, existing_ids: list[str]) -> int:
    best = 0
    for raw in existing_ids or []:
        s = str(raw or "")
        if not s.startswith(prefix):
            continue
        tail = s[len(prefix) :]
        if tail.isdigit():
            best = max(best, int(tail))
    return best


def next_prefixed_id(db, *, counter_key: str, prefix: str, pad: int = 5, existing_ids: Optional[list[str]] = None) -> str:
    """
    Allocate the next human-readable id (e.g. OFB-2026-00001) from the id_counters table.

    The counter row is locked for the rest of the transaction; a missing counter is seeded
    past any id already present so imported rows are never reused.
    """

    row = db.execute(select(IdCounter).where(IdCounter.key == counter_key).with_for_update(of=IdCounter)).scalars().first()
    if not row:
        row = IdCounter(key=counter_key, nextValue=_max_existing_suffix(prefix, existing_ids or []) + 1)
        db.add(row)
        db.flush([row])

    value = int(row.nextValue or 1)
    row.nextValue = value + 1
    return f"{prefix}{str(value).zfill(pad)}"
