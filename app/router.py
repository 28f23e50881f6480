"""
Action router shared by the POST /api envelope and the REST blueprints.

One call = one tenant session = one transaction: resolve the tenant from X-Tenant-ID,
validate the session, run the coarse RBAC gate, dispatch, audit, commit.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

from flask import current_app, g, request
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from actions import dispatch
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from models import AuditLog
from services.notifier import DeferredNotifier
from utils import ApiError, AuthContext, ConflictError, err, iso_utc_now, now_monotonic, ok, redact_for_audit


LOGIN_ACTIONS = {"LOGIN_EXCHANGE"}

_log = logging.getLogger("api")


def request_token(body: Optional[dict] = None) -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((body or {}).get("token") or "").strip()
    )


def tenant_header() -> str:
    return str(request.headers.get("X-Tenant-ID") or "").strip()


def _request_id() -> str:
    return str(getattr(g, "request_id", "") or "").strip()


def _check_rate_limit(cfg, action_u: str) -> None:
    limiter = current_app.extensions["rate_limiter"]
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    if action_u in LOGIN_ACTIONS:
        limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
    else:
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)


def _authenticate(db, token: str, action_u: str) -> Optional[AuthContext]:
    if not is_public_action(action_u):
        auth_ctx = validate_session_token(db, token)
        if not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")
        return auth_ctx
    if not token:
        return None
    try:
        maybe = validate_session_token(db, token)
    except ApiError:
        return None
    return maybe if maybe.valid else None


def _audit_row(action_u: str, auth_ctx: Optional[AuthContext], *, stage_tag: str, remark: str, meta: dict) -> AuditLog:
    return AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType="API",
        entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
        action=str(action_u or "").upper() or "UNKNOWN",
        fromState="",
        toState="",
        stageTag=stage_tag,
        remark=remark,
        actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
        actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
        actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
        at=iso_utc_now(),
        correlationId=_request_id(),
        metaJson=json.dumps(meta, default=str),
    )


def write_error_audit(conn, action_u: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError) -> None:
    """Records API_ERROR in its own session so the failed transaction's rollback cannot take it along."""

    if conn is None:
        return
    db2 = None
    try:
        db2 = conn.session()
        db2.add(
            _audit_row(
                action_u,
                auth_ctx,
                stage_tag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                meta={"data": redact_for_audit(data or {}), "error": {"code": err_obj.code, "message": err_obj.message}},
            )
        )
        db2.commit()
    except Exception:
        _log.warning("error audit failed request_id=%s action=%s", _request_id(), action_u, exc_info=True)
    finally:
        if db2 is not None:
            db2.close()


def _db_error_message(cfg, e: DBAPIError) -> str:
    request_id = _request_id()
    orig = getattr(e, "orig", None)
    orig_msg = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
    if len(orig_msg) > 300:
        orig_msg = orig_msg[:300] + "..."
    if cfg.IS_PRODUCTION or not orig_msg:
        return f"Database error (requestId: {request_id})" if request_id else "Database error"
    return f"Database error: {orig_msg} (requestId: {request_id})" if request_id else f"Database error: {orig_msg}"


def handle_action(action: str, data: Optional[dict], *, token: str = "", tenant_id: str = "", stage_tag: str = "API_CALL"):
    """
    Run one action inside one tenant transaction and return a Flask response.

    ApiError subclasses keep their own status; StaleDataError/IntegrityError map to 409
    CONFLICT; other database errors and anything unexpected map to 500 INTERNAL.
    """

    cfg = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()
    data = data or {}
    conn = None
    db = None
    auth_ctx = None
    notifier = None

    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")
        _check_rate_limit(cfg, action_u)

        conn = current_app.extensions["tenants"].get_connection(tenant_id)
        db = conn.session()
        notifier = DeferredNotifier(current_app.extensions["notifier"])
        db.info["notifier"] = notifier

        auth_ctx = _authenticate(db, token, action_u)
        role = role_or_public(auth_ctx)
        assert_permission(db, role, action_u)

        out = dispatch(action_u, data, auth_ctx, db, cfg)

        db.add(_audit_row(action_u, auth_ctx, stage_tag=stage_tag, remark="", meta={"data": redact_for_audit(data)}))
        db.commit()
        notifier.flush()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        _log.info(
            "request_id=%s action=%s tenant=%s user=%s role=%s latency_ms=%s",
            _request_id(),
            action_u,
            conn.tenant_id,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return ok(out)
    except ApiError as e:
        if db is not None:
            db.rollback()
        write_error_audit(conn, action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status, details=e.details)
    except (StaleDataError, IntegrityError) as e:
        if db is not None:
            db.rollback()
        api_err = ConflictError("The offboarding record was modified concurrently; reload and retry")
        write_error_audit(conn, action_u, auth_ctx, data, api_err)
        _log.warning("request_id=%s action=%s conflict: %s", _request_id(), action_u, type(e).__name__)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", _db_error_message(cfg, e), http_status=500)
        write_error_audit(conn, action_u, auth_ctx, data, api_err)
        _log.exception("request_id=%s action=%s", _request_id(), action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    except Exception as e:
        if db is not None:
            db.rollback()
        request_id = _request_id()
        detail = "" if cfg.IS_PRODUCTION else f": {type(e).__name__}"
        msg = f"Unexpected error{detail} (requestId: {request_id})" if request_id else f"Unexpected error{detail}"
        api_err = ApiError("INTERNAL", msg, http_status=500)
        write_error_audit(conn, action_u, auth_ctx, data, api_err)
        _log.exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    finally:
        if notifier is not None:
            notifier.discard()
        if db is not None:
            db.close()
