from __future__ import annotations

import logging
import os

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import text

from cache_layer import cache_stats
from utils import ApiError, iso_utc_now

core_bp = Blueprint("core", __name__)

_log = logging.getLogger("api")


def _ping_redis() -> bool:
    """Check Redis connectivity."""
    redis_url = os.getenv("REDIS_URL", "")
    if not redis_url:
        return True  # Redis not configured, skip check
    try:
        import redis

        r = redis.from_url(redis_url, socket_connect_timeout=2)
        r.ping()
        return True
    except Exception:
        return False


def _ping_engine(engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        _log.warning("db ping failed url=%s", engine.url.render_as_string(hide_password=True), exc_info=True)
        return False


def _ping_tenants() -> dict[str, bool]:
    """X-Tenant-ID pings that tenant (opening it if needed); otherwise every tenant opened so far."""
    provider = current_app.extensions["tenants"]
    tenant = str(request.headers.get("X-Tenant-ID") or "").strip()
    if tenant:
        try:
            conn = provider.get_connection(tenant)
        except ApiError:
            return {tenant.lower(): False}
        return {conn.tenant_id: _ping_engine(conn.engine)}
    return {tid: _ping_engine(provider.get_connection(tid).engine) for tid in provider.known_tenants()}


@core_bp.get("/health")
def health():
    """Lightweight health check (process alive)."""
    cfg = current_app.config["CFG"]
    provider = current_app.extensions["tenants"]
    return jsonify({
        "status": "ok",
        "time": iso_utc_now(),
        "version": cfg.APP_VERSION,
        "tenants": provider.known_tenants(),
        "db_pool": provider.pool_stats(),
        "cache": cache_stats(),
    })


@core_bp.get("/ready")
def ready():
    """
    Readiness check for load balancers.
    Checks tenant database and Redis connectivity.
    """
    tenants = _ping_tenants()
    db_ok = all(tenants.values())
    redis_ok = _ping_redis()

    cfg = current_app.config["CFG"]
    all_ok = db_ok and redis_ok
    status = 200 if all_ok else 503

    return (
        jsonify({
            "status": "ok" if all_ok else "degraded",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "checks": {
                "db": "ok" if db_ok else "error",
                "redis": "ok" if redis_ok else "error",
                "tenants": {tid: "ok" if up else "error" for tid, up in tenants.items()},
            },
        }),
        status,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.ENV, "time": iso_utc_now()})
