from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS
from sqlalchemy.orm import Session

from config import Config
from db import TenantConnectionProvider
from services.notifier import build_notifier
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, parse_json_body


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    """Idempotent: only missing roles and ACTION keys are inserted, so tenant overrides survive restarts."""

    from auth import STATIC_RBAC_PERMISSIONS
    from models import Permission, Role
    from services.rbac_guard import OFFBOARDING_ROLES

    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {str(r.roleCode or "").upper() for r in db.query(Role).all()}
    for rc in OFFBOARDING_ROLES:
        if rc in existing_roles:
            continue
        db.add(
            Role(
                roleCode=rc,
                roleName=rc.replace("_", " ").title(),
                status="ACTIVE",
                createdAt=now,
                createdBy=actor,
                updatedAt=now,
                updatedBy=actor,
            )
        )

    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.query(Permission).all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        key = ("ACTION", action.upper())
        if key in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def init_tenant_database(engine) -> None:
    """Per-tenant bootstrap: tables, lightweight schema evolution, RBAC seed."""

    from models import Base
    from schema import ensure_schema

    Base.metadata.create_all(bind=engine)
    ensure_schema(engine)

    with Session(bind=engine) as db0:
        _seed_roles_and_permissions(db0)
        db0.commit()


def build_tenant_provider(cfg: Config) -> TenantConnectionProvider:
    return TenantConnectionProvider(
        url_template=cfg.TENANT_DATABASE_URL_TEMPLATE,
        url_overrides=cfg.TENANT_DATABASE_URLS,
        allowed_tenants=cfg.ALLOWED_TENANTS,
        initializer=init_tenant_database,
        pool_size=cfg.DB_POOL_SIZE,
        max_overflow=cfg.DB_MAX_OVERFLOW,
    )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["JSON_SORT_KEYS"] = False

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Tenant-ID", "X-Session-Token"],
        expose_headers=["X-Request-ID"],
    )

    app.extensions["tenants"] = build_tenant_provider(cfg)
    app.extensions["notifier"] = build_notifier(cfg)
    app.extensions["rate_limiter"] = SimpleRateLimiter()

    from app.router import handle_action, request_token, tenant_header
    from app.routes.core import core_bp
    from app.routes.offboarding import legacy_bp, offboarding_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(offboarding_bp, url_prefix="/api/offboarding")
    app.register_blueprint(legacy_bp, url_prefix="/api/legacy/offboarding")

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err(
            "NOT_FOUND",
            f"Unknown endpoint: {request.path}. Use GET /health, POST /api for actions, or /api/offboarding/... for REST.",
            http_status=404,
        )

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.post("/api")
    def api_route():
        try:
            body = parse_json_body(request.get_data(as_text=True))
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            return err("BAD_REQUEST", "data must be an object", http_status=400)
        return handle_action(
            str(body.get("action") or ""),
            data,
            token=request_token(body),
            tenant_id=tenant_header(),
        )

    return app
