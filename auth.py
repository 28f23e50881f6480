from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import cache_get, cache_set
from models import Employee, Permission, Role, Session as DbSession, User
from services.rbac_guard import OFFBOARDING_ROLES
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_roles_csv, sha256_hex


PUBLIC_ACTIONS = {"LOGIN_EXCHANGE"}

_ALL = list(OFFBOARDING_ROLES)
_STAFF = [r for r in OFFBOARDING_ROLES if r != "EMPLOYEE"]
_HR_ADMIN = ["ADMIN", "HR_MANAGER", "HR_EXECUTIVE"]

# Coarse gate only: action -> roles that may call it at all. Scope, stage and
# department rules are enforced per request by services.rbac_guard.
STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "SESSION_VALIDATE": _ALL,
    "GET_ME": _ALL,
    "MY_PERMISSIONS_GET": _ALL,
    # Offboarding workflow
    "OFFBOARDING_INITIATE": ["ADMIN", "HR_MANAGER", "HR_EXECUTIVE", "MANAGER", "DEPARTMENT_HEAD", "EMPLOYEE"],
    "OFFBOARDING_LIST": _ALL,
    "OFFBOARDING_GET": _ALL,
    "OFFBOARDING_ADVANCE": _STAFF,
    "OFFBOARDING_DECIDE": ["ADMIN", "HR_MANAGER", "FINANCE_MANAGER", "MANAGER", "DEPARTMENT_HEAD"],
    "OFFBOARDING_CLOSE_OR_CANCEL": ["ADMIN", "HR_MANAGER"],
    "OFFBOARDING_TASKS_GET": _ALL,
    "OFFBOARDING_TASK_UPDATE": _STAFF,
    "OFFBOARDING_CLEARANCE_SET": _STAFF,
    "OFFBOARDING_ASSET_ADD": ["ADMIN", "HR_MANAGER", "IT_ADMIN", "HR_EXECUTIVE", "FINANCE_MANAGER", "FINANCE_EXECUTIVE"],
    "OFFBOARDING_ASSET_UPDATE": ["ADMIN", "HR_MANAGER", "IT_ADMIN", "HR_EXECUTIVE", "FINANCE_MANAGER", "FINANCE_EXECUTIVE"],
    "OFFBOARDING_HANDOVER_ADD": _ALL,
    "OFFBOARDING_HANDOVER_UPDATE": _ALL,
    "OFFBOARDING_SETTLEMENT_GET": _STAFF,
    "OFFBOARDING_SETTLEMENT_PUT": _STAFF,
    "OFFBOARDING_SETTLEMENT_APPROVE": ["ADMIN", "HR_MANAGER", "FINANCE_MANAGER", "FINANCE_EXECUTIVE"],
    "OFFBOARDING_FEEDBACK_SUBMIT": _ALL,
    "OFFBOARDING_FEEDBACK_GET": _ALL,
    "OFFBOARDING_ANALYTICS": ["ADMIN", "HR_MANAGER", "HR_EXECUTIVE", "FINANCE_MANAGER", "DEPARTMENT_HEAD"],
    "OFFBOARDING_OUTBOX_REPLAY": ["ADMIN"],
    # Deprecated simple-shape view
    "LEGACY_OFFBOARDING_LIST": _HR_ADMIN + ["FINANCE_MANAGER", "FINANCE_EXECUTIVE"],
    "LEGACY_OFFBOARDING_GET": _HR_ADMIN + ["FINANCE_MANAGER", "FINANCE_EXECUTIVE"],
    "LEGACY_OFFBOARDING_UPDATE": ["ADMIN", "HR_MANAGER"],
}

# Always allowed for any ACTIVE role: the app shell needs them to load.
_SESSION_ACTIONS = {"SESSION_VALIDATE", "GET_ME", "MY_PERMISSIONS_GET"}

_RBAC_CACHE_PREFIX = "RBAC:"
_RBAC_ROLES_INDEX_KEY = f"{_RBAC_CACHE_PREFIX}ROLES_INDEX"
_RBAC_RULE_PREFIX = f"{_RBAC_CACHE_PREFIX}RULE:"
_RBAC_PERMS_FOR_ROLE_PREFIX = f"{_RBAC_CACHE_PREFIX}PERMS_FOR_ROLE:"


def _tenant(db) -> str:
    return str(db.info.get("tenant_id", "") or "")


def _invalid() -> AuthContext:
    return AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if allow_test_tokens and isinstance(id_token, str) and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "sub": "TEST", "exp": 0}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    try:
        payload = google_id_token.verify_oauth2_token(id_token, google_requests.Request(), audience=google_client_id)
    except ValueError:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")
    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
        "exp": payload.get("exp", 0) or 0,
    }


def _parse_iso_utc_maybe(value: str) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def issue_session_token(
    db,
    *,
    user_id: str,
    email: str,
    role: str,
    user_status: str = "",
    auth_version: int = 0,
    session_ttl_minutes: int,
) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    expires = datetime.now(timezone.utc) + timedelta(minutes=session_ttl_minutes)
    issued_at = iso_utc_now()
    expires_at = expires.replace(microsecond=(expires.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            userStatus=str(user_status or "").upper().strip(),
            authVersion=int(auth_version or 0),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_user_sessions(db, *, user_id: str, role: str = "", revoked_by: str) -> int:
    """
    Revoke all active sessions for a subject.

    Used at offboarding closure so a terminated employee's remembered tokens stop working
    immediately; the auth_version bump covers sessions issued concurrently.
    """

    uid = str(user_id or "").strip()
    if not uid:
        return 0

    role_u = normalize_role(role)
    now = iso_utc_now()
    q = select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")
    if role_u:
        q = q.where(DbSession.role == role_u)
    rows = db.execute(q).scalars().all()
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def validate_session_token(db, token: Any) -> AuthContext:
    if not token or not isinstance(token, str):
        return _invalid()

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _invalid()

    exp_dt = _parse_iso_utc_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _invalid()

    user_id = str(ses.userId or "").strip()
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _invalid()
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    role_u = normalize_role(ses.role)
    if role_u == "EMPLOYEE":
        # Offboarded employees lose access even if a session survived revocation.
        emp = db.execute(select(Employee).where(Employee.userId == user_id)).scalars().first()
        if emp:
            if emp.isExEmployee or not emp.isActive or str(emp.status or "") == "terminated":
                raise ApiError("FORBIDDEN", "Employee account is not active", http_status=403)
            if int(ses.authVersion or 0) != int(emp.auth_version or 0):
                return _invalid()

    try:
        interval_s = int(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300")
    except ValueError:
        interval_s = 300
    last_dt = _parse_iso_utc_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=role_u,
        expiresAt=str(ses.expiresAt or ""),
        department=str(usr.department or "").strip().lower(),
        fullName=str(usr.fullName or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    tenant = _tenant(db)
    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(tenant, cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(tenant, cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or ""), "rolesCsv": row.rolesCsv or ""}
    cache_set(tenant, cache_key, out)
    return out


def _roles_index(db) -> dict[str, dict[str, Any]]:
    tenant = _tenant(db)
    cached = cache_get(tenant, _RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    out: dict[str, dict[str, Any]] = {}
    if not rows:
        out = {rc: {"roleCode": rc, "roleName": rc, "status": "ACTIVE"} for rc in OFFBOARDING_ROLES}
    for r in rows:
        code = normalize_role(r.roleCode)
        if code:
            out[code] = {"roleCode": code, "roleName": str(r.roleName or code), "status": str(r.status or "ACTIVE").upper()}
    cache_set(tenant, _RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    it = _roles_index(db).get(r)
    return bool(it) and str(it.get("status", "")).upper() == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")
    if action_u in _SESSION_ACTIONS:
        return

    if has_dyn:
        roles = rule.get("roles") or []
        allowed = "PUBLIC" in roles or role_u in roles
    else:
        allowed = role_u in (allowed_static or [])
    if not allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def permissions_for_role(db, role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")

    tenant = _tenant(db)
    cache_key = f"{_RBAC_PERMS_FOR_ROLE_PREFIX}{role_u}"
    cached = cache_get(tenant, cache_key)
    if isinstance(cached, dict):
        return cached

    ui_keys: list[str] = []
    action_keys: list[str] = []
    dynamic_actions: set[str] = set()

    rows = db.execute(select(Permission).where(Permission.enabled == True)).scalars().all()  # noqa: E712
    for row in rows:
        perm_type = str(row.permType or "").upper().strip()
        perm_key = str(row.permKey or "").upper().strip()
        if not perm_type or not perm_key:
            continue
        if perm_type == "ACTION":
            dynamic_actions.add(perm_key)
        roles = parse_roles_csv(row.rolesCsv or "")
        if role_u not in roles and "PUBLIC" not in roles:
            continue
        if perm_type == "UI":
            ui_keys.append(perm_key)
        elif perm_type == "ACTION":
            action_keys.append(perm_key)

    # Static actions count unless an enabled dynamic rule overrides them.
    for action_u, static_roles in STATIC_RBAC_PERMISSIONS.items():
        if action_u in dynamic_actions:
            continue
        if "PUBLIC" in static_roles or role_u in static_roles:
            action_keys.append(action_u)

    out = {"role": role_u, "uiKeys": sorted(ui_keys), "actionKeys": sorted(set(action_keys))}
    cache_set(tenant, cache_key, out)
    return out


def serialize_auth(auth: AuthContext) -> dict[str, Any]:
    return {
        "valid": bool(auth.valid),
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": role_or_public(auth), "department": auth.department},
    }


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
