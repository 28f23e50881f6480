from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import issue_session_token, permissions_for_role, serialize_auth, verify_google_id_token
from models import Employee, User
from services.rbac_guard import permissions_for
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc or "@" not in email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _me(user: User, email: str = "") -> dict:
    return {
        "userId": user.userId,
        "email": email or user.email,
        "fullName": user.fullName or "",
        "role": normalize_role(user.role),
        "department": str(user.department or "").strip().lower(),
    }


def login_exchange(data, auth: AuthContext | None, db, cfg):
    google_user = verify_google_id_token(
        (data or {}).get("idToken"),
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )
    email = str(google_user.get("email") or "").strip().lower()

    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in Users")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    # Employees keep their session version in step with the Employee record.
    auth_version = 0
    if normalize_role(user.role) == "EMPLOYEE":
        emp = db.execute(select(Employee).where(Employee.userId == user.userId)).scalars().first()
        if emp:
            if emp.isExEmployee or not emp.isActive:
                raise ApiError("FORBIDDEN", "Employee account is not active", http_status=403)
            auth_version = int(emp.auth_version or 0)

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        user_status=user.status,
        auth_version=auth_version,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role), expiresAt=ses["expiresAt"]),
    )

    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _me(user, email)}


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return serialize_auth(auth)


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User not found")
    out = _me(user)
    emp = db.execute(select(Employee).where(Employee.userId == user.userId)).scalars().first()
    out["employeeId"] = emp.employeeId if emp else ""
    return {"me": out, "expiresAt": auth.expiresAt}


def my_permissions_get(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    out = dict(permissions_for_role(db, auth.role))
    out["offboardingPermissions"] = sorted(permissions_for(auth.role, auth.department))
    return out
