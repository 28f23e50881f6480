from __future__ import annotations

import hashlib
import json
import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from flask import jsonify


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "VALIDATION_ERROR": 400,
    "INVALID_TRANSITION": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))
        self.details = dict(details or {})


class NotFoundError(ApiError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__("NOT_FOUND", message, http_status=404, details=details)


class ValidationError(ApiError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__("VALIDATION_ERROR", message, http_status=400, details=details)


class InvalidTransitionError(ApiError):
    def __init__(self, message: str, *, from_stage: str = "", to_stage: str = ""):
        super().__init__(
            "INVALID_TRANSITION",
            message,
            http_status=400,
            details={"fromStage": from_stage, "toStage": to_stage},
        )
        self.from_stage = from_stage
        self.to_stage = to_stage


class PermissionDeniedError(ApiError):
    """RBAC rejection. Carries the evaluated role/stage/department for diagnostics."""

    def __init__(self, message: str, *, role: str = "", action: str = "", stage: str = "", department: str = ""):
        super().__init__(
            "FORBIDDEN",
            message,
            http_status=403,
            details={"role": role, "action": action, "stage": stage, "department": department},
        )
        self.role = role
        self.action = action
        self.stage = stage
        self.department = department


class ConflictError(ApiError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__("CONFLICT", message, http_status=409, details=details)


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str
    department: str = ""
    fullName: str = ""


def ok(data: Any):
    return jsonify({"ok": True, "data": data, "error": None}), 200


def err(code: str, message: str, http_status: int = 400, details: dict | None = None):
    error: dict[str, Any] = {"code": str(code or "INTERNAL"), "message": str(message or "")}
    if details:
        error["details"] = details
    return jsonify({"ok": False, "data": None, "error": error}), int(http_status or 400)


def iso_utc_now() -> str:
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date_maybe(value: Any) -> Optional[date]:
    """Accepts YYYY-MM-DD or a full ISO timestamp and returns the calendar date."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if _DATE_RE.fullmatch(s):
            return date.fromisoformat(s)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s).date()
    except ValueError:
        return None


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def require_date(value: Any, field: str) -> date:
    d = parse_date_maybe(value)
    if d is None:
        raise ValidationError(f"Invalid {field}: expected YYYY-MM-DD", details={"field": field})
    return d


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def now_monotonic() -> float:
    return time.monotonic()


def normalize_role(role: Any) -> str:
    s = str(role or "").strip().upper().replace("-", "_").replace(" ", "_")
    return s


def parse_roles_csv(value: str) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except ValueError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def json_loads_maybe(raw: Any, default: Any):
    s = str(raw or "").strip()
    if not s:
        return default
    try:
        out = json.loads(s)
    except ValueError:
        return default
    if default is not None and not isinstance(out, type(default)):
        return default
    return out


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


_REDACT_KEYS = {"idtoken", "token", "sessiontoken", "password", "authorization"}


def redact_for_audit(data: Any, _depth: int = 0) -> Any:
    if _depth > 6:
        return "..."
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, _depth + 1)
        return out
    if isinstance(data, list):
        return [redact_for_audit(v, _depth + 1) for v in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


class SimpleRateLimiter:
    """Fixed-window in-process limiter. `rule` is "<count>/<seconds>"."""

    def __init__(self):
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    @staticmethod
    def _parse(rule: str) -> tuple[int, float]:
        try:
            count_s, window_s = str(rule or "").split("/", 1)
            return max(1, int(count_s)), max(1.0, float(window_s))
        except ValueError:
            return 600, 60.0

    def check(self, key: str, rule: str) -> None:
        limit, window = self._parse(rule)
        now = now_monotonic()
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= window:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count)
        if count > limit:
            raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
