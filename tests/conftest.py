from __future__ import annotations

import json
from datetime import timedelta
from types import SimpleNamespace

import pytest

from models import Employee, User
from services.notifier import RecordingNotifier
from utils import iso_utc_now, today_utc


TENANT = "acme"

# userId, email, role, department
STAFF = (
    ("USR-ADMIN", "admin@acme.test", "ADMIN", ""),
    ("USR-HRM", "hr@acme.test", "HR_MANAGER", "hr"),
    ("USR-FIN", "finance@acme.test", "FINANCE_MANAGER", "finance"),
    ("USR-MGR", "manager@acme.test", "MANAGER", "engineering"),
    ("USR-IT", "it@acme.test", "IT_ADMIN", "it"),
    ("USR-EMP", "dana@acme.test", "EMPLOYEE", "engineering"),
)


def add_user(db, user_id: str, email: str, role: str, department: str = "", status: str = "ACTIVE") -> User:
    now = iso_utc_now()
    row = User(
        userId=user_id,
        email=email,
        fullName=email.split("@", 1)[0].title(),
        role=role,
        department=department,
        status=status,
        createdAt=now,
        createdBy="TEST",
        updatedAt=now,
        updatedBy="TEST",
    )
    db.add(row)
    return row


def add_employee(db, employee_id: str, **fields) -> Employee:
    now = iso_utc_now()
    values = {
        "employeeCode": employee_id.replace("EMP-", "E"),
        "userId": "",
        "firstName": "Dana",
        "lastName": "Reyes",
        "email": f"{employee_id.lower()}@acme.test",
        "phone": "555-0100",
        "department": "engineering",
        "designation": "Software Engineer",
        "reportingManagerId": "",
        "joiningDate": "2020-03-31",
        "salary": 90000.0,
        "status": "active",
        "isActive": True,
        "isExEmployee": False,
        "assignedAssetsJson": "",
        "createdAt": now,
        "createdBy": "TEST",
        "updatedAt": now,
        "updatedBy": "TEST",
    }
    values.update(fields)
    row = Employee(employeeId=employee_id, **values)
    db.add(row)
    return row


def seed_org(db, *, roles: tuple[str, ...] = ()) -> None:
    """Staff users plus the leaving employee (EMP-0001, reports to USR-MGR) and a successor (EMP-0002)."""

    for user_id, email, role, department in STAFF:
        if roles and role not in roles:
            continue
        add_user(db, user_id, email, role, department)
    add_employee(
        db,
        "EMP-0001",
        userId="USR-EMP",
        email="dana@acme.test",
        reportingManagerId="USR-MGR",
        assignedAssetsJson=json.dumps([{"assetCode": "LAP-001", "name": "Laptop", "type": "laptop"}]),
    )
    add_employee(db, "EMP-0002", firstName="Sam", lastName="Okafor", email="sam@acme.test", reportingManagerId="USR-MGR")
    db.commit()


def future_lwd(days: int = 30) -> str:
    return (today_utc() + timedelta(days=days)).isoformat()


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("TENANT_DATABASE_URL_TEMPLATE", f"sqlite:///{tmp_path}/tenant_{{tenant}}.db")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("NOTIFIER_BACKEND", "log")
    monkeypatch.delenv("TENANT_DATABASE_URLS", raising=False)
    monkeypatch.delenv("ALLOWED_TENANTS", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)

    from app import create_app
    from cache_layer import cache_clear_all

    cache_clear_all()
    app = create_app()
    app.config["TESTING"] = True
    app.extensions["notifier"] = RecordingNotifier()

    with app.test_client() as client:
        yield app, client

    app.extensions["tenants"].dispose()
    cache_clear_all()


@pytest.fixture()
def tenant_session(app_client):
    """Opens a session on a tenant database of the running app; callers close it."""

    app, _client = app_client

    def _open(tenant: str = TENANT):
        return app.extensions["tenants"].get_connection(tenant).session()

    return _open


@pytest.fixture()
def tenant_db(tmp_path):
    """A bootstrapped tenant session outside any Flask app, for service-level tests."""

    from app import init_tenant_database
    from cache_layer import cache_clear_all
    from db import TenantConnectionProvider

    cache_clear_all()
    provider = TenantConnectionProvider(url_template=f"sqlite:///{tmp_path}/unit_{{tenant}}.db", initializer=init_tenant_database)
    db = provider.get_connection("unit").session()
    db.info["notifier"] = RecordingNotifier()
    yield db
    db.close()
    provider.dispose()
    cache_clear_all()


@pytest.fixture()
def api(app_client):
    """POST /api envelope helper; returns (status_code, body)."""

    _app, client = app_client

    def _call(action: str, data: dict | None = None, *, token: str = "", tenant: str = TENANT):
        headers = {"X-Tenant-ID": tenant} if tenant else {}
        res = client.post(
            "/api",
            data=json.dumps({"action": action, "token": token or None, "data": data or {}}),
            content_type="text/plain; charset=utf-8",
            headers=headers,
        )
        return res.status_code, res.get_json()

    return _call


@pytest.fixture()
def login(api):
    def _login(email: str, tenant: str = TENANT) -> str:
        status, body = api("LOGIN_EXCHANGE", {"idToken": f"TEST:{email}"}, tenant=tenant)
        assert status == 200, body
        assert body["ok"] is True, body
        return body["data"]["sessionToken"]

    return _login


@pytest.fixture()
def rest(app_client):
    """REST helper bound to one tenant; returns (status_code, body)."""

    _app, client = app_client

    def _call(method: str, path: str, *, token: str = "", json_body: dict | None = None, tenant: str = TENANT, query: dict | None = None):
        headers = {"X-Tenant-ID": tenant}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        res = client.open(path, method=method.upper(), json=json_body, headers=headers, query_string=query)
        return res.status_code, res.get_json()

    return _call


@pytest.fixture()
def org(tenant_session):
    """Seeds the default organisation into the acme tenant of the running app."""

    db = tenant_session()
    try:
        seed_org(db)
    finally:
        db.close()
    return SimpleNamespace(employee_id="EMP-0001", successor_id="EMP-0002", tenant=TENANT)
