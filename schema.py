from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session


_log = logging.getLogger("schema")


def _quoted(name: str) -> str:
    escaped = str(name).replace('"', '""')
    return f'"{escaped}"'


def _ensure_column(engine, *, table: str, column: str, ddl_type: str, default_sql: str = "''") -> None:
    insp = inspect(engine)
    if table not in set(insp.get_table_names()):
        return
    cols = {c.get("name") for c in insp.get_columns(table)}
    if column in cols:
        return
    ddl = f"ALTER TABLE {_quoted(table)} ADD COLUMN {_quoted(column)} {ddl_type} DEFAULT {default_sql}"
    with engine.begin() as conn:
        conn.execute(text(ddl))
    _log.info("added column %s.%s", table, column)


def _ensure_index(engine, *, name: str, table: str, column: str) -> None:
    ddl = f"CREATE INDEX IF NOT EXISTS {_quoted(name)} ON {_quoted(table)}({_quoted(column)})"
    with engine.begin() as conn:
        conn.execute(text(ddl))


def _ensure_ddl(engine, ddl: str) -> None:
    with engine.begin() as conn:
        conn.execute(text(ddl))


def ensure_schema(engine) -> None:
    """
    Lightweight, idempotent schema evolution for one tenant database (no Alembic).

    Adds columns introduced after a tenant was provisioned, plus the partial unique
    indexes that back offboarding idempotency.
    """

    # Columns added after the first offboarding release.
    _ensure_column(engine, table="users", column="department", ddl_type="TEXT")
    _ensure_column(engine, table="employees", column="isExEmployee", ddl_type="BOOLEAN", default_sql="0")
    _ensure_column(engine, table="employees", column="terminatedAt", ddl_type="TEXT")
    _ensure_column(engine, table="employees", column="terminationReason", ddl_type="TEXT")
    _ensure_column(engine, table="employees", column="lastWorkingDay", ddl_type="TEXT")
    _ensure_column(engine, table="employees", column="auth_version", ddl_type="INTEGER", default_sql="0")
    _ensure_column(engine, table="employees", column="assignedAssetsJson", ddl_type="TEXT")
    _ensure_column(engine, table="offboarding_requests", column="version", ddl_type="INTEGER", default_sql="1")
    _ensure_column(engine, table="offboarding_status_history", column="autoAdvanced", ddl_type="BOOLEAN", default_sql="0")

    _ensure_index(engine, name="ix_users_department", table="users", column="department")
    _ensure_index(engine, name="ix_employees_isExEmployee", table="employees", column="isExEmployee")

    # At most one active offboarding request per employee.
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_offboarding_requests_active_employee')} "
            f"ON {_quoted('offboarding_requests')}({_quoted('employeeId')}) "
            f"WHERE {_quoted('status')} NOT IN ('closed', 'cancelled')"
        ),
    )

    # At most one ex-employee Candidate / TalentPool entry per employee id.
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_candidates_exEmployeeId')} "
            f"ON {_quoted('candidates')}({_quoted('exEmployeeId')}) "
            f"WHERE {_quoted('exEmployeeId')} <> ''"
        ),
    )
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_talent_pool_exEmployeeId')} "
            f"ON {_quoted('talent_pool')}({_quoted('exEmployeeId')}) "
            f"WHERE {_quoted('exEmployeeId')} <> ''"
        ),
    )

    # One outbox intent per request/stage while it is still owed.
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_offboarding_intents_pending')} "
            f"ON {_quoted('offboarding_intents')}({_quoted('requestId')}, {_quoted('stage')}) "
            f"WHERE {_quoted('status')} = 'pending'"
        ),
    )

    _backfill_employee_lifecycle(engine)


def _backfill_employee_lifecycle(engine) -> None:
    """
    Normalize legacy employee rows.

    - status is stored lowercase
    - isActive derived from status (active => 1 else 0)
    - isExEmployee set for rows already terminated
    """

    insp = inspect(engine)
    if "employees" not in set(insp.get_table_names()):
        return

    with Session(engine) as db:
        try:
            db.execute(
                text(
                    f"UPDATE {_quoted('employees')} SET {_quoted('status')} = LOWER({_quoted('status')}) "
                    f"WHERE {_quoted('status')} <> LOWER({_quoted('status')})"
                )
            )
            db.execute(
                text(
                    f"UPDATE {_quoted('employees')} "
                    f"SET {_quoted('isActive')} = CASE WHEN {_quoted('status')} = 'active' THEN 1 ELSE 0 END "
                    f"WHERE {_quoted('status')} IN ('active', 'terminated', 'inactive')"
                )
            )
            db.execute(
                text(
                    f"UPDATE {_quoted('employees')} SET {_quoted('isExEmployee')} = 1 "
                    f"WHERE {_quoted('status')} = 'terminated' AND {_quoted('isExEmployee')} = 0"
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            _log.exception("employee lifecycle backfill failed")
