from __future__ import annotations

from unittest import mock

from sqlalchemy import delete, func, select

from auth import issue_session_token, validate_session_token
from conftest import add_employee, future_lwd, seed_org
from models import Candidate, Employee, TalentPool
from services import stage_graph
from services.identity_migrator import IdentityMigrator, calculate_experience, employee_snapshot
from services.state_machine import OffboardingWorkflow


def _request(db, employee_id: str = "EMP-0001"):
    wf = OffboardingWorkflow(db, notifier=db.info["notifier"])
    return wf.initiate(
        employee_id=employee_id,
        reason="voluntary_resignation",
        last_working_day=future_lwd(),
        actor="USR-HRM",
    ).request


def _count(db, model) -> int:
    pk = list(model.__table__.primary_key.columns)[0]
    return db.execute(select(func.count(pk))).scalar_one()


def test_calculate_experience_counts_whole_months():
    assert calculate_experience("2020-03-31", "2023-03-30") == (2, 11)
    assert calculate_experience("2020-03-31", "2023-03-01") == (2, 11)
    assert calculate_experience("2020-03-31", "2023-03-31") == (3, 0)
    assert calculate_experience("2020-03-01", "2023-03-01") == (3, 0)
    assert calculate_experience("2024-01-15", "2024-02-14") == (0, 0)
    assert calculate_experience("2024-05-01", "2024-01-01") == (0, 0)
    assert calculate_experience("", "2024-01-01") == (0, 0)


def test_migration_flips_employee_and_seeds_rehire_records(tenant_db):
    seed_org(tenant_db)
    request = _request(tenant_db)
    migrator = IdentityMigrator(tenant_db, tenant_db.info["notifier"])

    result = migrator.migrate(request, actor="USR-HRM")
    tenant_db.commit()

    assert result.already_migrated is False
    assert result.snapshot_written is True
    assert result.employee_flipped is True
    assert result.used_fallback_update is False
    assert result.warnings == []

    emp = tenant_db.get(Employee, "EMP-0001")
    assert emp.isExEmployee is True
    assert emp.isActive is False
    assert emp.terminationReason == "voluntary_resignation"
    assert emp.lastWorkingDay == request.lastWorkingDay

    snapshot = employee_snapshot(request)
    assert snapshot["employeeId"] == "EMP-0001"
    assert snapshot["originalStatus"] == "active"
    assert snapshot["isActive"] is True

    pool = tenant_db.execute(select(TalentPool)).scalars().one()
    assert pool.talentPoolId == result.talent_pool_id
    assert pool.exEmployeeId == "EMP-0001"
    assert pool.desiredDepartment == "engineering"
    assert "Experience:" in pool.timelineJson

    cand = tenant_db.execute(select(Candidate)).scalars().one()
    assert cand.candidateId == result.candidate_id
    assert cand.email == "dana@acme.test"
    assert cand.talentPoolId == pool.talentPoolId
    assert cand.source == "internal"

    assert request.status == stage_graph.STATUS_CLOSED
    assert request.isCompleted is True
    assert request.completedBy == "USR-HRM"
    assert tenant_db.info["notifier"].sent[-1]["context"]["type"] == "offboarding_completed"


def test_migration_is_idempotent(tenant_db):
    seed_org(tenant_db)
    request = _request(tenant_db)
    migrator = IdentityMigrator(tenant_db, tenant_db.info["notifier"])

    first = migrator.migrate(request, actor="USR-HRM")
    second = migrator.migrate(request, actor="USR-HRM")

    assert second.already_migrated is True
    assert second.talent_pool_id == first.talent_pool_id
    assert second.candidate_id == first.candidate_id
    assert _count(tenant_db, TalentPool) == 1
    assert _count(tenant_db, Candidate) == 1


def test_migration_resumes_a_partial_run(tenant_db):
    seed_org(tenant_db)
    request = _request(tenant_db)
    migrator = IdentityMigrator(tenant_db, tenant_db.info["notifier"])
    first = migrator.migrate(request, actor="USR-HRM")

    tenant_db.execute(delete(TalentPool))
    tenant_db.flush()

    again = migrator.migrate(request, actor="USR-HRM")
    assert again.already_migrated is False
    assert again.snapshot_written is False
    assert again.talent_pool_id and again.talent_pool_id != first.talent_pool_id
    assert again.candidate_id == first.candidate_id
    assert _count(tenant_db, Candidate) == 1


def test_migration_revokes_employee_sessions(tenant_db):
    seed_org(tenant_db)
    issued = issue_session_token(
        tenant_db,
        user_id="USR-EMP",
        email="dana@acme.test",
        role="EMPLOYEE",
        user_status="ACTIVE",
        session_ttl_minutes=60,
    )
    tenant_db.commit()
    assert validate_session_token(tenant_db, issued["sessionToken"]).valid is True

    request = _request(tenant_db)
    result = IdentityMigrator(tenant_db, tenant_db.info["notifier"]).migrate(request, actor="USR-HRM")
    tenant_db.commit()

    assert result.sessions_revoked == 1
    assert tenant_db.get(Employee, "EMP-0001").auth_version == 1
    assert validate_session_token(tenant_db, issued["sessionToken"]).valid is False


def test_invalid_record_falls_back_to_a_field_update(tenant_db):
    seed_org(tenant_db)
    add_employee(tenant_db, "EMP-0005", email="not-an-email", reportingManagerId="USR-MGR", updatedAt="2024-01-01T00:00:00.000Z")
    tenant_db.commit()
    request = _request(tenant_db, "EMP-0005")

    result = IdentityMigrator(tenant_db, tenant_db.info["notifier"]).migrate(request, actor="USR-HRM")
    tenant_db.commit()

    assert result.employee_flipped is True
    assert result.used_fallback_update is True
    emp = tenant_db.get(Employee, "EMP-0005")
    assert emp.isExEmployee is True
    assert emp.status == "terminated"
    assert emp.email == "not-an-email"
    # The fallback writes termination fields only; the session step owns auth_version.
    assert emp.updatedAt == "2024-01-01T00:00:00.000Z"
    assert emp.auth_version == 1


def test_candidate_failure_is_a_warning_not_an_error(tenant_db):
    seed_org(tenant_db)
    request = _request(tenant_db)
    migrator = IdentityMigrator(tenant_db, tenant_db.info["notifier"])

    with mock.patch.object(IdentityMigrator, "_ensure_candidate", side_effect=RuntimeError("candidate store down")):
        result = migrator.migrate(request, actor="USR-HRM")

    assert result.employee_flipped is True
    assert result.candidate_id == ""
    assert result.talent_pool_id
    assert result.warnings == ["candidate: candidate store down"]
    assert request.status == stage_graph.STATUS_CLOSED
    assert _count(tenant_db, Candidate) == 0
