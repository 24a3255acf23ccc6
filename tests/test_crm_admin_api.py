from __future__ import annotations

import json
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmsync.core.auth import AuthUser, get_current_user
from crmsync.core.config import get_settings
from crmsync.core.database import Base, get_db
from crmsync.ghl.api import get_ghl_client
from crmsync.ghl.audit import sync_log_store
from crmsync.ghl.client import GHLClient
from crmsync.ghl.models import GHLSyncLog
from crmsync.main import app
from crmsync.practice.models import Patient, Practitioner, Profile
from ghl_fake import FakeGHL, make_settings


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("CRON_SECRET", "cron-s3cret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def fake() -> FakeGHL:
    return FakeGHL()


@pytest.fixture()
def actor() -> dict[str, AuthUser]:
    return {"current": AuthUser(sub="admin-1", roles=["admin"])}


@pytest.fixture()
def client(db_session: Session, fake: FakeGHL, actor: dict[str, AuthUser]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return actor["current"]

    def override_get_ghl_client() -> GHLClient:
        return GHLClient(make_settings(), transport=fake.transport())

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_ghl_client] = override_get_ghl_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_practitioners(session: Session, count: int) -> None:
    for index in range(count):
        profile = Profile(role="practitioner", first_name=f"P{index}", last_name="Test", email=f"p{index}@example.com")
        session.add(profile)
        session.flush()
        session.add(Practitioner(profile_id=profile.id, discipline="Nutrition"))
    session.commit()


def test_bulk_sync_streams_ndjson_progress(client: TestClient, db_session: Session) -> None:
    _seed_practitioners(db_session, 3)

    response = client.post("/api/admin/crm/sync/practitioners")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in response.text.splitlines() if line]
    assert lines[0] == {"total": 3}
    assert lines[1:4] == [{"done": 1, "total": 3}, {"done": 2, "total": 3}, {"done": 3, "total": 3}]
    assert lines[-1] == {"complete": True, "synced": 3}


def test_bulk_sync_patients_with_all_scope(client: TestClient, db_session: Session) -> None:
    profile = Profile(role="patient", first_name="Q", last_name="A", email="q@example.com", ghl_contact_id="contact-q")
    db_session.add(profile)
    db_session.flush()
    db_session.add(Patient(profile_id=profile.id))
    db_session.commit()

    unsynced = client.post("/api/admin/crm/sync/patients")
    everything = client.post("/api/admin/crm/sync/patients?scope=all")

    assert json.loads(unsynced.text.splitlines()[0]) == {"total": 0}
    assert json.loads(everything.text.splitlines()[0]) == {"total": 1}


def test_bulk_sync_rejects_unknown_actor_type(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/admin/crm/sync/clinics")

    assert response.status_code == 422
    assert db_session.scalar(select(func.count()).select_from(GHLSyncLog)) == 0


def test_admin_routes_require_admin(client: TestClient, actor: dict[str, AuthUser]) -> None:
    actor["current"] = AuthUser(sub="user-1", roles=["user"])

    assert client.post("/api/admin/crm/sync/practitioners").status_code == 403
    assert client.post("/api/admin/crm/retry", json={"log_id": str(uuid.uuid4())}).status_code == 403
    assert client.get("/api/admin/crm/log").status_code == 403
    assert client.post("/api/admin/crm/test").status_code == 403


def test_retry_replays_entry(client: TestClient, db_session: Session, fake: FakeGHL) -> None:
    fake.add_contact("c1@example.com", contact_id="C1")
    original = sync_log_store.record(
        db_session,
        event_type="add_tag",
        success=False,
        contact_id="C1",
        method="POST",
        path="/contacts/C1/tags",
        payload={"tags": ["at-risk"]},
        error="HTTP 502",
    )
    assert original is not None

    response = client.post("/api/admin/crm/retry", json={"log_id": str(original.id)})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["success"] is True
    assert body["log_id"] != str(original.id)
    assert fake.contact_tags("C1") == ["at-risk"]


def test_retry_unknown_entry_returns_error_envelope(client: TestClient) -> None:
    response = client.post(
        "/api/admin/crm/retry",
        json={"log_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "retry-corr-1"},
    )

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "crm_sync_retry_failed"
    assert body["message"] == "log entry not found"
    assert body["correlation_id"] == "retry-corr-1"


def test_log_lists_recent_rows_with_filters(client: TestClient, db_session: Session) -> None:
    sync_log_store.record(db_session, event_type="add_tag", success=True, method="POST", path="/contacts/a/tags")
    sync_log_store.record(db_session, event_type="send_sms", success=False, error="HTTP 500")
    sync_log_store.record(db_session, event_type="send_sms", success=True)

    everything = client.get("/api/admin/crm/log")
    failed_sms = client.get("/api/admin/crm/log?event_type=send_sms&success=false")
    limited = client.get("/api/admin/crm/log?limit=1")

    assert everything.status_code == 200
    assert len(everything.json()["rows"]) == 3
    rows = failed_sms.json()["rows"]
    assert len(rows) == 1
    assert rows[0]["event_type"] == "send_sms"
    assert rows[0]["error"] == "HTTP 500"
    assert len(limited.json()["rows"]) == 1


def test_log_rows_name_the_profile(client: TestClient, db_session: Session) -> None:
    profile = Profile(role="patient", first_name="Quinn", last_name="Avery", email="quinn@example.com")
    db_session.add(profile)
    db_session.commit()
    sync_log_store.record(db_session, event_type="send_sms", success=False, user_id=profile.id, error="HTTP 500")
    sync_log_store.record(db_session, event_type="get_pipeline_stages", success=True)

    rows = client.get("/api/admin/crm/log").json()["rows"]

    by_type = {row["event_type"]: row for row in rows}
    assert by_type["send_sms"]["profile"] == {
        "first_name": "Quinn",
        "last_name": "Avery",
        "email": "quinn@example.com",
    }
    assert by_type["get_pipeline_stages"]["profile"] is None


def test_log_rejects_out_of_range_limit(client: TestClient) -> None:
    assert client.get("/api/admin/crm/log?limit=0").status_code == 422
    assert client.get("/api/admin/crm/log?limit=201").status_code == 422


def test_connection_check(client: TestClient, fake: FakeGHL) -> None:
    ok = client.post("/api/admin/crm/test")
    fake.fail_status = 401
    rejected = client.post("/api/admin/crm/test")

    assert ok.json() == {"ok": True, "error": None}
    assert rejected.json() == {"ok": False, "error": "HTTP 401"}


def test_cron_requires_bearer_secret(client: TestClient) -> None:
    missing = client.post("/api/cron/at-risk")
    wrong = client.post("/api/cron/at-risk", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["code"] == "cron_unauthorized"
    assert wrong.status_code == 401


def test_cron_runs_at_risk_scan(client: TestClient, db_session: Session, fake: FakeGHL) -> None:
    prac_profile = Profile(role="practitioner", first_name="Pat", last_name="Chen")
    pat_profile = Profile(role="patient", first_name="Idle", last_name="Test", ghl_contact_id="contact-idle")
    db_session.add_all([prac_profile, pat_profile])
    db_session.flush()
    practitioner = Practitioner(profile_id=prac_profile.id)
    db_session.add(practitioner)
    db_session.flush()
    db_session.add(Patient(profile_id=pat_profile.id, practitioner_id=practitioner.id))
    db_session.commit()
    fake.add_contact("idle@example.com", contact_id="contact-idle")

    response = client.post("/api/cron/at-risk", headers={"Authorization": "Bearer cron-s3cret"})

    assert response.status_code == 200
    assert response.json() == {"processed": 1, "total": 1}
    assert fake.contact_tags("contact-idle") == ["at-risk"]


def test_health_reports_crm_configuration(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "ghl_configured" in response.json()
