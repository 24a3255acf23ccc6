from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmsync import events
from crmsync.core.auth import AuthUser, get_current_user
from crmsync.core.config import get_settings
from crmsync.core.database import Base, get_db
from crmsync.core.events import InProcessEventBus, InternalEvent
from crmsync.ghl.api import get_ghl_client
from crmsync.ghl.audit import sync_log_store
from crmsync.ghl.client import GHLClient
from crmsync.ghl.models import GHLSyncLog
from crmsync.main import app
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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def fake() -> FakeGHL:
    return FakeGHL()


@pytest.fixture()
def client(db_session: Session, fake: FakeGHL) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="admin-1", roles=["admin"])

    def override_get_ghl_client() -> GHLClient:
        return GHLClient(make_settings(), transport=fake.transport())

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_ghl_client] = override_get_ghl_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.post("/api/admin/crm/retry", json={"log_id": str(uuid.uuid4())})
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.post(
        "/api/admin/crm/retry",
        json={"log_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_sync_log_rows_carry_request_correlation_id(
    client: TestClient,
    db_session: Session,
    fake: FakeGHL,
) -> None:
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

    response = client.post(
        "/api/admin/crm/retry",
        json={"log_id": str(original.id)},
        headers={"X-Correlation-Id": "corr-retry-1"},
    )
    assert response.status_code == 200

    retried = db_session.scalar(select(GHLSyncLog).where(GHLSyncLog.retry_of_id == original.id))
    assert retried is not None
    assert retried.correlation_id == "corr-retry-1"
    assert original.correlation_id is None


def test_event_envelope_includes_correlation_id(monkeypatch: pytest.MonkeyPatch) -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []
    bus.subscribe(events.PATIENT_CHURNED, received.append)
    monkeypatch.setattr(events, "event_bus", bus)

    envelope = events.publish(events.PATIENT_CHURNED, {"patient_id": "not-a-uuid", "correlation_id": "corr-event-1"})

    assert envelope["correlation_id"] == "corr-event-1"
    assert [event.payload["event_type"] for event in received] == [events.PATIENT_CHURNED]
    assert received[0].payload["correlation_id"] == "corr-event-1"
