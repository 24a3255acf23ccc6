from __future__ import annotations

import threading
import time
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmsync.core.database import Base
from crmsync.ghl.client import GHLClient
from crmsync.ghl.identity import IdentityResolver
from crmsync.ghl.models import GHLSyncLog
from crmsync.practice.models import Profile
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


@pytest.fixture()
def fake() -> FakeGHL:
    return FakeGHL()


@pytest.fixture()
def resolver(fake: FakeGHL) -> IdentityResolver:
    return IdentityResolver(GHLClient(make_settings(), transport=fake.transport()))


def _profile(session: Session, email: str, contact_id: str | None = None) -> Profile:
    profile = Profile(first_name="Ada", last_name="Lovelace", email=email, ghl_contact_id=contact_id)
    session.add(profile)
    session.commit()
    return profile


def _event_types(session: Session) -> list[str]:
    return [row.event_type for row in session.scalars(select(GHLSyncLog)).all()]


@pytest.mark.parametrize("email", ["ada@example.com", "grace@example.com", "x.y+z@example.org"])
def test_unsynced_profile_creates_at_most_one_contact(
    db_session: Session,
    fake: FakeGHL,
    resolver: IdentityResolver,
    email: str,
) -> None:
    profile = _profile(db_session, email)

    contact_id = resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", email, tags=["patient"])

    assert contact_id is not None
    assert [c["id"] for c in fake.contacts.values() if c["email"] == email] == [contact_id]
    assert fake.contacts[contact_id]["tags"] == ["patient"]
    db_session.refresh(profile)
    assert profile.ghl_contact_id == contact_id
    assert _event_types(db_session) == ["get_contact_by_email", "create_contact"]


def test_second_call_reuses_stored_id(db_session: Session, fake: FakeGHL, resolver: IdentityResolver) -> None:
    profile = _profile(db_session, "ada@example.com")

    first = resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", "ada@example.com")
    second = resolver.ensure_contact(db_session, profile.id, "Ada", "King", "ada@example.com")

    assert first == second
    assert len(fake.contacts) == 1
    assert fake.contacts[first]["lastName"] == "King"


def test_stored_id_only_issues_update(db_session: Session, fake: FakeGHL, resolver: IdentityResolver) -> None:
    fake.add_contact("ada@example.com", contact_id="contact-stored")
    profile = _profile(db_session, "ada@example.com", contact_id="contact-stored")

    contact_id = resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", "ada@example.com", "+447700900000")

    assert contact_id == "contact-stored"
    assert fake.calls("GET") == []
    assert fake.calls("POST") == []
    assert [r.method for r in fake.requests] == ["PUT"]
    assert _event_types(db_session) == ["update_contact"]
    assert fake.contacts["contact-stored"]["phone"] == "+447700900000"


def test_stored_id_is_returned_even_when_update_fails(
    db_session: Session,
    fake: FakeGHL,
    resolver: IdentityResolver,
) -> None:
    profile = _profile(db_session, "ada@example.com", contact_id="contact-stored")
    fake.fail_status = 500

    assert resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", "ada@example.com") == "contact-stored"
    assert _event_types(db_session) == ["update_contact"]


def test_existing_remote_contact_is_linked_without_create(
    db_session: Session,
    fake: FakeGHL,
    resolver: IdentityResolver,
) -> None:
    fake.add_contact("ada@example.com", contact_id="contact-remote")
    profile = _profile(db_session, "ada@example.com")

    contact_id = resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", "ada@example.com")

    assert contact_id == "contact-remote"
    assert fake.calls("POST") == []
    db_session.refresh(profile)
    assert profile.ghl_contact_id == "contact-remote"


def test_failed_create_returns_none_and_stores_nothing(
    db_session: Session,
    fake: FakeGHL,
    resolver: IdentityResolver,
) -> None:
    profile = _profile(db_session, "ada@example.com")
    fake.transport_error = "timed out"

    assert resolver.ensure_contact(db_session, profile.id, "Ada", "Lovelace", "ada@example.com") is None
    db_session.refresh(profile)
    assert profile.ghl_contact_id is None
    assert _event_types(db_session) == ["get_contact_by_email", "create_contact"]


def test_concurrent_calls_for_one_profile_create_one_contact(tmp_path: Path, fake: FakeGHL) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'identity.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as setup:
        profile_id = _profile(setup, "ada@example.com").id

    def slow_handle(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            time.sleep(0.05)
        return fake.handle(request)

    client = GHLClient(make_settings(), transport=httpx.MockTransport(slow_handle))
    start = threading.Barrier(4)

    def resolve(_: int) -> str | None:
        start.wait()
        with SessionLocal() as session:
            return IdentityResolver(client).ensure_contact(session, profile_id, "Ada", "Lovelace", "ada@example.com")

    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(resolve, range(4)))
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()

    created = [r for r in fake.requests if r.method == "POST" and r.url.path == "/contacts/"]
    assert len(created) == 1
    assert len(fake.contacts) == 1
    assert len(set(results)) == 1 and results[0] == next(iter(fake.contacts))
