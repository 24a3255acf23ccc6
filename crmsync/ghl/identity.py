from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.orm import Session

from crmsync.ghl.client import GHLClient
from crmsync.ghl.schemas import ContactInput
from crmsync.practice.models import Profile


logger = logging.getLogger("crmsync.ghl.identity")


class _KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[uuid.UUID, threading.Lock] = defaultdict(threading.Lock)
        self._waiters: dict[uuid.UUID, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: uuid.UUID) -> Iterator[None]:
        with self._guard:
            lock = self._locks[key]
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]


# Shared by every resolver in the process so concurrent requests for one
# profile cannot both create a contact.
profile_locks = _KeyedLocks()


class IdentityResolver:
    """Ensures a remote contact exists for a profile and returns its id.

    A stored ``profiles.ghl_contact_id`` always wins: the remote record is
    refreshed with an update and no lookup or create is issued. Otherwise the
    contact is found by email or created, and the id is written back to the
    profile row. Calls for the same profile are serialized within the process.
    """

    def __init__(self, client: GHLClient, locks: _KeyedLocks | None = None) -> None:
        self.client = client
        self._locks = locks or profile_locks

    def ensure_contact(
        self,
        session: Session,
        profile_id: uuid.UUID,
        first_name: str,
        last_name: str,
        email: str,
        phone: str | None = None,
        tags: list[str] | None = None,
    ) -> str | None:
        with self._locks.hold(profile_id):
            stored = session.scalar(select(Profile.ghl_contact_id).where(Profile.id == profile_id))
            if stored:
                self.client.update_contact(
                    session,
                    stored,
                    ContactInput(
                        first_name=first_name,
                        last_name=last_name,
                        email=email,
                        phone=phone,
                        location_id=self.client.location_id,
                    ),
                    user_id=profile_id,
                )
                return stored

            contact = self.client.get_contact_by_email(session, email, user_id=profile_id)
            if contact is None:
                contact = self.client.create_contact(
                    session,
                    ContactInput(
                        first_name=first_name,
                        last_name=last_name,
                        email=email,
                        phone=phone,
                        tags=tags,
                        location_id=self.client.location_id,
                    ),
                    user_id=profile_id,
                )
            if contact is None:
                logger.info("identity.unresolved", extra={"user_id": str(profile_id)})
                return None

            profile = session.get(Profile, profile_id)
            if profile is not None:
                profile.ghl_contact_id = contact.id
                session.commit()
            return contact.id
