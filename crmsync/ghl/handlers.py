from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from sqlalchemy.orm import Session

from crmsync import events
from crmsync.context import correlation_scope
from crmsync.core.events import InProcessEventBus, InternalEvent
from crmsync.ghl.notifications import NotificationService
from crmsync.ghl.outcome import SyncOutcome
from crmsync.ghl.sync import LifecycleSyncService


logger = logging.getLogger("crmsync.ghl.handlers")

SessionScope = Callable[[], AbstractContextManager[Session]]


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str) and value:
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


class SyncEventHandlers:
    """Bus subscribers that turn practice domain events into CRM sync calls.

    Each handler opens its own session and invokes exactly one sync or
    notification method. Events with missing or malformed ids are ignored.
    """

    def __init__(
        self,
        sync_service: LifecycleSyncService,
        notifications: NotificationService,
        session_scope: SessionScope,
    ) -> None:
        self.sync_service = sync_service
        self.notifications = notifications
        self.session_scope = session_scope

    def register(self, bus: InProcessEventBus) -> None:
        bus.subscribe(events.PRACTITIONER_ONBOARDING_COMPLETED, self.on_practitioner_onboarding_completed)
        bus.subscribe(events.PRACTITIONER_VERIFIED, self.on_practitioner_verified)
        bus.subscribe(events.PRACTITIONER_REJECTED, self.on_practitioner_rejected)
        bus.subscribe(events.PATIENT_ONBOARDING_COMPLETED, self.on_patient_onboarding_completed)
        bus.subscribe(events.PATIENT_MATCHED, self.on_patient_matched)
        bus.subscribe(events.PATIENT_MATCHED, self.on_patient_matched_sms)
        bus.subscribe(events.APPOINTMENT_FIRST_BOOKED, self.on_first_booking)
        bus.subscribe(events.APPOINTMENT_COMPLETED, self.on_appointment_completed)
        bus.subscribe(events.PATIENT_AT_RISK, self.on_patient_at_risk)
        bus.subscribe(events.PATIENT_CHURNED, self.on_patient_churned)
        bus.subscribe(events.APPOINTMENT_REMINDER_DUE, self.on_appointment_reminder_due)

    def _run(self, event: InternalEvent, call: Callable[[Session], SyncOutcome]) -> SyncOutcome:
        correlation_id = event.payload.get("correlation_id")
        with correlation_scope(correlation_id if isinstance(correlation_id, str) else None):
            with self.session_scope() as session:
                outcome = call(session)
        logger.info("event.handled", extra={"event": event.name, "outcome": outcome.status, "reason": outcome.reason})
        return outcome

    def _ignored(self, event: InternalEvent, field: str) -> None:
        logger.warning("event.ignored", extra={"event": event.name, "reason": f"invalid {field}"})

    def on_practitioner_onboarding_completed(self, event: InternalEvent) -> None:
        practitioner_id = _parse_uuid(event.payload.get("practitioner_id"))
        if practitioner_id is None:
            return self._ignored(event, "practitioner_id")
        self._run(event, lambda session: self.sync_service.practitioner_signed_up(session, practitioner_id))

    def on_practitioner_verified(self, event: InternalEvent) -> None:
        practitioner_id = _parse_uuid(event.payload.get("practitioner_id"))
        if practitioner_id is None:
            return self._ignored(event, "practitioner_id")
        self._run(event, lambda session: self.sync_service.practitioner_verified(session, practitioner_id))

    def on_practitioner_rejected(self, event: InternalEvent) -> None:
        practitioner_id = _parse_uuid(event.payload.get("practitioner_id"))
        if practitioner_id is None:
            return self._ignored(event, "practitioner_id")
        reason = event.payload.get("reason")
        reason_text = reason if isinstance(reason, str) else ""
        self._run(
            event,
            lambda session: self.sync_service.practitioner_rejected(session, practitioner_id, reason_text),
        )

    def on_patient_onboarding_completed(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        if patient_id is None:
            return self._ignored(event, "patient_id")
        self._run(event, lambda session: self.sync_service.patient_signed_up(session, patient_id))

    def on_patient_matched(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        practitioner_id = _parse_uuid(event.payload.get("practitioner_id"))
        if patient_id is None or practitioner_id is None:
            return self._ignored(event, "patient_id/practitioner_id")
        self._run(event, lambda session: self.sync_service.patient_matched(session, patient_id, practitioner_id))

    def on_patient_matched_sms(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        if patient_id is None:
            return self._ignored(event, "patient_id")
        self._run(event, lambda session: self.notifications.send_matched_sms(session, patient_id))

    def on_first_booking(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        if patient_id is None:
            return self._ignored(event, "patient_id")
        self._run(event, lambda session: self.sync_service.patient_first_booking(session, patient_id))

    def on_appointment_completed(self, event: InternalEvent) -> None:
        appointment_id = _parse_uuid(event.payload.get("appointment_id"))
        if appointment_id is None:
            return self._ignored(event, "appointment_id")
        self._run(event, lambda session: self.sync_service.appointment_completed(session, appointment_id))

    def on_patient_at_risk(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        if patient_id is None:
            return self._ignored(event, "patient_id")
        self._run(event, lambda session: self.sync_service.patient_at_risk(session, patient_id))

    def on_patient_churned(self, event: InternalEvent) -> None:
        patient_id = _parse_uuid(event.payload.get("patient_id"))
        if patient_id is None:
            return self._ignored(event, "patient_id")
        self._run(event, lambda session: self.sync_service.patient_churned(session, patient_id))

    def on_appointment_reminder_due(self, event: InternalEvent) -> None:
        appointment_id = _parse_uuid(event.payload.get("appointment_id"))
        if appointment_id is None:
            return self._ignored(event, "appointment_id")
        self._run(event, lambda session: self.notifications.send_appointment_reminder(session, appointment_id))
