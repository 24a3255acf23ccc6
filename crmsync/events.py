from __future__ import annotations

from typing import Any

from crmsync.context import get_correlation_id
from crmsync.core.events import event_bus

PRACTITIONER_ONBOARDING_COMPLETED = "practitioner.onboarding_completed"
PRACTITIONER_VERIFIED = "practitioner.verified"
PRACTITIONER_REJECTED = "practitioner.rejected"
PATIENT_ONBOARDING_COMPLETED = "patient.onboarding_completed"
PATIENT_MATCHED = "patient.matched"
APPOINTMENT_FIRST_BOOKED = "appointment.first_booked"
APPOINTMENT_COMPLETED = "appointment.completed"
PATIENT_AT_RISK = "patient.at_risk"
PATIENT_CHURNED = "patient.churned"
APPOINTMENT_REMINDER_DUE = "appointment.reminder_due"


def publish(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Publish a practice domain event; payload ids are stringified uuids."""
    envelope: dict[str, Any] = {"event_type": event_type, **payload}
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    event_bus.publish(event_type, envelope)
    return envelope
