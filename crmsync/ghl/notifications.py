from __future__ import annotations

import uuid
from datetime import timezone
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from crmsync.core.config import Settings
from crmsync.ghl.client import GHLClient
from crmsync.ghl.outcome import SyncOutcome, fire_and_forget
from crmsync.practice.models import Appointment, Patient, Practitioner, Profile


DEFAULT_GREETING_NAME = "there"


class NotificationService:
    """Best-effort SMS through the CRM. Recipients without a stored contact id are skipped."""

    def __init__(self, client: GHLClient, settings: Settings | None = None) -> None:
        self.client = client
        self.settings = settings or client.settings

    @fire_and_forget("appointment_reminder_sms")
    def send_appointment_reminder(self, session: Session, appointment_id: uuid.UUID) -> SyncOutcome:
        appointment = session.get(Appointment, appointment_id)
        if appointment is None:
            return SyncOutcome.skipped("appointment_not_found")
        patient = session.get(Patient, appointment.patient_id)
        practitioner = session.get(Practitioner, appointment.practitioner_id)
        patient_profile = session.get(Profile, patient.profile_id) if patient else None
        practitioner_profile = session.get(Profile, practitioner.profile_id) if practitioner else None

        scheduled_at = appointment.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        time_text = scheduled_at.astimezone(ZoneInfo(self.settings.sms_timezone)).strftime("%H:%M")
        join_url = appointment.daily_room_url or self.settings.app_url

        patient_name = (patient_profile.first_name if patient_profile else None) or DEFAULT_GREETING_NAME
        practitioner_name = (practitioner.display_name if practitioner else None) or "your practitioner"
        patient_contact_id = patient_profile.ghl_contact_id if patient_profile else None
        practitioner_contact_id = practitioner_profile.ghl_contact_id if practitioner_profile else None
        if not patient_contact_id and not practitioner_contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        if patient_contact_id and patient_profile is not None:
            self.client.send_sms(
                session,
                patient_contact_id,
                f"Hi {patient_name}, reminder: your session with {practitioner_name} is tomorrow at "
                f"{time_text}. Join here: {join_url}",
                user_id=patient_profile.id,
            )
        if practitioner_contact_id and practitioner_profile is not None:
            self.client.send_sms(
                session,
                practitioner_contact_id,
                f"Reminder: session with {patient_name} tomorrow at {time_text}.",
                user_id=practitioner_profile.id,
            )
        return SyncOutcome.synced()

    @fire_and_forget("low_checkin_sms")
    def send_low_checkin_nudge(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile = session.get(Profile, patient.profile_id)
        if profile is None or not profile.ghl_contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        name = profile.first_name or DEFAULT_GREETING_NAME
        self.client.send_sms(
            session,
            profile.ghl_contact_id,
            f"Hi {name}, we noticed you haven't logged a check-in recently. Your practitioner is here to "
            f"help, log in to {self.settings.brand_name} to stay on track.",
            user_id=profile.id,
        )
        return SyncOutcome.synced()

    @fire_and_forget("matched_sms")
    def send_matched_sms(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile = session.get(Profile, patient.profile_id)
        if profile is None or not profile.ghl_contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        practitioner_name = "your new practitioner"
        if patient.practitioner_id is not None:
            practitioner = session.get(Practitioner, patient.practitioner_id)
            if practitioner is not None and practitioner.display_name:
                practitioner_name = practitioner.display_name

        name = profile.first_name or DEFAULT_GREETING_NAME
        self.client.send_sms(
            session,
            profile.ghl_contact_id,
            f"Hi {name}, great news! You've been matched with {practitioner_name} on "
            f"{self.settings.brand_name}. Check your email to book your first session.",
            user_id=profile.id,
        )
        return SyncOutcome.synced()
