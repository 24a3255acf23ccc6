"""Lifecycle sync: one method per domain event.

Each method reads the rows it needs from the practice tables, resolves the
remote contact and pipeline stage, then issues the CRM calls in order. Every
method returns a :class:`SyncOutcome`; none of them raise.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crmsync.core.config import Settings
from crmsync.ghl import stages
from crmsync.ghl.client import GHLClient
from crmsync.ghl.identity import IdentityResolver
from crmsync.ghl.outcome import SyncOutcome, fire_and_forget
from crmsync.ghl.schemas import ContactInput, CustomField, OpportunityInput, OpportunityUpdate
from crmsync.ghl.stages import StageResolver
from crmsync.practice.models import Appointment, Patient, Practitioner, Profile


_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_PRACTITIONER_NAME = "your practitioner"


def slug_tag(prefix: str, value: str) -> str:
    return f"{prefix}-{_WHITESPACE_RE.sub('-', value.strip().lower())}"


def pence_to_major(total_pence: int) -> int:
    return int((Decimal(total_pence) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_long_date(value: datetime, tz: ZoneInfo) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(tz)
    return f"{local.day} {local:%B %Y}"


class LifecycleSyncService:
    def __init__(
        self,
        client: GHLClient,
        settings: Settings | None = None,
        *,
        identity: IdentityResolver | None = None,
        stage_resolver: StageResolver | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or client.settings
        self.identity = identity or IdentityResolver(client)
        self.stages = stage_resolver or StageResolver(client)

    @property
    def _tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.sms_timezone)

    def _today(self) -> str:
        return format_long_date(datetime.now(timezone.utc), self._tz)

    def _contact_id(self, session: Session, profile_id: uuid.UUID) -> str | None:
        return session.scalar(select(Profile.ghl_contact_id).where(Profile.id == profile_id))

    def _move(
        self,
        session: Session,
        pipeline_id: str | None,
        opportunity_id: str,
        stage_name: str,
        user_id: uuid.UUID,
    ) -> bool:
        stage_id = self.stages.resolve(session, pipeline_id, stage_name, user_id=user_id)
        if stage_id is None:
            return False
        return self.client.move_opportunity_stage(session, opportunity_id, stage_id, user_id=user_id)

    # Practitioner lifecycle

    @fire_and_forget("practitioner_signed_up")
    def practitioner_signed_up(self, session: Session, practitioner_id: uuid.UUID) -> SyncOutcome:
        practitioner = session.get(Practitioner, practitioner_id)
        if practitioner is None:
            return SyncOutcome.skipped("practitioner_not_found")
        profile = session.get(Profile, practitioner.profile_id)
        if profile is None or not profile.email:
            return SyncOutcome.skipped("profile_email_missing")

        profile_id = profile.id
        first_name = profile.first_name or ""
        last_name = profile.last_name or ""
        discipline = practitioner.discipline
        registration_body = practitioner.registration_body or ""
        registration_number = practitioner.registration_number or ""
        linked_opportunity_id = practitioner.ghl_opportunity_id

        contact_id = self.identity.ensure_contact(
            session,
            profile_id,
            first_name,
            last_name,
            profile.email,
            profile.phone,
            ["practitioner", "onboarding-complete"],
        )
        if contact_id is None:
            return SyncOutcome.skipped("contact_unresolved")
        # One opportunity per practitioner; a linked row only gets the contact refresh.
        if linked_opportunity_id:
            return SyncOutcome.skipped("opportunity_exists")

        tags = ["practitioner", "onboarding-complete"]
        if discipline:
            tags.append(slug_tag("discipline", discipline))
        self.client.add_tag(session, contact_id, tags, user_id=profile_id)

        pipeline_id = self.settings.ghl_practitioner_pipeline_id
        stage_id = self.stages.resolve(session, pipeline_id, stages.PENDING_VERIFICATION, user_id=profile_id)
        if pipeline_id and stage_id:
            opportunity = self.client.create_opportunity(
                session,
                OpportunityInput(
                    name=f"{first_name} {last_name} - Practitioner",
                    pipeline_id=pipeline_id,
                    pipeline_stage_id=stage_id,
                    contact_id=contact_id,
                    status="open",
                ),
                user_id=profile_id,
            )
            if opportunity is not None:
                practitioner = session.get(Practitioner, practitioner_id)
                if practitioner is not None:
                    practitioner.ghl_opportunity_id = opportunity.id
                    session.commit()

        self.client.add_note(
            session,
            contact_id,
            f"Practitioner signed up via {self.settings.brand_name}. "
            f"Discipline: {discipline or 'Not specified'}. "
            f"Registration: {registration_body} {registration_number}.",
            user_id=profile_id,
        )
        return SyncOutcome.synced()

    @fire_and_forget("practitioner_verified")
    def practitioner_verified(self, session: Session, practitioner_id: uuid.UUID) -> SyncOutcome:
        practitioner = session.get(Practitioner, practitioner_id)
        if practitioner is None:
            return SyncOutcome.skipped("practitioner_not_found")
        profile_id = practitioner.profile_id
        opportunity_id = practitioner.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        self.client.add_tag(session, contact_id, ["verified"], user_id=profile_id)
        if opportunity_id:
            self._move(
                session,
                self.settings.ghl_practitioner_pipeline_id,
                opportunity_id,
                stages.VERIFIED_AND_LIVE,
                profile_id,
            )
        self.client.add_note(
            session,
            contact_id,
            f"Practitioner verified by admin on {self._today()}.",
            user_id=profile_id,
        )
        return SyncOutcome.synced()

    @fire_and_forget("practitioner_rejected")
    def practitioner_rejected(self, session: Session, practitioner_id: uuid.UUID, reason: str) -> SyncOutcome:
        practitioner = session.get(Practitioner, practitioner_id)
        if practitioner is None:
            return SyncOutcome.skipped("practitioner_not_found")
        profile_id = practitioner.profile_id
        opportunity_id = practitioner.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        self.client.add_tag(session, contact_id, ["rejected"], user_id=profile_id)
        if opportunity_id:
            self._move(
                session,
                self.settings.ghl_practitioner_pipeline_id,
                opportunity_id,
                stages.REJECTED,
                profile_id,
            )
            self.client.update_opportunity(
                session, opportunity_id, OpportunityUpdate(status="lost"), user_id=profile_id
            )
        self.client.add_note(session, contact_id, f"Rejected. Reason: {reason}", user_id=profile_id)
        return SyncOutcome.synced()

    # Patient lifecycle

    @fire_and_forget("patient_signed_up")
    def patient_signed_up(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile = session.get(Profile, patient.profile_id)
        if profile is None or not profile.email:
            return SyncOutcome.skipped("profile_email_missing")

        profile_id = profile.id
        email = profile.email
        first_name = profile.first_name or ""
        last_name = profile.last_name or ""
        goals = [goal for goal in (patient.goals or []) if isinstance(goal, str) and goal.strip()]
        motivation_level = patient.motivation_level
        diet_type = patient.diet_type
        linked_opportunity_id = patient.ghl_opportunity_id

        tags = ["patient", "in-queue", *(slug_tag("goal", goal) for goal in goals)]
        contact_id = self.identity.ensure_contact(session, profile_id, first_name, last_name, email, profile.phone, tags)
        if contact_id is None:
            return SyncOutcome.skipped("contact_unresolved")
        # A linked patient keeps its opportunity, stage and tags.
        if linked_opportunity_id:
            return SyncOutcome.skipped("opportunity_exists")

        self.client.add_tag(session, contact_id, tags, user_id=profile_id)
        self.client.update_contact(
            session,
            contact_id,
            ContactInput(
                first_name=first_name,
                last_name=last_name,
                email=email,
                location_id=self.client.location_id,
                custom_fields=[
                    CustomField(key="motivation_level", field_value=motivation_level or ""),
                    CustomField(key="diet_type", field_value=diet_type or ""),
                    CustomField(key="programme_week", field_value="1"),
                ],
            ),
            user_id=profile_id,
        )

        pipeline_id = self.settings.patient_pipeline_id
        stage_id = self.stages.resolve(session, pipeline_id, stages.IN_QUEUE, user_id=profile_id)
        if pipeline_id and stage_id:
            opportunity = self.client.create_opportunity(
                session,
                OpportunityInput(
                    name=f"{first_name} {last_name} - Patient",
                    pipeline_id=pipeline_id,
                    pipeline_stage_id=stage_id,
                    contact_id=contact_id,
                    status="open",
                ),
                user_id=profile_id,
            )
            if opportunity is not None:
                patient = session.get(Patient, patient_id)
                if patient is not None:
                    patient.ghl_opportunity_id = opportunity.id
                    session.commit()

        goals_text = ", ".join(goals) if goals else "None specified"
        self.client.add_note(
            session,
            contact_id,
            f"Patient signed up via {self.settings.brand_name}. Health goals: {goals_text}. "
            f"Motivation level: {motivation_level or 'not specified'}.",
            user_id=profile_id,
        )
        return SyncOutcome.synced()

    @fire_and_forget("patient_matched")
    def patient_matched(self, session: Session, patient_id: uuid.UUID, practitioner_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile_id = patient.profile_id
        opportunity_id = patient.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id:
            return SyncOutcome.skipped("contact_id_missing")

        practitioner = session.get(Practitioner, practitioner_id)
        practitioner_name = (practitioner.display_name if practitioner else None) or DEFAULT_PRACTITIONER_NAME

        self.client.remove_tag(session, contact_id, ["in-queue"], user_id=profile_id)
        self.client.add_tag(session, contact_id, ["matched", "active"], user_id=profile_id)
        if opportunity_id:
            self._move(session, self.settings.patient_pipeline_id, opportunity_id, stages.MATCHED, profile_id)
        self.client.add_note(
            session,
            contact_id,
            f"Matched to {practitioner_name} on {self._today()}.",
            user_id=profile_id,
        )
        return SyncOutcome.synced()

    @fire_and_forget("patient_first_booking")
    def patient_first_booking(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile_id = patient.profile_id
        opportunity_id = patient.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id and not opportunity_id:
            return SyncOutcome.skipped("not_linked")

        if contact_id:
            self.client.add_tag(session, contact_id, ["first-booking"], user_id=profile_id)
        if opportunity_id:
            self._move(
                session,
                self.settings.patient_pipeline_id,
                opportunity_id,
                stages.FIRST_SESSION_BOOKED,
                profile_id,
            )
        return SyncOutcome.synced()

    @fire_and_forget("appointment_completed")
    def appointment_completed(self, session: Session, appointment_id: uuid.UUID) -> SyncOutcome:
        appointment = session.get(Appointment, appointment_id)
        if appointment is None:
            return SyncOutcome.skipped("appointment_not_found")
        patient = session.get(Patient, appointment.patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")

        profile_id = patient.profile_id
        opportunity_id = patient.ghl_opportunity_id
        appointment_type = appointment.appointment_type
        session_date = format_long_date(appointment.scheduled_at, self._tz)
        contact_id = self._contact_id(session, profile_id)
        if not contact_id and not opportunity_id:
            return SyncOutcome.skipped("not_linked")

        if opportunity_id:
            other_completed = session.scalar(
                select(func.coalesce(func.sum(Appointment.amount_pence), 0)).where(
                    Appointment.patient_id == patient.id,
                    Appointment.status == "completed",
                    Appointment.id != appointment.id,
                )
            )
            total_pence = int(other_completed or 0) + (appointment.amount_pence or 0)

            self._move(session, self.settings.patient_pipeline_id, opportunity_id, stages.ACTIVE_PATIENT, profile_id)
            self.client.update_opportunity(
                session,
                opportunity_id,
                OpportunityUpdate(monetary_value=pence_to_major(total_pence)),
                user_id=profile_id,
            )

        if contact_id:
            self.client.add_note(
                session,
                contact_id,
                f"Session completed on {session_date}. Type: {appointment_type}.",
                user_id=profile_id,
            )
        return SyncOutcome.synced()

    @fire_and_forget("patient_at_risk")
    def patient_at_risk(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile_id = patient.profile_id
        opportunity_id = patient.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id and not opportunity_id:
            return SyncOutcome.skipped("not_linked")

        if contact_id:
            self.client.add_tag(session, contact_id, ["at-risk"], user_id=profile_id)
            workflow_id = self.settings.ghl_reengagement_workflow_id
            if workflow_id:
                self.client.trigger_workflow(session, contact_id, workflow_id, user_id=profile_id)
        if opportunity_id:
            self._move(session, self.settings.patient_pipeline_id, opportunity_id, stages.AT_RISK, profile_id)
        return SyncOutcome.synced()

    @fire_and_forget("patient_churned")
    def patient_churned(self, session: Session, patient_id: uuid.UUID) -> SyncOutcome:
        patient = session.get(Patient, patient_id)
        if patient is None:
            return SyncOutcome.skipped("patient_not_found")
        profile_id = patient.profile_id
        opportunity_id = patient.ghl_opportunity_id
        contact_id = self._contact_id(session, profile_id)
        if not contact_id and not opportunity_id:
            return SyncOutcome.skipped("not_linked")

        if contact_id:
            self.client.remove_tag(session, contact_id, ["active"], user_id=profile_id)
            self.client.add_tag(session, contact_id, ["churned"], user_id=profile_id)
        if opportunity_id:
            self._move(session, self.settings.patient_pipeline_id, opportunity_id, stages.CHURNED, profile_id)
            self.client.update_opportunity(
                session, opportunity_id, OpportunityUpdate(status="lost"), user_id=profile_id
            )
        return SyncOutcome.synced()
