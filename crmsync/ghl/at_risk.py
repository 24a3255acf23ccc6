from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from crmsync.ghl import models
from crmsync.ghl.audit import SyncLogStore, sync_log_store
from crmsync.ghl.notifications import NotificationService
from crmsync.ghl.schemas import AtRiskScanResult
from crmsync.ghl.sync import LifecycleSyncService
from crmsync.practice.models import CheckIn, Patient


logger = logging.getLogger("crmsync.ghl.at_risk")

AT_RISK_TAG = "at-risk"


def _tagged_at_risk(payload: object) -> bool:
    if not isinstance(payload, dict):
        return False
    tags = payload.get("tags")
    return isinstance(tags, list) and AT_RISK_TAG in tags


class AtRiskScanner:
    """Flags matched patients who have not checked in within the inactivity window.

    Patients already tagged ``at-risk`` successfully inside the same window are
    left alone so a daily run does not repeat the tag, workflow and SMS.
    """

    def __init__(
        self,
        sync_service: LifecycleSyncService,
        notifications: NotificationService,
        audit_log: SyncLogStore | None = None,
    ) -> None:
        self.sync_service = sync_service
        self.notifications = notifications
        self.audit_log = audit_log or sync_log_store

    def scan(self, session: Session, *, now: datetime | None = None) -> AtRiskScanResult:
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.sync_service.settings.at_risk_inactivity_days)

        active = session.execute(
            select(Patient.id, Patient.profile_id)
            .where(Patient.practitioner_id.is_not(None))
            .order_by(Patient.created_at.asc())
        ).all()
        if not active:
            return AtRiskScanResult(processed=0, total=0)

        patient_ids = [row.id for row in active]
        recently_checked_in = set(
            session.scalars(
                select(CheckIn.patient_id)
                .where(CheckIn.patient_id.in_(patient_ids), CheckIn.checked_in_at >= since)
                .distinct()
            ).all()
        )
        inactive = [row for row in active if row.id not in recently_checked_in]
        if not inactive:
            return AtRiskScanResult(processed=0, total=0)

        recent_tags = self.audit_log.list_since(
            session,
            event_type=models.ADD_TAG,
            since=since,
            user_ids=[row.profile_id for row in inactive],
        )
        already_flagged = {entry.user_id for entry in recent_tags if entry.success and _tagged_at_risk(entry.payload)}
        to_process = [row for row in inactive if row.profile_id not in already_flagged]

        processed = 0
        for row in to_process:
            outcome = self.sync_service.patient_at_risk(session, row.id)
            self.notifications.send_low_checkin_nudge(session, row.id)
            if outcome.status != "failed":
                processed += 1

        logger.info("at_risk.scan_completed", extra={"done": processed, "total": len(to_process)})
        return AtRiskScanResult(processed=processed, total=len(to_process))
