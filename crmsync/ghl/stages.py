from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from crmsync.ghl.client import GHLClient


PENDING_VERIFICATION = "Pending Verification"
VERIFIED_AND_LIVE = "Verified & Live"
REJECTED = "Rejected"

PRACTITIONER_STAGES = (PENDING_VERIFICATION, VERIFIED_AND_LIVE, REJECTED)

IN_QUEUE = "In Queue"
MATCHED = "Matched"
FIRST_SESSION_BOOKED = "First Session Booked"
ACTIVE_PATIENT = "Active Patient"
AT_RISK = "At Risk"
CHURNED = "Churned"

PATIENT_STAGES = (IN_QUEUE, MATCHED, FIRST_SESSION_BOOKED, ACTIVE_PATIENT, AT_RISK, CHURNED)


class StageResolver:
    """Maps a stage name to the remote stage id. Not cached; every call lists the pipeline."""

    def __init__(self, client: GHLClient) -> None:
        self.client = client

    def resolve(
        self,
        session: Session,
        pipeline_id: str | None,
        stage_name: str,
        user_id: uuid.UUID | None = None,
    ) -> str | None:
        if not pipeline_id:
            return None
        wanted = stage_name.casefold()
        for stage in self.client.get_pipeline_stages(session, pipeline_id, user_id=user_id):
            if stage.name.casefold() == wanted:
                return stage.id
        return None
