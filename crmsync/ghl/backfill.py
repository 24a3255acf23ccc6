from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from crmsync.ghl import models
from crmsync.ghl.audit import SyncLogStore, sync_log_store
from crmsync.ghl.client import GHLClient
from crmsync.ghl.outcome import SyncOutcome
from crmsync.ghl.schemas import ActorType, BackfillScope, RetryResponse
from crmsync.ghl.sync import LifecycleSyncService
from crmsync.metrics import observe_backfill_row
from crmsync.otel import tag_span
from crmsync.practice.models import Patient, Practitioner, Profile


logger = logging.getLogger("crmsync.ghl.backfill")
tracer = trace.get_tracer("crmsync.ghl.backfill")

ProgressEvent = dict[str, Any]


def _select_rows(session: Session, actor_type: ActorType, scope: BackfillScope) -> list[uuid.UUID]:
    model: type[Practitioner] | type[Patient] = Practitioner if actor_type == "practitioners" else Patient
    stmt = select(model.id).join(Profile, Profile.id == model.profile_id)
    if scope == "unsynced":
        stmt = stmt.where(Profile.ghl_contact_id.is_(None))
    stmt = stmt.order_by(model.created_at.asc(), model.id.asc())
    return list(session.scalars(stmt).all())


class BackfillService:
    def __init__(self, sync_service: LifecycleSyncService, audit_log: SyncLogStore | None = None) -> None:
        self.sync_service = sync_service
        self.audit_log = audit_log or sync_log_store

    @property
    def client(self) -> GHLClient:
        return self.sync_service.client

    def _signup_for(self, actor_type: ActorType) -> Callable[[Session, uuid.UUID], SyncOutcome]:
        if actor_type == "practitioners":
            return self.sync_service.practitioner_signed_up
        return self.sync_service.patient_signed_up

    def bulk_sync(
        self,
        session: Session,
        actor_type: ActorType,
        scope: BackfillScope = "unsynced",
    ) -> Iterator[ProgressEvent]:
        """Run the signup sync for every selected row, one at a time.

        Yields ``{"total": n}`` first, ``{"done": i, "total": n}`` after each row,
        and ``{"complete": True, "synced": k}`` last.
        """
        row_ids = _select_rows(session, actor_type, scope)
        total = len(row_ids)
        sync_one = self._signup_for(actor_type)
        logger.info("backfill.started", extra={"actor_type": actor_type, "total": total})
        yield {"total": total}

        span = tracer.start_span("ghl.backfill")
        tag_span(span, **{"ghl.backfill.actor_type": actor_type, "ghl.backfill.scope": scope, "ghl.backfill.total": total})
        synced = 0
        done = 0
        try:
            for row_id in row_ids:
                outcome = sync_one(session, row_id)
                done += 1
                if outcome.is_synced:
                    synced += 1
                observe_backfill_row(actor_type, outcome.status)
                logger.info(
                    "backfill.row",
                    extra={
                        "actor_type": actor_type,
                        "actor_id": str(row_id),
                        "outcome": outcome.status,
                        "reason": outcome.reason,
                        "done": done,
                        "total": total,
                    },
                )
                yield {"done": done, "total": total}
        finally:
            span.set_attribute("ghl.backfill.done", done)
            span.set_attribute("ghl.backfill.synced", synced)
            span.end()

        logger.info("backfill.completed", extra={"actor_type": actor_type, "done": done, "total": total})
        yield {"complete": True, "synced": synced}

    def retry_entry(self, session: Session, log_id: uuid.UUID) -> RetryResponse:
        entry = self.audit_log.get(session, log_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="log entry not found")
        if not entry.request_method or not entry.request_path:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="log entry has no replayable request",
            )

        original_id = entry.id
        event_type = entry.event_type
        user_id = entry.user_id
        payload = entry.payload
        result = self.client.replay(session, entry)
        linked_id = self._link_created(session, event_type, user_id, payload, result.data) if result.ok else None
        logger.info(
            "retry.completed",
            extra={
                "log_id": str(original_id),
                "event_type": event_type,
                "success": result.ok,
                "error": result.error,
            },
        )
        return RetryResponse(
            ok=True,
            log_id=result.log_id,
            success=result.ok,
            error=result.error,
            linked_id=linked_id,
        )

    def _link_created(
        self,
        session: Session,
        event_type: str,
        user_id: uuid.UUID | None,
        payload: Any,
        data: Any,
    ) -> str | None:
        """Store the id of a contact or opportunity created by a retry on its row.

        Rows that already hold an id keep it.
        """
        if user_id is None or not isinstance(data, dict):
            return None
        key = "contact" if event_type == models.CREATE_CONTACT else "opportunity"
        created = data.get(key)
        created_id = created.get("id") if isinstance(created, dict) else None
        if not isinstance(created_id, str) or not created_id:
            return None

        if event_type == models.CREATE_CONTACT:
            profile = session.get(Profile, user_id)
            if profile is None or profile.ghl_contact_id:
                return None
            profile.ghl_contact_id = created_id
        elif event_type == models.CREATE_OPPORTUNITY:
            settings = self.sync_service.settings
            pipeline_id = payload.get("pipelineId") if isinstance(payload, dict) else None
            actor_model: type[Practitioner] | type[Patient]
            if pipeline_id and pipeline_id == settings.ghl_practitioner_pipeline_id:
                actor_model = Practitioner
            elif pipeline_id and pipeline_id == settings.patient_pipeline_id:
                actor_model = Patient
            else:
                return None
            actor = session.scalar(select(actor_model).where(actor_model.profile_id == user_id))
            if actor is None or actor.ghl_opportunity_id:
                return None
            actor.ghl_opportunity_id = created_id
        else:
            return None

        session.commit()
        logger.info("retry.linked", extra={"event_type": event_type, "user_id": str(user_id)})
        return created_id
