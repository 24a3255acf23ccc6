from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from crmsync.context import get_correlation_id
from crmsync.ghl.models import GHLSyncLog


logger = logging.getLogger("crmsync.ghl.audit")


class SyncLogStore:
    """Append-only store for outbound CRM calls.

    Writing never raises: a failed insert is rolled back, logged as
    ``audit.write_failed`` and reported as ``None``.
    """

    def record(
        self,
        session: Session,
        *,
        event_type: str,
        success: bool,
        user_id: uuid.UUID | None = None,
        contact_id: str | None = None,
        method: str | None = None,
        path: str | None = None,
        payload: Any = None,
        response: Any = None,
        error: str | None = None,
        retry_of_id: uuid.UUID | None = None,
    ) -> GHLSyncLog | None:
        entry = GHLSyncLog(
            event_type=event_type,
            user_id=user_id,
            ghl_contact_id=contact_id,
            request_method=method,
            request_path=path,
            payload=payload,
            response=response,
            success=success,
            error=error,
            retry_of_id=retry_of_id,
            correlation_id=get_correlation_id(),
        )
        try:
            session.add(entry)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("audit.write_failed", extra={"event_type": event_type, "error": str(exc)[:500]})
            return None
        return entry

    def get(self, session: Session, log_id: uuid.UUID) -> GHLSyncLog | None:
        return session.scalar(select(GHLSyncLog).where(GHLSyncLog.id == log_id))

    def list_recent(
        self,
        session: Session,
        *,
        limit: int = 50,
        event_type: str | None = None,
        success: bool | None = None,
    ) -> list[GHLSyncLog]:
        stmt = select(GHLSyncLog).options(joinedload(GHLSyncLog.profile))
        if event_type is not None:
            stmt = stmt.where(GHLSyncLog.event_type == event_type)
        if success is not None:
            stmt = stmt.where(GHLSyncLog.success.is_(success))
        stmt = stmt.order_by(GHLSyncLog.created_at.desc(), GHLSyncLog.id.desc()).limit(limit)
        return list(session.scalars(stmt).all())

    def list_since(
        self,
        session: Session,
        *,
        event_type: str,
        since: datetime,
        user_ids: list[uuid.UUID] | None = None,
    ) -> list[GHLSyncLog]:
        stmt = select(GHLSyncLog).where(GHLSyncLog.event_type == event_type, GHLSyncLog.created_at >= since)
        if user_ids is not None:
            if not user_ids:
                return []
            stmt = stmt.where(GHLSyncLog.user_id.in_(user_ids))
        return list(session.scalars(stmt).all())


sync_log_store = SyncLogStore()
