from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crmsync.core.database import Base
from crmsync.practice.models import Profile


CREATE_CONTACT = "create_contact"
UPDATE_CONTACT = "update_contact"
GET_CONTACT_BY_EMAIL = "get_contact_by_email"
ADD_TAG = "add_tag"
REMOVE_TAG = "remove_tag"
CREATE_OPPORTUNITY = "create_opportunity"
UPDATE_OPPORTUNITY = "update_opportunity"
MOVE_OPPORTUNITY_STAGE = "move_opportunity_stage"
GET_PIPELINE_STAGES = "get_pipeline_stages"
ADD_NOTE = "add_note"
SEND_SMS = "send_sms"
TRIGGER_WORKFLOW = "trigger_workflow"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GHLSyncLog(Base):
    """One row per outbound CRM call. Rows are appended, never updated."""

    __tablename__ = "ghl_sync_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    ghl_contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_method: Mapped[str | None] = mapped_column(String(8), nullable=True)
    request_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    response: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_of_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ghl_sync_log.id", ondelete="SET NULL"),
        nullable=True,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    profile: Mapped[Profile | None] = relationship("Profile")


Index("ix_ghl_sync_log_created_at", GHLSyncLog.created_at)
Index("ix_ghl_sync_log_user_event", GHLSyncLog.user_id, GHLSyncLog.event_type)
