"""GoHighLevel (LeadConnector) API client.

Every public call writes exactly one row to ``ghl_sync_log`` and never raises.
Failures come back as ``None``, ``False`` or an empty list; the audit row is the
only place the reason is kept.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import quote, urlencode

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from crmsync.core.config import Settings, get_settings
from crmsync.ghl import models
from crmsync.ghl.audit import SyncLogStore, sync_log_store
from crmsync.ghl.models import GHLSyncLog
from crmsync.ghl.schemas import (
    ConnectionTestResult,
    Contact,
    ContactInput,
    Opportunity,
    OpportunityInput,
    OpportunityUpdate,
    PipelineStage,
)
from crmsync.metrics import observe_ghl_request
from crmsync.otel import tag_span


logger = logging.getLogger("crmsync.ghl.client")
tracer = trace.get_tracer("crmsync.ghl.client")

MISSING_API_KEY_ERROR = "GHL_API_KEY not set"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class GHLResult:
    data: Any
    ok: bool
    log_id: uuid.UUID | None = None
    error: str | None = None


def _contact_id_from(data: Any) -> str | None:
    if isinstance(data, dict):
        contact = data.get("contact")
        if isinstance(contact, dict) and isinstance(contact.get("id"), str):
            return contact["id"]
    return None


def _decode(model: type[ModelT], data: Any, event_type: str) -> ModelT | None:
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("ghl.decode_failed", extra={"event_type": event_type, "error": str(exc)[:500]})
        return None


class GHLClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        audit_log: SyncLogStore | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.audit_log = audit_log or sync_log_store
        self.transport = transport

    @property
    def location_id(self) -> str:
        return self.settings.ghl_location_id or ""

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.ghl_api_key or ''}",
            "Version": self.settings.ghl_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _http(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.settings.ghl_base_url,
            headers=self._headers(),
            timeout=self.settings.ghl_timeout_seconds,
            transport=self.transport,
        )

    def _request(
        self,
        session: Session,
        method: str,
        path: str,
        event_type: str,
        *,
        json_body: Any = None,
        user_id: uuid.UUID | None = None,
        contact_id: str | None = None,
        retry_of_id: uuid.UUID | None = None,
    ) -> GHLResult:
        method = method.upper()
        if not self.settings.ghl_api_key:
            entry = self.audit_log.record(
                session,
                event_type=event_type,
                success=False,
                user_id=user_id,
                contact_id=contact_id,
                method=method,
                path=path,
                payload=json_body,
                error=MISSING_API_KEY_ERROR,
                retry_of_id=retry_of_id,
            )
            observe_ghl_request(event_type, "not_configured", 0.0)
            logger.info("ghl.not_configured", extra={"event_type": event_type})
            return GHLResult(data=None, ok=False, log_id=entry.id if entry else None, error=MISSING_API_KEY_ERROR)

        started = time.perf_counter()
        with tracer.start_as_current_span("ghl.request") as span:
            tag_span(span, **{"ghl.event_type": event_type, "http.method": method, "ghl.retry": retry_of_id is not None})

            response_data: Any = None
            status_code: int | None = None
            error: str | None = None
            ok = False
            try:
                with self._http() as http:
                    response = http.request(method, path, json=json_body)
                status_code = response.status_code
                try:
                    response_data = response.json()
                except ValueError:
                    response_data = None
                ok = response.is_success
                if not ok:
                    error = f"HTTP {status_code}"
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                span.record_exception(exc)

            if not ok:
                span.set_status(Status(StatusCode.ERROR, error or ""))
            if status_code is not None:
                span.set_attribute("http.status_code", status_code)

        duration = time.perf_counter() - started
        entry = self.audit_log.record(
            session,
            event_type=event_type,
            success=ok,
            user_id=user_id,
            contact_id=contact_id or _contact_id_from(response_data),
            method=method,
            path=path,
            payload=json_body,
            response=response_data,
            error=error,
            retry_of_id=retry_of_id,
        )
        observe_ghl_request(event_type, "success" if ok else "failure", duration)
        logger.info(
            "ghl.request",
            extra={
                "event_type": event_type,
                "success": ok,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
                "error": error,
            },
        )
        return GHLResult(data=response_data, ok=ok, log_id=entry.id if entry else None, error=error)

    # Contacts

    def create_contact(self, session: Session, data: ContactInput, user_id: uuid.UUID | None = None) -> Contact | None:
        if data.location_id is None:
            data = data.model_copy(update={"location_id": self.location_id})
        result = self._request(
            session, "POST", "/contacts/", models.CREATE_CONTACT, json_body=data.to_wire(), user_id=user_id
        )
        if not result.ok or not isinstance(result.data, dict):
            return None
        return _decode(Contact, result.data.get("contact"), models.CREATE_CONTACT)

    def update_contact(
        self,
        session: Session,
        contact_id: str,
        data: ContactInput,
        user_id: uuid.UUID | None = None,
    ) -> Contact | None:
        result = self._request(
            session,
            "PUT",
            f"/contacts/{quote(contact_id, safe='')}",
            models.UPDATE_CONTACT,
            json_body=data.to_wire(),
            user_id=user_id,
            contact_id=contact_id,
        )
        if not result.ok or not isinstance(result.data, dict):
            return None
        return _decode(Contact, result.data.get("contact"), models.UPDATE_CONTACT)

    def get_contact_by_email(self, session: Session, email: str, user_id: uuid.UUID | None = None) -> Contact | None:
        query = urlencode({"email": email, "locationId": self.location_id})
        result = self._request(session, "GET", f"/contacts/?{query}", models.GET_CONTACT_BY_EMAIL, user_id=user_id)
        if not result.ok or not isinstance(result.data, dict):
            return None
        contacts = result.data.get("contacts")
        if not isinstance(contacts, list) or not contacts:
            return None
        return _decode(Contact, contacts[0], models.GET_CONTACT_BY_EMAIL)

    def add_tag(self, session: Session, contact_id: str, tags: list[str], user_id: uuid.UUID | None = None) -> bool:
        result = self._request(
            session,
            "POST",
            f"/contacts/{quote(contact_id, safe='')}/tags",
            models.ADD_TAG,
            json_body={"tags": tags},
            user_id=user_id,
            contact_id=contact_id,
        )
        return result.ok

    def remove_tag(self, session: Session, contact_id: str, tags: list[str], user_id: uuid.UUID | None = None) -> bool:
        result = self._request(
            session,
            "DELETE",
            f"/contacts/{quote(contact_id, safe='')}/tags",
            models.REMOVE_TAG,
            json_body={"tags": tags},
            user_id=user_id,
            contact_id=contact_id,
        )
        return result.ok

    # Opportunities and pipelines

    def create_opportunity(
        self,
        session: Session,
        data: OpportunityInput,
        user_id: uuid.UUID | None = None,
    ) -> Opportunity | None:
        result = self._request(
            session,
            "POST",
            "/opportunities/",
            models.CREATE_OPPORTUNITY,
            json_body=data.to_wire(),
            user_id=user_id,
            contact_id=data.contact_id,
        )
        if not result.ok or not isinstance(result.data, dict):
            return None
        return _decode(Opportunity, result.data.get("opportunity"), models.CREATE_OPPORTUNITY)

    def update_opportunity(
        self,
        session: Session,
        opportunity_id: str,
        data: OpportunityUpdate,
        user_id: uuid.UUID | None = None,
    ) -> Opportunity | None:
        result = self._request(
            session,
            "PUT",
            f"/opportunities/{quote(opportunity_id, safe='')}",
            models.UPDATE_OPPORTUNITY,
            json_body=data.to_wire(),
            user_id=user_id,
        )
        if not result.ok or not isinstance(result.data, dict):
            return None
        return _decode(Opportunity, result.data.get("opportunity"), models.UPDATE_OPPORTUNITY)

    def move_opportunity_stage(
        self,
        session: Session,
        opportunity_id: str,
        stage_id: str,
        user_id: uuid.UUID | None = None,
    ) -> bool:
        result = self._request(
            session,
            "PUT",
            f"/opportunities/{quote(opportunity_id, safe='')}",
            models.MOVE_OPPORTUNITY_STAGE,
            json_body=OpportunityUpdate(pipeline_stage_id=stage_id).to_wire(),
            user_id=user_id,
        )
        return result.ok

    def get_pipeline_stages(
        self,
        session: Session,
        pipeline_id: str,
        user_id: uuid.UUID | None = None,
    ) -> list[PipelineStage]:
        query = urlencode({"locationId": self.location_id})
        result = self._request(
            session,
            "GET",
            f"/opportunities/pipelines/{quote(pipeline_id, safe='')}?{query}",
            models.GET_PIPELINE_STAGES,
            user_id=user_id,
        )
        if not result.ok or not isinstance(result.data, dict):
            return []
        raw_stages = result.data.get("stages")
        if raw_stages is None and isinstance(result.data.get("pipeline"), dict):
            raw_stages = result.data["pipeline"].get("stages")
        if not isinstance(raw_stages, list):
            return []
        stages: list[PipelineStage] = []
        for raw in raw_stages:
            stage = _decode(PipelineStage, raw, models.GET_PIPELINE_STAGES)
            if stage is not None:
                stages.append(stage)
        return stages

    # Notes, messages, workflows

    def add_note(self, session: Session, contact_id: str, body: str, user_id: uuid.UUID | None = None) -> bool:
        result = self._request(
            session,
            "POST",
            f"/contacts/{quote(contact_id, safe='')}/notes",
            models.ADD_NOTE,
            json_body={"body": body},
            user_id=user_id,
            contact_id=contact_id,
        )
        return result.ok

    def send_sms(self, session: Session, contact_id: str, message: str, user_id: uuid.UUID | None = None) -> bool:
        result = self._request(
            session,
            "POST",
            "/conversations/messages",
            models.SEND_SMS,
            json_body={"type": "SMS", "contactId": contact_id, "message": message},
            user_id=user_id,
            contact_id=contact_id,
        )
        return result.ok

    def trigger_workflow(
        self,
        session: Session,
        contact_id: str,
        workflow_id: str,
        user_id: uuid.UUID | None = None,
    ) -> bool:
        result = self._request(
            session,
            "POST",
            f"/contacts/{quote(contact_id, safe='')}/workflow/{quote(workflow_id, safe='')}",
            models.TRIGGER_WORKFLOW,
            json_body={},
            user_id=user_id,
            contact_id=contact_id,
        )
        return result.ok

    # Operator helpers

    def replay(self, session: Session, entry: GHLSyncLog) -> GHLResult:
        """Re-issue a logged call with its original method, path and payload."""
        if not entry.request_method or not entry.request_path:
            raise ValueError("log entry has no replayable request")
        return self._request(
            session,
            entry.request_method,
            entry.request_path,
            entry.event_type,
            json_body=entry.payload,
            user_id=entry.user_id,
            contact_id=entry.ghl_contact_id,
            retry_of_id=entry.id,
        )

    def test_connection(self) -> ConnectionTestResult:
        if not self.settings.ghl_api_key or not self.settings.ghl_location_id:
            return ConnectionTestResult(ok=False, error="GHL_API_KEY or GHL_LOCATION_ID not set")
        query = urlencode({"locationId": self.location_id, "limit": 1})
        try:
            with self._http() as http:
                response = http.get(f"/contacts/?{query}")
        except httpx.HTTPError as exc:
            return ConnectionTestResult(ok=False, error=str(exc) or exc.__class__.__name__)
        if response.is_success:
            return ConnectionTestResult(ok=True)
        return ConnectionTestResult(ok=False, error=f"HTTP {response.status_code}")
