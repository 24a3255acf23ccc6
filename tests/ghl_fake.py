from __future__ import annotations

import itertools
import json
from typing import Any

import httpx

from crmsync.core.config import Settings


PRACTITIONER_PIPELINE_ID = "pipe-practitioners"
PATIENT_PIPELINE_ID = "pipe-patients"

PRACTITIONER_STAGES = [
    {"id": "stage-pending", "name": "Pending Verification"},
    {"id": "stage-live", "name": "Verified & Live"},
    {"id": "stage-rejected", "name": "Rejected"},
]
PATIENT_STAGES = [
    {"id": "stage-queue", "name": "In Queue"},
    {"id": "stage-matched", "name": "Matched"},
    {"id": "stage-first", "name": "First Session Booked"},
    {"id": "stage-active", "name": "Active Patient"},
    {"id": "stage-risk", "name": "At Risk"},
    {"id": "stage-churned", "name": "Churned"},
]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ghl_api_key": "test-key",
        "ghl_location_id": "loc-1",
        "ghl_practitioner_pipeline_id": PRACTITIONER_PIPELINE_ID,
        "ghl_pipeline_id": PATIENT_PIPELINE_ID,
        "ghl_reengagement_workflow_id": None,
        "brand_name": "Nesema",
        "app_url": "https://nesema.test",
        "sms_timezone": "Europe/London",
    }
    values.update(overrides)
    return Settings(**values)


class FakeGHL:
    """In-memory stand-in for the LeadConnector API, keyed by contact email."""

    def __init__(self) -> None:
        self.contacts: dict[str, dict[str, Any]] = {}
        self.opportunities: dict[str, dict[str, Any]] = {}
        self.notes: list[dict[str, Any]] = []
        self.messages: list[dict[str, Any]] = []
        self.workflows: list[tuple[str, str]] = []
        self.pipelines: dict[str, list[dict[str, str]]] = {
            PRACTITIONER_PIPELINE_ID: list(PRACTITIONER_STAGES),
            PATIENT_PIPELINE_ID: list(PATIENT_STAGES),
        }
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self.transport_error: str | None = None
        self._ids = itertools.count(1)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def add_contact(self, email: str, contact_id: str | None = None, **fields: Any) -> dict[str, Any]:
        contact = {"id": contact_id or f"contact-{next(self._ids)}", "email": email, "tags": [], **fields}
        self.contacts[contact["id"]] = contact
        return contact

    def calls(self, method: str, path_prefix: str = "") -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.startswith(path_prefix)]

    def contact_tags(self, contact_id: str) -> list[str]:
        return list(self.contacts[contact_id]["tags"])

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.transport_error is not None:
            raise httpx.ConnectError(self.transport_error, request=request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "rejected"})

        body: Any = json.loads(request.content) if request.content else None
        parts = [part for part in request.url.path.split("/") if part]
        method = request.method

        if parts == ["contacts"] and method == "GET":
            email = request.url.params.get("email")
            matches = [c for c in self.contacts.values() if email is not None and c.get("email") == email]
            return httpx.Response(200, json={"contacts": matches})
        if parts == ["contacts"] and method == "POST":
            contact = self.add_contact(
                body.get("email"),
                firstName=body.get("firstName"),
                lastName=body.get("lastName"),
            )
            contact["tags"] = list(body.get("tags") or [])
            return httpx.Response(201, json={"contact": contact})
        if len(parts) == 2 and parts[0] == "contacts" and method == "PUT":
            contact = self.contacts.get(parts[1])
            if contact is None:
                return httpx.Response(404, json={"message": "contact not found"})
            contact.update({k: v for k, v in body.items() if k != "tags"})
            return httpx.Response(200, json={"contact": contact})
        if len(parts) == 3 and parts[0] == "contacts" and parts[2] == "tags":
            contact = self.contacts.get(parts[1])
            if contact is None:
                return httpx.Response(404, json={"message": "contact not found"})
            if method == "POST":
                contact["tags"] += [tag for tag in body["tags"] if tag not in contact["tags"]]
            else:
                contact["tags"] = [tag for tag in contact["tags"] if tag not in body["tags"]]
            return httpx.Response(200, json={"tags": contact["tags"]})
        if len(parts) == 3 and parts[0] == "contacts" and parts[2] == "notes":
            note = {"id": f"note-{next(self._ids)}", "contactId": parts[1], "body": body["body"]}
            self.notes.append(note)
            return httpx.Response(201, json={"note": note})
        if len(parts) == 4 and parts[0] == "contacts" and parts[2] == "workflow":
            self.workflows.append((parts[1], parts[3]))
            return httpx.Response(200, json={"succeded": True})
        if parts == ["opportunities"] and method == "POST":
            opportunity = {"id": f"opp-{next(self._ids)}", **body}
            self.opportunities[opportunity["id"]] = opportunity
            return httpx.Response(201, json={"opportunity": opportunity})
        if len(parts) == 3 and parts[:2] == ["opportunities", "pipelines"]:
            stages = self.pipelines.get(parts[2])
            if stages is None:
                return httpx.Response(404, json={"message": "pipeline not found"})
            return httpx.Response(200, json={"stages": stages})
        if len(parts) == 2 and parts[0] == "opportunities" and method == "PUT":
            opportunity = self.opportunities.setdefault(parts[1], {"id": parts[1]})
            opportunity.update(body)
            return httpx.Response(200, json={"opportunity": opportunity})
        if parts == ["conversations", "messages"]:
            self.messages.append(body)
            return httpx.Response(201, json={"messageId": f"msg-{next(self._ids)}"})
        return httpx.Response(404, json={"message": "unknown route"})
