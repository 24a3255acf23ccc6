from __future__ import annotations

import hmac
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from crmsync.context import get_correlation_id
from crmsync.core.auth import AuthUser, require_admin
from crmsync.core.config import get_settings
from crmsync.core.database import get_db
from crmsync.ghl.at_risk import AtRiskScanner
from crmsync.ghl.audit import sync_log_store
from crmsync.ghl.backfill import BackfillService
from crmsync.ghl.client import GHLClient
from crmsync.ghl.notifications import NotificationService
from crmsync.ghl.schemas import (
    ActorType,
    AtRiskScanResult,
    BackfillScope,
    ConnectionTestResult,
    RetryRequest,
    RetryResponse,
    SyncLogRead,
)
from crmsync.ghl.sync import LifecycleSyncService

router = APIRouter(prefix="/api/admin/crm", tags=["crm.admin"])
cron_router = APIRouter(prefix="/api/cron", tags=["crm.cron"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_ghl_client() -> GHLClient:
    return GHLClient(get_settings())


def get_sync_service(client: GHLClient = Depends(get_ghl_client)) -> LifecycleSyncService:
    return LifecycleSyncService(client)


def get_notification_service(client: GHLClient = Depends(get_ghl_client)) -> NotificationService:
    return NotificationService(client)


def get_backfill_service(sync_service: LifecycleSyncService = Depends(get_sync_service)) -> BackfillService:
    return BackfillService(sync_service)


def _ndjson(progress: Iterator[dict[str, Any]]) -> Iterator[str]:
    for event in progress:
        yield json.dumps(event, separators=(",", ":")) + "\n"


@router.post("/sync/{actor_type}")
def bulk_sync(
    actor_type: ActorType,
    scope: BackfillScope = Query(default="unsynced"),
    db: Session = Depends(get_db),
    backfill: BackfillService = Depends(get_backfill_service),
    _: AuthUser = Depends(require_admin),
) -> StreamingResponse:
    return StreamingResponse(_ndjson(backfill.bulk_sync(db, actor_type, scope)), media_type=NDJSON_MEDIA_TYPE)


@router.post("/retry", response_model=RetryResponse)
def retry_log_entry(
    request: Request,
    dto: RetryRequest,
    db: Session = Depends(get_db),
    backfill: BackfillService = Depends(get_backfill_service),
    _: AuthUser = Depends(require_admin),
) -> RetryResponse | JSONResponse:
    try:
        return backfill.retry_entry(db, dto.log_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_sync_retry_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/log")
def list_sync_log(
    event_type: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin),
) -> dict[str, list[SyncLogRead]]:
    rows = sync_log_store.list_recent(db, limit=limit, event_type=event_type, success=success)
    return {"rows": [SyncLogRead.model_validate(row) for row in rows]}


@router.post("/test", response_model=ConnectionTestResult)
def test_connection(
    client: GHLClient = Depends(get_ghl_client),
    _: AuthUser = Depends(require_admin),
) -> ConnectionTestResult:
    return client.test_connection()


@cron_router.post("/at-risk", response_model=AtRiskScanResult)
def run_at_risk_scan(
    request: Request,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    sync_service: LifecycleSyncService = Depends(get_sync_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> AtRiskScanResult | JSONResponse:
    secret = get_settings().cron_secret
    if not secret or not hmac.compare_digest(authorization or "", f"Bearer {secret}"):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="cron_unauthorized",
            message="Unauthorized",
        )
    return AtRiskScanner(sync_service, notifications).scan(db)
