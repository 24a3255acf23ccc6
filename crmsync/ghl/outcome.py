from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmsync.context import sync_event_scope
from crmsync.metrics import observe_sync
from crmsync.otel import tag_span


logger = logging.getLogger("crmsync.ghl.sync")
tracer = trace.get_tracer("crmsync.ghl.sync")

SyncStatus = Literal["synced", "skipped", "failed"]


@dataclass(frozen=True)
class SyncOutcome:
    status: SyncStatus
    reason: str | None = None

    @classmethod
    def synced(cls, reason: str | None = None) -> SyncOutcome:
        return cls("synced", reason)

    @classmethod
    def skipped(cls, reason: str) -> SyncOutcome:
        return cls("skipped", reason)

    @classmethod
    def failed(cls, reason: str) -> SyncOutcome:
        return cls("failed", reason)

    @property
    def is_synced(self) -> bool:
        return self.status == "synced"


F = TypeVar("F", bound=Callable[..., SyncOutcome])


def _rollback(session: Session) -> None:
    try:
        session.rollback()
    except SQLAlchemyError as exc:
        logger.error("sync.rollback_failed", extra={"error": str(exc)[:500]})


def fire_and_forget(event: str) -> Callable[[F], F]:
    """Wrap a sync method so it always returns a ``SyncOutcome``.

    The wrapped method takes ``(self, session, ...)``. Any exception is logged
    with its traceback, the session is rolled back and a ``failed`` outcome is
    returned instead.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, session: Session, *args: Any, **kwargs: Any) -> SyncOutcome:
            with sync_event_scope(event), tracer.start_as_current_span("ghl.sync") as span:
                tag_span(span)
                try:
                    outcome = func(self, session, *args, **kwargs)
                except Exception as exc:
                    _rollback(session)
                    logger.exception("sync.failed", extra={"event": event, "error": str(exc)[:500]})
                    outcome = SyncOutcome.failed(str(exc) or exc.__class__.__name__)
                    span.set_status(Status(StatusCode.ERROR, outcome.reason or ""))
                span.set_attribute("ghl.sync.status", outcome.status)

            observe_sync(event, outcome.status)
            logger.info("sync.completed", extra={"event": event, "outcome": outcome.status, "reason": outcome.reason})
            return outcome

        return wrapper  # type: ignore[return-value]

    return decorator
