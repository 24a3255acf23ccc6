"""Task-local context shared by HTTP requests, bus handlers and sync runs."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
sync_event_var: ContextVar[str | None] = ContextVar("sync_event", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_sync_event() -> str | None:
    return sync_event_var.get()


@contextmanager
def correlation_scope(value: str | None = None) -> Iterator[str]:
    """Bind ``value`` (or the current id, or a fresh one) for the duration of the block."""
    correlation_id = value or get_correlation_id() or str(uuid.uuid4())
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


@contextmanager
def sync_event_scope(event: str) -> Iterator[None]:
    token = sync_event_var.set(event)
    try:
        yield
    finally:
        sync_event_var.reset(token)
