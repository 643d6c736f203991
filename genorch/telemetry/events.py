"""Short-lived audit trail of pool and task events.

Events complement the log file with a queryable history for the admin
surface: rotations, exhaustion, probe failures and task outcomes. Rows
older than ``EVENT_RETENTION`` are dropped as new ones arrive.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from genorch.logging import current_context
from genorch.storage.database import session_scope
from genorch.storage.models import OrchestratorEvent

logger = logging.getLogger("genorch.events")

EVENT_RETENTION = timedelta(days=2)

_EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "true").lower() in {"1", "true", "yes"}


def retention_cutoff(now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - EVENT_RETENTION


def _prune(session: Session) -> None:
    session.execute(delete(OrchestratorEvent).where(OrchestratorEvent.ts < retention_cutoff()))


def record_event(
    kind: str,
    level: str,
    *,
    provider_family: str | None = None,
    credential_id: int | None = None,
    task_id: str | None = None,
    message: str | None = None,
    meta: Dict[str, Any] | None = None,
) -> None:
    """Persist one event; failures are logged and never reach the caller."""
    if not _EVENTS_ENABLED:
        return

    event = OrchestratorEvent(
        ts=datetime.now(timezone.utc),
        level=level.upper(),
        kind=kind,
        request_id=current_context("request_id"),
        provider_family=provider_family,
        credential_id=credential_id,
        task_id=task_id or current_context("task_id"),
        message=message[:512] if message else None,
        meta=meta or None,
    )
    try:
        with session_scope() as session:
            session.add(event)
            _prune(session)
    except Exception:
        logger.exception("Failed to record event", extra={"event": "event_persist_error", "kind": kind})


def _as_dict(row: OrchestratorEvent) -> Dict[str, Any]:
    return {
        "id": row.id,
        "timestamp": row.ts.isoformat() if row.ts else None,
        "level": row.level,
        "kind": row.kind,
        "request_id": row.request_id,
        "provider_family": row.provider_family,
        "credential_id": row.credential_id,
        "task_id": row.task_id,
        "message": row.message,
        "meta": row.meta,
    }


def list_recent_events(
    limit: int = 50,
    kind: str | None = None,
    *,
    provider_family: str | None = None,
    task_id: str | None = None,
) -> List[Dict[str, Any]]:
    """Return events inside the retention window, newest first."""
    if not _EVENTS_ENABLED:
        return []

    stmt = (
        select(OrchestratorEvent)
        .where(OrchestratorEvent.ts >= retention_cutoff())
        .order_by(OrchestratorEvent.ts.desc(), OrchestratorEvent.id.desc())
        .limit(limit)
    )
    if kind:
        stmt = stmt.where(OrchestratorEvent.kind == kind)
    if provider_family:
        stmt = stmt.where(OrchestratorEvent.provider_family == provider_family)
    if task_id:
        stmt = stmt.where(OrchestratorEvent.task_id == task_id)
    with session_scope() as session:
        return [_as_dict(row) for row in session.scalars(stmt).all()]


__all__ = ["EVENT_RETENTION", "list_recent_events", "record_event", "retention_cutoff"]
