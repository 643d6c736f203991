"""Append-only administrator alerts feed with episode deduplication."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update

from .database import session_scope
from .models import Alert, AlertType

logger = logging.getLogger("genorch.alerts")


def raise_alert(alert_type: AlertType, subject: str, message: str) -> bool:
    """Record an alert unless an open one already exists for (type, subject).

    Returns True when a new alert row was written.
    """
    with session_scope() as session:
        open_alert = session.scalar(
            select(Alert.id)
            .where(Alert.alert_type == alert_type.value)
            .where(Alert.subject == subject)
            .where(Alert.resolved_at.is_(None))
            .limit(1)
        )
        if open_alert is not None:
            return False
        session.add(Alert(alert_type=alert_type.value, subject=subject, message=message))

    logger.warning(
        "Alert raised",
        extra={"event": "alert_raised", "alert_type": alert_type.value, "subject": subject},
    )
    return True


def resolve_alerts(alert_type: AlertType, subject: str) -> int:
    """Close the open episode for (type, subject) once its condition clears."""
    with session_scope() as session:
        result = session.execute(
            update(Alert)
            .where(Alert.alert_type == alert_type.value)
            .where(Alert.subject == subject)
            .where(Alert.resolved_at.is_(None))
            .values(resolved_at=datetime.now(timezone.utc))
        )
        return int(result.rowcount or 0)


def acknowledge_alert(alert_id: int) -> bool:
    with session_scope() as session:
        alert = session.get(Alert, alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        return True


def list_alerts(*, include_acknowledged: bool = False, limit: int = 100) -> list[dict[str, Any]]:
    """Return alerts newest first."""
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    if not include_acknowledged:
        stmt = stmt.where(Alert.acknowledged.is_(False))
    with session_scope() as session:
        rows = session.scalars(stmt).all()

    return [
        {
            "id": row.id,
            "type": row.alert_type,
            "subject": row.subject,
            "message": row.message,
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "acknowledged": bool(row.acknowledged),
            "resolved_at": row.resolved_at.isoformat() if row.resolved_at else None,
        }
        for row in rows
    ]


__all__ = ["acknowledge_alert", "list_alerts", "raise_alert", "resolve_alerts"]
