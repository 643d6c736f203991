"""ORM models for the credential pool, generation tasks, alerts and telemetry."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Allocation(str, enum.Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    CURRENT = "current"


class TaskState(str, enum.Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.TIMED_OUT})
IN_FLIGHT_STATES = (TaskState.SUBMITTED.value, TaskState.POLLING.value)


class AlertType(str, enum.Enum):
    POOL_EXHAUSTED = "pool-exhausted"
    PROBE_FAILED = "probe-failed"


class Credential(Base):
    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    label = Column(String(255), nullable=False, default="")
    provider_family = Column(String(100), nullable=False)
    api_key = Column(String(512), nullable=False)
    balance = Column(Float, nullable=False, default=0.0)
    status = Column(String(16), nullable=False, default=CredentialStatus.INACTIVE.value)
    allocation = Column(String(16), nullable=False, default=Allocation.UNASSIGNED.value)
    assigned_user_id = Column(String(128))
    revoked = Column(Boolean, nullable=False, default=False)
    consecutive_probe_failures = Column(Integer, nullable=False, default=0)
    last_probe_error = Column(String(255))
    last_probed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_credentials_family_status", "provider_family", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE.value

    @property
    def is_current(self) -> bool:
        return self.allocation == Allocation.CURRENT.value

    @property
    def is_eligible(self) -> bool:
        return self.is_active and not self.revoked


class PoolUser(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class DedicatedPoolEntry(Base):
    __tablename__ = "dedicated_pool_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(Integer, ForeignKey("credentials.id"), nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    is_failed = Column(Boolean, nullable=False, default=False)
    assigned_user_id = Column(String(128))
    assigned_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_dedicated_entries_user", "assigned_user_id"),
    )


class GenerationTask(Base):
    __tablename__ = "generation_tasks"

    id = Column(String(32), primary_key=True)
    user_id = Column(String(128), nullable=False)
    provider_family = Column(String(100), nullable=False)
    operation_type = Column(String(64), nullable=False)
    provider_job_id = Column(String(255))
    credential_id = Column(Integer, ForeignKey("credentials.id", ondelete="SET NULL"))
    state = Column(String(16), nullable=False, default=TaskState.SUBMITTED.value)
    cost = Column(Float, nullable=False, default=0.0)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    payload = Column(JSON)
    result = Column(JSON)
    error_reason = Column(String(512))
    error_kind = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False)
    deadline_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_tasks_user_created", "user_id", "created_at"),
        Index("ix_tasks_credential_state", "credential_id", "state"),
        Index("ix_tasks_provider_job", "provider_family", "provider_job_id"),
    )

    @property
    def task_state(self) -> TaskState:
        return TaskState(self.state)


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger_entries"
    __table_args__ = (
        UniqueConstraint("task_id", name="uq_credit_ledger_entries_task_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(Integer, nullable=False)
    task_id = Column(String(32))
    kind = Column(String(16), nullable=False)
    amount = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(32), nullable=False)
    subject = Column(String(128), nullable=False)
    message = Column(String(512), nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_alerts_type_subject", "alert_type", "subject"),
    )


class OrchestratorEvent(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    request_id = Column(String(64))
    provider_family = Column(String(100))
    credential_id = Column(Integer)
    task_id = Column(String(32))
    message = Column(String(512))
    meta = Column(JSON)

    __table_args__ = (
        Index("ix_events_ts", "ts"),
        Index("ix_events_kind_ts", "kind", "ts"),
    )
