"""Credential pool management: reservation, release and administration."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from genorch.core.config import AppConfig, FamilyModel
from genorch.core.exceptions import (
    CredentialBusyError,
    CredentialIneligibleError,
    CredentialInUseError,
    CredentialNotFoundError,
    InsufficientCredentialsError,
    PolicyMismatchError,
    PoolExhaustedError,
    UnknownFamilyError,
)
from genorch.storage import alerts
from genorch.storage import credentials as store
from genorch.storage.database import session_scope
from genorch.storage.models import (
    IN_FLIGHT_STATES,
    Alert,
    AlertType,
    Allocation,
    Credential,
    CredentialStatus,
    DedicatedPoolEntry,
    GenerationTask,
)
from genorch.telemetry.events import record_event

from .ledger import CreditLedger, LedgerResult
from .locks import FamilyLocks

logger = logging.getLogger("genorch.pool")


class ReleaseOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CREDENTIAL_ERROR = "credential_error"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class AutoAssignReport:
    provider_family: str
    assigned_count: int = 0
    assignments: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    unassigned: list[str] = field(default_factory=list)


@dataclass
class ProbeFailureResult:
    credential_id: int
    provider_family: str
    failures: int
    deactivated: bool


def _demote(credential: Credential) -> bool:
    if credential.allocation == Allocation.CURRENT.value:
        credential.allocation = Allocation.UNASSIGNED.value
        return True
    return False


def _has_in_flight(session: Session, credential_id: int) -> bool:
    found = session.scalar(
        select(GenerationTask.id)
        .where(GenerationTask.credential_id == credential_id)
        .where(GenerationTask.state.in_(IN_FLIGHT_STATES))
        .limit(1)
    )
    return found is not None


def _claimable_entries(session: Session, family: str, cost: float = 0.0) -> list[DedicatedPoolEntry]:
    """Unused, unfailed entries whose credential is eligible and can pay ``cost``."""
    stmt = (
        select(DedicatedPoolEntry)
        .join(Credential, Credential.id == DedicatedPoolEntry.credential_id)
        .where(Credential.provider_family == family)
        .where(DedicatedPoolEntry.is_used.is_(False))
        .where(DedicatedPoolEntry.is_failed.is_(False))
        .where(Credential.status == CredentialStatus.ACTIVE.value)
        .where(Credential.revoked.is_(False))
        .where(Credential.balance >= cost)
        .order_by(DedicatedPoolEntry.id)
    )
    return list(session.scalars(stmt).all())


def _claim(session: Session, entry: DedicatedPoolEntry, user_id: str) -> Credential:
    entry.is_used = True
    entry.assigned_user_id = user_id
    entry.assigned_at = datetime.now(timezone.utc)
    credential = session.get(Credential, entry.credential_id)
    if credential is None:
        raise CredentialNotFoundError(int(entry.credential_id))
    credential.allocation = Allocation.ASSIGNED.value
    credential.assigned_user_id = user_id
    return credential


class PoolManager:
    """Selects credentials under the Shared-Rotating or Dedicated-Assignment policy.

    All state changes happen inside the family lock. Reads used by dashboards
    go straight to the store without locking and may be stale.
    """

    def __init__(
        self,
        config: AppConfig,
        locks: FamilyLocks | None = None,
        ledger: CreditLedger | None = None,
    ) -> None:
        self._config = config
        self._locks = locks or FamilyLocks()
        self._ledger = ledger or CreditLedger(config, self._locks)
        # Dedicated credentials handed out by reserve() and not yet released.
        self._reserved: set[int] = set()

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    @property
    def config(self) -> AppConfig:
        return self._config

    def family(self, family_id: str) -> FamilyModel:
        family = self._config.family(family_id)
        if family is None:
            raise UnknownFamilyError(family_id)
        return family

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def reserve(self, family_id: str, cost: float, user_id: str | None = None) -> Credential:
        """Return a credential able to pay ``cost`` or raise.

        Raises ``PoolExhaustedError`` when the family has nothing left and
        ``InsufficientCredentialsError`` when the caller's dedicated
        credential cannot take the operation.
        """
        family = self.family(family_id)
        if family.is_shared:
            return await self._reserve_shared(family, cost)
        if not user_id:
            raise InsufficientCredentialsError(family.id, message="Dedicated pools require a user")
        store.ensure_user(user_id)
        return await self._reserve_dedicated(family, cost, user_id)

    async def _reserve_shared(self, family: FamilyModel, cost: float) -> Credential:
        promoted = False
        promoted_from: int | None = None
        chosen: Credential | None = None

        async with self._locks.for_family(family.id):
            with session_scope() as session:
                rows = list(
                    session.scalars(
                        select(Credential).where(Credential.provider_family == family.id)
                    ).all()
                )
                current = next((row for row in rows if row.is_current), None)
                if current is not None and current.is_eligible and current.balance - cost >= 0:
                    chosen = current
                else:
                    candidates = sorted(
                        (row for row in rows if row.is_eligible and row.balance - cost >= 0),
                        key=lambda row: (-row.balance, row.id),
                    )
                    if candidates:
                        chosen = candidates[0]
                        if current is not None:
                            promoted_from = int(current.id)
                            _demote(current)
                        chosen.allocation = Allocation.CURRENT.value
                        promoted = True

        if chosen is None:
            self._exhausted(family.id, f"No active credential in '{family.id}' can pay {cost:g} credits")
            raise PoolExhaustedError(family.id)

        alerts.resolve_alerts(AlertType.POOL_EXHAUSTED, family.id)
        if promoted:
            logger.info(
                "Current credential rotated",
                extra={
                    "event": "credential_promoted",
                    "provider_family": family.id,
                    "credential_id": chosen.id,
                    "previous_credential_id": promoted_from,
                },
            )
            record_event(
                "credential_promoted",
                "INFO",
                provider_family=family.id,
                credential_id=chosen.id,
                message="Credential promoted to current",
                meta={"previous_credential_id": promoted_from, "balance": chosen.balance},
            )
        return chosen

    async def _reserve_dedicated(self, family: FamilyModel, cost: float, user_id: str) -> Credential:
        claimed = False
        credential: Credential | None = None

        async with self._locks.for_family(family.id):
            with session_scope() as session:
                entry = session.scalar(
                    select(DedicatedPoolEntry)
                    .join(Credential, Credential.id == DedicatedPoolEntry.credential_id)
                    .where(Credential.provider_family == family.id)
                    .where(DedicatedPoolEntry.assigned_user_id == user_id)
                    .where(DedicatedPoolEntry.is_failed.is_(False))
                    .order_by(DedicatedPoolEntry.assigned_at.desc(), DedicatedPoolEntry.id.desc())
                    .limit(1)
                )
                if entry is not None:
                    credential = session.get(Credential, entry.credential_id)
                    if credential is None:
                        raise CredentialNotFoundError(int(entry.credential_id))
                    if credential.id in self._reserved or _has_in_flight(session, credential.id):
                        raise CredentialBusyError(family.id)
                    if not credential.is_eligible or credential.balance - cost < 0:
                        raise InsufficientCredentialsError(
                            family.id,
                            message=f"Assigned credential cannot pay {cost:g} credits",
                        )
                else:
                    candidates = _claimable_entries(session, family.id, cost)
                    if candidates:
                        credential = _claim(session, candidates[0], user_id)
                        claimed = True
                if credential is not None:
                    self._reserved.add(int(credential.id))

        if credential is None:
            self._exhausted(family.id, f"No unused dedicated entry left in '{family.id}'")
            raise PoolExhaustedError(family.id, message="No unused dedicated credential available")

        if claimed:
            alerts.resolve_alerts(AlertType.POOL_EXHAUSTED, family.id)
            logger.info(
                "Dedicated credential assigned",
                extra={
                    "event": "credential_assigned",
                    "provider_family": family.id,
                    "credential_id": credential.id,
                    "assigned_user_id": user_id,
                },
            )
            record_event(
                "credential_assigned",
                "INFO",
                provider_family=family.id,
                credential_id=credential.id,
                message=f"Assigned to user {user_id}",
            )
        return credential

    def _exhausted(self, family_id: str, message: str) -> None:
        if alerts.raise_alert(AlertType.POOL_EXHAUSTED, family_id, message):
            record_event(
                "pool_exhausted",
                "ERROR",
                provider_family=family_id,
                message=message,
            )
        logger.warning(
            "Credential pool exhausted",
            extra={"event": "pool_exhausted", "provider_family": family_id},
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        credential_id: int,
        outcome: ReleaseOutcome,
        *,
        cost: float = 0.0,
        task_id: str | None = None,
    ) -> LedgerResult | None:
        """Return a credential after its task reached a terminal state.

        Only ``COMPLETED`` debits the ledger.
        """
        self._reserved.discard(credential_id)
        credential = store.get_credential(credential_id)
        if credential is None:
            logger.warning(
                "Released credential no longer exists",
                extra={"event": "credential_missing", "credential_id": credential_id},
            )
            return None
        family_id = str(credential.provider_family)

        if outcome is ReleaseOutcome.COMPLETED:
            result = await self._ledger.debit(credential_id, cost, task_id=task_id)
            if result.demoted or result.status is CredentialStatus.INACTIVE:
                await self.check_capacity(family_id)
            return result

        if outcome is ReleaseOutcome.CREDENTIAL_ERROR:
            await self._indict(credential_id, family_id, task_id)
            await self.check_capacity(family_id)
        return None

    async def _indict(self, credential_id: int, family_id: str, task_id: str | None) -> None:
        family = self.family(family_id)
        async with self._locks.for_family(family_id):
            with session_scope() as session:
                credential = session.get(Credential, credential_id)
                if credential is None:
                    return
                if family.is_shared:
                    _demote(credential)
                    credential.revoked = True
                else:
                    session.execute(
                        update(DedicatedPoolEntry)
                        .where(DedicatedPoolEntry.credential_id == credential_id)
                        .where(DedicatedPoolEntry.is_failed.is_(False))
                        .values(is_failed=True)
                    )

        logger.warning(
            "Credential rejected by provider",
            extra={
                "event": "credential_rejected",
                "provider_family": family_id,
                "credential_id": credential_id,
                "task_id": task_id,
            },
        )
        record_event(
            "credential_rejected",
            "WARNING",
            provider_family=family_id,
            credential_id=credential_id,
            task_id=task_id,
            message="Provider reported a credential error; removed from selection",
        )

    # ------------------------------------------------------------------
    # Dedicated assignment
    # ------------------------------------------------------------------

    async def auto_assign(self, family_id: str, user_ids: Iterable[str] | None = None) -> AutoAssignReport:
        """Claim one unused entry for every user that does not hold one yet."""
        family = self.family(family_id)
        if family.is_shared:
            raise PolicyMismatchError(family_id, "Auto-assign only applies to dedicated pools")
        roster = list(user_ids) if user_ids is not None else store.list_user_ids()
        for user_id in roster:
            store.ensure_user(user_id)
        report = AutoAssignReport(provider_family=family_id)

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                holders = set(
                    session.scalars(
                        select(DedicatedPoolEntry.assigned_user_id)
                        .join(Credential, Credential.id == DedicatedPoolEntry.credential_id)
                        .where(Credential.provider_family == family_id)
                        .where(DedicatedPoolEntry.assigned_user_id.is_not(None))
                        .where(DedicatedPoolEntry.is_failed.is_(False))
                    ).all()
                )
                available = _claimable_entries(session, family_id)
                for user_id in roster:
                    if user_id in holders:
                        report.skipped.append(user_id)
                        continue
                    if not available:
                        report.unassigned.append(user_id)
                        continue
                    credential = _claim(session, available.pop(0), user_id)
                    holders.add(user_id)
                    report.assignments[user_id] = int(credential.id)
                report.assigned_count = len(report.assignments)

        logger.info(
            "Auto-assign finished",
            extra={
                "event": "auto_assign",
                "provider_family": family_id,
                "assigned_count": report.assigned_count,
                "unassigned": len(report.unassigned),
            },
        )
        record_event(
            "auto_assign",
            "INFO",
            provider_family=family_id,
            message=f"Assigned {report.assigned_count} users",
            meta={"assignments": report.assignments, "unassigned": report.unassigned},
        )
        if report.unassigned:
            self._exhausted(family_id, f"{len(report.unassigned)} users left without a dedicated credential")
        return report

    def add_pool_entry(self, credential_id: int) -> DedicatedPoolEntry:
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family = self.family(str(credential.provider_family))
        if family.is_shared:
            raise PolicyMismatchError(family.id, "Credential belongs to a shared pool")
        existing = [
            entry for entry in store.list_pool_entries([credential_id]) if not entry.is_failed
        ]
        if existing:
            raise CredentialIneligibleError(credential_id, message="Credential already has a pool entry")
        return store.add_pool_entries(credential_id, 1)[0]

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def add_credential(self, family_id: str, api_key: str, label: str = "") -> Credential:
        """Persist a new credential. It stays inactive until its first probe."""
        self.family(family_id)
        credential = store.create_credential(family_id, api_key.strip(), label=label)
        logger.info(
            "Credential added",
            extra={"event": "credential_added", "provider_family": family_id, "credential_id": credential.id},
        )
        record_event(
            "credential_added",
            "INFO",
            provider_family=family_id,
            credential_id=credential.id,
            message=label or None,
        )
        return credential

    async def set_current(self, credential_id: int) -> Credential:
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family_id = str(credential.provider_family)
        if not self.family(family_id).is_shared:
            raise PolicyMismatchError(family_id, "Only shared pools have a current credential")

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                target = session.get(Credential, credential_id)
                if target is None:
                    raise CredentialNotFoundError(credential_id)
                if not target.is_eligible:
                    raise CredentialIneligibleError(credential_id, message="Inactive or revoked credentials cannot be current")
                for row in session.scalars(
                    select(Credential)
                    .where(Credential.provider_family == family_id)
                    .where(Credential.allocation == Allocation.CURRENT.value)
                ).all():
                    if row.id != target.id:
                        _demote(row)
                target.allocation = Allocation.CURRENT.value
                credential = target

        record_event(
            "credential_set_current",
            "INFO",
            provider_family=family_id,
            credential_id=credential_id,
            message="Current credential set by administrator",
        )
        return credential

    async def ensure_current(self, family_id: str) -> Credential | None:
        """Make sure a shared family has an eligible current credential."""
        family = self.family(family_id)
        if not family.is_shared:
            return None
        threshold = self._config.threshold_for(family_id)
        promoted: Credential | None = None

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                rows = list(
                    session.scalars(
                        select(Credential).where(Credential.provider_family == family_id)
                    ).all()
                )
                current = next((row for row in rows if row.is_current), None)
                if current is not None and current.is_eligible:
                    return current
                if current is not None:
                    _demote(current)
                candidates = sorted(
                    (row for row in rows if row.is_eligible and row.balance >= threshold),
                    key=lambda row: (-row.balance, row.id),
                )
                if candidates:
                    promoted = candidates[0]
                    promoted.allocation = Allocation.CURRENT.value

        if promoted is not None:
            record_event(
                "credential_promoted",
                "INFO",
                provider_family=family_id,
                credential_id=promoted.id,
                message="Credential promoted to current",
                meta={"balance": promoted.balance},
            )
        return promoted

    async def delete_credential(self, credential_id: int) -> None:
        """Delete a credential unless a task is still using it."""
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family_id = str(credential.provider_family)

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                target = session.get(Credential, credential_id)
                if target is None:
                    raise CredentialNotFoundError(credential_id)
                if credential_id in self._reserved or _has_in_flight(session, credential_id):
                    raise CredentialInUseError(credential_id)
                was_current = target.is_current
                session.execute(
                    update(GenerationTask)
                    .where(GenerationTask.credential_id == credential_id)
                    .values(credential_id=None)
                )
                session.execute(
                    delete(DedicatedPoolEntry).where(DedicatedPoolEntry.credential_id == credential_id)
                )
                session.delete(target)

        record_event(
            "credential_deleted",
            "INFO",
            provider_family=family_id,
            credential_id=credential_id,
            message="Credential deleted by administrator",
        )
        if was_current:
            await self.ensure_current(family_id)
        await self.check_capacity(family_id)

    async def reinstate(self, credential_id: int) -> Credential:
        """Clear a provider-side credential error after administrator review.

        Dedicated credentials get a fresh unused entry, since failed entries
        are never reused.
        """
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family_id = str(credential.provider_family)
        family = self.family(family_id)

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                target = session.get(Credential, credential_id)
                if target is None:
                    raise CredentialNotFoundError(credential_id)
                target.revoked = False
                target.consecutive_probe_failures = 0
                if not family.is_shared:
                    usable = session.scalar(
                        select(DedicatedPoolEntry.id)
                        .where(DedicatedPoolEntry.credential_id == credential_id)
                        .where(DedicatedPoolEntry.is_failed.is_(False))
                        .limit(1)
                    )
                    if usable is None:
                        session.add(DedicatedPoolEntry(credential_id=credential_id))
                credential = target

        alerts.resolve_alerts(AlertType.PROBE_FAILED, str(credential_id))
        record_event(
            "credential_reinstated",
            "INFO",
            provider_family=family_id,
            credential_id=credential_id,
            message="Credential reinstated by administrator",
        )
        return credential

    async def record_probe_failure(self, credential_id: int, error: str) -> ProbeFailureResult:
        """Count a failed probe; deactivate after too many in a row."""
        limit = self._config.settings.probe_failure_limit
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family_id = str(credential.provider_family)

        async with self._locks.for_family(family_id):
            with session_scope() as session:
                target = session.get(Credential, credential_id)
                if target is None:
                    raise CredentialNotFoundError(credential_id)
                target.consecutive_probe_failures = (target.consecutive_probe_failures or 0) + 1
                target.last_probe_error = error[:255]
                deactivated = False
                if target.consecutive_probe_failures >= limit and target.is_active:
                    target.status = CredentialStatus.INACTIVE.value
                    _demote(target)
                    deactivated = True
                result = ProbeFailureResult(
                    credential_id=credential_id,
                    provider_family=family_id,
                    failures=int(target.consecutive_probe_failures),
                    deactivated=deactivated,
                )
        return result

    async def check_capacity(self, family_id: str) -> bool:
        """Raise the exhaustion alert when no eligible credential is left.

        The alert episode is closed by the next successful reservation, not
        here, so a pool that is eligible but too poor for the requests it
        gets keeps a single open alert.
        """
        family = self.family(family_id)
        with session_scope() as session:
            if family.is_shared:
                eligible = session.scalar(
                    select(Credential.id)
                    .where(Credential.provider_family == family_id)
                    .where(Credential.status == CredentialStatus.ACTIVE.value)
                    .where(Credential.revoked.is_(False))
                    .limit(1)
                )
                has_capacity = eligible is not None
            else:
                has_capacity = bool(_claimable_entries(session, family_id))

        if not has_capacity:
            self._exhausted(family_id, f"No eligible credential left in '{family_id}'")
        return has_capacity

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def list_credentials(self, family_id: str | None = None) -> list[dict[str, Any]]:
        return [_credential_view(row) for row in store.list_credentials(family_id)]

    def list_pool_entries(self, family_id: str | None = None) -> list[dict[str, Any]]:
        credential_ids = store.family_credential_ids(family_id) if family_id else None
        return [
            {
                "id": entry.id,
                "credential_id": entry.credential_id,
                "is_used": bool(entry.is_used),
                "is_failed": bool(entry.is_failed),
                "assigned_user_id": entry.assigned_user_id,
                "assigned_at": entry.assigned_at.isoformat() if entry.assigned_at else None,
            }
            for entry in store.list_pool_entries(credential_ids)
        ]

    def status_summary(self) -> dict[str, Any]:
        rows = store.list_credentials()
        with session_scope() as session:
            open_alerts = session.scalars(
                select(Alert).where(Alert.acknowledged.is_(False)).where(Alert.resolved_at.is_(None))
            ).all()
            open_by_subject: dict[str, int] = {}
            for alert in open_alerts:
                open_by_subject[alert.subject] = open_by_subject.get(alert.subject, 0) + 1

        families = []
        for family in self._config.families:
            members = [row for row in rows if row.provider_family == family.id]
            active = [row for row in members if row.is_eligible]
            current = next((row for row in members if row.is_current), None)
            families.append(
                {
                    "id": family.id,
                    "name": family.name,
                    "allocation_policy": family.allocation_policy,
                    "total_credentials": len(members),
                    "active_credentials": len(active),
                    "total_balance": sum(row.balance for row in active),
                    "current": _credential_view(current) if current else None,
                    "open_alerts": open_by_subject.get(family.id, 0),
                }
            )
        return {"families": families}


def _credential_view(row: Credential) -> dict[str, Any]:
    return {
        "id": row.id,
        "label": row.label,
        "provider_family": row.provider_family,
        "api_key": store.mask_api_key(str(row.api_key)),
        "balance": row.balance,
        "status": row.status,
        "allocation": row.allocation,
        "assigned_user_id": row.assigned_user_id,
        "revoked": bool(row.revoked),
        "consecutive_probe_failures": row.consecutive_probe_failures,
        "last_probe_error": row.last_probe_error,
        "last_probed_at": row.last_probed_at.isoformat() if row.last_probed_at else None,
    }


__all__ = ["AutoAssignReport", "PoolManager", "ProbeFailureResult", "ReleaseOutcome"]
