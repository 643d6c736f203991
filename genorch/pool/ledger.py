"""Credit ledger: the only writer of a credential's balance."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select

from genorch.core.config import AppConfig
from genorch.core.exceptions import CredentialNotFoundError
from genorch.storage.database import session_scope
from genorch.storage.models import (
    Allocation,
    Credential,
    CredentialStatus,
    CreditLedgerEntry,
)
from genorch.telemetry.events import record_event

from .locks import FamilyLocks

logger = logging.getLogger("genorch.ledger")


class DebitOutcome(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DUPLICATE = "duplicate"


@dataclass
class LedgerResult:
    credential_id: int
    provider_family: str
    balance: float
    status: CredentialStatus
    demoted: bool = False
    outcome: DebitOutcome | None = None


def _apply_threshold(credential: Credential, threshold: float) -> bool:
    """Re-evaluate status against the threshold; return True if it lost Current."""
    if credential.balance >= threshold:
        credential.status = CredentialStatus.ACTIVE.value
        return False
    credential.status = CredentialStatus.INACTIVE.value
    if credential.allocation == Allocation.CURRENT.value:
        credential.allocation = Allocation.UNASSIGNED.value
        return True
    return False


class CreditLedger:
    def __init__(self, config: AppConfig, locks: FamilyLocks) -> None:
        self._config = config
        self._locks = locks

    def _family_of(self, credential_id: int) -> str:
        with session_scope() as session:
            family = session.scalar(
                select(Credential.provider_family).where(Credential.id == credential_id)
            )
        if family is None:
            raise CredentialNotFoundError(credential_id)
        return str(family)

    async def debit(
        self, credential_id: int, amount: float, *, task_id: str | None = None
    ) -> LedgerResult:
        """Debit a completed operation's cost.

        The generation already happened, so the debit always applies. When the
        balance cannot cover it the balance is clamped at zero and the
        credential is flagged inactive until the next probe.
        """
        family = self._family_of(credential_id)
        threshold = self._config.threshold_for(family)

        async with self._locks.for_family(family):
            with session_scope() as session:
                credential = session.get(Credential, credential_id)
                if credential is None:
                    raise CredentialNotFoundError(credential_id)

                if task_id is not None:
                    already = session.scalar(
                        select(CreditLedgerEntry.id).where(CreditLedgerEntry.task_id == task_id)
                    )
                    if already is not None:
                        return LedgerResult(
                            credential_id=credential_id,
                            provider_family=family,
                            balance=credential.balance,
                            status=CredentialStatus(credential.status),
                            outcome=DebitOutcome.DUPLICATE,
                        )

                if credential.balance >= amount:
                    outcome = DebitOutcome.OK
                    credential.balance = credential.balance - amount
                    demoted = _apply_threshold(credential, threshold)
                else:
                    outcome = DebitOutcome.INSUFFICIENT_BALANCE
                    credential.balance = 0.0
                    credential.status = CredentialStatus.INACTIVE.value
                    demoted = credential.allocation == Allocation.CURRENT.value
                    if demoted:
                        credential.allocation = Allocation.UNASSIGNED.value

                session.add(
                    CreditLedgerEntry(
                        credential_id=credential_id,
                        task_id=task_id,
                        kind="debit",
                        amount=-amount,
                        balance_after=credential.balance,
                    )
                )
                result = LedgerResult(
                    credential_id=credential_id,
                    provider_family=family,
                    balance=credential.balance,
                    status=CredentialStatus(credential.status),
                    demoted=demoted,
                    outcome=outcome,
                )

        log = logger.warning if outcome is DebitOutcome.INSUFFICIENT_BALANCE else logger.info
        log(
            "Credential debited",
            extra={
                "event": "credential_debited",
                "credential_id": credential_id,
                "provider_family": family,
                "amount": amount,
                "balance": result.balance,
                "outcome": outcome.value,
                "task_id": task_id,
            },
        )
        if result.demoted or outcome is DebitOutcome.INSUFFICIENT_BALANCE:
            record_event(
                "credential_low_balance",
                "WARNING",
                provider_family=family,
                credential_id=credential_id,
                task_id=task_id,
                message=f"Balance {result.balance:g} after debit of {amount:g}",
                meta={"outcome": outcome.value, "demoted": result.demoted},
            )
        return result

    async def reconcile(self, credential_id: int, authoritative_balance: float) -> LedgerResult:
        """Replace the tracked balance with the provider-reported one."""
        family = self._family_of(credential_id)
        threshold = self._config.threshold_for(family)
        balance = max(0.0, float(authoritative_balance))

        async with self._locks.for_family(family):
            with session_scope() as session:
                credential = session.get(Credential, credential_id)
                if credential is None:
                    raise CredentialNotFoundError(credential_id)

                previous = credential.balance
                credential.balance = balance
                credential.consecutive_probe_failures = 0
                credential.last_probe_error = None
                credential.last_probed_at = datetime.now(timezone.utc)
                demoted = _apply_threshold(credential, threshold)

                if balance != previous:
                    session.add(
                        CreditLedgerEntry(
                            credential_id=credential_id,
                            kind="reconcile",
                            amount=balance - previous,
                            balance_after=balance,
                        )
                    )
                result = LedgerResult(
                    credential_id=credential_id,
                    provider_family=family,
                    balance=balance,
                    status=CredentialStatus(credential.status),
                    demoted=demoted,
                )

        logger.info(
            "Credential reconciled",
            extra={
                "event": "credential_reconciled",
                "credential_id": credential_id,
                "provider_family": family,
                "balance": balance,
                "status": result.status.value,
            },
        )
        return result


__all__ = ["CreditLedger", "DebitOutcome", "LedgerResult"]
