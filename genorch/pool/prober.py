"""Health prober: reconciles credential balances against the providers."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

from genorch.core.exceptions import CredentialNotFoundError, PolicyMismatchError, ProviderError
from genorch.providers.registry import ProviderRegistry
from genorch.storage import alerts
from genorch.storage import credentials as store
from genorch.storage.models import AlertType, Credential, CredentialStatus
from genorch.telemetry.events import record_event

from .manager import PoolManager

logger = logging.getLogger("genorch.prober")


def prober_enabled() -> bool:
    return os.getenv("PROBER_ENABLED", "true").lower() == "true"


@dataclass
class ProbeResult:
    credential_id: int
    provider_family: str
    ok: bool
    balance: float | None = None
    status: str | None = None
    error: str | None = None
    failures: int = 0
    deactivated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "provider_family": self.provider_family,
            "ok": self.ok,
            "balance": self.balance,
            "status": self.status,
            "error": self.error,
            "failures": self.failures,
            "deactivated": self.deactivated,
        }


class HealthProber:
    """Periodic and on-demand balance checks for every credential.

    Credentials serving shared traffic are probed on the short cadence,
    everything else on the long one.
    """

    def __init__(self, pool: PoolManager, registry: ProviderRegistry) -> None:
        self._pool = pool
        self._registry = registry
        self._settings = pool.config.settings
        self._last_probe: dict[int, float] = {}
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Single probes
    # ------------------------------------------------------------------

    async def probe_credential(self, credential_id: int) -> ProbeResult:
        credential = store.get_credential(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        family = self._pool.family(str(credential.provider_family))
        adapter = self._registry.get_adapter(family.id)
        self._last_probe[credential_id] = asyncio.get_running_loop().time()

        try:
            balance = await asyncio.wait_for(
                adapter.check_balance(str(credential.api_key)),
                timeout=self._settings.probe_timeout_seconds,
            )
        except (ProviderError, asyncio.TimeoutError) as exc:
            message = exc.message if isinstance(exc, ProviderError) else "Balance check timed out"
            return await self._probe_failed(credential, message)

        result = await self._pool.ledger.reconcile(credential_id, balance)
        alerts.resolve_alerts(AlertType.PROBE_FAILED, str(credential_id))
        if result.demoted:
            record_event(
                "credential_low_balance",
                "WARNING",
                provider_family=family.id,
                credential_id=credential_id,
                message=f"Balance {result.balance:g} below threshold; demoted from current",
            )
        if family.is_shared:
            await self._pool.ensure_current(family.id)
        if result.status is CredentialStatus.INACTIVE:
            await self._pool.check_capacity(family.id)

        return ProbeResult(
            credential_id=credential_id,
            provider_family=family.id,
            ok=True,
            balance=result.balance,
            status=result.status.value,
        )

    async def _probe_failed(self, credential: Credential, message: str) -> ProbeResult:
        credential_id = int(credential.id)
        family_id = str(credential.provider_family)
        failure = await self._pool.record_probe_failure(credential_id, message)
        logger.warning(
            "Balance probe failed",
            extra={
                "event": "probe_failed",
                "provider_family": family_id,
                "credential_id": credential_id,
                "failures": failure.failures,
                "error": message,
            },
        )
        if failure.deactivated:
            alerts.raise_alert(
                AlertType.PROBE_FAILED,
                str(credential_id),
                f"Credential {credential_id} in '{family_id}' deactivated after "
                f"{failure.failures} failed balance checks: {message}",
            )
            record_event(
                "credential_deactivated",
                "ERROR",
                provider_family=family_id,
                credential_id=credential_id,
                message=message,
                meta={"failures": failure.failures},
            )
            await self._pool.ensure_current(family_id)
            await self._pool.check_capacity(family_id)

        refreshed = store.get_credential(credential_id)
        return ProbeResult(
            credential_id=credential_id,
            provider_family=family_id,
            ok=False,
            balance=refreshed.balance if refreshed else None,
            status=refreshed.status if refreshed else None,
            error=message,
            failures=failure.failures,
            deactivated=failure.deactivated,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def probe_many(self, credential_ids: list[int]) -> list[ProbeResult]:
        """Probe credentials concurrently; each probe is bounded on its own."""
        outcomes = await asyncio.gather(
            *(self.probe_credential(credential_id) for credential_id in credential_ids),
            return_exceptions=True,
        )
        results: list[ProbeResult] = []
        for credential_id, outcome in zip(credential_ids, outcomes):
            if isinstance(outcome, CredentialNotFoundError):
                continue
            if isinstance(outcome, BaseException):
                logger.error(
                    "Probe raised unexpectedly",
                    exc_info=outcome,
                    extra={"event": "probe_error", "credential_id": credential_id},
                )
                continue
            results.append(outcome)
        return results

    async def probe_all(self, family_id: str | None = None) -> list[ProbeResult]:
        """Force one probe cycle now and return once every probe finished."""
        if family_id is not None:
            self._pool.family(family_id)
        ids = [int(row.id) for row in store.list_credentials(family_id)]
        results = await self.probe_many(ids)
        families = [self._pool.family(family_id)] if family_id else list(self._pool.config.families)
        for family in families:
            if family.is_shared:
                await self._pool.ensure_current(family.id)
        return results

    async def check_and_switch(self, family_id: str) -> dict[str, Any]:
        """Probe the current credential of a shared family and rotate if needed."""
        family = self._pool.family(family_id)
        if not family.is_shared:
            raise PolicyMismatchError(family_id, "Only shared pools rotate a current credential")

        current = next((row for row in store.list_credentials(family_id) if row.is_current), None)
        previous_id = int(current.id) if current is not None else None
        probe = await self.probe_credential(previous_id) if previous_id is not None else None
        promoted = await self._pool.ensure_current(family_id)
        current_id = int(promoted.id) if promoted is not None else None
        return {
            "provider_family": family_id,
            "previous_credential_id": previous_id,
            "current_credential_id": current_id,
            "switched": current_id != previous_id,
            "probe": probe.as_dict() if probe else None,
        }

    # ------------------------------------------------------------------
    # Periodic loop
    # ------------------------------------------------------------------

    def due_credentials(self, now: float) -> list[int]:
        rows = store.list_credentials()
        known = {int(row.id) for row in rows}
        for stale in set(self._last_probe) - known:
            del self._last_probe[stale]

        due: list[int] = []
        for row in rows:
            interval = (
                self._settings.current_probe_interval_seconds
                if row.is_current
                else self._settings.probe_interval_seconds
            )
            last = self._last_probe.get(int(row.id))
            if last is None or now - last >= interval:
                due.append(int(row.id))
        return due

    async def run_due(self) -> list[ProbeResult]:
        due = self.due_credentials(asyncio.get_running_loop().time())
        if not due:
            return []
        return await self.probe_many(due)

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="health-prober")
        logger.info("Health prober started", extra={"event": "prober_started"})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Health prober stopped", extra={"event": "prober_stopped"})

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_due()
            except Exception:
                logger.exception("Probe cycle failed", extra={"event": "probe_cycle_error"})
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._settings.probe_tick_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["HealthProber", "ProbeResult", "prober_enabled"]
