from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from genorch.core.exceptions import (
    CredentialBusyError,
    CredentialIneligibleError,
    CredentialInUseError,
    CredentialNotFoundError,
    InsufficientCredentialsError,
    PolicyMismatchError,
    PoolExhaustedError,
)
from genorch.pool.manager import ReleaseOutcome, _claim
from genorch.storage import alerts
from genorch.storage import credentials as store
from genorch.storage import tasks as task_store
from genorch.storage.database import session_scope
from genorch.storage.models import Allocation, CredentialStatus, DedicatedPoolEntry, TaskState


def _current_ids(family: str = "image-gen") -> list[int]:
    return [int(row.id) for row in store.list_credentials(family) if row.is_current]


def _open_alerts(alert_type: str = "pool-exhausted") -> list[dict]:
    return [
        alert
        for alert in alerts.list_alerts(include_acknowledged=True)
        if alert["type"] == alert_type and alert["resolved_at"] is None
    ]


def _polling_task(credential_id: int, task_id: str = "t-busy") -> None:
    now = datetime.now(timezone.utc)
    task_store.create_task(
        task_id=task_id,
        user_id="u1",
        provider_family="image-gen",
        operation_type="jobs",
        credential_id=credential_id,
        cost=1,
        max_attempts=10,
        payload=None,
        created_at=now,
        deadline_at=now + timedelta(minutes=5),
        state=TaskState.POLLING,
    )


# ----------------------------------------------------------------------
# Shared-Rotating
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reserve_promotes_richest_credential_and_debit_keeps_it_current(pool, add_credential):
    rich = add_credential(balance=15)
    add_credential(balance=5)

    credential = await pool.reserve("image-gen", 4)
    assert credential.id == rich
    assert _current_ids() == [rich]

    result = await pool.release(rich, ReleaseOutcome.COMPLETED, cost=4, task_id="t1")

    assert result.balance == 11
    stored = store.get_credential(rich)
    assert stored.status == CredentialStatus.ACTIVE.value
    assert stored.is_current


@pytest.mark.asyncio
async def test_exhaustion_raises_a_single_alert(pool, add_credential):
    rich = add_credential(balance=15)
    add_credential(balance=5)

    credential = await pool.reserve("image-gen", 12)
    assert credential.id == rich
    await pool.release(rich, ReleaseOutcome.COMPLETED, cost=12, task_id="t1")
    assert store.get_credential(rich).balance == 3

    for _ in range(3):
        with pytest.raises(PoolExhaustedError):
            await pool.reserve("image-gen", 12)

    assert len(_open_alerts()) == 1


@pytest.mark.asyncio
async def test_successful_reservation_closes_exhaustion_episode(pool, add_credential):
    credential_id = add_credential(balance=5)

    with pytest.raises(PoolExhaustedError):
        await pool.reserve("image-gen", 8)
    assert len(_open_alerts()) == 1

    await pool.reserve("image-gen", 2)
    assert _open_alerts() == []

    store_alerts = alerts.list_alerts(include_acknowledged=True)
    assert len(store_alerts) == 1
    assert store.get_credential(credential_id).is_current


@pytest.mark.asyncio
async def test_current_is_kept_while_it_can_pay(pool, add_credential):
    current = add_credential(balance=20, allocation=Allocation.CURRENT)
    add_credential(balance=90)

    credential = await pool.reserve("image-gen", 5)

    assert credential.id == current
    assert _current_ids() == [current]


@pytest.mark.asyncio
async def test_concurrent_reservations_leave_one_current(pool, add_credential):
    for balance in (30, 40, 50):
        add_credential(balance=balance)

    results = await asyncio.gather(*(pool.reserve("image-gen", 1) for _ in range(10)))

    assert len({credential.id for credential in results}) == 1
    assert len(_current_ids()) == 1


@pytest.mark.asyncio
async def test_inactive_or_revoked_credentials_are_never_selected(pool, add_credential):
    add_credential(balance=100, status=CredentialStatus.INACTIVE)
    revoked = add_credential(balance=90)
    await pool.release(revoked, ReleaseOutcome.CREDENTIAL_ERROR)

    with pytest.raises(PoolExhaustedError):
        await pool.reserve("image-gen", 1)


@pytest.mark.asyncio
async def test_credential_error_on_shared_pool_revokes_and_rotates(pool, add_credential):
    first = add_credential(balance=50)
    second = add_credential(balance=40)

    assert (await pool.reserve("image-gen", 1)).id == first
    await pool.release(first, ReleaseOutcome.CREDENTIAL_ERROR, task_id="t1")

    stored = store.get_credential(first)
    assert stored.revoked is True
    assert not stored.is_current
    assert stored.balance == 50
    assert (await pool.reserve("image-gen", 1)).id == second

    await pool.reinstate(first)
    assert store.get_credential(first).revoked is False


@pytest.mark.asyncio
async def test_failed_and_timed_out_release_never_debit(pool, add_credential):
    credential_id = add_credential(balance=30)

    await pool.reserve("image-gen", 10)
    assert await pool.release(credential_id, ReleaseOutcome.FAILED, cost=10) is None
    await pool.reserve("image-gen", 10)
    assert await pool.release(credential_id, ReleaseOutcome.TIMED_OUT, cost=10) is None

    assert store.get_credential(credential_id).balance == 30


# ----------------------------------------------------------------------
# Dedicated-Assignment
# ----------------------------------------------------------------------


def _dedicated_credentials(add_credential, count: int, balance: float = 100) -> list[int]:
    ids = []
    for _ in range(count):
        credential_id = add_credential("agent-exec", balance)
        store.add_pool_entries(credential_id, 1)
        ids.append(credential_id)
    return ids


@pytest.mark.asyncio
async def test_auto_assign_claims_available_entries(pool, add_credential):
    _dedicated_credentials(add_credential, 3)
    users = [f"user-{index}" for index in range(5)]
    for user_id in users:
        store.ensure_user(user_id)

    report = await pool.auto_assign("agent-exec")

    assert report.assigned_count == 3
    assert len(report.unassigned) == 2
    assert set(report.assignments) | set(report.unassigned) == set(users)
    assert len(set(report.assignments.values())) == 3
    assert len(_open_alerts()) == 1


@pytest.mark.asyncio
async def test_auto_assign_skips_users_that_hold_an_entry(pool, add_credential):
    _dedicated_credentials(add_credential, 2)
    first = await pool.auto_assign("agent-exec", ["alice"])
    second = await pool.auto_assign("agent-exec", ["alice", "bob"])

    assert first.assigned_count == 1
    assert second.assigned_count == 1
    assert second.skipped == ["alice"]
    assert "bob" in second.assignments


@pytest.mark.asyncio
async def test_auto_assign_rejects_shared_family(pool):
    with pytest.raises(PolicyMismatchError):
        await pool.auto_assign("image-gen")


@pytest.mark.asyncio
async def test_concurrent_dedicated_reservations_never_share_an_entry(pool, add_credential):
    _dedicated_credentials(add_credential, 3)
    users = [f"user-{index}" for index in range(5)]

    results = await asyncio.gather(
        *(pool.reserve("agent-exec", 1, user_id) for user_id in users),
        return_exceptions=True,
    )

    granted = [result for result in results if not isinstance(result, Exception)]
    refused = [result for result in results if isinstance(result, Exception)]
    assert len(granted) == 3
    assert len({credential.id for credential in granted}) == 3
    assert all(isinstance(error, PoolExhaustedError) for error in refused)

    entries = pool.list_pool_entries("agent-exec")
    assigned = [entry["assigned_user_id"] for entry in entries if entry["is_used"]]
    assert len(assigned) == len(set(assigned)) == 3


@pytest.mark.asyncio
async def test_dedicated_credential_is_reserved_one_task_at_a_time(pool, add_credential):
    (credential_id,) = _dedicated_credentials(add_credential, 1)

    credential = await pool.reserve("agent-exec", 5, "alice")
    assert credential.id == credential_id

    with pytest.raises(CredentialBusyError):
        await pool.reserve("agent-exec", 5, "alice")

    await pool.release(credential_id, ReleaseOutcome.FAILED)
    again = await pool.reserve("agent-exec", 5, "alice")
    assert again.id == credential_id


@pytest.mark.asyncio
async def test_dedicated_credential_that_cannot_pay_is_insufficient(pool, add_credential):
    _dedicated_credentials(add_credential, 1, balance=20)
    await pool.reserve("agent-exec", 5, "alice")
    await pool.release(store.list_credentials("agent-exec")[0].id, ReleaseOutcome.FAILED)

    with pytest.raises(InsufficientCredentialsError):
        await pool.reserve("agent-exec", 50, "alice")


@pytest.mark.asyncio
async def test_dedicated_reserve_requires_a_user(pool, add_credential):
    _dedicated_credentials(add_credential, 1)

    with pytest.raises(InsufficientCredentialsError):
        await pool.reserve("agent-exec", 1)


@pytest.mark.asyncio
async def test_credential_error_on_dedicated_pool_fails_the_entry(pool, add_credential):
    first, second = _dedicated_credentials(add_credential, 2)

    assert (await pool.reserve("agent-exec", 1, "alice")).id == first
    await pool.release(first, ReleaseOutcome.CREDENTIAL_ERROR)

    entries = {entry["credential_id"]: entry for entry in pool.list_pool_entries("agent-exec")}
    assert entries[first]["is_failed"] is True
    assert (await pool.reserve("agent-exec", 1, "alice")).id == second


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_add_credential_starts_inactive(pool):
    credential = await pool.add_credential("image-gen", "  sk-abcdefgh12345678  ", "main")

    stored = store.get_credential(credential.id)
    assert stored.api_key == "sk-abcdefgh12345678"
    assert stored.status == CredentialStatus.INACTIVE.value
    assert stored.balance == 0


@pytest.mark.asyncio
async def test_set_current_swaps_the_current_credential(pool, add_credential):
    first = add_credential(balance=50, allocation=Allocation.CURRENT)
    second = add_credential(balance=20)

    await pool.set_current(second)

    assert _current_ids() == [second]
    assert store.get_credential(first).allocation == Allocation.UNASSIGNED.value


@pytest.mark.asyncio
async def test_set_current_refuses_inactive_credentials(pool, add_credential):
    inactive = add_credential(balance=2, status=CredentialStatus.INACTIVE)

    with pytest.raises(CredentialIneligibleError):
        await pool.set_current(inactive)


@pytest.mark.asyncio
async def test_delete_refused_while_task_in_flight(pool, add_credential):
    credential_id = add_credential(balance=50)
    _polling_task(credential_id)

    with pytest.raises(CredentialInUseError):
        await pool.delete_credential(credential_id)
    assert store.get_credential(credential_id) is not None


@pytest.mark.asyncio
async def test_deleting_current_promotes_the_next_best(pool, add_credential):
    current = add_credential(balance=50, allocation=Allocation.CURRENT)
    runner_up = add_credential(balance=40)
    add_credential(balance=30)

    await pool.delete_credential(current)

    assert store.get_credential(current) is None
    assert _current_ids() == [runner_up]


@pytest.mark.asyncio
async def test_probe_failures_deactivate_after_limit(pool, add_credential):
    credential_id = add_credential(balance=50, allocation=Allocation.CURRENT)

    results = [await pool.record_probe_failure(credential_id, "timeout") for _ in range(3)]

    assert [result.deactivated for result in results] == [False, False, True]
    stored = store.get_credential(credential_id)
    assert stored.status == CredentialStatus.INACTIVE.value
    assert stored.balance == 50
    assert not stored.is_current


def test_status_summary_masks_current_key(pool, add_credential):
    add_credential(balance=50, api_key="sk-live-abcdefghijklmnop", allocation=Allocation.CURRENT)
    add_credential(balance=3, status=CredentialStatus.INACTIVE)

    summary = {family["id"]: family for family in pool.status_summary()["families"]}

    images = summary["image-gen"]
    assert images["total_credentials"] == 2
    assert images["active_credentials"] == 1
    assert images["total_balance"] == 50
    assert images["current"]["api_key"] == "sk-live-...mnop"
    assert summary["agent-exec"]["total_credentials"] == 0


def test_claiming_an_entry_without_its_credential_raises():
    with session_scope() as session:
        entry = DedicatedPoolEntry(credential_id=999)
        session.add(entry)
        session.flush()

        with pytest.raises(CredentialNotFoundError):
            _claim(session, entry, "alice")
