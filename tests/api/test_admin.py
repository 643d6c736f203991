from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from genorch.api import admin
from genorch.api.deps import Services
from genorch.api.errors import status_for
from genorch.core.exceptions import (
    CredentialInUseError,
    PolicyMismatchError,
    ProviderUnavailableError,
    UnknownFamilyError,
)
from genorch.storage import tasks as task_store
from genorch.storage.models import Allocation, CredentialStatus, TaskState


@pytest.fixture
def services(config, registry, pool, orchestrator, prober) -> Services:
    return Services(config=config, registry=registry, pool=pool, orchestrator=orchestrator, prober=prober)


@pytest.mark.asyncio
async def test_add_credential_probes_and_promotes(services, adapters):
    adapters["image-gen"].balances["sk-live-abcdefghijkl"] = 40

    response = await admin.add_credential(
        admin.AddCredentialRequest(provider_family="image-gen", api_key="sk-live-abcdefghijkl", label="main"),
        services,
    )

    assert response["probe"]["ok"] is True
    assert response["probe"]["balance"] == 40
    credential = response["credential"]
    assert credential["api_key"] == "sk-live-...ijkl"
    assert credential["status"] == CredentialStatus.ACTIVE.value
    assert credential["allocation"] == Allocation.CURRENT.value


@pytest.mark.asyncio
async def test_add_credential_without_probe_stays_inactive(services):
    response = await admin.add_credential(
        admin.AddCredentialRequest(provider_family="agent-exec", api_key="manus-0001", initial_probe=False),
        services,
    )

    assert response["probe"] is None
    assert response["credential"]["status"] == CredentialStatus.INACTIVE.value


@pytest.mark.asyncio
async def test_add_credential_to_unknown_family(services):
    with pytest.raises(UnknownFamilyError) as excinfo:
        await admin.add_credential(admin.AddCredentialRequest(provider_family="video", api_key="k"), services)

    assert status_for(excinfo.value)[0] == 404


@pytest.mark.asyncio
async def test_refresh_credential_reports_probe_failure(services, adapters, add_credential):
    credential_id = add_credential(balance=50, api_key="flaky-key")
    adapters["image-gen"].balances["flaky-key"] = ProviderUnavailableError("image-gen", "gateway timeout")

    result = await admin.refresh_credential(credential_id, services)

    assert result["ok"] is False
    assert result["error"] == "gateway timeout"
    assert result["failures"] == 1
    assert result["deactivated"] is False


@pytest.mark.asyncio
async def test_delete_credential_with_in_flight_task_conflicts(services, add_credential):
    credential_id = add_credential(balance=50)
    now = datetime.now(timezone.utc)
    task_store.create_task(
        task_id="busy",
        user_id="alice",
        provider_family="image-gen",
        operation_type="jobs",
        credential_id=credential_id,
        cost=4,
        max_attempts=10,
        payload=None,
        created_at=now,
        deadline_at=now + timedelta(minutes=1),
        state=TaskState.POLLING,
    )

    with pytest.raises(CredentialInUseError) as excinfo:
        await admin.delete_credential(credential_id, services)

    assert status_for(excinfo.value)[0] == 409


@pytest.mark.asyncio
async def test_auto_assign_uses_registered_users(services, add_credential):
    credential_id = add_credential("agent-exec", balance=100)
    entry = admin.add_pool_entry(credential_id, services)
    assert entry["credential_id"] == credential_id
    admin.register_user(admin.RegisterUserRequest(user_id="alice"))
    admin.register_user(admin.RegisterUserRequest(user_id="bob"))

    report = await admin.auto_assign("agent-exec", services, None)

    assert report["assignments"] == {"alice": credential_id}
    assert report["unassigned"] == ["bob"]
    entries = admin.list_pool_entries(services, family="agent-exec")["entries"]
    assert entries[0]["assigned_user_id"] == "alice"
    assert entries[0]["is_used"] is True
    open_alerts = admin.list_alerts()["alerts"]
    assert [alert["type"] for alert in open_alerts] == ["pool-exhausted"]


@pytest.mark.asyncio
async def test_check_switch_rejects_dedicated_family(services):
    with pytest.raises(PolicyMismatchError):
        await admin.check_and_switch("agent-exec", services)


@pytest.mark.asyncio
async def test_check_switch_rotates_drained_current(services, adapters, add_credential):
    drained = add_credential(balance=30, api_key="drained", allocation=Allocation.CURRENT)
    fresh = add_credential(balance=80, api_key="fresh")
    adapters["image-gen"].balances.update({"drained": 2, "fresh": 80})

    result = await admin.check_and_switch("image-gen", services)

    assert result["previous_credential_id"] == drained
    assert result["current_credential_id"] == fresh
    assert result["switched"] is True
    assert result["probe"]["status"] == CredentialStatus.INACTIVE.value


def test_acknowledge_unknown_alert():
    with pytest.raises(HTTPException) as excinfo:
        admin.acknowledge_alert(404)

    assert excinfo.value.status_code == 404


def test_register_user_is_idempotent():
    assert admin.register_user(admin.RegisterUserRequest(user_id="carol"))["created"] is True
    assert admin.register_user(admin.RegisterUserRequest(user_id="carol"))["created"] is False
    assert admin.list_users() == {"users": ["carol"]}


def test_status_summary_reports_each_family(services, add_credential):
    add_credential(balance=25, allocation=Allocation.CURRENT)
    add_credential(balance=5, status=CredentialStatus.INACTIVE)

    summary = admin.system_status(services)

    families = {item["id"]: item for item in summary["families"]}
    assert families["image-gen"]["total_credentials"] == 2
    assert families["image-gen"]["active_credentials"] == 1
    assert families["image-gen"]["total_balance"] == 25
    assert families["image-gen"]["current"]["balance"] == 25
    assert families["agent-exec"]["current"] is None
