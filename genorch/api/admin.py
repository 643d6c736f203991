"""Admin endpoints for credential pools, alerts and telemetry."""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from genorch.storage import alerts
from genorch.storage.credentials import ensure_user, list_user_ids
from genorch.telemetry.events import list_recent_events, record_event

from .deps import Services, get_services

router = APIRouter(prefix="/admin")

ServicesDep = Annotated[Services, Depends(get_services)]


class AddCredentialRequest(BaseModel):
    provider_family: str
    api_key: str = Field(min_length=1)
    label: str = ""
    initial_probe: bool = True


class AutoAssignRequest(BaseModel):
    user_ids: Optional[list[str]] = None


class RegisterUserRequest(BaseModel):
    user_id: str = Field(min_length=1)


@router.get("/status")
def system_status(services: ServicesDep) -> dict:
    return services.pool.status_summary()


# ----------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------


@router.get("/credentials")
def list_credentials(services: ServicesDep, family: Optional[str] = None) -> dict:
    if family is not None:
        services.pool.family(family)
    return {"credentials": services.pool.list_credentials(family)}


@router.post("/credentials", status_code=201)
async def add_credential(payload: AddCredentialRequest, services: ServicesDep) -> dict:
    credential = await services.pool.add_credential(
        payload.provider_family, payload.api_key, payload.label
    )
    probe = None
    if payload.initial_probe:
        probe = (await services.prober.probe_credential(int(credential.id))).as_dict()
    view = next(
        (item for item in services.pool.list_credentials(payload.provider_family) if item["id"] == credential.id),
        None,
    )
    return {"credential": view, "probe": probe}


@router.delete("/credentials/{credential_id}")
async def delete_credential(credential_id: int, services: ServicesDep) -> dict:
    await services.pool.delete_credential(credential_id)
    return {"status": "ok"}


@router.post("/credentials/refresh")
async def refresh_all(services: ServicesDep, family: Optional[str] = None) -> dict:
    results = await services.prober.probe_all(family)
    return {"results": [result.as_dict() for result in results]}


@router.post("/credentials/{credential_id}/refresh")
async def refresh_credential(credential_id: int, services: ServicesDep) -> dict:
    result = await services.prober.probe_credential(credential_id)
    return result.as_dict()


@router.post("/credentials/{credential_id}/current")
async def set_current(credential_id: int, services: ServicesDep) -> dict:
    credential = await services.pool.set_current(credential_id)
    return {"status": "ok", "credential_id": credential.id}


@router.post("/credentials/{credential_id}/reinstate")
async def reinstate_credential(credential_id: int, services: ServicesDep) -> dict:
    credential = await services.pool.reinstate(credential_id)
    return {"status": "ok", "credential_id": credential.id}


@router.post("/families/{family_id}/check-switch")
async def check_and_switch(family_id: str, services: ServicesDep) -> dict:
    return await services.prober.check_and_switch(family_id)


# ----------------------------------------------------------------------
# Dedicated pool entries and users
# ----------------------------------------------------------------------


@router.get("/pool-entries")
def list_pool_entries(services: ServicesDep, family: Optional[str] = None) -> dict:
    if family is not None:
        services.pool.family(family)
    return {"entries": services.pool.list_pool_entries(family)}


@router.post("/credentials/{credential_id}/pool-entries", status_code=201)
def add_pool_entry(credential_id: int, services: ServicesDep) -> dict:
    entry = services.pool.add_pool_entry(credential_id)
    return {"id": entry.id, "credential_id": entry.credential_id}


@router.post("/families/{family_id}/auto-assign")
async def auto_assign(
    family_id: str,
    services: ServicesDep,
    payload: Annotated[Optional[AutoAssignRequest], Body()] = None,
) -> dict:
    report = await services.pool.auto_assign(family_id, payload.user_ids if payload else None)
    return {
        "provider_family": report.provider_family,
        "assigned_count": report.assigned_count,
        "assignments": report.assignments,
        "skipped": report.skipped,
        "unassigned": report.unassigned,
    }


@router.get("/users")
def list_users() -> dict:
    return {"users": list_user_ids()}


@router.post("/users", status_code=201)
def register_user(payload: RegisterUserRequest) -> dict:
    created = ensure_user(payload.user_id)
    if created:
        record_event("user_registered", "INFO", message=payload.user_id)
    return {"user_id": payload.user_id, "created": created}


# ----------------------------------------------------------------------
# Alerts, events and task history
# ----------------------------------------------------------------------


@router.get("/alerts")
def list_alerts(include_acknowledged: bool = False, limit: int = 100) -> dict:
    limit_value = max(1, min(limit, 500))
    return {"alerts": alerts.list_alerts(include_acknowledged=include_acknowledged, limit=limit_value)}


@router.post("/alerts/{alert_id}/ack")
def acknowledge_alert(alert_id: int) -> dict:
    if not alerts.acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "ok"}


@router.get("/events")
def list_events(
    limit: int = 25,
    kind: Optional[str] = None,
    family: Optional[str] = None,
    task_id: Optional[str] = None,
) -> dict:
    """Return recent orchestrator events for the admin dashboard."""
    limit_value = max(1, min(limit, 100))
    return {
        "events": list_recent_events(limit=limit_value, kind=kind, provider_family=family, task_id=task_id)
    }


@router.get("/tasks")
def list_tasks(services: ServicesDep, user_id: Optional[str] = None, limit: int = 50) -> dict:
    limit_value = max(1, min(limit, 200))
    return {"tasks": services.orchestrator.list_tasks(user_id, limit_value)}
