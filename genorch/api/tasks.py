"""Task submission and status routes."""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from genorch.middleware.request_context import USER_HEADER
from genorch.providers.base import SubmitRequest
from genorch.tasks.orchestrator import ANONYMOUS_USER

from .deps import Services, get_services

router = APIRouter(prefix="/v1")

CANCELLED_MESSAGE = "task still running — cancelled"

SUBMIT_EXAMPLES = {
    "kie-image": {
        "summary": "Image generation on the shared KIE pool",
        "value": {
            "provider_family": "image-gen",
            "operation_type": "gpt4o-image",
            "cost": 6,
            "payload": {
                "kind": "kie",
                "input": {"prompt": "A lighthouse at dusk, watercolor", "size": "1:1"},
            },
        },
    },
    "manus-agent": {
        "summary": "Agent task on a dedicated Manus credential",
        "value": {
            "provider_family": "agent-exec",
            "operation_type": "agent",
            "cost": 20,
            "payload": {
                "kind": "manus",
                "prompt": "Compile a one-page market summary as a Word document.",
            },
        },
    },
}


@router.post(
    "/tasks",
    status_code=202,
    openapi_extra={
        "requestBody": {
            "content": {
                "application/json": {
                    "examples": SUBMIT_EXAMPLES,
                }
            }
        }
    },
)
async def submit_task(
    payload: SubmitRequest,
    services: Annotated[Services, Depends(get_services)],
    user_id: Annotated[Optional[str], Header(alias=USER_HEADER)] = None,
) -> dict:
    """Start a task. Dedicated families require the caller's ``x-user-id``."""
    task_id = await services.orchestrator.submit(user_id, payload)
    return {"task_id": task_id}


@router.get("/tasks")
def list_tasks(
    services: Annotated[Services, Depends(get_services)],
    user_id: Annotated[Optional[str], Header(alias=USER_HEADER)] = None,
    limit: int = 50,
) -> dict:
    limit_value = max(1, min(limit, 200))
    return {"tasks": services.orchestrator.list_tasks(user_id or ANONYMOUS_USER, limit_value)}


@router.get("/tasks/{task_id}")
def get_task(task_id: str, services: Annotated[Services, Depends(get_services)]) -> dict:
    return services.orchestrator.get_status(task_id)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, services: Annotated[Services, Depends(get_services)]) -> JSONResponse:
    cancelled = await services.orchestrator.delete_task(task_id)
    if cancelled:
        return JSONResponse({"ok": False, "error": CANCELLED_MESSAGE, "task_id": task_id})
    return JSONResponse({"ok": True})
