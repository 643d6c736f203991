"""Manus agent-execution adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from genorch.core.exceptions import ProviderError, ProviderRejectedError, ProviderUnavailableError

from .base import Failed, ManusPayload, ProviderAdapter, StillRunning, Succeeded, SubmitRequest
from .utils import classify_status, extract_error_body

logger = logging.getLogger("genorch.providers.manus")

RUNNING_STATUSES = {"pending", "queued", "running", "in_progress"}
SUCCESS_STATUSES = {"completed", "success", "finished"}
FAILURE_STATUSES = {"failed", "error", "cancelled"}


class ManusAdapter(ProviderAdapter):
    adapter_id = "manus"
    milestones = {
        "pending": 5,
        "queued": 5,
        "running": 20,
        "in_progress": 20,
    }

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"API_KEY": api_key.strip(), "Content-Type": "application/json"}

    async def submit(self, api_key: str, request: SubmitRequest) -> str:
        payload = request.payload
        if not isinstance(payload, ManusPayload):
            raise ProviderRejectedError(self.family_id, message="Expected a Manus payload")

        data = await self._request(
            "POST",
            "/tasks",
            api_key,
            json_body={
                "prompt": payload.prompt,
                "taskMode": payload.task_mode,
                "agentProfile": payload.agent_profile,
            },
        )
        task_id = data.get("task_id") or data.get("id")
        if not task_id:
            raise ProviderRejectedError(self.family_id, message="Provider returned no task id")
        return str(task_id)

    async def poll(
        self, api_key: str, provider_job_id: str, operation_type: str
    ) -> StillRunning | Succeeded | Failed:
        data = await self._request("GET", f"/tasks/{provider_job_id}", api_key)
        status = str(data.get("status") or "pending").lower()

        if status in SUCCESS_STATUSES:
            output = data.get("result") or data.get("output") or {}
            result: dict[str, Any] = {"output": output}
            files = await self._list_files(api_key, provider_job_id)
            if files:
                result["files"] = files
            return Succeeded(result=result)
        if status in FAILURE_STATUSES:
            return Failed(reason=str(data.get("error") or "Agent task failed"))
        if status not in RUNNING_STATUSES:
            logger.info(
                "Unrecognised task status",
                extra={"event": "provider_status_unknown", "status": status, "provider_family": self.family_id},
            )
        return StillRunning(hint=status)

    async def check_balance(self, api_key: str) -> float:
        path = self._family.balance_path or "/credits"
        data = await self._request("GET", path, api_key)
        for key in ("credits", "credit", "balance", "remaining"):
            value = data.get(key)
            if isinstance(value, (int, float)):
                return float(value)
        raise ProviderUnavailableError(self.family_id, message="Unexpected credit response")

    async def _list_files(self, api_key: str, provider_job_id: str) -> list[Any]:
        """Best-effort file listing; the task result stands without it."""
        try:
            data = await self._request("GET", "/files", api_key, params={"task_id": provider_job_id})
        except ProviderError:
            logger.warning(
                "File listing failed",
                extra={"event": "provider_files_error", "provider_job_id": provider_job_id},
            )
            return []
        files = data.get("files") if isinstance(data, dict) else None
        return files if isinstance(files, list) else []

    async def _request(
        self,
        method: str,
        path: str,
        api_key: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._family.base_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._settings.request_timeout_seconds) as client:
                response = await client.request(
                    method, url, json=json_body, params=params, headers=self._headers(api_key)
                )
        except httpx.RequestError as exc:
            raise ProviderUnavailableError(self.family_id, message="Provider request failed") from exc

        if response.is_error:
            classify_status(self.family_id, response.status_code, extract_error_body(response))

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(self.family_id, message="Unexpected response format") from exc
        if isinstance(data, list):
            return {"files": data}
        if not isinstance(data, dict):
            raise ProviderUnavailableError(self.family_id, message="Unexpected response format")
        return data
