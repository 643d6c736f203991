"""KIE media generation adapter (images, video, music)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable

import httpx

from genorch.core.exceptions import ProviderRejectedError, ProviderUnavailableError

from .base import Failed, KiePayload, ProviderAdapter, StillRunning, Succeeded, SubmitRequest
from .utils import classify_status, error_message, extract_error_body

logger = logging.getLogger("genorch.providers.kie")

KieStatus = StillRunning | Succeeded | Failed


@dataclass(frozen=True)
class KieOperation:
    create_path: str
    record_path: str
    parser: str
    # Jobs-style endpoints wrap parameters in ``input`` and accept a recordId lookup.
    wrapped: bool = False


OPERATIONS: dict[str, KieOperation] = {
    "playground": KieOperation("/playground/createTask", "/playground/recordInfo", "state", wrapped=True),
    "jobs": KieOperation("/jobs/createTask", "/jobs/recordInfo", "state", wrapped=True),
    "gpt4o-image": KieOperation("/gpt4o-image/generate", "/gpt4o-image/record-info", "gpt4o"),
    "veo3": KieOperation("/veo/generate", "/veo/record-info", "flag"),
    "midjourney": KieOperation("/mj/generate", "/mj/record-info", "midjourney"),
    "suno": KieOperation("/generate", "/generate/record-info", "suno"),
}

SUNO_FAILURES = {
    "CREATE_TASK_FAILED",
    "GENERATE_AUDIO_FAILED",
    "CALLBACK_EXCEPTION",
    "SENSITIVE_WORD_ERROR",
}
GPT4O_FAILURES = {"GENERATE_FAILED", "CREATE_TASK_FAILED"}
RECORD_MISSING = "recordInfo is null"


def _json_field(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _urls(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    urls: list[str] = []
    for item in items:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict):
            url = item.get("resultUrl") or item.get("url")
            if isinstance(url, str):
                urls.append(url)
    return urls


def _parse_state(data: dict[str, Any]) -> KieStatus:
    state = str(data.get("state") or "waiting").lower()
    if state == "success":
        result = _json_field(data.get("resultJson")) or {}
        urls = _urls(result.get("resultUrls")) if isinstance(result, dict) else []
        if not urls and isinstance(result, dict) and isinstance(result.get("videoUrl"), str):
            urls = [result["videoUrl"]]
        return Succeeded(result={"urls": urls})
    if state in {"fail", "failed"}:
        return Failed(reason=data.get("failMsg") or "Generation failed")
    return StillRunning(hint=state)


def _parse_flag(data: dict[str, Any]) -> KieStatus:
    flag = data.get("successFlag")
    if flag == 1:
        response = data.get("response") or {}
        urls = _urls(response.get("resultUrls")) or _urls(response.get("result_urls"))
        if not urls:
            urls = _urls(_json_field(data.get("resultUrls")))
        return Succeeded(result={"urls": urls})
    if flag in (2, 3):
        return Failed(reason=data.get("errorMessage") or "Generation failed")
    return StillRunning(hint=None)


def _parse_gpt4o(data: dict[str, Any]) -> KieStatus:
    status = str(data.get("status") or "").upper()
    if status == "SUCCESS" or data.get("successFlag") == 1:
        response = data.get("response") or {}
        return Succeeded(result={"urls": _urls(response.get("resultUrls"))})
    if status in GPT4O_FAILURES or data.get("successFlag") == 2:
        return Failed(reason=data.get("errorMessage") or "Image generation failed")
    return StillRunning(hint=status.lower() or None)


def _parse_midjourney(data: dict[str, Any]) -> KieStatus:
    if "status" not in data:
        return _parse_flag(data)
    status = str(data.get("status") or "").lower()
    if status in {"completed", "success"}:
        info = _json_field(data.get("resultInfoJson")) or {}
        urls = _urls(info.get("resultUrls")) if isinstance(info, dict) else []
        if not urls:
            urls = _urls((data.get("response") or {}).get("result_urls"))
        return Succeeded(result={"urls": urls})
    if status in {"failed", "error"}:
        return Failed(reason=data.get("errorMessage") or data.get("error") or "Generation failed")
    return StillRunning(hint=status or None)


def _parse_suno(data: dict[str, Any]) -> KieStatus:
    status = str(data.get("status") or "PENDING").upper()
    if status == "SUCCESS":
        tracks = (data.get("response") or {}).get("sunoData") or []
        items = [
            {
                "title": track.get("title"),
                "audio_url": track.get("audioUrl"),
                "image_url": track.get("imageUrl"),
                "duration": track.get("duration"),
            }
            for track in tracks
            if isinstance(track, dict)
        ]
        return Succeeded(
            result={"urls": [item["audio_url"] for item in items if item["audio_url"]], "tracks": items}
        )
    if status in SUNO_FAILURES:
        return Failed(reason=data.get("errorMessage") or "Music generation failed")
    return StillRunning(hint=status.lower())


PARSERS: dict[str, Callable[[dict[str, Any]], KieStatus]] = {
    "state": _parse_state,
    "flag": _parse_flag,
    "gpt4o": _parse_gpt4o,
    "midjourney": _parse_midjourney,
    "suno": _parse_suno,
}


class KieAdapter(ProviderAdapter):
    adapter_id = "kie"
    milestones = {
        "waiting": 5,
        "queuing": 10,
        "pending": 5,
        "generating": 30,
        "text_success": 40,
        "first_success": 75,
    }

    def _operation(self, operation_type: str) -> KieOperation:
        operation = OPERATIONS.get(operation_type)
        if operation is None:
            raise ProviderRejectedError(self.family_id, message=f"Unknown operation '{operation_type}'")
        return operation

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_body(self, operation: KieOperation, payload: KiePayload) -> dict[str, Any]:
        body: dict[str, Any] = dict(payload.options)
        if payload.model:
            body["model"] = payload.model
        if operation.wrapped:
            body["input"] = payload.input
        else:
            body.update(payload.input)
        return body

    async def submit(self, api_key: str, request: SubmitRequest) -> str:
        if not isinstance(request.payload, KiePayload):
            raise ProviderRejectedError(self.family_id, message="Expected a KIE payload")
        operation = self._operation(request.operation_type)
        body = self._build_body(operation, request.payload)

        envelope = await self._request("POST", operation.create_path, api_key, json_body=body)
        data = envelope.get("data") or {}
        task_id = envelope.get("task_id") or data.get("taskId") or data.get("recordId")
        if not task_id:
            raise ProviderRejectedError(self.family_id, message="Provider returned no task id")

        logger.info(
            "Job submitted",
            extra={
                "event": "provider_submit",
                "provider_family": self.family_id,
                "operation_type": request.operation_type,
                "provider_job_id": task_id,
            },
        )
        return str(task_id)

    async def poll(self, api_key: str, provider_job_id: str, operation_type: str) -> KieStatus:
        operation = self._operation(operation_type)
        if operation.wrapped:
            params = {"taskId": provider_job_id, "recordId": provider_job_id}
        else:
            params = {"taskId": provider_job_id}

        envelope = await self._request(
            "GET", operation.record_path, api_key, params=params, allow_missing=operation.wrapped
        )
        if envelope.get("code") == HTTPStatus.UNPROCESSABLE_ENTITY:
            # Some jobs are only addressable by recordId.
            envelope = await self._request(
                "GET", operation.record_path, api_key, params={"recordId": provider_job_id}
            )

        data = envelope.get("data")
        if not isinstance(data, dict):
            return StillRunning(hint="waiting")
        return PARSERS[operation.parser](data)

    async def check_balance(self, api_key: str) -> float:
        envelope = await self._request("GET", "/chat/credit", api_key)
        data = envelope.get("data")
        if isinstance(data, (int, float)):
            return float(data)
        if isinstance(data, dict):
            value = data.get("credit", data.get("credits"))
            if isinstance(value, (int, float)):
                return float(value)
        raise ProviderUnavailableError(self.family_id, message="Unexpected credit response")

    async def _request(
        self,
        method: str,
        path: str,
        api_key: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_missing: bool = False,
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
            envelope = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(self.family_id, message="Unexpected response format") from exc
        if not isinstance(envelope, dict):
            raise ProviderUnavailableError(self.family_id, message="Unexpected response format")

        code = envelope.get("code")
        if code == HTTPStatus.OK:
            return envelope
        if allow_missing and code == HTTPStatus.UNPROCESSABLE_ENTITY and envelope.get("msg") == RECORD_MISSING:
            return envelope
        if isinstance(code, int) and code >= HTTPStatus.BAD_REQUEST:
            classify_status(self.family_id, code, envelope)
        raise ProviderRejectedError(
            self.family_id, message=error_message(envelope, "Provider request failed")
        )
