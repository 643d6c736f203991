"""Helper utilities for provider adapters."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

import httpx

from genorch.core.exceptions import (
    ProviderCredentialError,
    ProviderRejectedError,
    ProviderUnavailableError,
)

CREDENTIAL_STATUSES = {
    HTTPStatus.UNAUTHORIZED,
    HTTPStatus.PAYMENT_REQUIRED,
    HTTPStatus.FORBIDDEN,
}


def extract_error_body(response: httpx.Response) -> Any:
    """Return structured error details if available, else a trimmed text body."""

    try:
        return response.json()
    except ValueError:
        text = getattr(response, "text", None)
        if text:
            stripped = text.strip()
            if stripped:
                return stripped
        return None


def error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("msg", "message", "error", "errorMessage"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    if isinstance(body, str) and body:
        return body[:255]
    return default


def classify_status(family: str, status_code: int, body: Any) -> None:
    """Raise the canonical error for a failed HTTP status; no-op on success."""
    if status_code < HTTPStatus.BAD_REQUEST:
        return
    message = error_message(body, f"Provider error ({status_code})")
    if status_code in CREDENTIAL_STATUSES:
        raise ProviderCredentialError(family, message=message)
    if status_code == HTTPStatus.TOO_MANY_REQUESTS or status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
        raise ProviderUnavailableError(family, message=message)
    raise ProviderRejectedError(family, message=message)


__all__ = ["classify_status", "error_message", "extract_error_body"]
