"""Mapping of orchestrator errors onto HTTP responses."""

from __future__ import annotations

from http import HTTPStatus

from fastapi.responses import JSONResponse

from genorch.core.exceptions import (
    CredentialIneligibleError,
    CredentialInUseError,
    CredentialNotFoundError,
    InsufficientCredentialsError,
    OrchestratorError,
    PolicyMismatchError,
    PoolExhaustedError,
    ProviderError,
    ProviderRejectedError,
    TaskCancelledError,
    TaskNotFoundError,
    UnknownFamilyError,
)

# Checked in order; subclasses come before their bases.
ERROR_STATUS: list[tuple[type[OrchestratorError], HTTPStatus, str]] = [
    (PoolExhaustedError, HTTPStatus.SERVICE_UNAVAILABLE, "pool_unavailable"),
    (InsufficientCredentialsError, HTTPStatus.PAYMENT_REQUIRED, "insufficient_credentials"),
    (ProviderRejectedError, HTTPStatus.BAD_GATEWAY, "provider_error"),
    (ProviderError, HTTPStatus.BAD_GATEWAY, "provider_error"),
    (TaskNotFoundError, HTTPStatus.NOT_FOUND, "not_found"),
    (CredentialNotFoundError, HTTPStatus.NOT_FOUND, "not_found"),
    (UnknownFamilyError, HTTPStatus.NOT_FOUND, "not_found"),
    (CredentialInUseError, HTTPStatus.CONFLICT, "conflict"),
    (CredentialIneligibleError, HTTPStatus.CONFLICT, "conflict"),
    (PolicyMismatchError, HTTPStatus.CONFLICT, "conflict"),
    (TaskCancelledError, HTTPStatus.CONFLICT, "conflict"),
]


def status_for(exc: OrchestratorError) -> tuple[HTTPStatus, str]:
    for error_type, status, error_kind in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status, error_kind
    return HTTPStatus.INTERNAL_SERVER_ERROR, "internal_server_error"


def error_response(exc: OrchestratorError) -> JSONResponse:
    status, error_kind = status_for(exc)
    error = {
        "message": exc.message,
        "type": error_kind,
        "code": exc.code,
    }
    if isinstance(exc, (ProviderRejectedError, TaskCancelledError)) and exc.task_id:
        error["task_id"] = exc.task_id
    return JSONResponse(status_code=int(status), content={"error": error})
