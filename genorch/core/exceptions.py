"""Custom exception types."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for errors surfaced by the pool and task layers."""

    code = "orchestrator_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnknownFamilyError(OrchestratorError):
    code = "unknown_family"

    def __init__(self, family: str) -> None:
        super().__init__(f"Provider family '{family}' is not configured")
        self.family = family


class PoolExhaustedError(OrchestratorError):
    """Raised when no credential in a family can pay for the operation."""

    code = "pool_exhausted"

    def __init__(self, family: str, message: str = "No credential with sufficient balance") -> None:
        super().__init__(message)
        self.family = family


class InsufficientCredentialsError(OrchestratorError):
    """Raised when the caller's own credential cannot cover the operation."""

    code = "insufficient_credentials"

    def __init__(self, family: str, message: str = "Insufficient credentials") -> None:
        super().__init__(message)
        self.family = family


class CredentialBusyError(InsufficientCredentialsError):
    """Raised when a dedicated credential already has a task in flight."""

    code = "credential_busy"

    def __init__(self, family: str) -> None:
        super().__init__(family, message="Dedicated credential already has a task in flight")


class ProviderError(OrchestratorError):
    """Base class for failures reported by a provider adapter."""

    code = "provider_error"

    def __init__(self, family: str, message: str = "Provider error") -> None:
        super().__init__(message)
        self.family = family


class ProviderUnavailableError(ProviderError):
    """Transient failure: network error, rate limit or provider outage."""

    code = "provider_unavailable"


class ProviderRejectedError(ProviderError):
    """The provider refused the request itself."""

    code = "provider_rejected"

    def __init__(self, family: str, message: str = "Provider rejected the request", task_id: str | None = None) -> None:
        super().__init__(family, message)
        self.task_id = task_id


class ProviderCredentialError(ProviderError):
    """The provider reports the credential as invalid or out of credit."""

    code = "provider_credential_error"


class TaskNotFoundError(OrchestratorError):
    code = "task_not_found"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class TaskCancelledError(OrchestratorError):
    """Raised to a submitter whose task was deleted during the provider submit call."""

    code = "task_cancelled"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' was cancelled before polling started")
        self.task_id = task_id


class CredentialNotFoundError(OrchestratorError):
    code = "credential_not_found"

    def __init__(self, credential_id: int) -> None:
        super().__init__(f"Credential {credential_id} not found")
        self.credential_id = credential_id


class CredentialInUseError(OrchestratorError):
    """Raised when deleting a credential that is bound to an in-flight task."""

    code = "credential_in_use"

    def __init__(self, credential_id: int) -> None:
        super().__init__(f"Credential {credential_id} is bound to an in-flight task")
        self.credential_id = credential_id


class CredentialIneligibleError(OrchestratorError):
    """Raised when an inactive or revoked credential would be made current."""

    code = "credential_ineligible"

    def __init__(self, credential_id: int, message: str = "Credential is not eligible") -> None:
        super().__init__(message)
        self.credential_id = credential_id


class PolicyMismatchError(OrchestratorError):
    """Raised when an operation does not apply to the family's allocation policy."""

    code = "policy_mismatch"

    def __init__(self, family: str, message: str) -> None:
        super().__init__(message)
        self.family = family
