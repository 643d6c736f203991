"""Provider adapter interfaces and the canonical submit/poll vocabulary."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from genorch.core.config import FamilyModel, PoolSettings


class KiePayload(BaseModel):
    """Generation request for the KIE media endpoints."""

    kind: Literal["kie"] = "kie"
    model: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    # Endpoint-level fields (veo3, gpt4o-image, suno) that are not wrapped in ``input``.
    options: dict[str, Any] = Field(default_factory=dict)


class ManusPayload(BaseModel):
    """Agent task request for the Manus API."""

    kind: Literal["manus"] = "manus"
    prompt: str
    task_mode: str = "agent"
    agent_profile: str = "manus-1.6"


ProviderPayload = Annotated[Union[KiePayload, ManusPayload], Field(discriminator="kind")]


class SubmitRequest(BaseModel):
    provider_family: str
    operation_type: str
    cost: float = Field(default=0, ge=0)
    payload: ProviderPayload


class StillRunning(BaseModel):
    kind: Literal["running"] = "running"
    hint: str | None = None


class Succeeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    result: dict[str, Any] = Field(default_factory=dict)


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str = "Generation failed"
    # True when the provider blames the credential rather than the content.
    credential_error: bool = False


PollResult = Annotated[Union[StillRunning, Succeeded, Failed], Field(discriminator="kind")]


class ProviderAdapter:
    """Abstract provider adapter.

    One adapter instance serves one provider family. Credentials are passed
    per call because a family owns many of them.
    """

    adapter_id: str
    # Provider milestone signal -> minimum progress percentage.
    milestones: dict[str, int] = {}

    def __init__(self, family: FamilyModel, settings: PoolSettings | None = None) -> None:
        self._family = family
        self._settings = settings or PoolSettings()

    @property
    def family_id(self) -> str:
        return self._family.id

    async def submit(self, api_key: str, request: SubmitRequest) -> str:
        """Start a provider job and return the provider job id."""
        raise NotImplementedError

    async def poll(
        self, api_key: str, provider_job_id: str, operation_type: str
    ) -> StillRunning | Succeeded | Failed:
        raise NotImplementedError

    async def check_balance(self, api_key: str) -> float:
        raise NotImplementedError

    def milestone_progress(self, hint: str | None) -> int | None:
        if not hint:
            return None
        return self.milestones.get(hint.strip().lower())
