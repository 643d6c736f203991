from http import HTTPStatus

import pytest

from genorch.core.config import FamilyModel
from genorch.core.exceptions import ProviderCredentialError, ProviderUnavailableError
from genorch.providers.base import Failed, ManusPayload, StillRunning, Succeeded, SubmitRequest
from genorch.providers.manus import ManusAdapter


class FakeResponse:
    def __init__(self, status_code: int, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    @property
    def is_error(self) -> bool:
        return self.status_code >= HTTPStatus.BAD_REQUEST

    @property
    def text(self) -> str:
        return ""


def _stub_async_client(responses, calls):
    queue = list(responses)

    class _DummyAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, json=None, params=None, headers=None):
            calls.append({"method": method, "url": url, "json": json, "params": params, "headers": headers})
            return queue.pop(0)

    return _DummyAsyncClient


@pytest.fixture
def adapter() -> ManusAdapter:
    return ManusAdapter(
        FamilyModel(
            id="agent-exec",
            name="Manus",
            adapter="manus",
            allocation_policy="dedicated",
            base_url="https://api.manus.example/v1",
            balance_path="/usage/credits",
        )
    )


def _install(monkeypatch, responses) -> list[dict]:
    calls: list[dict] = []
    monkeypatch.setattr("genorch.providers.manus.httpx.AsyncClient", _stub_async_client(responses, calls))
    return calls


@pytest.mark.asyncio
async def test_submit_creates_agent_task(monkeypatch, adapter):
    calls = _install(monkeypatch, [FakeResponse(HTTPStatus.OK, {"task_id": "m-42", "task_url": "https://manus/m-42"})])
    request = SubmitRequest(
        provider_family="agent-exec",
        operation_type="agent",
        cost=20,
        payload=ManusPayload(prompt="Draft a project plan", agent_profile="manus-1.6-lite"),
    )

    job_id = await adapter.submit(" manus-key ", request)

    assert job_id == "m-42"
    call = calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://api.manus.example/v1/tasks"
    assert call["headers"]["API_KEY"] == "manus-key"
    assert call["json"] == {
        "prompt": "Draft a project plan",
        "taskMode": "agent",
        "agentProfile": "manus-1.6-lite",
    }


@pytest.mark.asyncio
async def test_poll_running_status(monkeypatch, adapter):
    _install(monkeypatch, [FakeResponse(HTTPStatus.OK, {"id": "m-42", "status": "running"})])

    result = await adapter.poll("manus-key", "m-42", "agent")

    assert result == StillRunning(hint="running")
    assert adapter.milestone_progress(result.hint) == 20


@pytest.mark.asyncio
async def test_poll_completed_attaches_files(monkeypatch, adapter):
    calls = _install(
        monkeypatch,
        [
            FakeResponse(HTTPStatus.OK, {"id": "m-42", "status": "completed", "output": "Plan ready"}),
            FakeResponse(HTTPStatus.OK, [{"name": "plan.docx", "url": "https://files/plan.docx"}]),
        ],
    )

    result = await adapter.poll("manus-key", "m-42", "agent")

    assert isinstance(result, Succeeded)
    assert result.result["output"] == "Plan ready"
    assert result.result["files"][0]["name"] == "plan.docx"
    assert calls[1]["params"] == {"task_id": "m-42"}


@pytest.mark.asyncio
async def test_poll_completed_survives_file_listing_errors(monkeypatch, adapter):
    _install(
        monkeypatch,
        [
            FakeResponse(HTTPStatus.OK, {"status": "completed", "result": {"summary": "ok"}}),
            FakeResponse(HTTPStatus.SERVICE_UNAVAILABLE, {"error": "busy"}),
        ],
    )

    result = await adapter.poll("manus-key", "m-42", "agent")

    assert result == Succeeded(result={"output": {"summary": "ok"}})


@pytest.mark.asyncio
async def test_poll_failed_status(monkeypatch, adapter):
    _install(monkeypatch, [FakeResponse(HTTPStatus.OK, {"status": "failed", "error": "sandbox crashed"})])

    assert await adapter.poll("manus-key", "m-42", "agent") == Failed(reason="sandbox crashed")


@pytest.mark.asyncio
async def test_forbidden_is_a_credential_error(monkeypatch, adapter):
    _install(monkeypatch, [FakeResponse(HTTPStatus.FORBIDDEN, {"message": "invalid api key"})])

    with pytest.raises(ProviderCredentialError) as excinfo:
        await adapter.poll("manus-key", "m-42", "agent")
    assert excinfo.value.message == "invalid api key"


@pytest.mark.asyncio
async def test_check_balance_uses_configured_path(monkeypatch, adapter):
    calls = _install(monkeypatch, [FakeResponse(HTTPStatus.OK, {"credits": 1300})])

    assert await adapter.check_balance("manus-key") == 1300
    assert calls[0]["url"] == "https://api.manus.example/v1/usage/credits"


@pytest.mark.asyncio
async def test_check_balance_rejects_unexpected_payload(monkeypatch, adapter):
    _install(monkeypatch, [FakeResponse(HTTPStatus.OK, {"plan": "pro"})])

    with pytest.raises(ProviderUnavailableError):
        await adapter.check_balance("manus-key")
