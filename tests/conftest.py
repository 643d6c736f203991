from __future__ import annotations

import asyncio
import os
import pathlib
import tempfile
from typing import Any, Callable

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", str(pathlib.Path(tempfile.gettempdir()) / "genorch-tests.jsonl"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from genorch.core.config import AppConfig, FamilyModel, PoolSettings
from genorch.pool.locks import FamilyLocks
from genorch.pool.manager import PoolManager
from genorch.pool.prober import HealthProber
from genorch.providers.base import ProviderAdapter, StillRunning, SubmitRequest
from genorch.providers.registry import ProviderRegistry
from genorch.storage import credentials as credential_store
from genorch.storage import database
from genorch.storage import models  # noqa: F401  (registers tables on Base.metadata)
from genorch.storage.models import Allocation, CredentialStatus
from genorch.tasks.orchestrator import TaskOrchestrator


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    """Point every session_scope() at an isolated in-memory database."""

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    database.Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSession)

    yield engine

    engine.dispose()


def build_config(**settings: Any) -> AppConfig:
    return AppConfig(
        settings=PoolSettings(**settings),
        families=[
            FamilyModel(
                id="image-gen",
                name="Images",
                adapter="kie",
                allocation_policy="shared",
                base_url="https://kie.example/api/v1",
                poll_interval_seconds=0,
                max_attempts=10,
            ),
            FamilyModel(
                id="agent-exec",
                name="Agents",
                adapter="manus",
                allocation_policy="dedicated",
                base_url="https://manus.example/v1",
                poll_interval_seconds=0,
                max_attempts=10,
            ),
        ],
    )


class ScriptedAdapter(ProviderAdapter):
    """Adapter replaying a scripted sequence of poll results and balances."""

    adapter_id = "scripted"
    milestones = {"generating": 30, "first_success": 75}

    def __init__(self, family: FamilyModel, settings: PoolSettings | None = None) -> None:
        super().__init__(family, settings)
        self.polls: list[Any] = []
        self.balances: dict[str, Any] = {}
        self.submit_error: Exception | None = None
        self.submitted: list[tuple[str, SubmitRequest]] = []
        self.poll_calls = 0
        self.gate: asyncio.Event | None = None
        self.poll_started: asyncio.Event | None = None

    async def submit(self, api_key: str, request: SubmitRequest) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((api_key, request))
        return f"job-{len(self.submitted)}"

    async def poll(self, api_key: str, provider_job_id: str, operation_type: str):
        self.poll_calls += 1
        if self.poll_started is not None:
            self.poll_started.set()
        if self.gate is not None:
            await self.gate.wait()
        item = self.polls.pop(0) if self.polls else StillRunning(hint=None)
        if isinstance(item, Exception):
            raise item
        return item

    async def check_balance(self, api_key: str) -> float:
        value = self.balances[api_key]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return await value()
        return value


@pytest.fixture
def config() -> AppConfig:
    return build_config()


@pytest.fixture
def adapters(config) -> dict[str, ScriptedAdapter]:
    return {family.id: ScriptedAdapter(family, config.settings) for family in config.families}


@pytest.fixture
def registry(config, adapters) -> ProviderRegistry:
    registry = ProviderRegistry(config)
    for family_id, adapter in adapters.items():
        registry.register(family_id, adapter)
    return registry


@pytest.fixture
def pool(config) -> PoolManager:
    return PoolManager(config, FamilyLocks())


@pytest.fixture
def orchestrator(pool, registry) -> TaskOrchestrator:
    return TaskOrchestrator(pool, registry)


@pytest.fixture
def prober(pool, registry) -> HealthProber:
    return HealthProber(pool, registry)


@pytest.fixture
def add_credential() -> Callable[..., int]:
    def _add(
        family: str = "image-gen",
        balance: float = 0.0,
        *,
        api_key: str | None = None,
        status: CredentialStatus = CredentialStatus.ACTIVE,
        allocation: Allocation = Allocation.UNASSIGNED,
        label: str = "",
    ) -> int:
        key = api_key or f"key-{family}-{balance:g}-{os.urandom(4).hex()}"
        credential = credential_store.create_credential(
            family, key, label=label, balance=balance, status=status, allocation=allocation
        )
        return int(credential.id)

    return _add
