"""Service container shared by the API routers."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from genorch.core.config import AppConfig
from genorch.pool.locks import FamilyLocks
from genorch.pool.manager import PoolManager
from genorch.pool.prober import HealthProber
from genorch.providers.registry import ProviderRegistry
from genorch.tasks.orchestrator import TaskOrchestrator


@dataclass
class Services:
    config: AppConfig
    registry: ProviderRegistry
    pool: PoolManager
    orchestrator: TaskOrchestrator
    prober: HealthProber


def build_services(config: AppConfig, registry: ProviderRegistry | None = None) -> Services:
    registry = registry or ProviderRegistry(config)
    pool = PoolManager(config, FamilyLocks())
    return Services(
        config=config,
        registry=registry,
        pool=pool,
        orchestrator=TaskOrchestrator(pool, registry),
        prober=HealthProber(pool, registry),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
