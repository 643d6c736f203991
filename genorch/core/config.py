"""Application configuration loading utilities."""

from __future__ import annotations

import os
import pathlib
from functools import lru_cache
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "providers.yaml"


class PoolSettings(BaseModel):
    low_balance_threshold: float = Field(default=10, ge=0)
    probe_interval_seconds: float = Field(default=60, gt=0)
    current_probe_interval_seconds: float = Field(default=10, gt=0)
    probe_tick_seconds: float = Field(default=5, gt=0)
    probe_timeout_seconds: float = Field(default=15, gt=0)
    probe_failure_limit: int = Field(default=3, ge=1)
    request_timeout_seconds: float = Field(default=30, gt=0)


class FamilyModel(BaseModel):
    id: str
    name: str
    adapter: str
    allocation_policy: Literal["shared", "dedicated"] = "shared"
    base_url: str
    balance_path: Optional[str] = None
    poll_interval_seconds: float = Field(default=3, ge=0)
    max_attempts: int = Field(default=120, ge=1)
    low_balance_threshold: Optional[float] = Field(default=None, ge=0)

    @property
    def is_shared(self) -> bool:
        return self.allocation_policy == "shared"


class AppConfig(BaseModel):
    settings: PoolSettings = Field(default_factory=PoolSettings)
    families: List[FamilyModel] = Field(default_factory=list)

    def family(self, family_id: str) -> FamilyModel | None:
        return next((item for item in self.families if item.id == family_id), None)

    def threshold_for(self, family_id: str) -> float:
        """Return the low-balance threshold, honoring a per-family override."""
        family = self.family(family_id)
        if family is not None and family.low_balance_threshold is not None:
            return family.low_balance_threshold
        return self.settings.low_balance_threshold


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load provider family configuration from YAML."""
    env_path = os.getenv("GENORCH_CONFIG")
    config_path = path or (pathlib.Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
    raw = yaml.safe_load(config_path.read_text()) or {}
    return AppConfig(**raw)
