"""Provider adapter registry keyed by provider family."""

from __future__ import annotations

from collections.abc import Iterable

from genorch.core.config import AppConfig, FamilyModel
from genorch.core.exceptions import UnknownFamilyError

from .base import ProviderAdapter
from .kie import KieAdapter
from .manus import ManusAdapter


class ProviderRegistry:
    """Registry handling provider adapters and family configuration."""

    _adapter_map: dict[str, type[ProviderAdapter]] = {
        "kie": KieAdapter,
        "manus": ManusAdapter,
    }

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._instances: dict[str, ProviderAdapter] = {}

    def families(self) -> Iterable[FamilyModel]:
        return list(self._config.families)

    def family(self, family_id: str) -> FamilyModel:
        family = self._config.family(family_id)
        if family is None:
            raise UnknownFamilyError(family_id)
        return family

    def get_adapter(self, family_id: str) -> ProviderAdapter:
        if family_id not in self._instances:
            family = self.family(family_id)
            adapter_cls = self._adapter_map.get(family.adapter)
            if not adapter_cls:
                raise UnknownFamilyError(family_id)
            self._instances[family_id] = adapter_cls(family, self._config.settings)
        return self._instances[family_id]

    def register(self, family_id: str, adapter: ProviderAdapter) -> None:
        """Install a ready-made adapter instance for a family."""
        self.family(family_id)
        self._instances[family_id] = adapter
