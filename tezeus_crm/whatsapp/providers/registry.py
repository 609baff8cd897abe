from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import ConfigError, ProviderNotFoundError
from .base import ProviderConfig, RelayProvider


@dataclass(frozen=True)
class PluginSpec:
    provider_id: str
    import_path: str


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, RelayProvider] = {}

    def register(self, provider: RelayProvider) -> None:
        pid = provider.capabilities().provider_id.strip().lower()
        if not pid:
            raise ConfigError("Invalid provider_id on relay provider.")
        self._providers[pid] = provider

    def get(self, provider_id: str) -> RelayProvider:
        pid = str(provider_id or "").strip().lower()
        if pid in self._providers:
            return self._providers[pid]
        raise ProviderNotFoundError(pid)

    def for_config(self, config: ProviderConfig) -> RelayProvider:
        return self.get(config.provider)

    def config_from_provider_row(
        self,
        row: Optional[dict[str, Any]],
        *,
        connection_metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[ProviderConfig]:
        """Build the tagged config for a whatsapp_providers row, or None when its credentials are incomplete."""
        if not row:
            return None
        pid = str(row.get("provider") or "evolution").strip().lower()
        provider = self._providers.get(pid)
        if provider is None:
            return None
        return provider.config_from_provider_row(row, connection_metadata=connection_metadata)

    def list_provider_ids(self) -> list[str]:
        return sorted(self._providers.keys())

    def load_plugins(self, specs: list[PluginSpec]) -> None:
        for spec in specs:
            provider = _import_provider(spec.import_path)
            capabilities_id = provider.capabilities().provider_id.strip().lower()
            if capabilities_id and capabilities_id != spec.provider_id.strip().lower():
                raise ConfigError(
                    "Plugin provider_id does not match the declared one.",
                    details={"declared": spec.provider_id, "capabilities": capabilities_id, "path": spec.import_path},
                )
            self.register(provider)


def _import_provider(path: str) -> RelayProvider:
    raw = (path or "").strip()
    if ":" not in raw:
        raise ConfigError("Invalid plugin import_path (use module:attribute).", details={"import_path": raw})
    module_name, attr = raw.split(":", 1)
    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise ConfigError("Could not import plugin module.", details={"module": module_name, "error": str(e)})
    if not hasattr(module, attr):
        raise ConfigError("Plugin attribute not found.", details={"module": module_name, "attr": attr})
    obj = getattr(module, attr)
    if callable(obj):
        return obj()
    return obj
