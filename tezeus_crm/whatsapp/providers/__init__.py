from .base import EvolutionConfig, ProviderConfig, ResolvedConnection, ZapiConfig
from .evolution import EvolutionRelayProvider
from .registry import PluginSpec, ProviderRegistry
from .zapi import ZapiRelayProvider

__all__ = [
    "EvolutionConfig",
    "ZapiConfig",
    "ProviderConfig",
    "ResolvedConnection",
    "EvolutionRelayProvider",
    "ZapiRelayProvider",
    "PluginSpec",
    "ProviderRegistry",
]
