from __future__ import annotations

from typing import Any, Optional

from .errors import NotFoundError, ProviderNotConfigured
from .observability import LogContext, Observability
from .providers.base import EvolutionConfig, ProviderConfig, ResolvedConnection
from .providers.registry import ProviderRegistry
from .store import MessageStore


class ProviderConfigResolver:
    """
    Resolves which provider (and credentials) a connection sends through.

    Priority: the provider row linked to the connection, then the workspace
    master config (``evolution_instance_tokens`` ``_master_config`` row, then
    the global ``_master_config`` table), then the workspace's most recently
    active ``whatsapp_providers`` row.
    """

    def __init__(self, *, store: MessageStore, registry: ProviderRegistry, obs: Observability):
        self._store = store
        self._registry = registry
        self._obs = obs

    async def resolve(self, connection: Optional[dict[str, Any]], *, workspace_id: str) -> ResolvedConnection:
        if not connection:
            raise NotFoundError("connection")
        metadata = connection.get("metadata") if isinstance(connection.get("metadata"), dict) else {}
        ws = str(connection.get("workspace_id") or workspace_id)
        log_ctx = LogContext(workspace_id=ws, instance_name=connection.get("instance_name"))

        config = self._from_embedded(connection, metadata)
        source = "connection"
        if config is None:
            config = await self._from_master_config(ws)
            source = "master_config"
        if config is None:
            config = self._registry.config_from_provider_row(
                await self._store.get_latest_provider(ws),
                connection_metadata=metadata,
            )
            source = "workspace_providers"
        if config is None:
            self._obs.warning("provider.resolve.missing", ctx=log_ctx, connection_id=connection.get("id"))
            raise ProviderNotConfigured(
                "WhatsApp provider not configured for this connection",
                details={"workspace_id": ws, "connection_id": connection.get("id")},
            )

        self._obs.info("provider.resolve.ok", ctx=log_ctx, provider=config.provider, source=source)
        return ResolvedConnection(
            id=str(connection.get("id")),
            workspace_id=ws,
            instance_name=str(connection.get("instance_name") or ""),
            config=config,
            metadata=metadata,
        )

    async def relay_url(self, workspace_id: str) -> str:
        url = await self._store.get_relay_url(workspace_id)
        if not url:
            raise ProviderNotConfigured(
                "Relay webhook not configured for workspace",
                details={"workspace_id": workspace_id},
            )
        return url

    def _from_embedded(self, connection: dict[str, Any], metadata: dict[str, Any]) -> Optional[ProviderConfig]:
        embedded = connection.get("provider")
        if isinstance(embedded, list):
            embedded = embedded[0] if embedded else None
        if not isinstance(embedded, dict):
            return None
        return self._registry.config_from_provider_row(embedded, connection_metadata=metadata)

    async def _from_master_config(self, workspace_id: str) -> Optional[ProviderConfig]:
        row = await self._store.get_workspace_master_config(workspace_id)
        if row and row.get("evolution_url") and row.get("token"):
            return EvolutionConfig(server_url=str(row["evolution_url"]), apikey=str(row["token"]))
        row = await self._store.get_global_master_config()
        if row and row.get("evolution_api_url") and row.get("evolution_api_key"):
            return EvolutionConfig(server_url=str(row["evolution_api_url"]), apikey=str(row["evolution_api_key"]))
        return None
