from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .http import RelayClient
from .observability import LogContext, Observability
from .providers.base import OutboundMessage
from .providers.registry import ProviderRegistry
from .relay_payload import build_envelope
from .resolver import ProviderConfigResolver
from .status import SENT, should_advance
from .store import MessageStore


@dataclass(frozen=True)
class DispatchResult:
    provider: str
    provider_msg_id: Optional[str]
    response: Any = None


class ProviderAdapter:
    def __init__(
        self,
        *,
        store: MessageStore,
        registry: ProviderRegistry,
        resolver: ProviderConfigResolver,
        relay: RelayClient,
        obs: Observability,
    ):
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._relay = relay
        self._obs = obs

    async def dispatch(self, msg: OutboundMessage, *, connection: dict[str, Any]) -> DispatchResult:
        """
        Send ``msg`` through the workspace relay.

        Raises ProviderNotConfigured when no credentials or relay URL resolve,
        and RelayFailed when the relay rejects the envelope.
        """
        resolved = await self._resolver.resolve(connection, workspace_id=msg.workspace_id)
        relay_url = await self._resolver.relay_url(resolved.workspace_id)
        provider = self._registry.for_config(resolved.config)
        log_ctx = LogContext(
            workspace_id=resolved.workspace_id,
            provider=resolved.provider,
            instance_name=resolved.instance_name,
            correlation_id=msg.message_id,
        )

        envelope = build_envelope(msg, connection=resolved, relay_url=relay_url)
        self._obs.info(
            "relay.dispatch.start",
            ctx=log_ctx,
            message_type=envelope["data"]["messageType"],
            conversation_id=msg.conversation_id,
        )
        response = await self._relay.post(relay_url, envelope)

        provider_msg_id = provider.extract_message_id(response)
        if provider_msg_id:
            self._obs.info("relay.dispatch.ok", ctx=log_ctx, provider_msg_id=provider_msg_id)
        else:
            self._obs.warning("relay.dispatch.no_message_id", ctx=log_ctx)

        return DispatchResult(provider=resolved.provider, provider_msg_id=provider_msg_id, response=response)

    async def write_back(self, message_id: str, result: DispatchResult) -> Optional[dict[str, Any]]:
        """Record the provider id on the pre-saved row once the relay accepted it."""
        provider = self._registry.get(result.provider)
        provider_msg_id = result.provider_msg_id
        current = await self._store.get_message(message_id) or {}
        metadata = current.get("metadata") if isinstance(current.get("metadata"), dict) else {}
        fields = provider.correlation_update(provider_msg_id, metadata=metadata)
        # a webhook may already have moved the row past sent
        if should_advance(current.get("status"), SENT):
            fields["status"] = SENT
        return await self._store.update_message(message_id, fields)
