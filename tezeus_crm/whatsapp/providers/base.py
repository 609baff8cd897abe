from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol, Union

from ..observability import LogContext, Observability


@dataclass(frozen=True)
class ProviderCapabilities:
    provider_id: str
    supported_versions: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderContext:
    obs: Observability
    log_ctx: LogContext


@dataclass(frozen=True)
class EvolutionConfig:
    server_url: str
    apikey: str
    provider: Literal["evolution"] = "evolution"

    def credential_fields(self) -> dict[str, Any]:
        return {"server_url": self.server_url, "apikey": self.apikey}


@dataclass(frozen=True)
class ZapiConfig:
    zapi_url: str
    zapi_token: str
    zapi_client_token: Optional[str] = None
    instance_id: Optional[str] = None
    instance_token: Optional[str] = None
    provider: Literal["zapi"] = "zapi"

    def credential_fields(self) -> dict[str, Any]:
        return {
            "zapi_url": self.zapi_url,
            "zapi_token": self.zapi_token,
            "zapi_client_token": self.zapi_client_token,
            "zapi_instance_id": self.instance_id,
            "instance_id": self.instance_id,
            "instance_token": self.instance_token,
        }


ProviderConfig = Union[EvolutionConfig, ZapiConfig]


@dataclass(frozen=True)
class ResolvedConnection:
    id: str
    workspace_id: str
    instance_name: str
    config: ProviderConfig
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def provider(self) -> str:
        return self.config.provider


@dataclass(frozen=True)
class OutboundMessage:
    message_id: str
    phone_number: str
    content: str
    message_type: str
    conversation_id: str
    workspace_id: str
    external_id: str
    connection_id: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    quoted_message: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class InboundMessage:
    provider: str
    provider_msg_id: str
    phone: str
    from_me: bool
    instance: Optional[str] = None
    content: str = ""
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    push_name: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class StatusUpdate:
    provider: str
    provider_msg_id: str
    status: str
    instance: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class ProviderWebhookEvent:
    event: str
    instance: Optional[str]
    data: dict[str, Any]
    message: Optional[InboundMessage] = None
    status: Optional[StatusUpdate] = None


class RelayProvider(Protocol):
    def capabilities(self) -> ProviderCapabilities:
        raise NotImplementedError

    def config_from_provider_row(self, row: dict[str, Any], *, connection_metadata: Optional[dict[str, Any]] = None) -> Optional[ProviderConfig]:
        raise NotImplementedError

    def extract_message_id(self, response: Any) -> Optional[str]:
        raise NotImplementedError

    def correlation_update(self, provider_msg_id: Optional[str], *, metadata: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def parse_webhook(self, ctx: ProviderContext, payload: dict[str, Any]) -> ProviderWebhookEvent:
        raise NotImplementedError
