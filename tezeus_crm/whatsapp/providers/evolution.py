from __future__ import annotations

from typing import Any, Optional

from ...utils.phone_utils import extract_phone_from_jid
from ..status import normalize_status
from .base import (
    EvolutionConfig,
    InboundMessage,
    ProviderCapabilities,
    ProviderConfig,
    ProviderContext,
    ProviderWebhookEvent,
    RelayProvider,
    StatusUpdate,
)
from .helpers import dig, first_id, timestamp_to_iso, unwrap_message_content

MESSAGE_ID_PATHS: tuple[tuple[Any, ...], ...] = (
    ("key", "id"),
    ("data", "key", "id"),
    ("evolution_key_id",),
    ("response", "key", "id"),
    ("response", "data", "key", "id"),
    (0, "data", "key", "id"),
    (0, "key", "id"),
)

# Baileys ack levels, numeric and named
STATUS_ALIASES: dict[str, str] = {
    "0": "failed",
    "error": "failed",
    "1": "sent",
    "pending": "sent",
    "2": "sent",
    "server_ack": "sent",
    "3": "delivered",
    "delivery_ack": "delivered",
    "4": "read",
    "read": "read",
    "5": "read",
    "played": "read",
}

_MEDIA_BLOCKS: tuple[tuple[str, str], ...] = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
    ("stickerMessage", "image"),
)


class EvolutionRelayProvider(RelayProvider):
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(provider_id="evolution", supported_versions=("v2",))

    def config_from_provider_row(
        self,
        row: dict[str, Any],
        *,
        connection_metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[ProviderConfig]:
        url = str(row.get("evolution_url") or row.get("evolution_api_url") or "").strip()
        token = str(row.get("evolution_token") or row.get("token") or row.get("evolution_api_key") or "").strip()
        if not url or not token:
            return None
        return EvolutionConfig(server_url=url, apikey=token)

    def extract_message_id(self, response: Any) -> Optional[str]:
        return first_id(response, MESSAGE_ID_PATHS)

    def correlation_update(self, provider_msg_id: Optional[str], *, metadata: dict[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = {"metadata": {**(metadata or {}), "provider": "evolution"}}
        if provider_msg_id:
            fields["external_id"] = provider_msg_id
        return fields

    def parse_webhook(self, ctx: ProviderContext, payload: dict[str, Any]) -> ProviderWebhookEvent:
        event = str(payload.get("event") or "").strip().lower().replace("_", ".")
        instance = payload.get("instance") or payload.get("instanceName") or payload.get("instance_name")
        data = payload.get("data") or {}
        if isinstance(data, list):
            data = data[0] if data and isinstance(data[0], dict) else {}
        if not isinstance(data, dict):
            data = {}

        if event == "messages.upsert":
            raw = data
            if isinstance(data.get("messages"), list) and data.get("messages"):
                raw = data["messages"][0]
            message = _parse_upsert(raw, instance=instance)
            if message is None:
                ctx.obs.warning("evolution.webhook.unparsed", ctx=ctx.log_ctx, webhook_event=event)
            return ProviderWebhookEvent(event="message", instance=instance, data=data, message=message)

        if event == "messages.update":
            key_id = first_id(data, (("keyId",), ("key", "id"), ("messageId",)))
            status = normalize_status(data.get("status"), STATUS_ALIASES)
            update = None
            if key_id and status:
                update = StatusUpdate(
                    provider="evolution",
                    provider_msg_id=key_id,
                    status=status,
                    instance=instance,
                    timestamp=timestamp_to_iso(data.get("datetime") or data.get("messageTimestamp")),
                )
            return ProviderWebhookEvent(event="status", instance=instance, data=data, status=update)

        return ProviderWebhookEvent(event=event or "unknown", instance=instance, data=data)


def _parse_upsert(raw: Any, *, instance: Optional[str]) -> Optional[InboundMessage]:
    if not isinstance(raw, dict):
        return None
    key = raw.get("key") or {}
    msg_id = str(key.get("id") or "").strip()
    phone = extract_phone_from_jid(key.get("remoteJidAlt") or key.get("remoteJid") or "")
    if not msg_id or not phone:
        return None

    content = unwrap_message_content(raw.get("message") or {})
    text = (
        content.get("conversation")
        or dig(content, ("extendedTextMessage", "text"))
        or ""
    )
    message_type = "text"
    file_url = file_name = mime_type = None
    for block_name, kind in _MEDIA_BLOCKS:
        block = content.get(block_name)
        if isinstance(block, dict):
            message_type = kind
            file_url = block.get("url") or raw.get("mediaUrl")
            file_name = block.get("fileName")
            mime_type = block.get("mimetype")
            text = block.get("caption") or text
            break

    return InboundMessage(
        provider="evolution",
        provider_msg_id=msg_id,
        phone=phone,
        from_me=bool(key.get("fromMe")),
        instance=instance,
        content=str(text or ""),
        message_type=message_type,
        file_url=file_url,
        file_name=file_name,
        mime_type=mime_type,
        push_name=raw.get("pushName"),
        timestamp=timestamp_to_iso(raw.get("messageTimestamp")),
    )
