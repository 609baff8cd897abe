from __future__ import annotations

from typing import Any, Optional

from ...utils.phone_utils import normalize_phone_number
from ..status import normalize_status
from .base import (
    InboundMessage,
    ProviderCapabilities,
    ProviderConfig,
    ProviderContext,
    ProviderWebhookEvent,
    RelayProvider,
    StatusUpdate,
    ZapiConfig,
)
from .helpers import first_id, timestamp_to_iso

MESSAGE_ID_PATHS: tuple[tuple[Any, ...], ...] = (
    ("provider_msg_id",),
    ("messageId",),
    ("id",),
    ("zaapId",),
    ("response", "provider_msg_id"),
    ("response", "messageId"),
    ("response", "id"),
    (0, "provider_msg_id"),
    (0, "messageId"),
    (0, "id"),
)

STATUS_ALIASES: dict[str, str] = {
    "pending": "sending",
    "sent": "sent",
    "received": "delivered",
    "delivered": "delivered",
    "read": "read",
    "read_by_me": "read",
    "played": "read",
    "failed": "failed",
}

_MEDIA_BLOCKS: tuple[tuple[str, str, str], ...] = (
    ("image", "image", "imageUrl"),
    ("video", "video", "videoUrl"),
    ("audio", "audio", "audioUrl"),
    ("document", "document", "documentUrl"),
    ("sticker", "image", "stickerUrl"),
)


def instance_token_from_metadata(metadata: Optional[dict[str, Any]]) -> Optional[str]:
    meta = metadata or {}
    token = meta.get("token") or meta.get("instanceToken") or meta.get("instance_token")
    return str(token) if token else None


class ZapiRelayProvider(RelayProvider):
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(provider_id="zapi")

    def config_from_provider_row(
        self,
        row: dict[str, Any],
        *,
        connection_metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[ProviderConfig]:
        url = str(row.get("zapi_url") or "").strip()
        token = str(row.get("zapi_token") or "").strip()
        if not url or not token:
            return None
        meta = connection_metadata or {}
        instance_id = meta.get("instanceId") or meta.get("instance_id")
        return ZapiConfig(
            zapi_url=url,
            zapi_token=token,
            zapi_client_token=(row.get("zapi_client_token") or None),
            instance_id=str(instance_id) if instance_id else None,
            instance_token=instance_token_from_metadata(meta),
        )

    def extract_message_id(self, response: Any) -> Optional[str]:
        return first_id(response, MESSAGE_ID_PATHS)

    def correlation_update(self, provider_msg_id: Optional[str], *, metadata: dict[str, Any]) -> dict[str, Any]:
        merged = {**(metadata or {}), "provider": "zapi"}
        fields: dict[str, Any] = {}
        if provider_msg_id:
            merged["provider_msg_id"] = provider_msg_id
            fields["evolution_key_id"] = provider_msg_id
        fields["metadata"] = merged
        return fields

    def parse_webhook(self, ctx: ProviderContext, payload: dict[str, Any]) -> ProviderWebhookEvent:
        kind = str(payload.get("type") or payload.get("event") or "").strip()
        instance = payload.get("instanceId") or payload.get("instanceName") or payload.get("instance")

        if kind == "MessageStatusCallback" or (payload.get("ids") and payload.get("status")):
            msg_id = first_id(payload, (("ids", 0), ("messageId",), ("id",)))
            status = normalize_status(payload.get("status"), STATUS_ALIASES)
            update = None
            if msg_id and status:
                update = StatusUpdate(
                    provider="zapi",
                    provider_msg_id=msg_id,
                    status=status,
                    instance=instance,
                    timestamp=timestamp_to_iso(payload.get("momment") or payload.get("moment")),
                )
            return ProviderWebhookEvent(event="status", instance=instance, data=payload, status=update)

        if kind == "ReceivedCallback":
            message = _parse_received(payload, instance=instance)
            if message is None:
                ctx.obs.warning("zapi.webhook.unparsed", ctx=ctx.log_ctx, webhook_type=kind)
            return ProviderWebhookEvent(event="message", instance=instance, data=payload, message=message)

        return ProviderWebhookEvent(event=kind or "unknown", instance=instance, data=payload)


def _parse_received(payload: dict[str, Any], *, instance: Optional[str]) -> Optional[InboundMessage]:
    msg_id = str(payload.get("messageId") or payload.get("id") or "").strip()
    phone = normalize_phone_number(payload.get("phone"))
    if not msg_id or not phone:
        return None

    text = ""
    if isinstance(payload.get("text"), dict):
        text = str(payload["text"].get("message") or "")

    message_type = "text"
    file_url = file_name = mime_type = None
    for block_name, kind, url_field in _MEDIA_BLOCKS:
        block = payload.get(block_name)
        if isinstance(block, dict):
            message_type = kind
            file_url = block.get("downloadUrl") or block.get(url_field)
            file_name = block.get("fileName")
            mime_type = block.get("mimeType")
            text = str(block.get("caption") or text)
            break

    return InboundMessage(
        provider="zapi",
        provider_msg_id=msg_id,
        phone=phone,
        from_me=bool(payload.get("fromMe")),
        instance=instance,
        content=text,
        message_type=message_type,
        file_url=file_url,
        file_name=file_name,
        mime_type=mime_type,
        push_name=payload.get("senderName") or payload.get("chatName"),
        timestamp=timestamp_to_iso(payload.get("momment")),
    )
