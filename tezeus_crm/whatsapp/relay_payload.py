"""Send envelope posted to the workspace relay."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from ..utils.phone_utils import phone_to_jid
from .providers.base import OutboundMessage, ResolvedConnection

SEND_EVENT = "send.message"

# message_type -> (evolution block, default file name, carries caption)
_MEDIA_BLOCKS: dict[str, tuple[str, str, bool]] = {
    "image": ("imageMessage", "image.jpg", True),
    "video": ("videoMessage", "video.mp4", True),
    "audio": ("audioMessage", "audio.ogg", False),
    "document": ("documentMessage", "document", True),
    "file": ("documentMessage", "document", True),
}


def quoted_structure(msg: OutboundMessage) -> Optional[dict[str, Any]]:
    quoted = msg.quoted_message
    if not msg.reply_to_message_id or not quoted:
        return None
    return {
        "key": {
            "remoteJid": phone_to_jid(msg.phone_number),
            "fromMe": quoted.get("sender_type") == "agent",
            "id": quoted.get("external_id") or msg.reply_to_message_id,
        },
        "message": {"conversation": quoted.get("content") or ""},
    }


def build_message_body(msg: OutboundMessage) -> tuple[dict[str, Any], str]:
    """Return ``(message, messageType)`` in the Evolution-shaped form the relay expects."""
    quoted = quoted_structure(msg)
    block = _MEDIA_BLOCKS.get(msg.message_type)

    if msg.message_type == "text" or not msg.file_url or block is None:
        body: dict[str, Any] = {"conversation": msg.content or ""}
        message_type = "conversation"
    else:
        block_name, default_name, with_caption = block
        media: dict[str, Any] = {"url": msg.file_url, "fileName": msg.file_name or default_name}
        if with_caption:
            media["caption"] = msg.content or ""
        body = {block_name: media}
        message_type = block_name

    if quoted:
        body["quoted"] = quoted
    return body, message_type


def build_envelope(
    msg: OutboundMessage,
    *,
    connection: ResolvedConnection,
    relay_url: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    moment = now or datetime.now(timezone.utc)
    message, message_type = build_message_body(msg)
    envelope: dict[str, Any] = {
        "event": SEND_EVENT,
        "instance": connection.instance_name,
        "workspace_id": msg.workspace_id,
        "connection_id": connection.id,
        "conversation_id": msg.conversation_id,
        "phone_number": msg.phone_number,
        "external_id": msg.external_id,
        "provider": connection.provider,
        "data": {
            "key": {
                "remoteJid": phone_to_jid(msg.phone_number),
                "fromMe": True,
                "id": msg.external_id,
            },
            "message": message,
            "messageType": message_type,
            "messageTimestamp": int(moment.timestamp() * 1000),
        },
        "destination": relay_url,
        "date_time": moment.isoformat(),
        "sender": msg.phone_number,
    }
    # only the resolved variant's credentials are carried
    envelope.update(connection.config.credential_fields())
    return envelope
