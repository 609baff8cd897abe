"""
Outbound send pipeline.

Order of durable effects: duplicate check, pre-saved ``sending`` row, relay
dispatch, write-back to ``sent`` (or ``failed``). The row exists before the
relay is called so that a webhook for the message always finds it.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from ..models.messages import SendMessageBody
from ..utils.phone_utils import normalize_phone_number
from .adapter import ProviderAdapter
from .errors import NotFoundError, PersistenceFailed, PipelineError, RelayFailed, ValidationError
from .observability import LogContext, Observability
from .providers.base import OutboundMessage
from .status import FAILED, SENDING
from .store import DuplicateInsert, MessageStore

MEDIA_TYPES = frozenset({"image", "video", "audio", "document"})
MESSAGE_TYPES = MEDIA_TYPES | {"text"}

_PLACEHOLDER_RE = re.compile(r"^\[.*\]$")


def normalize_message_type(raw: Optional[str]) -> str:
    mt = str(raw or "text").strip().lower()
    if mt == "file":
        return "document"
    if mt not in MESSAGE_TYPES:
        raise ValidationError("Unsupported message_type.", details={"message_type": raw})
    return mt


def effective_content(content: Optional[str], message_type: str) -> str:
    """Media captions like ``[IMAGE]`` are markers, not user text."""
    text = (content or "").strip()
    if message_type in MEDIA_TYPES and _PLACEHOLDER_RE.match(text):
        return ""
    return text


def message_identity(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("id"),
        "external_id": row.get("external_id"),
        "evolution_key_id": row.get("evolution_key_id"),
        "status": row.get("status"),
        "created_at": row.get("created_at"),
    }


class SendPipeline:
    def __init__(self, *, store: MessageStore, adapter: ProviderAdapter, obs: Observability):
        self._store = store
        self._adapter = adapter
        self._obs = obs

    async def send(
        self,
        body: SendMessageBody,
        *,
        workspace_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        request_id = request_id or uuid.uuid4().hex[:12]
        message_type = normalize_message_type(body.message_type)
        content = effective_content(body.content, message_type)
        if not body.conversation_id:
            raise ValidationError("conversation_id is required.")
        if message_type in MEDIA_TYPES and not (body.file_url or "").strip():
            raise ValidationError("file_url is required for media messages.", details={"message_type": message_type})
        if message_type == "text" and not content:
            raise ValidationError("content is required for text messages.")

        client_message_id = (body.client_message_id or "").strip() or None
        if client_message_id:
            existing = await self._store.find_by_client_message_id(body.conversation_id, client_message_id)
            if existing:
                return self._duplicate(existing, request_id=request_id)

        conversation = await self._store.get_conversation(body.conversation_id, workspace_id=workspace_id)
        if not conversation:
            raise NotFoundError("conversation", ref=body.conversation_id)
        ws = str(conversation.get("workspace_id") or workspace_id or "")
        log_ctx = LogContext(workspace_id=ws, correlation_id=request_id)

        connection = await self._connection_for(conversation, workspace_id=ws)

        contact = await self._store.get_contact(conversation.get("contact_id")) if conversation.get("contact_id") else None
        if not contact:
            raise NotFoundError("contact", ref=conversation.get("contact_id"))
        phone = normalize_phone_number(contact.get("phone"))
        if not phone:
            raise ValidationError("Contact has no phone number.", details={"contact_id": contact.get("id")})

        row = {
            "id": str(uuid.uuid4()),
            "conversation_id": body.conversation_id,
            "workspace_id": ws,
            "content": content,
            "message_type": message_type,
            "sender_type": body.sender_type or "agent",
            "sender_id": body.sender_id,
            "file_url": body.file_url,
            "file_name": body.file_name,
            "mime_type": body.mime_type,
            "status": SENDING,
            "external_id": client_message_id or str(uuid.uuid4()),
            "reply_to_message_id": body.reply_to_message_id,
            "quoted_message": body.quoted_message,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "metadata": {
                "source": "send_pipeline",
                "request_id": request_id,
                "step": "pre_save",
                "client_message_id": client_message_id,
            },
        }
        try:
            saved = await self._store.insert_message(row)
        except DuplicateInsert:
            # concurrent submission with the same key won the insert
            existing = (
                await self._store.find_by_client_message_id(body.conversation_id, client_message_id)
                if client_message_id
                else None
            )
            if existing:
                return self._duplicate(existing, request_id=request_id)
            raise PersistenceFailed("Failed to save message.", details={"error": "duplicate key"})

        self._obs.info("send.pre_saved", ctx=log_ctx, message_id=saved.get("id"), external_id=saved.get("external_id"))

        outbound = OutboundMessage(
            message_id=str(saved.get("id")),
            phone_number=phone,
            content=content,
            message_type=message_type,
            conversation_id=body.conversation_id,
            workspace_id=ws,
            external_id=str(saved.get("external_id")),
            connection_id=str(connection.get("id")),
            file_url=body.file_url,
            file_name=body.file_name,
            reply_to_message_id=body.reply_to_message_id,
            quoted_message=body.quoted_message,
        )
        try:
            result = await self._adapter.dispatch(outbound, connection=connection)
        except PipelineError as e:
            await self._mark_failed(saved, e, log_ctx=log_ctx)
            raise
        except Exception as e:
            err = RelayFailed("Message dispatch failed.", details={"error": str(e)}, http_status=500)
            await self._mark_failed(saved, err, log_ctx=log_ctx)
            raise err from e

        # the relay accepted the message: from here on the row is never marked failed
        try:
            final = await self._adapter.write_back(str(saved.get("id")), result) or saved
        except Exception as e:
            self._obs.exception(
                "send.write_back_failed",
                ctx=log_ctx,
                message_id=saved.get("id"),
                provider_msg_id=result.provider_msg_id,
                error=str(e),
            )
            final = saved

        self._obs.info("send.done", ctx=log_ctx, message_id=final.get("id"), status=final.get("status"))
        return {
            "success": True,
            "message": message_identity(final),
            "conversation_id": body.conversation_id,
            "phone_number": phone,
        }

    async def _connection_for(self, conversation: dict[str, Any], *, workspace_id: str) -> dict[str, Any]:
        connection_id = conversation.get("connection_id")
        if connection_id:
            connection = await self._store.get_connection(str(connection_id))
            if not connection:
                raise NotFoundError("connection", ref=str(connection_id))
            return connection

        connection = await self._store.find_default_connection(workspace_id)
        if not connection:
            raise NotFoundError("connection", details={"workspace_id": workspace_id})
        await self._store.assign_connection(str(conversation.get("id")), str(connection.get("id")))
        self._obs.info(
            "send.connection_assigned",
            ctx=LogContext(workspace_id=workspace_id),
            conversation_id=conversation.get("id"),
            connection_id=connection.get("id"),
        )
        return connection

    async def _mark_failed(self, saved: dict[str, Any], error: PipelineError, *, log_ctx: LogContext) -> None:
        metadata = saved.get("metadata") if isinstance(saved.get("metadata"), dict) else {}
        fields = {
            "status": FAILED,
            "metadata": {**metadata, "error": str(error), "error_code": error.code, "step": "dispatch"},
        }
        self._obs.warning("send.failed", ctx=log_ctx, message_id=saved.get("id"), code=error.code, error=str(error))
        try:
            await self._store.update_message(str(saved.get("id")), fields)
        except Exception:
            self._obs.exception("send.mark_failed_error", ctx=log_ctx, message_id=saved.get("id"))

    def _duplicate(self, existing: dict[str, Any], *, request_id: str) -> dict[str, Any]:
        self._obs.info("send.duplicate", ctx=LogContext(correlation_id=request_id), message_id=existing.get("id"))
        return {
            "success": True,
            "status": "duplicate",
            "message_id": existing.get("id"),
            "message": message_identity(existing),
            "conversation_id": existing.get("conversation_id"),
        }
