"""
Folds provider signals (new messages, status acks, processed media) into the
messages table without creating a second row for a message we already have.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..media_detection import CANONICAL_AUDIO_MIME, detect_media_kind, extension_for_mime, normalize_mime_type
from ..models.messages import MediaCallback, RelayStatusCallback
from .errors import NotFoundError, PersistenceFailed, ValidationError
from .media import AudioTranscoder, MediaPayload, MediaStorage, decode_base64_media, download_media, storage_file_name
from .observability import LogContext, Observability
from .providers.base import InboundMessage, ProviderContext, StatusUpdate
from .providers.registry import ProviderRegistry
from .status import DELIVERED, SENT, normalize_status, should_advance, timestamp_field
from .store import DuplicateInsert, MessageStore


ECHO_WINDOW_S = 30


@dataclass(frozen=True)
class ReconcileOutcome:
    action: str
    message_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.action in {"merged", "updated", "skipped"}

    def as_dict(self) -> dict[str, Any]:
        return {"action": self.action, "matched": self.matched, "message_id": self.message_id, "status": self.status}


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _meta(row: dict[str, Any]) -> dict[str, Any]:
    meta = row.get("metadata")
    return dict(meta) if isinstance(meta, dict) else {}


class InboundReconciler:
    def __init__(
        self,
        *,
        store: MessageStore,
        registry: ProviderRegistry,
        storage: MediaStorage,
        transcoder: AudioTranscoder,
        obs: Observability,
        download_timeout_s: float = 30.0,
    ):
        self._store = store
        self._registry = registry
        self._storage = storage
        self._transcoder = transcoder
        self._obs = obs
        self._download_timeout_s = download_timeout_s

    # ==================== WEBHOOKS ====================

    async def handle_webhook(self, provider_id: str, payload: dict[str, Any]) -> ReconcileOutcome:
        provider = self._registry.get(provider_id)
        ctx = ProviderContext(obs=self._obs, log_ctx=LogContext(provider=provider_id))
        event = provider.parse_webhook(ctx, payload)
        if event.status is not None:
            return await self.apply_status(event.status)
        if event.message is not None:
            return await self.apply_new_message(event.message)
        self._obs.info("reconcile.ignored", ctx=ctx.log_ctx, webhook_event=event.event)
        return ReconcileOutcome(action="ignored")

    async def apply_relay_status(self, body: RelayStatusCallback) -> ReconcileOutcome:
        status = normalize_status(body.status)
        ref = (body.provider_msg_id or body.message_id or "").strip()
        provider = (body.provider or "zapi").strip().lower()
        if not ref or not status:
            self._obs.warning("reconcile.relay_status.invalid", ctx=LogContext(provider=provider), ref=ref, status=body.status)
            return ReconcileOutcome(action="ignored")

        if _is_uuid(ref):
            row = await self._store.get_message(ref)
            if row:
                return await self._advance(row, status, provider=provider, provider_msg_id=None, matched_on="id")
        return await self.apply_status(
            StatusUpdate(provider=provider, provider_msg_id=ref, status=status),
            workspace_id=body.workspace_id,
        )

    # ==================== STATUS ====================

    async def apply_status(self, update: StatusUpdate, *, workspace_id: Optional[str] = None) -> ReconcileOutcome:
        row, matched_on = await self._store.find_by_provider_id(update.provider_msg_id, workspace_id=workspace_id)
        if not row:
            return self._unmatched("status", provider=update.provider, ref=update.provider_msg_id, status=update.status)
        return await self._advance(
            row,
            update.status,
            provider=update.provider,
            provider_msg_id=update.provider_msg_id,
            matched_on=matched_on,
            timestamp=update.timestamp,
        )

    async def _advance(
        self,
        row: dict[str, Any],
        status: str,
        *,
        provider: str,
        provider_msg_id: Optional[str],
        matched_on: Optional[str],
        timestamp: Optional[str] = None,
    ) -> ReconcileOutcome:
        log_ctx = LogContext(workspace_id=row.get("workspace_id"), provider=provider, correlation_id=row.get("id"))
        if not should_advance(row.get("status"), status):
            self._obs.info("reconcile.status.stale", ctx=log_ctx, current=row.get("status"), incoming=status)
            return ReconcileOutcome(action="skipped", message_id=row.get("id"), status=row.get("status"))

        fields: dict[str, Any] = {"status": status}
        ts_field = timestamp_field(status)
        if ts_field:
            fields[ts_field] = timestamp or _now_iso()
        if provider == "evolution" and provider_msg_id and matched_on == "external_id" and not row.get("evolution_key_id"):
            fields["evolution_key_id"] = provider_msg_id
        meta = _meta(row)
        if not meta.get("provider"):
            fields["metadata"] = {**meta, "provider": provider}

        await self._store.update_message(str(row.get("id")), fields)
        self._obs.info("reconcile.status.updated", ctx=log_ctx, previous=row.get("status"), status=status)
        return ReconcileOutcome(action="updated", message_id=row.get("id"), status=status)

    # ==================== NEW MESSAGES ====================

    async def apply_new_message(self, msg: InboundMessage, *, workspace_id: Optional[str] = None) -> ReconcileOutcome:
        connection = await self._store.find_connection_by_instance(msg.instance) if msg.instance else None
        ws = workspace_id or (connection or {}).get("workspace_id")

        row, _ = await self._store.find_by_provider_id(msg.provider_msg_id, workspace_id=ws)
        if row:
            return await self._merge_echo(row, msg)

        if not connection or not ws:
            return self._unmatched("message", provider=msg.provider, ref=msg.provider_msg_id, instance=msg.instance)
        if msg.from_me:
            return await self._link_outbound_echo(msg, workspace_id=str(ws), connection_id=str(connection.get("id")))

        conversation = await self._conversation_for(msg, workspace_id=str(ws), connection_id=str(connection.get("id")))
        new_row = self._inbound_row(msg, conversation_id=str(conversation.get("id")), workspace_id=str(ws))
        try:
            saved = await self._store.insert_message(new_row)
        except DuplicateInsert:
            # webhook replay raced with itself
            row, _ = await self._store.find_by_provider_id(msg.provider_msg_id, workspace_id=ws)
            if row:
                return await self._merge_echo(row, msg)
            raise
        self._obs.info(
            "reconcile.message.inserted",
            ctx=LogContext(workspace_id=str(ws), provider=msg.provider, instance_name=msg.instance),
            message_id=saved.get("id"),
            from_me=msg.from_me,
        )
        return ReconcileOutcome(action="inserted", message_id=saved.get("id"), status=saved.get("status"))

    async def _merge_echo(self, row: dict[str, Any], msg: InboundMessage) -> ReconcileOutcome:
        fields: dict[str, Any] = {}
        for column, value in (("file_url", msg.file_url), ("file_name", msg.file_name), ("mime_type", msg.mime_type)):
            if value and not row.get(column):
                fields[column] = value

        meta = _meta(row)
        if msg.provider == "zapi" and not row.get("evolution_key_id") and row.get("external_id") != msg.provider_msg_id:
            fields["evolution_key_id"] = msg.provider_msg_id
            meta["provider_msg_id"] = msg.provider_msg_id
            fields["metadata"] = meta
        if not meta.get("provider"):
            meta["provider"] = msg.provider
            fields["metadata"] = meta
        if msg.from_me and should_advance(row.get("status"), SENT):
            fields["status"] = SENT

        if fields:
            await self._store.update_message(str(row.get("id")), fields)
        self._obs.info(
            "reconcile.message.merged",
            ctx=LogContext(workspace_id=row.get("workspace_id"), provider=msg.provider, correlation_id=row.get("id")),
            fields=",".join(sorted(fields)) or "-",
        )
        return ReconcileOutcome(action="merged", message_id=row.get("id"), status=fields.get("status") or row.get("status"))

    async def _link_outbound_echo(self, msg: InboundMessage, *, workspace_id: str, connection_id: str) -> ReconcileOutcome:
        """
        Attach the provider id of an outbound echo that beat the relay reply.

        The echo is matched to the conversation's latest agent row still in
        ``sending`` with no provider id; echoes of messages that never went
        through the pipeline are not inserted.
        """
        contact = await self._store.find_contact_by_phone(workspace_id, msg.phone) if msg.phone else None
        conversation = (
            await self._store.find_conversation(
                workspace_id=workspace_id, contact_id=str(contact.get("id")), connection_id=connection_id
            )
            if contact
            else None
        )
        if not conversation:
            return self._unmatched("echo", provider=msg.provider, ref=msg.provider_msg_id, instance=msg.instance)

        since = (datetime.now(timezone.utc) - timedelta(seconds=ECHO_WINDOW_S)).isoformat()
        row = await self._store.find_unkeyed_outbound(str(conversation.get("id")), since=since)
        if not row:
            return self._unmatched("echo", provider=msg.provider, ref=msg.provider_msg_id, instance=msg.instance)

        meta = _meta(row)
        meta["provider_msg_id"] = msg.provider_msg_id
        meta.setdefault("provider", msg.provider)
        fields: dict[str, Any] = {"evolution_key_id": msg.provider_msg_id, "metadata": meta}
        if should_advance(row.get("status"), SENT):
            fields["status"] = SENT
        await self._store.update_message(str(row.get("id")), fields)
        self._obs.info(
            "reconcile.echo.linked",
            ctx=LogContext(workspace_id=workspace_id, provider=msg.provider, correlation_id=row.get("id")),
            provider_msg_id=msg.provider_msg_id,
        )
        return ReconcileOutcome(action="merged", message_id=row.get("id"), status=fields.get("status") or row.get("status"))

    async def _conversation_for(self, msg: InboundMessage, *, workspace_id: str, connection_id: str) -> dict[str, Any]:
        contact = await self._store.find_contact_by_phone(workspace_id, msg.phone)
        if not contact:
            contact = await self._store.insert_contact(
                {"workspace_id": workspace_id, "phone": msg.phone, "name": msg.push_name or msg.phone}
            )
        conversation = await self._store.find_conversation(
            workspace_id=workspace_id,
            contact_id=str(contact.get("id")),
            connection_id=connection_id,
        )
        if not conversation:
            conversation = await self._store.insert_conversation(
                {
                    "workspace_id": workspace_id,
                    "contact_id": contact.get("id"),
                    "connection_id": connection_id,
                    "status": "open",
                }
            )
        return conversation

    def _inbound_row(self, msg: InboundMessage, *, conversation_id: str, workspace_id: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {"provider": msg.provider, "source": "webhook"}
        row: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "workspace_id": workspace_id,
            "content": msg.content,
            "message_type": msg.message_type,
            "sender_type": "contact",
            "file_url": msg.file_url,
            "file_name": msg.file_name,
            "mime_type": msg.mime_type,
            "status": DELIVERED,
            "external_id": msg.provider_msg_id,
            "created_at": msg.timestamp or _now_iso(),
            "metadata": metadata,
        }
        if msg.provider == "zapi":
            row["evolution_key_id"] = msg.provider_msg_id
            metadata["provider_msg_id"] = msg.provider_msg_id
        return row

    # ==================== MEDIA ====================

    async def process_media(self, cb: MediaCallback) -> dict[str, Any]:
        row = await self._find_for_media(cb.message_id, workspace_id=cb.workspace_id)
        if not row:
            raise NotFoundError("message", ref=cb.message_id)
        log_ctx = LogContext(workspace_id=row.get("workspace_id"), correlation_id=row.get("id"))

        if cb.base64:
            payload = decode_base64_media(cb.base64)
        elif cb.file_url:
            payload = await download_media(cb.file_url, timeout_s=self._download_timeout_s)
        else:
            raise ValidationError("fileUrl or base64 is required.")

        hinted = cb.message_type or row.get("message_type")
        detected = detect_media_kind(
            declared_mime_type=cb.mime_type or payload.declared_mime_type,
            filename=cb.file_name,
            head_bytes=payload.content[:64],
            hinted_kind="audio" if hinted in ("audio", "ptt") else None,
        )
        mime = normalize_mime_type(detected.mime_type)
        content, mime, audio_conversion = await self._normalize_audio(payload, detected.kind, mime, log_ctx=log_ctx)

        file_name = storage_file_name(cb.file_name or row.get("file_name"), extension_for_mime(mime), now_ms=int(time.time() * 1000))
        file_url = self._storage.upload(f"messages/{file_name}", content, content_type=mime)

        metadata = _meta(row)
        metadata.update({"file_size": len(content), "processed_at": _now_iso()})
        if cb.file_name:
            metadata["original_file_name"] = cb.file_name
        if audio_conversion:
            metadata["audio_conversion"] = audio_conversion

        updated = await self._store.update_message(
            str(row.get("id")),
            {"file_url": file_url, "mime_type": mime, "file_name": file_name, "metadata": metadata},
        )
        if not updated:
            raise PersistenceFailed("Failed to update message with media.", details={"message_id": row.get("id")})

        self._obs.info("reconcile.media.processed", ctx=log_ctx, mime_type=mime, size=len(content))
        return {
            "success": True,
            "messageId": row.get("id"),
            "fileUrl": file_url,
            "fileName": file_name,
            "mimeType": mime,
            "fileSize": len(content),
        }

    async def _normalize_audio(
        self,
        payload: MediaPayload,
        kind: str,
        mime: str,
        *,
        log_ctx: LogContext,
    ) -> tuple[bytes, str, Optional[dict[str, Any]]]:
        if kind != "audio" or mime == CANONICAL_AUDIO_MIME:
            return payload.content, mime, None
        try:
            converted = await self._transcoder.to_mp3(payload.content, source_mime=mime)
        except Exception as e:
            self._obs.warning("reconcile.media.audio_conversion_failed", ctx=log_ctx, source_mime=mime, error=str(e))
            return payload.content, mime, {"from": mime, "to": None, "error": str(e), "failed_at": _now_iso()}
        return converted, CANONICAL_AUDIO_MIME, {
            "from": mime,
            "to": CANONICAL_AUDIO_MIME,
            "strategy": "ffmpeg-mp3",
            "converted_at": _now_iso(),
        }

    async def _find_for_media(self, ref: str, *, workspace_id: Optional[str]) -> Optional[dict[str, Any]]:
        ref = (ref or "").strip()
        if not ref:
            return None
        if _is_uuid(ref):
            row = await self._store.get_message(ref)
            if row:
                return row
        row, _ = await self._store.find_by_provider_id(ref, workspace_id=workspace_id)
        return row

    def _unmatched(self, kind: str, *, provider: str, ref: Optional[str], **fields: Any) -> ReconcileOutcome:
        self._obs.warning("reconcile.unmatched", ctx=LogContext(provider=provider), kind=kind, ref=ref, **fields)
        self._obs.incr("reconcile.unmatched")
        return ReconcileOutcome(action="unmatched")
