"""
Supabase-backed access to messages and the rows the pipeline joins against
(conversations, contacts, connections, provider settings, relay settings).

All reads go through ``db_call_with_retry``; message inserts are attempted
once since a retried insert could double-write.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..utils.db_helpers import db_call_with_retry, is_unique_violation
from .errors import PersistenceFailed, ValidationError

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = (
    "id, conversation_id, workspace_id, content, message_type, sender_type, sender_id, "
    "file_url, file_name, mime_type, status, external_id, evolution_key_id, metadata, "
    "reply_to_message_id, quoted_message, created_at, delivered_at, read_at"
)

CONNECTION_COLUMNS = (
    "id, workspace_id, instance_name, status, metadata, provider_id, "
    "provider:whatsapp_providers!connections_provider_id_fkey("
    "provider, evolution_url, evolution_token, zapi_url, zapi_token, zapi_client_token)"
)

PROVIDER_COLUMNS = "provider, evolution_url, evolution_token, zapi_url, zapi_token, zapi_client_token, is_active"

MASTER_CONFIG_INSTANCE = "_master_config"


@dataclass(frozen=True)
class HistoryPage:
    items: list[dict[str, Any]]
    next_before: Optional[str] = None


class DuplicateInsert(Exception):
    """Insert rejected by a unique index."""


def make_cursor(row: dict[str, Any]) -> str:
    return f"{row.get('created_at')}|{row.get('id')}"


def parse_cursor(before: str) -> tuple[str, str]:
    raw = str(before or "").strip()
    created_at, sep, row_id = raw.rpartition("|")
    if not sep or not created_at or not row_id:
        raise ValidationError("Invalid history cursor.", details={"before": raw})
    return created_at, row_id


def _first(result: Any) -> Optional[dict[str, Any]]:
    data = getattr(result, "data", None)
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


class MessageStore:
    def __init__(self, client: Any):
        self._client = client

    @property
    def client(self) -> Any:
        return self._client

    def _table(self, name: str):
        return self._client.table(name)

    async def _one(self, op_name: str, fn: Callable[[], Any]) -> Optional[dict[str, Any]]:
        return _first(await db_call_with_retry(op_name, fn))

    # ==================== MESSAGES ====================

    async def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "messages.get",
            lambda: self._table("messages").select(MESSAGE_COLUMNS).eq("id", message_id).limit(1).execute(),
        )

    async def find_by_client_message_id(self, conversation_id: str, client_message_id: str) -> Optional[dict[str, Any]]:
        for column in ("external_id", "metadata->>client_message_id"):
            row = await self._one(
                "messages.find_by_client_message_id",
                lambda column=column: self._table("messages")
                .select(MESSAGE_COLUMNS)
                .eq("conversation_id", conversation_id)
                .eq(column, client_message_id)
                .limit(1)
                .execute(),
            )
            if row:
                return row
        return None

    async def find_by_external_id(self, external_id: str, *, workspace_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        row, _ = await self.find_by_provider_id(external_id, workspace_id=workspace_id, columns=("external_id",))
        return row

    async def find_by_provider_id(
        self,
        provider_msg_id: str,
        *,
        workspace_id: Optional[str] = None,
        columns: tuple[str, ...] = ("external_id", "evolution_key_id", "metadata->>provider_msg_id"),
    ) -> tuple[Optional[dict[str, Any]], Optional[str]]:
        """Return the matching row and the column it matched on."""
        if not provider_msg_id:
            return None, None
        for column in columns:

            def query(column: str = column):
                q = self._table("messages").select(MESSAGE_COLUMNS).eq(column, provider_msg_id)
                if workspace_id:
                    q = q.eq("workspace_id", workspace_id)
                return q.limit(1).execute()

            row = await self._one("messages.find_by_provider_id", query)
            if row:
                return row, column
        return None, None

    async def find_unkeyed_outbound(self, conversation_id: str, *, since: str) -> Optional[dict[str, Any]]:
        """Most recent agent row still ``sending`` with no provider id, created after ``since``."""
        result = await db_call_with_retry(
            "messages.find_unkeyed_outbound",
            lambda: self._table("messages")
            .select(MESSAGE_COLUMNS)
            .eq("conversation_id", conversation_id)
            .eq("sender_type", "agent")
            .eq("status", "sending")
            .gt("created_at", since)
            .order("created_at", desc=True)
            .limit(5)
            .execute(),
        )
        for row in getattr(result, "data", None) or []:
            meta = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
            if not row.get("evolution_key_id") and not meta.get("provider_msg_id"):
                return row
        return None

    async def insert_message(self, row: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await db_call_with_retry(
                "messages.insert",
                lambda: self._table("messages").insert(row).execute(),
                max_attempts=1,
            )
        except Exception as e:
            if is_unique_violation(e):
                raise DuplicateInsert(str(e)) from e
            raise PersistenceFailed("Failed to save message.", details={"error": str(e)}) from e
        saved = _first(result)
        if not saved:
            raise PersistenceFailed("Failed to save message.", details={"error": "insert returned no row"})
        return saved

    async def update_message(self, message_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await self._one(
            "messages.update",
            lambda: self._table("messages").update(fields).eq("id", message_id).execute(),
        )

    async def history_page(
        self,
        *,
        conversation_id: str,
        workspace_id: Optional[str],
        limit: int,
        before: Optional[str] = None,
    ) -> HistoryPage:
        cursor = parse_cursor(before) if before else None

        def query():
            q = self._table("messages").select(MESSAGE_COLUMNS).eq("conversation_id", conversation_id)
            if workspace_id:
                q = q.eq("workspace_id", workspace_id)
            if cursor:
                created_at, row_id = cursor
                q = q.or_(f'created_at.lt."{created_at}",and(created_at.eq."{created_at}",id.lt."{row_id}")')
            return q.order("created_at", desc=True).order("id", desc=True).limit(limit).execute()

        result = await db_call_with_retry("messages.history", query)
        rows = list(getattr(result, "data", None) or [])
        next_before = make_cursor(rows[-1]) if rows and len(rows) == limit else None
        rows.reverse()
        return HistoryPage(items=rows, next_before=next_before)

    # ==================== CONVERSATIONS / CONTACTS ====================

    async def get_conversation(self, conversation_id: str, *, workspace_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        def query():
            q = self._table("conversations").select("id, workspace_id, contact_id, connection_id, status").eq("id", conversation_id)
            if workspace_id:
                q = q.eq("workspace_id", workspace_id)
            return q.limit(1).execute()

        return await self._one("conversations.get", query)

    async def assign_connection(self, conversation_id: str, connection_id: str) -> None:
        await db_call_with_retry(
            "conversations.assign_connection",
            lambda: self._table("conversations").update({"connection_id": connection_id}).eq("id", conversation_id).execute(),
        )

    async def find_conversation(self, *, workspace_id: str, contact_id: str, connection_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "conversations.find",
            lambda: self._table("conversations")
            .select("id, workspace_id, contact_id, connection_id, status")
            .eq("workspace_id", workspace_id)
            .eq("contact_id", contact_id)
            .eq("connection_id", connection_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute(),
        )

    async def insert_conversation(self, row: dict[str, Any]) -> dict[str, Any]:
        result = await db_call_with_retry(
            "conversations.insert",
            lambda: self._table("conversations").insert(row).execute(),
            max_attempts=1,
        )
        saved = _first(result)
        if not saved:
            raise PersistenceFailed("Failed to create conversation.")
        return saved

    async def get_contact(self, contact_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "contacts.get",
            lambda: self._table("contacts").select("id, workspace_id, name, phone").eq("id", contact_id).limit(1).execute(),
        )

    async def find_contact_by_phone(self, workspace_id: str, phone: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "contacts.find_by_phone",
            lambda: self._table("contacts")
            .select("id, workspace_id, name, phone")
            .eq("workspace_id", workspace_id)
            .eq("phone", phone)
            .limit(1)
            .execute(),
        )

    async def insert_contact(self, row: dict[str, Any]) -> dict[str, Any]:
        result = await db_call_with_retry(
            "contacts.insert",
            lambda: self._table("contacts").insert(row).execute(),
            max_attempts=1,
        )
        saved = _first(result)
        if not saved:
            raise PersistenceFailed("Failed to create contact.")
        return saved

    # ==================== CONNECTIONS / PROVIDERS ====================

    async def get_connection(self, connection_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "connections.get",
            lambda: self._table("connections").select(CONNECTION_COLUMNS).eq("id", connection_id).limit(1).execute(),
        )

    async def find_default_connection(self, workspace_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "connections.find_default",
            lambda: self._table("connections")
            .select(CONNECTION_COLUMNS)
            .eq("workspace_id", workspace_id)
            .eq("status", "connected")
            .order("created_at", desc=False)
            .limit(1)
            .execute(),
        )

    async def find_connection_by_instance(self, instance: str) -> Optional[dict[str, Any]]:
        value = str(instance or "").replace('"', "")
        return await self._one(
            "connections.find_by_instance",
            lambda: self._table("connections")
            .select(CONNECTION_COLUMNS)
            .or_(f'instance_name.eq."{value}",metadata->>instanceId.eq."{value}"')
            .limit(1)
            .execute(),
        )

    async def get_workspace_master_config(self, workspace_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "evolution_instance_tokens.master",
            lambda: self._table("evolution_instance_tokens")
            .select("evolution_url, token")
            .eq("workspace_id", workspace_id)
            .eq("instance_name", MASTER_CONFIG_INSTANCE)
            .limit(1)
            .execute(),
        )

    async def get_global_master_config(self) -> Optional[dict[str, Any]]:
        return await self._one(
            "_master_config.get",
            lambda: self._table("_master_config").select("evolution_api_url, evolution_api_key").limit(1).execute(),
        )

    async def get_latest_provider(self, workspace_id: str) -> Optional[dict[str, Any]]:
        return await self._one(
            "whatsapp_providers.latest",
            lambda: self._table("whatsapp_providers")
            .select(PROVIDER_COLUMNS)
            .eq("workspace_id", workspace_id)
            .order("is_active", desc=True)
            .order("updated_at", desc=True)
            .limit(1)
            .execute(),
        )

    async def get_relay_url(self, workspace_id: str) -> Optional[str]:
        settings = await self._one(
            "workspace_webhook_settings.get",
            lambda: self._table("workspace_webhook_settings")
            .select("webhook_url")
            .eq("workspace_id", workspace_id)
            .limit(1)
            .execute(),
        )
        if settings and settings.get("webhook_url"):
            return str(settings["webhook_url"])

        secret = await self._one(
            "workspace_webhook_secrets.get",
            lambda: self._table("workspace_webhook_secrets")
            .select("webhook_url")
            .eq("workspace_id", workspace_id)
            .eq("secret_name", f"N8N_WEBHOOK_URL_{workspace_id}")
            .limit(1)
            .execute(),
        )
        if secret and secret.get("webhook_url"):
            return str(secret["webhook_url"])
        return None
