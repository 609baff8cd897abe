"""
Live message events, one realtime channel per workspace.

Conversation views attach a listener to their workspace's channel; the
channel is opened on the first attach and torn down when the last listener
detaches. Views filter events by ``conversation_id`` themselves.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from supabase import AsyncClient, acreate_client

from ..supabase_client import realtime_credentials
from ..whatsapp.errors import ConfigError

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"


@dataclass(frozen=True)
class LiveEvent:
    kind: str
    record: dict[str, Any]

    @property
    def conversation_id(self) -> Optional[str]:
        value = self.record.get("conversation_id")
        return str(value) if value is not None else None


Listener = Callable[[LiveEvent], None]


class LiveSource(Protocol):
    async def open(self, workspace_id: str, emit: Listener) -> Any:
        raise NotImplementedError

    async def close(self, handle: Any) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class Subscription:
    workspace_id: str
    token: int


@dataclass
class _Channel:
    handle: Any = None
    listeners: dict[int, Listener] = field(default_factory=dict)


class LiveChannelRegistry:
    def __init__(self, source: LiveSource):
        self._source = source
        self._channels: dict[str, _Channel] = {}
        self._lock = asyncio.Lock()
        self._tokens = itertools.count(1)

    async def attach(self, workspace_id: str, listener: Listener) -> Subscription:
        async with self._lock:
            channel = self._channels.get(workspace_id)
            if channel is None:
                channel = _Channel()
                channel.handle = await self._source.open(
                    workspace_id,
                    lambda event, ws=workspace_id: self.publish(ws, event),
                )
                self._channels[workspace_id] = channel
                logger.info(f"Live channel opened for workspace {workspace_id}")
            token = next(self._tokens)
            channel.listeners[token] = listener
        logger.debug(f"Live listener attached to {workspace_id}. Total: {len(channel.listeners)}")
        return Subscription(workspace_id=workspace_id, token=token)

    async def detach(self, subscription: Subscription) -> None:
        async with self._lock:
            channel = self._channels.get(subscription.workspace_id)
            if channel is None:
                return
            channel.listeners.pop(subscription.token, None)
            if channel.listeners:
                return
            del self._channels[subscription.workspace_id]
            await self._source.close(channel.handle)
        logger.info(f"Live channel closed for workspace {subscription.workspace_id}")

    def subscriber_count(self, workspace_id: str) -> int:
        channel = self._channels.get(workspace_id)
        return len(channel.listeners) if channel else 0

    def open_channels(self) -> list[str]:
        return sorted(self._channels)

    def publish(self, workspace_id: str, event: LiveEvent) -> None:
        channel = self._channels.get(workspace_id)
        if channel is None:
            return
        for listener in list(channel.listeners.values()):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Live listener failed on {workspace_id}: {e}")


def parse_realtime_payload(payload: Any) -> Optional[LiveEvent]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    kind = str(data.get("type") or data.get("eventType") or "").strip().lower()
    record = data.get("record") or data.get("new")
    if kind not in (INSERT, UPDATE) or not isinstance(record, dict):
        return None
    return LiveEvent(kind=kind, record=record)


class SupabaseRealtimeSource:
    """Postgres-changes feed on ``public.messages`` filtered by workspace."""

    def __init__(self, client: AsyncClient):
        self._client = client

    @classmethod
    async def connect(cls, url: Optional[str] = None, key: Optional[str] = None) -> "SupabaseRealtimeSource":
        if not url or not key:
            env_url, env_key = realtime_credentials()
            url, key = url or env_url, key or env_key
        if not url or not key:
            raise ConfigError("Realtime feed needs SUPABASE_URL and SUPABASE_ANON_KEY.")
        return cls(await acreate_client(url, key))

    async def open(self, workspace_id: str, emit: Listener) -> Any:
        def on_change(payload: Any) -> None:
            event = parse_realtime_payload(payload)
            if event is not None:
                emit(event)

        channel = self._client.channel(f"messages-ws-{workspace_id}")
        for event_name in ("INSERT", "UPDATE"):
            channel.on_postgres_changes(
                event_name,
                callback=on_change,
                schema="public",
                table="messages",
                filter=f"workspace_id=eq.{workspace_id}",
            )
        await channel.subscribe()
        return channel

    async def close(self, handle: Any) -> None:
        await self._client.remove_channel(handle)
