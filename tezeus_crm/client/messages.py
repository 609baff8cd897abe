"""
Per-conversation message view.

States: ``idle -> loading -> ready``; from ``ready``, ``load_more`` goes
through ``loading-more`` and back. Opening another conversation resets the
view. The list handed out is always deduplicated and sorted by
``created_at`` (ties by id).
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from ..whatsapp.identity import absorb, dedupe_and_sort, find_match, merge_messages, sort_key
from .cache import MessageCache
from .history import HistorySource
from .live import INSERT, UPDATE, LiveChannelRegistry, LiveEvent, Subscription

logger = logging.getLogger(__name__)

IDLE = "idle"
LOADING = "loading"
READY = "ready"
LOADING_MORE = "loading-more"

DEFAULT_PAGE_SIZE = 30


class ConversationMessages:
    def __init__(
        self,
        *,
        workspace_id: str,
        history: HistorySource,
        live: LiveChannelRegistry,
        cache: Optional[MessageCache] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.workspace_id = workspace_id
        self._history = history
        self._live = live
        self._cache = cache or MessageCache()
        self._page_size = page_size

        self.state = IDLE
        self.conversation_id: Optional[str] = None
        self.next_before: Optional[str] = None
        self.has_more = False
        self._messages: list[dict[str, Any]] = []
        self._pending: list[LiveEvent] = []
        self._subscription: Optional[Subscription] = None
        self._generation = 0

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [dict(m) for m in self._messages]

    # ==================== LOADING ====================

    async def open(self, conversation_id: str, *, force_refresh: bool = False) -> list[dict[str, Any]]:
        if self.conversation_id is not None:
            await self.close()

        self._generation += 1
        generation = self._generation
        self.conversation_id = conversation_id
        self.state = LOADING
        self._subscription = await self._live.attach(self.workspace_id, self._on_live)

        cached = None if force_refresh else self._cache.get(self.workspace_id, conversation_id)
        if cached is not None:
            logger.debug(f"Cache hit for {self.workspace_id}:{conversation_id}")
            self._finish_initial(cached.messages, cached.next_before)
            return self.messages

        if force_refresh:
            self._cache.invalidate(self.workspace_id, conversation_id)
        try:
            page = await self._history.fetch_page(self.workspace_id, conversation_id, limit=self._page_size)
        except Exception:
            if generation == self._generation:
                self.state = IDLE
            raise
        if generation != self._generation:
            return self.messages

        self._cache.put(self.workspace_id, conversation_id, dedupe_and_sort(page.items), page.next_before)
        self._finish_initial(page.items, page.next_before)
        return self.messages

    def _finish_initial(self, items: list[dict[str, Any]], next_before: Optional[str]) -> None:
        self._messages = dedupe_and_sort(items)
        self.next_before = next_before
        self.has_more = bool(next_before)
        self.state = READY
        pending, self._pending = self._pending, []
        for event in pending:
            self._apply_live(event)

    async def load_more(self) -> list[dict[str, Any]]:
        if self.state != READY or not self.has_more or not self.next_before or not self.conversation_id:
            return self.messages

        generation = self._generation
        self.state = LOADING_MORE
        try:
            page = await self._history.fetch_page(
                self.workspace_id,
                self.conversation_id,
                limit=self._page_size,
                before=self.next_before,
            )
        except Exception:
            if generation == self._generation:
                self.state = READY
            raise
        if generation != self._generation:
            return self.messages

        self._messages = dedupe_and_sort(page.items, existing=self._messages)
        self.next_before = page.next_before
        self.has_more = bool(page.next_before)
        self.state = READY
        return self.messages

    async def close(self) -> None:
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        self.state = IDLE
        self.conversation_id = None
        self.next_before = None
        self.has_more = False
        self._messages = []
        self._pending = []
        if subscription is not None:
            await self._live.detach(subscription)

    # ==================== LOCAL MUTATIONS ====================

    def add_local(self, message: dict[str, Any]) -> None:
        """Fold a just-sent (or optimistic) message into the view."""
        conversation_id = str(message.get("conversation_id") or self.conversation_id or "")
        if conversation_id:
            self._cache.invalidate(self.workspace_id, conversation_id)
        if self.conversation_id is None or conversation_id != self.conversation_id:
            return
        self._messages = dedupe_and_sort([message], existing=self._messages)

    def update_message(self, message_id: str, updates: dict[str, Any]) -> bool:
        idx = next(
            (i for i, m in enumerate(self._messages) if message_id in (m.get("id"), m.get("external_id"))),
            None,
        )
        if idx is None:
            return False
        self._messages[idx] = merge_messages(self._messages[idx], updates)
        self._messages.sort(key=sort_key)
        if self.conversation_id:
            self._cache.invalidate(self.workspace_id, self.conversation_id)
        return True

    def remove_message(self, message_id: str) -> None:
        self._messages = [m for m in self._messages if m.get("id") != message_id]
        if self.conversation_id:
            self._cache.invalidate(self.workspace_id, self.conversation_id)

    # ==================== LIVE ====================

    def _on_live(self, event: LiveEvent) -> None:
        conversation_id = event.conversation_id
        if conversation_id:
            self._cache.invalidate(self.workspace_id, conversation_id)
        if conversation_id is None or conversation_id != self.conversation_id:
            return
        if self.state == LOADING:
            self._pending.append(event)
            return
        if self.state == IDLE:
            return
        self._apply_live(event)

    def _apply_live(self, event: LiveEvent) -> None:
        if event.kind == INSERT:
            self._messages = dedupe_and_sort([event.record], existing=self._messages)
            return
        if event.kind == UPDATE:
            if find_match(self._messages, event.record) is None:
                logger.debug(f"Live update for unknown message {event.record.get('id')} dropped")
                return
            absorb(self._messages, event.record)
            self._messages.sort(key=sort_key)
