from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


@dataclass
class CachedPage:
    messages: list[dict[str, Any]]
    next_before: Optional[str]
    stored_at: float = field(default=0.0)


class MessageCache:
    """
    Initial-page cache per (workspace, conversation).

    ``get`` honours the TTL; ``sweep`` drops entries older than
    ``ttl_s * sweep_multiplier`` whether or not anyone reads them.
    """

    def __init__(self, *, ttl_s: float = 15.0, sweep_multiplier: int = 3, clock: Callable[[], float] = time.monotonic):
        self._ttl_s = ttl_s
        self._max_age_s = ttl_s * sweep_multiplier
        self._clock = clock
        self._entries: dict[CacheKey, CachedPage] = {}

    def get(self, workspace_id: str, conversation_id: str) -> Optional[CachedPage]:
        entry = self._entries.get((workspace_id, conversation_id))
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl_s:
            return None
        return entry

    def put(self, workspace_id: str, conversation_id: str, messages: list[dict[str, Any]], next_before: Optional[str]) -> None:
        self._entries[(workspace_id, conversation_id)] = CachedPage(
            messages=[dict(m) for m in messages],
            next_before=next_before,
            stored_at=self._clock(),
        )

    def invalidate(self, workspace_id: str, conversation_id: str) -> None:
        self._entries.pop((workspace_id, conversation_id), None)

    def sweep(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if now - entry.stored_at > self._max_age_s]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Message cache sweep evicted {len(stale)} entries")
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    async def run_sweeper(self, interval_s: float = 30.0) -> None:
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()
