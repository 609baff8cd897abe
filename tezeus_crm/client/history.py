from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx


@dataclass(frozen=True)
class HistoryResult:
    items: list[dict[str, Any]]
    next_before: Optional[str] = None


class HistorySource(Protocol):
    async def fetch_page(
        self,
        workspace_id: str,
        conversation_id: str,
        *,
        limit: int,
        before: Optional[str] = None,
    ) -> HistoryResult:
        raise NotImplementedError


class HistoryClient:
    """Calls ``POST /api/messages/history`` on the CRM backend."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 15.0,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or "").rstrip("/")
        self._timeout_s = timeout_s
        self._headers = dict(headers or {})
        self._transport = transport

    async def fetch_page(
        self,
        workspace_id: str,
        conversation_id: str,
        *,
        limit: int,
        before: Optional[str] = None,
    ) -> HistoryResult:
        body: dict[str, Any] = {"conversation_id": conversation_id, "limit": limit}
        if before:
            body["before"] = before
        headers = {**self._headers, "x-workspace-id": workspace_id}
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            resp = await client.post(f"{self._base_url}/api/messages/history", json=body, headers=headers)
        resp.raise_for_status()
        data = resp.json() or {}
        return HistoryResult(items=list(data.get("items") or []), next_before=data.get("nextBefore"))
