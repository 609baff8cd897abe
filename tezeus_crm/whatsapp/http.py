from __future__ import annotations

import json as jsonlib
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .errors import RelayFailed


@dataclass(frozen=True)
class RelayClientConfig:
    timeout_s: float = 15.0
    headers: Optional[dict[str, str]] = None


class RelayClient:
    """POSTs send envelopes to a workspace relay (automation webhook)."""

    def __init__(self, *, config: Optional[RelayClientConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config or RelayClientConfig()
        self._transport = transport

    async def post(self, url: str, payload: dict[str, Any]) -> Any:
        target = (url or "").strip()
        if not target:
            raise RelayFailed("Relay URL not configured.", transient=False)
        headers = {"Content-Type": "application/json", **(self._config.headers or {})}

        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_s, transport=self._transport) as client:
                resp = await client.post(target, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise RelayFailed(
                "Relay did not answer in time.",
                transient=True,
                details={"error": str(e) or "timeout", "timeout_s": self._config.timeout_s},
            )
        except httpx.HTTPError as e:
            raise RelayFailed("Relay communication failed.", transient=True, details={"error": str(e)})

        body_text = _safe_text(resp)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise RelayFailed(
                "Relay returned an error status.",
                status_code=resp.status_code,
                transient=resp.status_code >= 500,
                details={"body": body_text},
            )

        data = _parse_body(resp.text or "")
        if isinstance(data, dict) and (data.get("error") or data.get("success") is False):
            raise RelayFailed(
                "Relay reported an application error.",
                status_code=resp.status_code,
                details={"body": body_text, "error": str(data.get("error") or data.get("message") or "")},
            )
        return data


def _parse_body(text: str) -> Any:
    if not text.strip():
        return {}
    try:
        return jsonlib.loads(text)
    except ValueError:
        return {"response": text}


def _safe_text(resp: httpx.Response, limit: int = 4000) -> str:
    try:
        return (resp.text or "")[:limit]
    except Exception:
        return ""
