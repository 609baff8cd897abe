"""Helpers shared by the relay providers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence, Union

PathPart = Union[str, int]


def dig(obj: Any, path: Sequence[PathPart]) -> Any:
    cur = obj
    for part in path:
        if isinstance(part, int):
            if not isinstance(cur, list) or len(cur) <= part:
                return None
            cur = cur[part]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(part)
        if cur is None:
            return None
    return cur


def first_id(obj: Any, paths: Iterable[Sequence[PathPart]]) -> Optional[str]:
    """Return the first non-empty scalar found along ``paths``."""
    for path in paths:
        value = dig(obj, path)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)):
            text = str(value).strip()
            if text:
                return text
    return None


def unwrap_message_content(content: Any) -> dict:
    cur = content
    for _ in range(8):
        if not isinstance(cur, dict):
            return {}
        for wrapper in (
            "ephemeralMessage",
            "viewOnceMessage",
            "viewOnceMessageV2",
            "viewOnceMessageV2Extension",
            "documentWithCaptionMessage",
            "editedMessage",
        ):
            inner = cur.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                cur = inner.get("message")
                break
        else:
            return cur
    return cur if isinstance(cur, dict) else {}


def timestamp_to_iso(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return str(raw)
    # milliseconds
    if value > 10_000_000_000:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
