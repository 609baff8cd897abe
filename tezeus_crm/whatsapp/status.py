"""Message status lifecycle: sending -> sent -> delivered -> read, or failed."""
from __future__ import annotations

from typing import Any, Mapping, Optional

SENDING = "sending"
SENT = "sent"
DELIVERED = "delivered"
READ = "read"
FAILED = "failed"

STATUS_RANK: dict[str, int] = {
    SENDING: 0,
    SENT: 1,
    DELIVERED: 2,
    READ: 3,
}

TERMINAL_STATUSES = frozenset({READ, FAILED})

_GENERIC_ALIASES: dict[str, str] = {
    "sending": SENDING,
    "pending": SENDING,
    "sent": SENT,
    "server_ack": SENT,
    "received": DELIVERED,
    "delivered": DELIVERED,
    "delivery_ack": DELIVERED,
    "read": READ,
    "read_by_me": READ,
    "played": READ,
    "failed": FAILED,
    "error": FAILED,
}


def normalize_status(raw: Any, aliases: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Map a provider status label to the lifecycle vocabulary, or None if unknown."""
    key = str(raw or "").strip().lower()
    if not key:
        return None
    if aliases and key in aliases:
        return aliases[key]
    return _GENERIC_ALIASES.get(key)


def should_advance(current: Optional[str], new: Optional[str]) -> bool:
    if not new:
        return False
    cur = str(current or "").strip().lower()
    if cur in TERMINAL_STATUSES:
        return False
    if new == FAILED:
        return cur in {"", SENDING, SENT}
    if new not in STATUS_RANK:
        return False
    if cur not in STATUS_RANK:
        return True
    return STATUS_RANK[new] > STATUS_RANK[cur]


def timestamp_field(status: str) -> Optional[str]:
    if status == DELIVERED:
        return "delivered_at"
    if status == READ:
        return "read_at"
    return None
