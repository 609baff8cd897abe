"""
Message identity resolution.

A logical message can be known by its row ``id``, by its ``external_id``
(client idempotency key, or the Evolution key id after dispatch) and by the
provider-linked ids (``evolution_key_id``, ``metadata.provider_msg_id``,
``metadata.provider_message_id``). Two records whose identifiers overlap are
the same message and are folded into one entry.

Everything here is pure: records are plain dicts as returned by Supabase.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from .status import should_advance

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def provider_linked_ids(message: Mapping[str, Any]) -> set[str]:
    meta = message.get("metadata") or {}
    if not isinstance(meta, Mapping):
        meta = {}
    ids: set[str] = set()
    for value in (meta.get("provider_msg_id"), meta.get("provider_message_id"), message.get("evolution_key_id")):
        s = _clean(value)
        if s:
            ids.add(s)
    return ids


def candidate_keys(message: Mapping[str, Any]) -> frozenset[tuple[str, str]]:
    """
    Keys under which ``message`` can be matched.

    ``external_id`` and provider ids share the ``link`` namespace: an
    Evolution key id may sit in ``external_id`` on one record and in
    ``evolution_key_id`` on another.
    """
    keys: set[tuple[str, str]] = set()
    mid = _clean(message.get("id"))
    if mid:
        keys.add(("id", mid))
    ext = _clean(message.get("external_id"))
    if ext:
        keys.add(("link", ext))
    for pid in provider_linked_ids(message):
        keys.add(("link", pid))
    return frozenset(keys)


def same_message(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    return bool(candidate_keys(a) & candidate_keys(b))


def find_match(entries: list[dict[str, Any]], candidate: Mapping[str, Any]) -> Optional[int]:
    """Index of the entry ``candidate`` folds into: by id, then external_id, then provider ids."""
    cid = _clean(candidate.get("id"))
    if cid:
        for i, entry in enumerate(entries):
            if _clean(entry.get("id")) == cid:
                return i

    cext = _clean(candidate.get("external_id"))
    if cext:
        for i, entry in enumerate(entries):
            if _clean(entry.get("external_id")) == cext:
                return i

    cids = provider_linked_ids(candidate)
    for i, entry in enumerate(entries):
        eids = provider_linked_ids(entry)
        eext = _clean(entry.get("external_id"))
        if cext and cext in eids:
            return i
        if eext and eext in cids:
            return i
        if cids & eids:
            return i
    return None


def merge_messages(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """
    Fold ``incoming`` onto ``existing``.

    Non-null incoming fields win, metadata is shallow-merged, and status never
    moves backwards.
    """
    merged = dict(existing)
    for key, value in incoming.items():
        if key == "metadata" or value is None:
            continue
        merged[key] = value

    old_status = existing.get("status")
    new_status = incoming.get("status")
    if old_status and new_status and old_status != new_status and not should_advance(old_status, new_status):
        merged["status"] = old_status

    old_meta = existing.get("metadata")
    new_meta = incoming.get("metadata")
    if isinstance(old_meta, Mapping) or isinstance(new_meta, Mapping):
        merged["metadata"] = {
            **(old_meta if isinstance(old_meta, Mapping) else {}),
            **(new_meta if isinstance(new_meta, Mapping) else {}),
        }
    return merged


def absorb(entries: list[dict[str, Any]], candidate: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Merge one record into ``entries`` in place, collapsing entries it links together."""
    idx = find_match(entries, candidate)
    if idx is None:
        entries.append(dict(candidate))
        return entries

    merged = merge_messages(entries[idx], candidate)
    entries[idx] = merged
    while True:
        other = next(
            (j for j, entry in enumerate(entries) if j != idx and same_message(entry, merged)),
            None,
        )
        if other is None:
            break
        merged = merge_messages(entries[other], merged)
        entries[idx] = merged
        del entries[other]
        if other < idx:
            idx -= 1
    return entries


def created_at_key(message: Mapping[str, Any]) -> datetime:
    raw = message.get("created_at")
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = _clean(raw)
        if not text:
            return _FAR_FUTURE
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return _FAR_FUTURE
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def sort_key(message: Mapping[str, Any]) -> tuple[datetime, str]:
    return created_at_key(message), str(message.get("id") or message.get("external_id") or "")


def dedupe_and_sort(
    incoming: Iterable[Mapping[str, Any]],
    existing: Iterable[Mapping[str, Any]] = (),
) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = [dict(e) for e in existing]
    for candidate in incoming:
        absorb(entries, candidate)
    entries.sort(key=sort_key)
    return entries
