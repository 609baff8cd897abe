from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DetectedMedia:
    kind: str
    mime_type: str
    confidence: str


CANONICAL_AUDIO_MIME = "audio/mpeg"

_EXT_TO_MIME = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".3gp": "video/3gpp",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".opus": "audio/ogg",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".json": "application/json",
    ".xml": "application/xml",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".zip": "application/zip",
}

# storage only accepts the canonical spelling
_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "audio/mp3": "audio/mpeg",
    "audio/x-mp3": "audio/mpeg",
    "audio/opus": "audio/ogg",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/m4a": "audio/mp4",
    "audio/x-m4a": "audio/mp4",
}

_MIME_TO_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/3gpp": "3gp",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "application/json": "json",
    "application/xml": "xml",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/zip": "zip",
}


def _safe_lower(s: Optional[str]) -> str:
    return (s or "").strip().lower()


def normalize_mime_type(mime_type: Optional[str]) -> str:
    """Drop parameters (``; codecs=opus``) and fold aliases; empty input yields octet-stream."""
    mt = _safe_lower(mime_type).split(";")[0].strip()
    if not mt or "/" not in mt:
        return "application/octet-stream"
    return _MIME_ALIASES.get(mt, mt)


def extension_for_mime(mime_type: Optional[str]) -> str:
    return _MIME_TO_EXT.get(normalize_mime_type(mime_type), "bin")


def _guess_mime_from_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    name = filename.strip().lower()
    dot = name.rfind(".")
    if dot < 0:
        return ""
    ext = name[dot:]
    return _EXT_TO_MIME.get(ext, "")


def _sniff_mime_from_bytes(head: bytes) -> str:
    if not head:
        return ""

    if head.startswith(b"\xFF\xD8\xFF"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"GIF87a") or head.startswith(b"GIF89a"):
        return "image/gif"
    if head.startswith(b"%PDF"):
        return "application/pdf"
    if head.startswith(b"ID3") or head[:2] in (b"\xFF\xFB", b"\xFF\xF3", b"\xFF\xF2"):
        return "audio/mpeg"
    if len(head) >= 12 and head[0:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "audio/wav"
    if len(head) >= 12 and head[0:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(b"OggS"):
        return "audio/ogg"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    if len(head) >= 12 and head[4:8] == b"ftyp":
        if head[8:12] in (b"M4A ", b"M4B "):
            return "audio/mp4"
        return "video/mp4"
    if head.startswith(b"PK\x03\x04"):
        return "application/zip"

    return ""


def _kind_from_mime(mime_type: str) -> str:
    mt = _safe_lower(mime_type)
    if not mt:
        return "unknown"
    if mt.startswith("image/"):
        return "image"
    if mt.startswith("audio/") or "opus" in mt:
        return "audio"
    if mt.startswith("video/"):
        return "video"
    return "document"


def detect_media_kind(
    *,
    declared_mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    head_bytes: Optional[bytes] = None,
    hinted_kind: Optional[str] = None,
) -> DetectedMedia:
    """
    Decide kind and MIME type of a media payload.

    Magic bytes win over the declared type, which wins over the file
    extension. A ``hinted_kind`` (``audio`` for a voice note whose bytes
    sniff as WebM, say) pins the kind but not the MIME type.
    """
    sniffed = _sniff_mime_from_bytes(head_bytes or b"")
    declared = normalize_mime_type(declared_mime_type) if declared_mime_type else ""
    if declared == "application/octet-stream":
        declared = ""
    ext_mime = _guess_mime_from_extension(filename)

    hinted = _safe_lower(hinted_kind)
    if hinted in {"image", "audio", "video", "document"}:
        mime = sniffed or declared or ext_mime or "application/octet-stream"
        if hinted == "audio" and mime == "video/webm":
            mime = "audio/webm"
        return DetectedMedia(kind=hinted, mime_type=mime, confidence="high")

    if sniffed:
        return DetectedMedia(kind=_kind_from_mime(sniffed), mime_type=sniffed, confidence="high")

    if declared:
        return DetectedMedia(kind=_kind_from_mime(declared), mime_type=declared, confidence="medium")

    if ext_mime:
        return DetectedMedia(kind=_kind_from_mime(ext_mime), mime_type=ext_mime, confidence="low")

    return DetectedMedia(kind="unknown", mime_type="application/octet-stream", confidence="low")
