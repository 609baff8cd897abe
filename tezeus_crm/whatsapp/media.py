from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from ..media_detection import CANONICAL_AUDIO_MIME
from .errors import PersistenceFailed, ValidationError

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class MediaPayload:
    content: bytes
    declared_mime_type: Optional[str] = None


def decode_base64_media(raw: str) -> MediaPayload:
    """Decode plain or ``data:<mime>;base64,`` payloads."""
    text = (raw or "").strip()
    declared = None
    match = _DATA_URL_RE.match(text)
    if match:
        declared = match.group("mime")
        text = text[match.end():]
    text = "".join(text.split())
    try:
        content = base64.b64decode(text + "=" * (-len(text) % 4), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid base64 media.", details={"error": str(e)})
    if not content:
        raise ValidationError("Empty media payload.")
    return MediaPayload(content=content, declared_mime_type=declared)


async def download_media(url: str, *, timeout_s: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> MediaPayload:
    try:
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport) as client:
            resp = await client.get(url)
    except httpx.HTTPError as e:
        raise ValidationError("Could not download media.", details={"url": url, "error": str(e)})
    if resp.status_code >= 400:
        raise ValidationError("Could not download media.", details={"url": url, "status_code": resp.status_code})
    return MediaPayload(content=resp.content, declared_mime_type=resp.headers.get("content-type"))


class AudioTranscoder(Protocol):
    async def to_mp3(self, content: bytes, *, source_mime: str) -> bytes:
        raise NotImplementedError


class FfmpegTranscoder:
    """Transcodes audio to MP3 through the ffmpeg binary (stdin -> stdout)."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout_s: float = 60.0):
        self._ffmpeg_path = ffmpeg_path
        self._timeout_s = timeout_s

    async def to_mp3(self, content: bytes, *, source_mime: str) -> bytes:
        binary = shutil.which(self._ffmpeg_path) or (self._ffmpeg_path if os.path.isfile(self._ffmpeg_path) else None)
        if not binary:
            raise RuntimeError(f"ffmpeg not found: {self._ffmpeg_path}")
        proc = await asyncio.create_subprocess_exec(
            binary,
            "-hide_banner",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-vn",
            "-acodec", "libmp3lame",
            "-b:a", "128k",
            "-f", "mp3",
            "pipe:1",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(content), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeError("ffmpeg timed out")
        if proc.returncode != 0 or not out:
            raise RuntimeError(f"ffmpeg failed ({proc.returncode}): {err.decode('utf-8', 'replace')[:300]}")
        logger.info(f"Audio transcoded {source_mime} -> {CANONICAL_AUDIO_MIME} ({len(content)} -> {len(out)} bytes)")
        return out


def storage_file_name(file_name: Optional[str], extension: str, *, now_ms: int) -> str:
    base = "media"
    if file_name:
        name = os.path.basename(file_name.strip())
        base = name.rsplit(".", 1)[0] if "." in name else name
        base = re.sub(r"[^\w.-]+", "_", base).strip("._") or "media"
    return f"{now_ms}_{uuid.uuid4().hex[:8]}_{base}.{extension}"


class MediaStorage:
    def __init__(self, client: Any, *, bucket: str = "whatsapp-media"):
        self._client = client
        self._bucket = bucket

    def upload(self, path: str, content: bytes, *, content_type: str) -> str:
        try:
            bucket = self._client.storage.from_(self._bucket)
            bucket.upload(path, content, file_options={"content-type": content_type, "upsert": "false"})
            return bucket.get_public_url(path)
        except Exception as e:
            raise PersistenceFailed("Media upload failed.", details={"path": path, "error": str(e)})
