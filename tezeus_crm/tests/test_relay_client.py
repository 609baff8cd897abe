from __future__ import annotations

import json

import httpx
import pytest

from tezeus_crm.client.history import HistoryClient
from tezeus_crm.whatsapp.errors import RelayFailed, ValidationError
from tezeus_crm.whatsapp.http import RelayClient
from tezeus_crm.whatsapp.media import download_media


def _client(handler) -> RelayClient:
    return RelayClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_posts_envelope_and_parses_json() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"key": {"id": "EVOKEY1"}})

    result = await _client(handler).post("https://relay/send", {"event": "send.message"})

    assert result == {"key": {"id": "EVOKEY1"}}
    assert seen["body"] == {"event": "send.message"}


@pytest.mark.anyio
async def test_non_2xx_raises_with_status_code() -> None:
    client = _client(lambda request: httpx.Response(503, text="down"))

    with pytest.raises(RelayFailed) as exc:
        await client.post("https://relay/send", {})

    assert exc.value.status_code == 503
    assert exc.value.http_status == 502


@pytest.mark.anyio
async def test_error_field_in_2xx_body_is_failure() -> None:
    client = _client(lambda request: httpx.Response(200, json={"success": False, "error": "instance offline"}))

    with pytest.raises(RelayFailed):
        await client.post("https://relay/send", {})


@pytest.mark.anyio
async def test_plain_text_and_empty_bodies() -> None:
    assert await _client(lambda r: httpx.Response(200, text="queued")).post("https://relay/send", {}) == {"response": "queued"}
    assert await _client(lambda r: httpx.Response(200)).post("https://relay/send", {}) == {}


@pytest.mark.anyio
async def test_timeout_is_transient_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RelayFailed) as exc:
        await _client(handler).post("https://relay/send", {})

    assert exc.value.transient is True


@pytest.mark.anyio
async def test_missing_url_fails_without_request() -> None:
    with pytest.raises(RelayFailed):
        await _client(lambda r: httpx.Response(200)).post("", {})


@pytest.mark.anyio
async def test_download_media_reports_content_type() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(200, content=b"OggS", headers={"content-type": "audio/ogg"}))

    payload = await download_media("https://cdn/a.ogg", transport=transport)

    assert payload.content == b"OggS"
    assert payload.declared_mime_type == "audio/ogg"


@pytest.mark.anyio
async def test_download_media_404_is_validation_error() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(404))

    with pytest.raises(ValidationError):
        await download_media("https://cdn/gone", transport=transport)


@pytest.mark.anyio
async def test_history_client_sends_workspace_header_and_cursor() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["workspace"] = request.headers.get("x-workspace-id")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"items": [{"id": "m1"}], "nextBefore": "t|m1"})

    client = HistoryClient("https://crm.example.com/", transport=httpx.MockTransport(handler))
    result = await client.fetch_page("ws-1", "c1", limit=30, before="t|m2")

    assert seen["url"] == "https://crm.example.com/api/messages/history"
    assert seen["workspace"] == "ws-1"
    assert seen["body"] == {"conversation_id": "c1", "limit": 30, "before": "t|m2"}
    assert result.items == [{"id": "m1"}]
    assert result.next_before == "t|m1"
