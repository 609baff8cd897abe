from __future__ import annotations

import base64

import pytest

from tezeus_crm.models import MediaCallback, RelayStatusCallback, SendMessageBody
from tezeus_crm.whatsapp.errors import NotFoundError, ValidationError

from .conftest import EVOLUTION_PROVIDER, WORKSPACE_ID, ZAPI_PROVIDER, seed_workspace

OGG_BYTES = b"OggS\x00\x02" + b"\x00" * 40


def _evolution_upsert(key_id: str, *, from_me: bool, phone: str = "5511999990000", text: str = "Olá") -> dict:
    return {
        "event": "messages.upsert",
        "instance": "ws-main",
        "data": {
            "key": {"id": key_id, "remoteJid": f"{phone}@s.whatsapp.net", "fromMe": from_me},
            "pushName": "Maria",
            "message": {"conversation": text},
            "messageTimestamp": 1735725600,
        },
    }


def _evolution_ack(key_id: str, status) -> dict:
    return {"event": "MESSAGES_UPDATE", "instance": "ws-main", "data": {"keyId": key_id, "status": status}}


async def _sent_row(db, relay, container, *, provider=EVOLUTION_PROVIDER, response=None, client_message_id="cm-1") -> dict:
    seeded = seed_workspace(db, provider=provider)
    relay.response = response if response is not None else {"key": {"id": "EVOKEY1"}}
    body = SendMessageBody(conversation_id=seeded["conversation"]["id"], content="Olá", clientMessageId=client_message_id)
    await container.pipeline.send(body)
    return db.rows("messages")[0]


# ==================== STATUS ====================

@pytest.mark.anyio
async def test_status_is_monotonic_across_out_of_order_acks(db, relay, container) -> None:
    row = await _sent_row(db, relay, container)

    read = await container.reconciler.handle_webhook("evolution", _evolution_ack("EVOKEY1", "READ"))
    late = await container.reconciler.handle_webhook("evolution", _evolution_ack("EVOKEY1", 3))

    assert read.action == "updated" and read.status == "read"
    assert late.action == "skipped" and late.matched
    assert row["status"] == "read"
    assert row["read_at"]
    assert row["evolution_key_id"] == "EVOKEY1"


@pytest.mark.anyio
async def test_zapi_status_callback_matches_linked_provider_id(db, relay, container) -> None:
    row = await _sent_row(db, relay, container, provider=ZAPI_PROVIDER, response={"messageId": "zp123"})

    outcome = await container.reconciler.handle_webhook(
        "zapi",
        {"type": "MessageStatusCallback", "status": "RECEIVED", "ids": ["zp123"], "instanceId": "inst-1"},
    )

    assert outcome.as_dict()["matched"] is True
    assert row["status"] == "delivered"
    assert row["delivered_at"]


@pytest.mark.anyio
async def test_failed_only_from_sending_or_sent(db, relay, container) -> None:
    row = await _sent_row(db, relay, container)
    await container.reconciler.handle_webhook("evolution", _evolution_ack("EVOKEY1", "DELIVERY_ACK"))

    outcome = await container.reconciler.handle_webhook("evolution", _evolution_ack("EVOKEY1", "ERROR"))

    assert outcome.action == "skipped"
    assert row["status"] == "delivered"


@pytest.mark.anyio
async def test_relay_status_by_row_id(db, relay, container) -> None:
    row = await _sent_row(db, relay, container)

    outcome = await container.reconciler.apply_relay_status(RelayStatusCallback(messageId=row["id"], status="delivered"))

    assert outcome.action == "updated"
    assert row["status"] == "delivered"


@pytest.mark.anyio
async def test_unmatched_status_is_counted_and_dropped(db, container) -> None:
    outcome = await container.reconciler.handle_webhook("evolution", _evolution_ack("NOPE", "READ"))

    assert outcome.action == "unmatched"
    assert outcome.matched is False
    assert container.obs.counters()["reconcile.unmatched"] == 1
    assert db.rows("messages") == []


# ==================== NEW MESSAGES ====================

@pytest.mark.anyio
async def test_echo_of_sent_message_merges_instead_of_inserting(db, relay, container) -> None:
    row = await _sent_row(db, relay, container)

    outcome = await container.reconciler.handle_webhook("evolution", _evolution_upsert("EVOKEY1", from_me=True))

    assert outcome.action == "merged"
    assert outcome.message_id == row["id"]
    assert len(db.rows("messages")) == 1


@pytest.mark.anyio
async def test_zapi_echo_merges_on_linked_id(db, relay, container) -> None:
    row = await _sent_row(db, relay, container, provider=ZAPI_PROVIDER, response={"messageId": "zp123"})
    db.rows("connections")[0]["metadata"] = {"instanceId": "inst-1"}

    outcome = await container.reconciler.handle_webhook(
        "zapi",
        {"type": "ReceivedCallback", "messageId": "zp123", "phone": "5511999990000", "fromMe": True, "instanceId": "inst-1",
         "text": {"message": "Olá"}},
    )

    assert outcome.action == "merged"
    assert outcome.message_id == row["id"]
    assert len(db.rows("messages")) == 1


@pytest.mark.anyio
async def test_echo_ahead_of_relay_reply_links_presaved_row(db, relay, container) -> None:
    seeded = seed_workspace(db, provider=EVOLUTION_PROVIDER)
    relay.response = {"key": {"id": "EVOKEY1"}}
    echoes = []

    async def echo_first():
        echoes.append(await container.reconciler.handle_webhook("evolution", _evolution_upsert("EVOKEY1", from_me=True)))

    relay.before_response = echo_first
    result = await container.pipeline.send(
        SendMessageBody(conversation_id=seeded["conversation"]["id"], content="Olá", clientMessageId="cm-1")
    )

    assert echoes[0].action == "merged"
    (row,) = db.rows("messages")
    assert echoes[0].message_id == row["id"] == result["message"]["id"]
    assert row["external_id"] == "EVOKEY1"
    assert row["evolution_key_id"] == "EVOKEY1"
    assert row["sender_type"] == "agent"
    assert row["status"] == "sent"


@pytest.mark.anyio
async def test_outbound_echo_without_pending_row_is_not_inserted(db, container) -> None:
    seed_workspace(db, provider=EVOLUTION_PROVIDER)

    outcome = await container.reconciler.handle_webhook("evolution", _evolution_upsert("PHONE-1", from_me=True))

    assert outcome.action == "unmatched"
    assert db.rows("messages") == []
    assert container.obs.counters()["reconcile.unmatched"] == 1


@pytest.mark.anyio
async def test_inbound_from_new_contact_creates_contact_and_conversation(db, container) -> None:
    seed_workspace(db, provider=EVOLUTION_PROVIDER)

    outcome = await container.reconciler.handle_webhook(
        "evolution", _evolution_upsert("IN-1", from_me=False, phone="5511888887777", text="oi")
    )

    assert outcome.action == "inserted"
    (message,) = db.rows("messages")
    assert message["external_id"] == "IN-1"
    assert message["status"] == "delivered"
    assert message["sender_type"] == "contact"
    assert message["workspace_id"] == WORKSPACE_ID
    assert {c["phone"] for c in db.rows("contacts")} == {"5511999990000", "5511888887777"}
    assert len(db.rows("conversations")) == 2


@pytest.mark.anyio
async def test_replayed_inbound_webhook_is_idempotent(db, container) -> None:
    seed_workspace(db, provider=EVOLUTION_PROVIDER)
    payload = _evolution_upsert("IN-1", from_me=False, text="oi")

    first = await container.reconciler.handle_webhook("evolution", payload)
    second = await container.reconciler.handle_webhook("evolution", payload)

    assert first.action == "inserted"
    assert second.action == "merged"
    assert len(db.rows("messages")) == 1


@pytest.mark.anyio
async def test_inbound_for_unknown_instance_is_unmatched(db, container) -> None:
    payload = _evolution_upsert("IN-1", from_me=False)
    payload["instance"] = "nobody"

    outcome = await container.reconciler.handle_webhook("evolution", payload)

    assert outcome.action == "unmatched"
    assert db.rows("messages") == []


@pytest.mark.anyio
async def test_irrelevant_event_is_ignored(container) -> None:
    outcome = await container.reconciler.handle_webhook("evolution", {"event": "connection.update", "data": {}})
    assert outcome.action == "ignored"


# ==================== MEDIA ====================

def _audio_row(db) -> dict:
    seeded = seed_workspace(db, provider=EVOLUTION_PROVIDER)
    (row,) = db.seed(
        "messages",
        {
            "conversation_id": seeded["conversation"]["id"],
            "workspace_id": WORKSPACE_ID,
            "message_type": "audio",
            "status": "delivered",
            "external_id": "AUD-1",
            "metadata": {"provider": "evolution"},
        },
    )
    return row


@pytest.mark.anyio
async def test_voice_note_is_transcoded_to_mp3_and_stored(db, container, transcoder) -> None:
    row = _audio_row(db)

    result = await container.reconciler.process_media(
        MediaCallback(messageId=row["id"], base64=base64.b64encode(OGG_BYTES).decode(), fileName="voice.ogg")
    )

    assert result["success"] is True
    assert result["mimeType"] == "audio/mpeg"
    assert result["fileName"].endswith("_voice.mp3")
    assert result["fileSize"] == len(transcoder.output)
    assert transcoder.calls == ["audio/ogg"]

    bucket, path, content, options = db.storage.uploads[0]
    assert bucket == "whatsapp-media"
    assert path == f"messages/{result['fileName']}"
    assert content == transcoder.output
    assert options["content-type"] == "audio/mpeg"

    stored = db.rows("messages")[0]
    assert stored["file_url"] == result["fileUrl"]
    assert stored["mime_type"] == "audio/mpeg"
    assert stored["status"] == "delivered"
    assert stored["metadata"]["provider"] == "evolution"
    assert stored["metadata"]["audio_conversion"]["to"] == "audio/mpeg"
    assert stored["metadata"]["original_file_name"] == "voice.ogg"


@pytest.mark.anyio
async def test_failed_transcode_keeps_original_audio(db, container, transcoder) -> None:
    row = _audio_row(db)
    transcoder.error = RuntimeError("ffmpeg not found: ffmpeg")

    result = await container.reconciler.process_media(
        MediaCallback(messageId="AUD-1", base64=base64.b64encode(OGG_BYTES).decode())
    )

    assert result["mimeType"] == "audio/ogg"
    assert result["fileSize"] == len(OGG_BYTES)
    stored = db.rows("messages")[0]
    assert stored["id"] == row["id"]
    assert stored["metadata"]["audio_conversion"]["error"] == "ffmpeg not found: ffmpeg"


@pytest.mark.anyio
async def test_mp3_is_stored_without_transcoding(db, container, transcoder) -> None:
    row = _audio_row(db)
    mp3 = b"ID3\x03\x00" + b"\x00" * 20

    result = await container.reconciler.process_media(
        MediaCallback(messageId=row["id"], base64="data:audio/mpeg;base64," + base64.b64encode(mp3).decode())
    )

    assert result["mimeType"] == "audio/mpeg"
    assert transcoder.calls == []


@pytest.mark.anyio
async def test_media_for_missing_message_is_404(container) -> None:
    with pytest.raises(NotFoundError) as exc:
        await container.reconciler.process_media(MediaCallback(messageId="missing", base64="AAAA"))
    assert exc.value.http_status == 404


@pytest.mark.anyio
async def test_media_without_source_is_400(db, container) -> None:
    row = _audio_row(db)
    with pytest.raises(ValidationError) as exc:
        await container.reconciler.process_media(MediaCallback(messageId=row["id"]))
    assert exc.value.http_status == 400
