from __future__ import annotations

import logging

import pytest

from tezeus_crm.whatsapp.config import load_pipeline_config
from tezeus_crm.whatsapp.errors import ConfigError, ProviderNotFoundError
from tezeus_crm.whatsapp.observability import LogContext, Observability
from tezeus_crm.whatsapp.providers import EvolutionConfig, ZapiConfig
from tezeus_crm.whatsapp.providers.base import ProviderContext
from tezeus_crm.whatsapp.providers.evolution import EvolutionRelayProvider
from tezeus_crm.whatsapp.providers.registry import PluginSpec, ProviderRegistry
from tezeus_crm.whatsapp.providers.zapi import ZapiRelayProvider


def _ctx() -> ProviderContext:
    return ProviderContext(obs=Observability(logging.getLogger("test")), log_ctx=LogContext(provider="test"))


def _registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(EvolutionRelayProvider())
    registry.register(ZapiRelayProvider())
    return registry


def test_container_registers_both_relay_providers(container) -> None:
    assert set(container.registry.list_provider_ids()) == {"evolution", "zapi"}
    assert container.registry.get("evolution").capabilities().supported_versions == ("v2",)


def test_unknown_provider_raises() -> None:
    with pytest.raises(ProviderNotFoundError) as exc:
        _registry().get("wuzapi")
    assert exc.value.http_status == 424


def test_provider_row_without_provider_defaults_to_evolution() -> None:
    config = _registry().config_from_provider_row({"evolution_url": "https://evo", "evolution_token": "t"})
    assert config == EvolutionConfig(server_url="https://evo", apikey="t")


def test_zapi_row_takes_instance_from_connection_metadata() -> None:
    config = _registry().config_from_provider_row(
        {"provider": "zapi", "zapi_url": "https://z", "zapi_token": "zt"},
        connection_metadata={"instanceId": "inst-1", "instanceToken": "itok"},
    )
    assert isinstance(config, ZapiConfig)
    assert config.instance_id == "inst-1"
    assert config.instance_token == "itok"
    assert config.credential_fields()["zapi_instance_id"] == "inst-1"


def test_incomplete_rows_resolve_to_none() -> None:
    registry = _registry()
    assert registry.config_from_provider_row(None) is None
    assert registry.config_from_provider_row({"provider": "zapi", "zapi_url": "https://z"}) is None
    assert registry.config_from_provider_row({"provider": "pastorini", "evolution_url": "x", "evolution_token": "y"}) is None


def test_plugin_provider_loaded_from_import_path() -> None:
    registry = ProviderRegistry()
    registry.register(EvolutionRelayProvider())
    registry.load_plugins([PluginSpec(provider_id="zapi", import_path="tezeus_crm.whatsapp.providers.zapi:ZapiRelayProvider")])
    assert registry.list_provider_ids() == ["evolution", "zapi"]


def test_plugin_with_mismatched_id_is_rejected() -> None:
    spec = PluginSpec(provider_id="evolution-b", import_path="tezeus_crm.whatsapp.providers.evolution:EvolutionRelayProvider")
    with pytest.raises(ConfigError):
        _registry().load_plugins([spec])


@pytest.mark.parametrize(
    "response,expected",
    [
        ({"key": {"id": "A"}}, "A"),
        ({"data": {"key": {"id": "B"}}}, "B"),
        ([{"data": {"key": {"id": "C"}}}], "C"),
        ({"response": {"key": {"id": "D"}}}, "D"),
        ({"ok": True}, None),
    ],
)
def test_evolution_message_id_shapes(response, expected) -> None:
    assert EvolutionRelayProvider().extract_message_id(response) == expected


def test_zapi_message_id_prefers_message_id_over_zaap_id() -> None:
    assert ZapiRelayProvider().extract_message_id({"zaapId": "z", "messageId": "m"}) == "m"
    assert ZapiRelayProvider().extract_message_id([{"id": "x"}]) == "x"


def test_evolution_upsert_unwraps_ephemeral_media() -> None:
    event = EvolutionRelayProvider().parse_webhook(
        _ctx(),
        {
            "event": "messages.upsert",
            "instance": "ws-main",
            "data": {
                "key": {"id": "K1", "remoteJid": "5511999990000@s.whatsapp.net", "fromMe": False},
                "message": {
                    "ephemeralMessage": {
                        "message": {"imageMessage": {"url": "https://mmg/x", "mimetype": "image/jpeg", "caption": "foto"}}
                    }
                },
                "messageTimestamp": "1735725600",
            },
        },
    )
    msg = event.message
    assert msg is not None
    assert msg.message_type == "image"
    assert msg.content == "foto"
    assert msg.phone == "5511999990000"
    assert msg.timestamp.startswith("2025-01-01T10:00:00")


def test_evolution_group_message_is_not_parsed() -> None:
    event = EvolutionRelayProvider().parse_webhook(
        _ctx(),
        {"event": "messages.upsert", "data": {"key": {"id": "K1", "remoteJid": "12036@g.us"}, "message": {"conversation": "x"}}},
    )
    assert event.message is None


def test_zapi_received_callback_audio() -> None:
    event = ZapiRelayProvider().parse_webhook(
        _ctx(),
        {
            "type": "ReceivedCallback",
            "messageId": "Z1",
            "phone": "5511999990000",
            "instanceId": "inst-1",
            "audio": {"audioUrl": "https://z/a.ogg", "mimeType": "audio/ogg; codecs=opus"},
        },
    )
    assert event.message.message_type == "audio"
    assert event.message.file_url == "https://z/a.ogg"
    assert event.instance == "inst-1"


# ==================== CONFIG ====================

def test_config_defaults(monkeypatch) -> None:
    for name in ("TEZEUS_PIPELINE_CONFIG_INLINE", "TEZEUS_PIPELINE_CONFIG", "TEZEUS_RELAY_TIMEOUT_S", "TEZEUS_MEDIA_BUCKET", "TEZEUS_FFMPEG_PATH"):
        monkeypatch.delenv(name, raising=False)

    cfg = load_pipeline_config()

    assert cfg.relay_timeout_s == 15.0
    assert cfg.history_page_size == 30
    assert cfg.cache_ttl_s == 15.0
    assert cfg.media_bucket == "whatsapp-media"
    assert cfg.plugins == []


def test_config_inline_json_with_env_override(monkeypatch) -> None:
    monkeypatch.setenv(
        "TEZEUS_PIPELINE_CONFIG_INLINE",
        '{"relay_timeout_s": 5, "plugins": [{"provider_id": "x", "import_path": "pkg.mod:X"}]}',
    )
    monkeypatch.setenv("TEZEUS_MEDIA_BUCKET", "media-b")

    cfg = load_pipeline_config()

    assert cfg.relay_timeout_s == 5.0
    assert cfg.media_bucket == "media-b"
    assert cfg.plugins == [PluginSpec(provider_id="x", import_path="pkg.mod:X")]


def test_config_yaml_file(monkeypatch, tmp_path) -> None:
    path = tmp_path / "pipeline.yaml"
    path.write_text("history_page_size: 50\nffmpeg_path: /usr/bin/ffmpeg\n", encoding="utf-8")
    monkeypatch.delenv("TEZEUS_PIPELINE_CONFIG_INLINE", raising=False)
    monkeypatch.delenv("TEZEUS_FFMPEG_PATH", raising=False)
    monkeypatch.setenv("TEZEUS_PIPELINE_CONFIG", str(path))

    cfg = load_pipeline_config()

    assert cfg.history_page_size == 50
    assert cfg.ffmpeg_path == "/usr/bin/ffmpeg"


def test_config_rejects_bad_timeout(monkeypatch) -> None:
    monkeypatch.delenv("TEZEUS_PIPELINE_CONFIG_INLINE", raising=False)
    monkeypatch.delenv("TEZEUS_PIPELINE_CONFIG", raising=False)
    monkeypatch.setenv("TEZEUS_RELAY_TIMEOUT_S", "-1")

    with pytest.raises(ConfigError):
        load_pipeline_config()
