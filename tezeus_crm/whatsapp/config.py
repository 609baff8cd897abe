from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from typing import Protocol

    class YAMLValidationError(Exception):
        pass

    class _YamlDoc(Protocol):
        data: Any

    def load_yaml(_text: str) -> _YamlDoc:
        raise NotImplementedError
else:
    from strictyaml import YAMLValidationError, load as load_yaml

from .errors import ConfigError
from .providers.registry import PluginSpec


@dataclass(frozen=True)
class PipelineConfig:
    relay_timeout_s: float = 15.0
    history_page_size: int = 30
    history_max_page_size: int = 100
    cache_ttl_s: float = 15.0
    cache_sweep_multiplier: int = 3
    cache_sweep_interval_s: float = 30.0
    media_bucket: str = "whatsapp-media"
    media_download_timeout_s: float = 30.0
    ffmpeg_path: str = "ffmpeg"
    plugins: list[PluginSpec] = field(default_factory=list)


def load_pipeline_config() -> PipelineConfig:
    inline = (os.getenv("TEZEUS_PIPELINE_CONFIG_INLINE") or "").strip()
    path = (os.getenv("TEZEUS_PIPELINE_CONFIG") or "").strip()

    if inline:
        data = _parse_text(inline)
    elif path:
        data = _parse_file(path)
    else:
        data = {}

    defaults = PipelineConfig()
    return PipelineConfig(
        relay_timeout_s=_env_float("TEZEUS_RELAY_TIMEOUT_S", data.get("relay_timeout_s"), defaults.relay_timeout_s),
        history_page_size=_as_int(data.get("history_page_size"), defaults.history_page_size),
        history_max_page_size=_as_int(data.get("history_max_page_size"), defaults.history_max_page_size),
        cache_ttl_s=_as_float(data.get("cache_ttl_s"), defaults.cache_ttl_s),
        cache_sweep_multiplier=_as_int(data.get("cache_sweep_multiplier"), defaults.cache_sweep_multiplier),
        cache_sweep_interval_s=_as_float(data.get("cache_sweep_interval_s"), defaults.cache_sweep_interval_s),
        media_bucket=(os.getenv("TEZEUS_MEDIA_BUCKET") or "").strip() or str(data.get("media_bucket") or defaults.media_bucket),
        media_download_timeout_s=_as_float(data.get("media_download_timeout_s"), defaults.media_download_timeout_s),
        ffmpeg_path=(os.getenv("TEZEUS_FFMPEG_PATH") or "").strip() or str(data.get("ffmpeg_path") or defaults.ffmpeg_path),
        plugins=_parse_plugins(data),
    )


def _env_float(name: str, raw: Any, default: float) -> float:
    env = (os.getenv(name) or "").strip()
    if env:
        return _as_float(env, default, source=name)
    return _as_float(raw, default)


def _as_float(raw: Any, default: float, source: str = "config") -> float:
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError("Numeric setting is invalid.", details={"source": source, "value": str(raw)})
    if value <= 0:
        raise ConfigError("Numeric setting must be positive.", details={"source": source, "value": str(raw)})
    return value


def _as_int(raw: Any, default: int) -> int:
    return int(_as_float(raw, float(default)))


def _parse_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except Exception as e:
        raise ConfigError("Could not read configuration file.", details={"path": path, "error": str(e)})
    return _parse_text(text, source=path)


def _parse_text(text: str, source: str = "inline") -> dict[str, Any]:
    raw = (text or "").lstrip()
    if not raw:
        return {}
    if raw.startswith("{") or raw.startswith("["):
        try:
            data = json.loads(raw)
        except Exception as e:
            raise ConfigError("Invalid JSON configuration.", details={"source": source, "error": str(e)})
        if isinstance(data, dict):
            return data
        return {"plugins": data}
    try:
        y = load_yaml(raw)
        data = y.data
    except YAMLValidationError as e:
        raise ConfigError("Invalid YAML configuration.", details={"source": source, "error": str(e)})
    if isinstance(data, dict):
        return data
    return {"plugins": data}


def _parse_plugins(data: dict[str, Any]) -> list[PluginSpec]:
    raw_plugins = data.get("plugins") or data.get("providers") or []
    if isinstance(raw_plugins, dict):
        raw_plugins = [{"provider_id": k, **(v or {})} for k, v in raw_plugins.items()]
    if not isinstance(raw_plugins, list):
        raise ConfigError("plugins/providers must be a list or a mapping.", details={"type": str(type(raw_plugins))})

    specs: list[PluginSpec] = []
    for item in raw_plugins:
        if not isinstance(item, dict):
            continue
        provider_id = str(item.get("provider_id") or item.get("id") or "").strip()
        import_path = str(item.get("import_path") or item.get("adapter") or "").strip()
        if provider_id and import_path:
            specs.append(PluginSpec(provider_id=provider_id, import_path=import_path))
    return specs
