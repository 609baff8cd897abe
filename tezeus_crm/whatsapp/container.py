from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

from ..supabase_client import supabase
from .adapter import ProviderAdapter
from .config import PipelineConfig, load_pipeline_config
from .http import RelayClient, RelayClientConfig
from .media import FfmpegTranscoder, MediaStorage
from .observability import Observability
from .providers.evolution import EvolutionRelayProvider
from .providers.registry import ProviderRegistry
from .providers.zapi import ZapiRelayProvider
from .reconciler import InboundReconciler
from .resolver import ProviderConfigResolver
from .send_pipeline import SendPipeline
from .store import MessageStore


@lru_cache(maxsize=1)
def get_pipeline_container() -> "PipelineContainer":
    return PipelineContainer.build()


class PipelineContainer:
    def __init__(
        self,
        *,
        config: PipelineConfig,
        registry: ProviderRegistry,
        obs: Observability,
        store: MessageStore,
        pipeline: SendPipeline,
        reconciler: InboundReconciler,
    ):
        self.config = config
        self.registry = registry
        self.obs = obs
        self.store = store
        self.pipeline = pipeline
        self.reconciler = reconciler

    @staticmethod
    def build(
        *,
        client: Any = None,
        config: Optional[PipelineConfig] = None,
        relay: Optional[RelayClient] = None,
        transcoder: Any = None,
    ) -> "PipelineContainer":
        logger = logging.getLogger("tezeus.pipeline")
        obs = Observability(logger)
        cfg = config or load_pipeline_config()
        db = client if client is not None else supabase

        registry = ProviderRegistry()
        registry.register(EvolutionRelayProvider())
        registry.register(ZapiRelayProvider())
        if cfg.plugins:
            registry.load_plugins(cfg.plugins)

        store = MessageStore(db)
        resolver = ProviderConfigResolver(store=store, registry=registry, obs=obs)
        adapter = ProviderAdapter(
            store=store,
            registry=registry,
            resolver=resolver,
            relay=relay or RelayClient(config=RelayClientConfig(timeout_s=cfg.relay_timeout_s)),
            obs=obs,
        )
        pipeline = SendPipeline(store=store, adapter=adapter, obs=obs)
        reconciler = InboundReconciler(
            store=store,
            registry=registry,
            storage=MediaStorage(db, bucket=cfg.media_bucket),
            transcoder=transcoder or FfmpegTranscoder(cfg.ffmpeg_path),
            obs=obs,
            download_timeout_s=cfg.media_download_timeout_s,
        )
        return PipelineContainer(
            config=cfg,
            registry=registry,
            obs=obs,
            store=store,
            pipeline=pipeline,
            reconciler=reconciler,
        )
