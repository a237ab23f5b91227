"""
Ingestion Context

Everything a job body needs, built once per process (or per test) and
passed explicitly into each job.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..core.logging import get_logger
from ..models.provider import ProviderConfig
from ..providers import BaseIPTVProvider, create_provider
from .disk_cache import CachePolicy, DiskCache
from .fetcher import Fetcher
from .job_history import JobHistoryService
from .livetv import LiveTVService
from .matcher import MetadataMatcher
from .progress import ProgressRegistry
from .reconciler import CatalogReconciler
from .similar import SimilarTitlesEnricher
from .store import IPTV_PROVIDERS, DocumentStore
from .tmdb import TMDBClient
from .xmltv import XMLTVParser

logger = get_logger(__name__)


@dataclass
class IngestionContext:
    settings: Settings
    store: DocumentStore
    cache: DiskCache
    fetcher: Fetcher
    tmdb: TMDBClient
    job_history: JobHistoryService
    matcher: MetadataMatcher
    reconciler: CatalogReconciler
    similar: SimilarTitlesEnricher
    livetv: LiveTVService
    progress: ProgressRegistry = field(default_factory=ProgressRegistry)

    @classmethod
    def create(
        cls,
        settings: Settings,
        store: DocumentStore,
        policy: Optional[CachePolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "IngestionContext":
        """
        Wire the services together. ``policy`` defaults to the file at
        CACHE_POLICY_PATH (raises ConfigInvalid when malformed).
        """
        if policy is None:
            policy = CachePolicy.from_file(settings.cache_policy_path)
        cache = DiskCache(settings.cache_dir, policy)
        fetcher = Fetcher(cache=cache, settings=settings, transport=transport)
        tmdb = TMDBClient(fetcher, settings)
        progress = ProgressRegistry()
        return cls(
            settings=settings,
            store=store,
            cache=cache,
            fetcher=fetcher,
            tmdb=tmdb,
            job_history=JobHistoryService(store),
            matcher=MetadataMatcher(tmdb, store),
            reconciler=CatalogReconciler(store, tmdb, settings, progress),
            similar=SimilarTitlesEnricher(store, tmdb, settings, progress),
            livetv=LiveTVService(store, XMLTVParser(settings)),
            progress=progress,
        )

    # =========================================================================
    # PROVIDERS
    # =========================================================================

    async def load_provider_configs(self) -> List[ProviderConfig]:
        """All provider documents, skipping (and logging) malformed ones."""
        configs = []
        for doc in await self.store.collection(IPTV_PROVIDERS).find(None):
            try:
                configs.append(ProviderConfig.model_validate(doc))
            except ValidationError as e:
                logger.warning("provider_config_invalid", provider_id=doc.get("_id"), error=str(e))
        return configs

    async def active_providers(self, provider_id: Optional[str] = None) -> List[BaseIPTVProvider]:
        """Enabled, non-deleted providers (optionally just one) with a known type."""
        providers = []
        for config in await self.load_provider_configs():
            if not config.is_active:
                continue
            if provider_id is not None and config.id != provider_id:
                continue
            try:
                providers.append(create_provider(config, self.fetcher, self.settings))
            except ValueError as e:
                logger.warning("provider_type_unsupported", provider_id=config.id, error=str(e))
        return providers

    async def aclose(self):
        await self.fetcher.aclose()
        await self.store.close()
