"""
Unwanted Provider Data Cleanup Job

Removes what the provider settings no longer ask for:
- disabled/deleted providers: all provider titles, categories, channels
  and programs
- active providers: provider titles and categories of media types that are
  no longer synced, channels and programs when live sync is off

Canonical titles lose the removed provider's sources; titles left without
media are deleted. Runs as the first step of the catalog monitor, and on
its own after provider settings change (postExecute re-syncs).
"""

from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..models.provider import ProviderConfig
from ..models.titles import LIVE, MEDIA_TYPES, title_key
from ..services.context import IngestionContext
from ..services.store import CHANNELS, PROGRAMS, PROVIDER_CATEGORIES, PROVIDER_TITLES

logger = get_logger(__name__)


class ProviderCleanupJob:
    def __init__(self, ctx: IngestionContext):
        self.ctx = ctx
        self.provider_titles = ctx.store.collection(PROVIDER_TITLES)
        self.categories = ctx.store.collection(PROVIDER_CATEGORIES)
        self.channels = ctx.store.collection(CHANNELS)
        self.programs = ctx.store.collection(PROGRAMS)

    async def run(self, params: JobParams) -> Dict[str, Any]:
        configs = await self.ctx.load_provider_configs()
        if params.provider_id is not None:
            configs = [c for c in configs if c.id == params.provider_id]
        return await self.cleanup(configs)

    async def cleanup(self, configs: Optional[List[ProviderConfig]] = None) -> Dict[str, Any]:
        if configs is None:
            configs = await self.ctx.load_provider_configs()

        stats = {
            "providers_processed": len(configs),
            "titles_deleted": 0,
            "titles_updated": 0,
            "empty_titles_deleted": 0,
            "categories_deleted": 0,
            "channels_deleted": 0,
            "programs_deleted": 0,
        }
        for config in configs:
            if config.is_active:
                media_types = [t for t in MEDIA_TYPES if not config.syncs(t)]
                drop_live = not config.syncs_live
            else:
                media_types = list(MEDIA_TYPES)
                drop_live = True

            if media_types:
                await self._cleanup_titles(config.id, media_types, stats)
                stats["categories_deleted"] += await self.categories.delete_many(
                    {"provider_id": config.id, "type": {"$in": media_types}}
                )
            if drop_live:
                stats["programs_deleted"] += await self.programs.delete_many({"provider_id": config.id})
                stats["channels_deleted"] += await self.channels.delete_many({"provider_id": config.id})
                stats["categories_deleted"] += await self.categories.delete_many(
                    {"provider_id": config.id, "type": LIVE}
                )

        logger.info("provider_cleanup_completed", **stats)
        return stats

    async def _cleanup_titles(self, provider_id: str, media_types: List[str], stats: Dict[str, Any]):
        docs = await self.provider_titles.find({"provider_id": provider_id, "type": {"$in": media_types}})
        if not docs:
            return

        stats["titles_deleted"] += await self.provider_titles.delete_many(
            {"provider_id": provider_id, "type": {"$in": media_types}}
        )
        matched = {title_key(d["type"], d["canonical_id"]) for d in docs if d.get("canonical_id") is not None}
        if matched:
            removed = await self.ctx.reconciler.remove_provider_sources(provider_id, matched)
            stats["titles_updated"] += removed["titles_updated"]
            stats["empty_titles_deleted"] += removed["titles_deleted"]
        logger.info(
            "provider_titles_cleaned_up",
            provider_id=provider_id,
            media_types=media_types,
            titles=len(docs),
        )
