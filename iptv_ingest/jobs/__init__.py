"""
Background jobs.

``build_job_handlers`` maps the job names used in jobs.json to their
bodies; the scheduler calls them with the dispatch's JobParams.
"""

from typing import Dict

from ..services.context import IngestionContext
from ..services.scheduler import JobHandler
from .cache_purge import CachePurgeJob
from .catalog import CatalogMonitorJob
from .cleanup import ProviderCleanupJob
from .live_tv import LiveTVSyncJob
from .provider_titles import ProviderCategoriesSyncJob, ProviderTitlesSyncJob

SYNC_PROVIDER_TITLES = "syncIPTVProviderTitles"
PROVIDER_TITLES_MONITOR = "providerTitlesMonitor"
SYNC_PROVIDER_CATEGORIES = "syncProviderCategories"
SYNC_LIVE_TV = "syncLiveTV"
PURGE_CACHE = "purgeCache"
CLEANUP_PROVIDER_DATA = "cleanupUnwantedProviderTitles"


def build_job_handlers(ctx: IngestionContext) -> Dict[str, JobHandler]:
    return {
        SYNC_PROVIDER_TITLES: ProviderTitlesSyncJob(ctx).run,
        PROVIDER_TITLES_MONITOR: CatalogMonitorJob(ctx).run,
        SYNC_PROVIDER_CATEGORIES: ProviderCategoriesSyncJob(ctx).run,
        SYNC_LIVE_TV: LiveTVSyncJob(ctx).run,
        PURGE_CACHE: CachePurgeJob(ctx.cache, ctx.settings.cache_purge_enabled).run,
        CLEANUP_PROVIDER_DATA: ProviderCleanupJob(ctx).run,
    }


__all__ = [
    "CachePurgeJob",
    "CatalogMonitorJob",
    "LiveTVSyncJob",
    "ProviderCategoriesSyncJob",
    "ProviderCleanupJob",
    "ProviderTitlesSyncJob",
    "build_job_handlers",
]
