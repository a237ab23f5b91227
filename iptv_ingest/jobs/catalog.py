"""
Provider Titles Monitor Job

Runs after provider title syncs (postExecute) and on its own interval:
1. drop provider data the provider settings no longer ask for
2. match pending provider titles to TMDB ids
3. pull sources of disabled/deleted providers out of canonical titles
4. reconcile canonical titles against provider titles
5. enrich never-processed titles with similar titles
"""

from typing import Any, Dict

from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..services.context import IngestionContext
from .cleanup import ProviderCleanupJob

logger = get_logger(__name__)


class CatalogMonitorJob:
    def __init__(self, ctx: IngestionContext):
        self.ctx = ctx
        self.cleanup_job = ProviderCleanupJob(ctx)

    async def run(self, params: JobParams) -> Dict[str, Any]:
        configs = await self.ctx.load_provider_configs()
        active = [c.id for c in configs if c.is_active]
        inactive = [c.id for c in configs if not c.is_active]
        logger.info("catalog_monitor_started", active=len(active), inactive=len(inactive))

        unwanted = await self.cleanup_job.cleanup(configs)
        matched = await self.ctx.matcher.match_pending(active)
        cleanup = await self.ctx.reconciler.cleanup_disabled_providers(inactive)
        reconciled = await self.ctx.reconciler.reconcile(active)
        similar = await self.ctx.similar.enrich()

        summary = {
            "unwanted": unwanted,
            "matching": matched,
            "cleanup": cleanup,
            "titles": reconciled,
            "similar": similar,
        }
        logger.info("catalog_monitor_completed", **reconciled)
        return summary
