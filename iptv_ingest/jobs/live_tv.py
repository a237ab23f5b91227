"""
Live TV Sync Job

Channels and XMLTV programs for every active provider with live sync
enabled. One provider's failure does not stop the others.
"""

from typing import Any, Dict

from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..services.context import IngestionContext

logger = get_logger(__name__)


class LiveTVSyncJob:
    def __init__(self, ctx: IngestionContext):
        self.ctx = ctx

    async def run(self, params: JobParams) -> Dict[str, Any]:
        providers = [p for p in await self.ctx.active_providers(params.provider_id) if p.config.syncs_live]
        results = []
        for provider in providers:
            logger.info("live_tv_provider_started", provider_id=provider.id)
            results.append(await self.ctx.livetv.sync_provider(provider))

        failed = [r["provider_id"] for r in results if not r["success"]]
        if failed:
            logger.warning("live_tv_providers_failed", providers=failed)
        logger.info("live_tv_sync_completed", providers=len(providers), failed=len(failed))
        return {"providers_processed": len(providers), "results": results}
