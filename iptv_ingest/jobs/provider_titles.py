"""
Provider Titles Sync Job

Per active provider and synced media type:
1. fetch the catalog (a failure aborts only that provider/type pass)
2. filter (categories, categories switched off in provider_categories,
   cleanup rules, missing ids, operator-ignored titles)
3. process in batches of min(2 x concurrency, 100): extended info + document
4. save changed documents every SAVE_INTERVAL_SECONDS and at the end
5. delete provider titles the upstream no longer offers

Documents whose significant fields did not change are not rewritten, so a
second run over an unchanged upstream writes nothing.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..models.titles import IGNORED_BY_PROVIDER, IGNORED_EXTENDED_INFO, category_key
from ..providers.base import BaseIPTVProvider
from ..services.context import IngestionContext
from ..services.progress import PeriodicSaver
from ..services.store import PROVIDER_CATEGORIES, PROVIDER_TITLES, DeleteOne, UpsertOne

logger = get_logger(__name__)

# Changes to these fields rewrite the document
SIGNIFICANT_FIELDS = ("title", "release_date", "external_id", "category_id", "streams", "ignored", "ignored_reason")
# Changes to these invalidate the match
IDENTITY_FIELDS = ("title", "release_date", "external_id")
# Ignore reasons the pipeline owns; others (set by the reconciler) are left alone
PIPELINE_IGNORE_REASONS = (IGNORED_EXTENDED_INFO, IGNORED_BY_PROVIDER)


def _pipeline_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Significant fields as the pipeline last wrote them."""
    view = {f: doc.get(f) for f in SIGNIFICANT_FIELDS}
    if view["ignored_reason"] not in PIPELINE_IGNORE_REASONS:
        view["ignored"] = False
        view["ignored_reason"] = None
    return view


def merge_title_doc(
    new: Dict[str, Any],
    current: Optional[Dict[str, Any]],
    now: datetime,
) -> Optional[Dict[str, Any]]:
    """
    Document to write for ``new`` given the stored ``current``, or None
    when nothing significant changed.
    """
    if current is None:
        return {**new, "createdAt": now, "lastUpdated": now}
    if _pipeline_view(current) == _pipeline_view(new):
        return None

    doc = {**new, "createdAt": current.get("createdAt") or now, "lastUpdated": now}
    identity_changed = any(current.get(f) != new.get(f) for f in IDENTITY_FIELDS)
    if not identity_changed:
        doc["canonical_id"] = current.get("canonical_id")
        reason = current.get("ignored_reason")
        if current.get("ignored") and reason not in PIPELINE_IGNORE_REASONS and not new.get("ignored"):
            doc["ignored"] = True
            doc["ignored_reason"] = reason
    return doc


class ProviderTitlesSyncJob:
    """Background job syncing provider catalogs into provider_titles."""

    def __init__(self, ctx: IngestionContext):
        self.ctx = ctx
        self.provider_titles = ctx.store.collection(PROVIDER_TITLES)
        self.categories = ctx.store.collection(PROVIDER_CATEGORIES)

    async def run(self, params: JobParams) -> Dict[str, Any]:
        logger.info("provider_titles_sync_started", provider_id=params.provider_id)
        providers = await self.ctx.active_providers(params.provider_id)
        if not providers:
            logger.warning("provider_titles_sync_no_providers", provider_id=params.provider_id)

        results = []
        for provider in providers:
            for media_type in provider.config.synced_media_types():
                results.append(await self.sync_provider_type(provider, media_type))

        summary = {
            "providers_processed": len(providers),
            "passes_failed": sum(1 for r in results if not r["success"]),
            "inserted": sum(r["inserted"] for r in results),
            "updated": sum(r["updated"] for r in results),
            "removed": sum(r["removed"] for r in results),
            "results": results,
        }
        logger.info(
            "provider_titles_sync_completed",
            providers=len(providers),
            inserted=summary["inserted"],
            updated=summary["updated"],
            removed=summary["removed"],
        )
        return summary

    async def sync_provider_type(self, provider: BaseIPTVProvider, media_type: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "provider_id": provider.id,
            "type": media_type,
            "success": False,
            "fetched": 0,
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
            "ignored": 0,
            "removed": 0,
            "error": None,
        }
        try:
            candidates = await provider.fetch_catalog(media_type)
        except Exception as e:
            logger.error("provider_catalog_fetch_failed", provider_id=provider.id, media_type=media_type, error=str(e))
            stats["error"] = str(e)
            return stats

        disabled = {
            str(d.get("category_id"))
            for d in await self.categories.find({"provider_id": provider.id, "type": media_type, "enabled": False})
        }
        to_process, excluded = provider.filter_candidates(media_type, candidates, disabled)
        stats["fetched"] = len(candidates)
        existing = {
            d["_id"]: d
            for d in await self.provider_titles.find({"provider_id": provider.id, "type": media_type})
        }
        seen = set()

        def stage(saver: PeriodicSaver, doc: Dict[str, Any]):
            seen.add(doc["_id"])
            if doc["ignored"]:
                stats["ignored"] += 1
            merged = merge_title_doc(doc, existing.get(doc["_id"]), datetime.now(timezone.utc))
            if merged is None:
                stats["unchanged"] += 1
                return
            stats["updated" if doc["_id"] in existing else "inserted"] += 1
            saver.add(merged)

        progress_key = self.ctx.progress.key(provider.id, media_type)
        self.ctx.progress.register(progress_key, len(to_process))
        logger.info(
            "provider_type_sync_started",
            provider_id=provider.id,
            media_type=media_type,
            titles=len(to_process),
            excluded=len(excluded),
            batch_size=provider.batch_size,
        )
        try:
            async with PeriodicSaver(self._save, self.ctx.settings.save_interval_seconds, name=progress_key) as saver:
                for candidate in excluded:
                    stage(saver, provider.ignored_doc(media_type, candidate))

                batch_size = provider.batch_size
                for start in range(0, len(to_process), batch_size):
                    batch = to_process[start:start + batch_size]
                    docs = await asyncio.gather(*(provider.process_candidate(media_type, c) for c in batch))
                    for doc in docs:
                        stage(saver, doc)
                    self.ctx.progress.advance(progress_key, len(batch))
        finally:
            self.ctx.progress.unregister(progress_key)

        stale = [doc_id for doc_id in existing if doc_id not in seen]
        if stale:
            result = await self.provider_titles.bulk_write([DeleteOne(doc_id) for doc_id in stale])
            stats["removed"] = result.deleted

        stats["success"] = True
        logger.info("provider_type_sync_completed", **{k: v for k, v in stats.items() if k != "error"})
        return stats

    async def _save(self, docs: List[Dict[str, Any]]):
        await self.provider_titles.bulk_write([UpsertOne(d) for d in docs])


class ProviderCategoriesSyncJob:
    """
    Mirror upstream categories into provider_categories.

    Operator ``enabled`` flags survive re-syncs; new categories start
    enabled when the provider has no category filter for the type, or
    when they are in it.
    """

    def __init__(self, ctx: IngestionContext):
        self.ctx = ctx
        self.categories = ctx.store.collection(PROVIDER_CATEGORIES)

    async def run(self, params: JobParams) -> Dict[str, Any]:
        providers = await self.ctx.active_providers(params.provider_id)
        summary = {"providers_processed": len(providers), "upserted": 0, "removed": 0, "failed": 0}

        for provider in providers:
            for media_type in provider.config.synced_media_types():
                try:
                    upserted, removed = await self._sync(provider, media_type)
                except Exception as e:
                    logger.error("provider_categories_sync_failed", provider_id=provider.id, media_type=media_type, error=str(e))
                    summary["failed"] += 1
                    continue
                summary["upserted"] += upserted
                summary["removed"] += removed

        logger.info("provider_categories_sync_completed", **summary)
        return summary

    async def _sync(self, provider: BaseIPTVProvider, media_type: str):
        categories = await provider.fetch_categories(media_type)
        existing = {
            d["_id"]: d
            for d in await self.categories.find({"provider_id": provider.id, "type": media_type})
        }
        allowed = set(provider.config.enabled_categories.get(media_type) or [])
        now = datetime.now(timezone.utc)

        ops = []
        seen = set()
        for category in categories:
            category_id = str(category["category_id"])
            doc_id = category_key(provider.id, media_type, category_id)
            if doc_id in seen:
                continue
            seen.add(doc_id)
            current = existing.get(doc_id)
            if current is not None:
                enabled = current.get("enabled", True)
            else:
                enabled = not allowed or category_id in allowed
            ops.append(UpsertOne({
                "_id": doc_id,
                "provider_id": provider.id,
                "type": media_type,
                "category_id": category_id,
                "category_name": category.get("category_name"),
                "enabled": enabled,
                "createdAt": current.get("createdAt", now) if current else now,
                "lastUpdated": now,
            }))

        ops.extend(DeleteOne(doc_id) for doc_id in existing if doc_id not in seen)
        result = await self.categories.bulk_write(ops)
        return result.upserted, result.deleted
