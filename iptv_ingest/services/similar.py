"""
Similar Titles Enricher

Stores TMDB "similar" results that exist in the local catalog as
``similar = [title_key, ...]`` on canonical titles.

Only titles that were never processed are selected: ``similar`` absent and
``createdAt == lastUpdated``. An empty list means "processed, nothing
local matched" and is never retried.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..config import Settings
from ..core.exceptions import FetchError
from ..core.logging import get_logger
from ..models.titles import title_key
from .progress import PeriodicSaver, ProgressRegistry
from .store import TITLES, DocumentStore, UpdateOne
from .tmdb import TMDBClient

logger = get_logger(__name__)


class SimilarTitlesEnricher:
    def __init__(
        self,
        store: DocumentStore,
        tmdb: TMDBClient,
        settings: Settings,
        progress: Optional[ProgressRegistry] = None,
    ):
        self.titles = store.collection(TITLES)
        self.tmdb = tmdb
        self.max_pages = settings.similar_max_pages
        self.max_failures = settings.similar_max_consecutive_failures
        self.save_interval = settings.save_interval_seconds
        self.progress = progress or ProgressRegistry()

    @staticmethod
    def needs_enrichment(doc: Dict[str, Any]) -> bool:
        return "similar" not in doc and doc.get("createdAt") == doc.get("lastUpdated")

    async def fetch_similar_ids(self, media_type: str, tmdb_id: int) -> List[int]:
        """
        Walk similar pages 1..max_pages.

        Stops at total_pages, or after ``max_failures`` consecutive page
        failures. Raises the last error if no page could be fetched at all.
        """
        ids: List[int] = []
        failures = 0
        fetched_any = False
        last_error: Optional[Exception] = None
        page = 1
        while page <= self.max_pages:
            try:
                body = await self.tmdb.similar(media_type, tmdb_id, page)
            except FetchError as e:
                failures += 1
                last_error = e
                logger.debug("similar_page_failed", type=media_type, tmdb_id=tmdb_id, page=page, error=str(e))
                if failures >= self.max_failures:
                    logger.warning("similar_pages_aborted", type=media_type, tmdb_id=tmdb_id, failures=failures)
                    break
                page += 1
                continue

            failures = 0
            fetched_any = True
            ids.extend(r["id"] for r in body.get("results") or [] if r.get("id") is not None)
            if page >= int(body.get("total_pages") or 1):
                break
            page += 1

        if not fetched_any and last_error is not None:
            raise last_error
        return ids

    async def enrich(self) -> Dict[str, int]:
        """Returns {processed, skipped, with_matches, failed}."""
        docs = await self.titles.find(None)
        available: Set[str] = {d["title_key"] for d in docs if d.get("title_key")}
        selected = [d for d in docs if self.needs_enrichment(d)]
        stats = {
            "processed": 0,
            "skipped": len(docs) - len(selected),
            "with_matches": 0,
            "failed": 0,
        }
        pruned = await self._prune_dangling(docs, available)
        if pruned:
            logger.info("similar_references_pruned", titles=pruned)
        if not selected:
            logger.info("similar_nothing_to_enrich", skipped=stats["skipped"])
            return stats

        logger.info("similar_enrichment_started", titles=len(selected), skipped=stats["skipped"])
        progress_key = "similar_titles"
        self.progress.register(progress_key, len(selected))
        batch_size = max(1, self.tmdb.concurrency)
        try:
            async with PeriodicSaver(self._save, self.save_interval, name="similar") as saver:
                for start in range(0, len(selected), batch_size):
                    batch = selected[start:start + batch_size]
                    results = await asyncio.gather(*(self._similar_for(d, available) for d in batch))
                    now = datetime.now(timezone.utc)
                    for doc, similar in zip(batch, results):
                        stats["processed"] += 1
                        if similar is None:
                            stats["failed"] += 1
                            similar = []
                        elif similar:
                            stats["with_matches"] += 1
                        saver.add({"_id": doc["_id"], "similar": similar, "lastUpdated": now})
                    self.progress.advance(progress_key, len(batch))
        finally:
            self.progress.unregister(progress_key)

        logger.info("similar_enrichment_completed", **stats)
        return stats

    async def _similar_for(self, doc: Dict[str, Any], available: Set[str]) -> Optional[List[str]]:
        media_type = doc["type"]
        try:
            ids = await self.fetch_similar_ids(media_type, doc["canonical_id"])
        except FetchError as e:
            logger.error("similar_enrichment_failed", title_key=doc["title_key"], error=str(e))
            return None
        keys: List[str] = []
        for tmdb_id in ids:
            key = title_key(media_type, tmdb_id)
            if key in available and key != doc["title_key"] and key not in keys:
                keys.append(key)
        return keys

    async def _save(self, updates: List[Dict[str, Any]]):
        await self.titles.bulk_write([
            UpdateOne(u["_id"], {"similar": u["similar"], "lastUpdated": u["lastUpdated"]}) for u in updates
        ])

    async def _prune_dangling(self, docs: List[Dict[str, Any]], available: Set[str]) -> int:
        """Drop similar references to titles that no longer exist."""
        ops = []
        for doc in docs:
            similar = doc.get("similar")
            if not similar:
                continue
            kept = [k for k in similar if k in available]
            if len(kept) != len(similar):
                ops.append(UpdateOne(doc["_id"], {"similar": kept}))
        if ops:
            await self.titles.bulk_write(ops)
        return len(ops)
