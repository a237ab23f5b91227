"""
Metadata Matcher

Resolves provider titles to TMDB ids.

Strategy A: upstream ids shaped like IMDB ids ("tt...") go through
            /find/{id}?external_source=imdb_id.
Strategy B: base title + year search, retried without the year.

Fetch errors fall through to the next strategy. Titles neither strategy
resolves keep canonical_id = None and are stamped with match_attempted_at
so they are not searched again until their upstream payload changes.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import FetchError, UpstreamShapeError
from ..core.logging import get_logger
from ..models.titles import TYPE_CONFIG, year_from_date
from .store import PROVIDER_TITLES, DocumentStore
from .tmdb import TMDBClient

logger = get_logger(__name__)

YEAR_SUFFIX_RE = re.compile(r"\s*[\(\[]\s*(\d{4})\s*[\)\]]\s*$")
WHITESPACE_RE = re.compile(r"\s+")


def split_title_year(title: Optional[str], release_date: Optional[str] = None) -> Tuple[str, Optional[int]]:
    """
    'Heat (1995)' -> ('Heat', 1995). Without a suffix the year comes from
    ``release_date``.
    """
    value = WHITESPACE_RE.sub(" ", title or "").strip()
    match = YEAR_SUFFIX_RE.search(value)
    if match:
        return value[:match.start()].strip(), int(match.group(1))
    return value, year_from_date(release_date)


class MetadataMatcher:
    def __init__(self, tmdb: TMDBClient, store: DocumentStore):
        self.tmdb = tmdb
        self.provider_titles = store.collection(PROVIDER_TITLES)

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    async def _by_external_id(self, media_type: str, external_id: str) -> Optional[int]:
        body = await self.tmdb.find_by_external_id(external_id)
        if not isinstance(body, dict):
            raise UpstreamShapeError(f"find/{external_id}: response is not an object")
        results = body.get(TYPE_CONFIG[media_type]["find_results"]) or []
        return results[0].get("id") if results else None

    async def _by_search(self, media_type: str, title: str, year: Optional[int]) -> Optional[int]:
        if not title:
            return None
        results = await self.tmdb.search(media_type, title, year)
        if not results and year:
            results = await self.tmdb.search(media_type, title)
        return results[0].get("id") if results else None

    async def match(self, media_type: str, doc: Dict[str, Any]) -> Optional[int]:
        """Canonical id for one provider title, or None."""
        external_id = doc.get("external_id")
        if isinstance(external_id, str) and external_id.startswith("tt"):
            try:
                found = await self._by_external_id(media_type, external_id)
                if found:
                    return int(found)
            except (FetchError, UpstreamShapeError) as e:
                logger.debug("match_external_id_failed", external_id=external_id, error=str(e))

        title, year = split_title_year(doc.get("title"), doc.get("release_date"))
        try:
            found = await self._by_search(media_type, title, year)
        except FetchError as e:
            logger.debug("match_search_failed", title=title, year=year, error=str(e))
            return None
        return int(found) if found else None

    # =========================================================================
    # BATCH
    # =========================================================================

    async def pending(self, provider_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Non-ignored provider titles without canonical_id that changed since their last attempt."""
        query: Dict[str, Any] = {"ignored": False, "canonical_id": None}
        if provider_ids is not None:
            query["provider_id"] = {"$in": list(provider_ids)}
        docs = await self.provider_titles.find(query)
        return [d for d in docs if d.get("match_attempted_at") is None or d.get("match_attempted_at") != d.get("lastUpdated")]

    async def match_pending(self, provider_ids: Optional[List[str]] = None) -> Dict[str, int]:
        """
        Match every pending provider title, ``tmdb.concurrency`` at a time.

        Returns {processed, matched, unmatched}.
        """
        docs = await self.pending(provider_ids)
        stats = {"processed": 0, "matched": 0, "unmatched": 0}
        if not docs:
            return stats

        logger.info("matcher_started", pending=len(docs))
        batch_size = max(1, self.tmdb.concurrency)
        for start in range(0, len(docs), batch_size):
            batch = docs[start:start + batch_size]
            outcomes = await asyncio.gather(*(self._match_and_store(d) for d in batch))
            for matched in outcomes:
                stats["processed"] += 1
                stats["matched" if matched else "unmatched"] += 1

        logger.info("matcher_completed", **stats)
        return stats

    async def _match_and_store(self, doc: Dict[str, Any]) -> bool:
        canonical_id = await self.match(doc["type"], doc)
        # Only write if the pipeline did not touch the document meanwhile
        guard = {"lastUpdated": doc.get("lastUpdated")}
        if canonical_id is None:
            await self.provider_titles.update_if(
                doc["_id"], guard, {"match_attempted_at": doc.get("lastUpdated")}
            )
            return False
        # lastUpdated moves so the reconciler sees the new (type, canonical_id) pair
        await self.provider_titles.update_if(
            doc["_id"],
            guard,
            {
                "canonical_id": canonical_id,
                "match_attempted_at": None,
                "lastUpdated": datetime.now(timezone.utc),
            },
        )
        return True
