"""
Catalog Reconciler

Turns matched provider titles into canonical titles (titles collection).

Gap detection works on two snapshots keyed by (type, canonical_id):
    M = canonical title -> lastUpdated
    P = max(lastUpdated) over non-ignored provider titles of active providers

    to_delete = M - P
    to_create = P - M
    to_update = {k in M & P : P[k] > M[k]}

Every (re)build re-reads all provider titles of the pair, so a partial
change never drops sources contributed by untouched provider titles.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..config import Settings
from ..core.exceptions import FetchError, UpstreamShapeError
from ..core.logging import get_logger
from ..models.titles import (
    IGNORED_NO_METADATA,
    MAIN_STREAM,
    MOVIES,
    TVSHOWS,
    TYPE_CONFIG,
    parse_stream_key,
    title_key,
    year_from_date,
)
from .progress import PeriodicSaver, ProgressRegistry
from .store import PROVIDER_TITLES, TITLES, DeleteOne, DocumentStore, UpdateOne, UpsertOne
from .tmdb import TMDBClient

logger = get_logger(__name__)

GapKey = Tuple[str, int]


def detect_gaps(
    canonical: Dict[GapKey, Any],
    provider: Dict[GapKey, Any],
) -> Tuple[Set[GapKey], Set[GapKey], Set[GapKey]]:
    """Return (to_create, to_update, to_delete)."""
    to_delete = set(canonical) - set(provider)
    to_create = set(provider) - set(canonical)
    to_update = set()
    for key in set(canonical) & set(provider):
        p_updated, m_updated = provider[key], canonical[key]
        if p_updated is None:
            continue
        if m_updated is None or p_updated > m_updated:
            to_update.add(key)
    return to_create, to_update, to_delete


def _path_safe(value: str) -> str:
    return value.replace("/", "-").strip()


def proxy_path(media_type: str, title: str, year: str, tmdb_id: int, season: Optional[int] = None, key: str = "") -> str:
    """
    movies:  movies/Heat (1995) [tmdb=949]/Heat (1995).strm
    tvshows: tvshows/Dark (2017) [tmdb=70523]/Season 1/Dark (2017) S01-E01.strm
    """
    name = f"{_path_safe(title)} ({year})"
    folder = f"{media_type}/{name} [tmdb={tmdb_id}]"
    if season is None:
        return f"{folder}/{name}.strm"
    return f"{folder}/Season {season}/{name} {key}.strm"


class CatalogReconciler:
    def __init__(
        self,
        store: DocumentStore,
        tmdb: TMDBClient,
        settings: Settings,
        progress: Optional[ProgressRegistry] = None,
    ):
        self.titles = store.collection(TITLES)
        self.provider_titles = store.collection(PROVIDER_TITLES)
        self.tmdb = tmdb
        self.save_interval = settings.save_interval_seconds
        self.progress = progress or ProgressRegistry()

    # =========================================================================
    # DISABLED PROVIDERS
    # =========================================================================

    async def cleanup_disabled_providers(self, provider_ids: Iterable[str]) -> Dict[str, int]:
        """
        Pull sources of disabled/deleted providers out of canonical titles,
        drop media items left without sources and titles left without media.
        """
        provider_ids = list(provider_ids)
        stats = {
            "providers_processed": len(provider_ids),
            "titles_updated": 0,
            "media_items_removed": 0,
            "titles_deleted": 0,
        }
        for provider_id in provider_ids:
            removed = await self.remove_provider_sources(provider_id)
            for key, value in removed.items():
                stats[key] += value

        logger.info("disabled_provider_cleanup_completed", **stats)
        return stats

    async def remove_provider_sources(
        self, provider_id: str, title_keys: Optional[Iterable[str]] = None
    ) -> Dict[str, int]:
        """
        Remove one provider's sources from canonical titles: every title
        it contributes to, or only ``title_keys``.
        """
        stats = {"titles_updated": 0, "media_items_removed": 0, "titles_deleted": 0}
        if title_keys is None:
            docs = await self.titles.find({"media.sources.provider_id": provider_id})
        else:
            docs = [d for d in [await self.titles.get(k) for k in sorted(set(title_keys))] if d]

        ops = []
        for doc in docs:
            media = []
            touched = False
            dropped = 0
            for item in doc.get("media") or []:
                sources = [s for s in item.get("sources") or [] if s.get("provider_id") != provider_id]
                touched = touched or len(sources) != len(item.get("sources") or [])
                if sources:
                    media.append({**item, "sources": sources})
                else:
                    dropped += 1
            if not touched:
                continue
            stats["media_items_removed"] += dropped
            if media:
                ops.append(UpdateOne(doc["_id"], {"media": media}))
                stats["titles_updated"] += 1
            else:
                ops.append(DeleteOne(doc["_id"]))
                stats["titles_deleted"] += 1

        if ops:
            await self.titles.bulk_write(ops)
            logger.info("provider_sources_removed", provider_id=provider_id, titles=len(ops))
        return stats

    # =========================================================================
    # GAP DETECTION
    # =========================================================================

    async def snapshot(self, active_provider_ids: List[str]) -> Tuple[Dict[GapKey, Any], Dict[GapKey, Any]]:
        canonical = await self.titles.group_max(None, ["type", "canonical_id"], "lastUpdated")
        provider = await self.provider_titles.group_max(
            {
                "ignored": False,
                "canonical_id": {"$ne": None},
                "provider_id": {"$in": list(active_provider_ids)},
            },
            ["type", "canonical_id"],
            "lastUpdated",
        )
        return canonical, provider

    async def reconcile(self, active_provider_ids: List[str]) -> Dict[str, int]:
        """
        One reconciliation pass over the active providers.

        Returns {created, updated, deleted, ignored, failed}.
        """
        active_provider_ids = list(active_provider_ids)
        canonical, provider = await self.snapshot(active_provider_ids)
        to_create, to_update, to_delete = detect_gaps(canonical, provider)
        logger.info(
            "reconcile_gaps",
            create=len(to_create),
            update=len(to_update),
            delete=len(to_delete),
        )

        stats = {"created": 0, "updated": 0, "deleted": 0, "ignored": 0, "failed": 0}

        if to_delete:
            result = await self.titles.bulk_write([DeleteOne(title_key(t, cid)) for t, cid in sorted(to_delete)])
            stats["deleted"] += result.deleted

        pending = sorted(to_create | to_update)
        if not pending:
            return stats

        progress_key = "titles"
        self.progress.register(progress_key, len(pending))
        batch_size = max(1, self.tmdb.concurrency)
        try:
            async with PeriodicSaver(self._save_titles, self.save_interval, name=TITLES) as saver:
                for start in range(0, len(pending), batch_size):
                    batch = pending[start:start + batch_size]
                    outcomes = await asyncio.gather(
                        *(self._build_one(media_type, cid, active_provider_ids) for media_type, cid in batch),
                        return_exceptions=True,
                    )
                    for (media_type, cid), outcome in zip(batch, outcomes):
                        if isinstance(outcome, asyncio.CancelledError):
                            raise outcome
                        if isinstance(outcome, Exception):
                            logger.error("title_build_failed", type=media_type, canonical_id=cid, error=str(outcome))
                            stats["failed"] += 1
                            continue
                        status, doc = outcome
                        if doc is not None:
                            saver.add(doc)
                            stats["created" if (media_type, cid) in to_create else "updated"] += 1
                        elif status == "ignored":
                            stats["ignored"] += 1
                        elif status == "removed":
                            stats["deleted"] += 1
                    self.progress.advance(progress_key, len(batch))
        finally:
            self.progress.unregister(progress_key)

        logger.info("reconcile_completed", **stats)
        return stats

    async def _save_titles(self, docs: List[Dict[str, Any]]):
        await self.titles.bulk_write([UpsertOne(d) for d in docs])

    # =========================================================================
    # BUILD
    # =========================================================================

    async def _build_one(
        self, media_type: str, canonical_id: int, active_provider_ids: List[str]
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Returns (status, doc) where status is "built", "ignored" (no
        metadata) or "removed" (no media left).
        """
        key = title_key(media_type, canonical_id)
        existing = await self.titles.get(key)
        pair_query = {
            "type": media_type,
            "canonical_id": canonical_id,
            "ignored": False,
            "provider_id": {"$in": active_provider_ids},
        }

        try:
            details = await self.tmdb.details(media_type, canonical_id)
            if not isinstance(details, dict) or not details.get("id"):
                raise UpstreamShapeError(f"{key}: details response has no id")
        except (FetchError, UpstreamShapeError) as e:
            logger.warning("canonical_metadata_unavailable", title_key=key, error=str(e))
            await self.provider_titles.update_many(
                pair_query, {"ignored": True, "ignored_reason": IGNORED_NO_METADATA}
            )
            if existing is not None:
                await self.titles.bulk_write([DeleteOne(key)])
            return "ignored", None

        sources = await self.provider_titles.find(pair_query)
        doc = self._base_doc(media_type, canonical_id, details)
        year = str(year_from_date(doc["release_date"]) or "")

        if media_type == MOVIES:
            media = self._movie_media(sources, doc["title"], year, canonical_id)
        else:
            media = self._episode_media(sources, doc["title"], year, canonical_id)
            if media:
                await self._enrich_episodes(canonical_id, details, media)

        if not media:
            logger.debug("title_without_media", title_key=key)
            if existing is not None:
                await self.titles.bulk_write([DeleteOne(key)])
                return "removed", None
            return "empty", None

        now = datetime.now(timezone.utc)
        doc["media"] = media
        doc["createdAt"] = existing.get("createdAt", now) if existing else now
        doc["lastUpdated"] = now
        if existing and "similar" in existing:
            doc["similar"] = existing["similar"]
        return "built", doc

    @staticmethod
    def _base_doc(media_type: str, canonical_id: int, details: Dict[str, Any]) -> Dict[str, Any]:
        config = TYPE_CONFIG[media_type]
        external_ids = details.get("external_ids") or {}
        key = title_key(media_type, canonical_id)
        doc = {
            "_id": key,
            "canonical_id": canonical_id,
            "type": media_type,
            "title_key": key,
            "title": details.get(config["title_field"]) or "",
            "release_date": details.get(config["date_field"]) or None,
            "vote_average": details.get("vote_average"),
            "vote_count": details.get("vote_count"),
            "overview": details.get("overview") or None,
            "poster_path": details.get("poster_path"),
            "backdrop_path": details.get("backdrop_path"),
            "genres": details.get("genres") or [],
            "imdb_id": external_ids.get("imdb_id") or details.get("imdb_id"),
        }
        if media_type == MOVIES:
            doc["runtime"] = details.get("runtime")
        return doc

    @staticmethod
    def _source(provider_title: Dict[str, Any], url: str) -> Dict[str, Any]:
        return {
            "provider_id": provider_title["provider_id"],
            "upstream_title_id": provider_title["title_id"],
            "provider_url": url,
        }

    def _movie_media(self, sources: List[Dict[str, Any]], title: str, year: str, tmdb_id: int) -> List[Dict[str, Any]]:
        item_sources = []
        for pt in sorted(sources, key=lambda d: (d["provider_id"], str(d["title_id"]))):
            url = (pt.get("streams") or {}).get(MAIN_STREAM)
            if url:
                item_sources.append(self._source(pt, url))
        if not item_sources:
            return []
        return [{
            "name": MAIN_STREAM,
            "proxy_path": proxy_path(MOVIES, title, year, tmdb_id),
            "sources": item_sources,
        }]

    def _episode_media(self, sources: List[Dict[str, Any]], title: str, year: str, tmdb_id: int) -> List[Dict[str, Any]]:
        items: Dict[Tuple[int, int], Dict[str, Any]] = {}
        for pt in sorted(sources, key=lambda d: (d["provider_id"], str(d["title_id"]))):
            for key, url in (pt.get("streams") or {}).items():
                parsed = parse_stream_key(key)
                if parsed is None or not url:
                    continue
                item = items.get(parsed)
                if item is None:
                    season, episode = parsed
                    item = items[parsed] = {
                        "name": key,
                        "proxy_path": proxy_path(TVSHOWS, title, year, tmdb_id, season, key),
                        "season": season,
                        "episode": episode,
                        "air_date": None,
                        "overview": None,
                        "still_path": None,
                        "sources": [],
                    }
                item["sources"].append(self._source(pt, url))
        return [items[k] for k in sorted(items)]

    async def _enrich_episodes(self, tmdb_id: int, details: Dict[str, Any], media: List[Dict[str, Any]]):
        """
        Fill episode name/air_date/overview/still from season bodies.

        Seasons missing from TMDB's season list are skipped; a cached season
        is reused when it already has every required episode.
        """
        required: Dict[int, Set[int]] = {}
        for item in media:
            required.setdefault(item["season"], set()).add(item["episode"])

        known = {s.get("season_number") for s in details.get("seasons") or [] if s.get("season_number") is not None}
        episodes: Dict[Tuple[int, int], Dict[str, Any]] = {}

        for season, wanted in sorted(required.items()):
            if season not in known:
                logger.debug("season_not_in_tmdb", tmdb_id=tmdb_id, season=season)
                continue
            body = self.tmdb.cached_season(tmdb_id, season)
            if not body or not wanted <= self._episode_numbers(body):
                try:
                    body = await self.tmdb.season(tmdb_id, season, refresh=True)
                except FetchError as e:
                    logger.warning("season_fetch_failed", tmdb_id=tmdb_id, season=season, error=str(e))
                    continue
            for ep in (body or {}).get("episodes") or []:
                if ep.get("episode_number") is not None:
                    episodes[(season, int(ep["episode_number"]))] = ep

        for item in media:
            ep = episodes.get((item["season"], item["episode"]))
            if ep is None:
                continue
            item["name"] = ep.get("name") or item["name"]
            item["air_date"] = ep.get("air_date")
            item["overview"] = ep.get("overview") or None
            item["still_path"] = ep.get("still_path")

    @staticmethod
    def _episode_numbers(body: Dict[str, Any]) -> Set[int]:
        return {int(e["episode_number"]) for e in body.get("episodes") or [] if e.get("episode_number") is not None}
