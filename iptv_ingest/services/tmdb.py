"""
TMDB Client

Metadata-authority endpoints used by the matcher, the reconciler and the
similar-titles enricher. Every call goes through the shared fetcher under
the "tmdb" limiter and is cached on disk:

- tmdb/{movie|tv}/details/{id}.json
- tmdb/tv/{id}/season/{n}.json
- tmdb/{movie|tv}/similar/{id}/{page}.json
- tmdb/find/{external_id}.json
- tmdb/search/{movie|tv}/{sha256}.json
"""

from typing import Any, Dict, List, Optional

from ..config import Settings
from ..core.logging import get_logger
from ..models.titles import TYPE_CONFIG
from .disk_cache import DiskCache
from .fetcher import Fetcher

logger = get_logger(__name__)

TMDB_PROVIDER_ID = "tmdb"


class TMDBClient:
    def __init__(self, fetcher: Fetcher, settings: Settings):
        self.fetcher = fetcher
        self.base_url = settings.tmdb_base_url.rstrip("/")
        self.api_key = settings.tmdb_api_key
        self.read_access_token = settings.tmdb_read_access_token
        fetcher.configure(TMDB_PROVIDER_ID, settings.tmdb_concurrency)

    @property
    def concurrency(self) -> int:
        return self.fetcher.concurrency(TMDB_PROVIDER_ID)

    def _auth(self, params: Dict[str, Any]):
        headers = {"Accept": "application/json"}
        if self.read_access_token:
            headers["Authorization"] = f"Bearer {self.read_access_token}"
        elif self.api_key:
            params = {**params, "api_key": self.api_key}
        return params, headers

    async def _get(self, path: str, params: Optional[Dict[str, Any]], cache_key: str, refresh: bool = False) -> Any:
        params, headers = self._auth(params or {})
        return await self.fetcher.get(
            TMDB_PROVIDER_ID,
            f"{self.base_url}{path}",
            params=params,
            headers=headers,
            cache_key=cache_key,
            refresh=refresh,
        )

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    async def details(self, media_type: str, tmdb_id: int) -> Dict[str, Any]:
        tmdb_type = TYPE_CONFIG[media_type]["tmdb_type"]
        return await self._get(
            f"/{tmdb_type}/{tmdb_id}",
            {"append_to_response": "external_ids"},
            f"tmdb/{tmdb_type}/details/{tmdb_id}.json",
        )

    async def find_by_external_id(self, external_id: str, source: str = "imdb_id") -> Dict[str, Any]:
        return await self._get(
            f"/find/{external_id}",
            {"external_source": source},
            f"tmdb/find/{external_id}.json",
        )

    async def search(self, media_type: str, query: str, year: Optional[int] = None) -> List[Dict[str, Any]]:
        config = TYPE_CONFIG[media_type]
        params: Dict[str, Any] = {"query": query}
        if year:
            params[config["year_param"]] = year
        body = await self._get(
            f"/search/{config['tmdb_type']}",
            params,
            DiskCache.key_for(f"tmdb/search/{config['tmdb_type']}", params),
        )
        return body.get("results") or []

    async def similar(self, media_type: str, tmdb_id: int, page: int = 1) -> Dict[str, Any]:
        tmdb_type = TYPE_CONFIG[media_type]["tmdb_type"]
        return await self._get(
            f"/{tmdb_type}/{tmdb_id}/similar",
            {"page": page},
            f"tmdb/{tmdb_type}/similar/{tmdb_id}/{page}.json",
        )

    async def season(self, tmdb_id: int, season_number: int, refresh: bool = False) -> Dict[str, Any]:
        return await self._get(
            f"/tv/{tmdb_id}/season/{season_number}",
            None,
            f"tmdb/tv/{tmdb_id}/season/{season_number}.json",
            refresh=refresh,
        )

    def cached_season(self, tmdb_id: int, season_number: int) -> Optional[Dict[str, Any]]:
        """Season body from disk if fresh; never touches the network."""
        cache = self.fetcher.cache
        if cache is None:
            return None
        return cache.get(f"tmdb/tv/{tmdb_id}/season/{season_number}.json")
