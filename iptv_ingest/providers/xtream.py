"""
Xtream Provider

Xtream Codes player API:
    {api_url}/player_api.php?username=..&password=..&action=..

Catalog lists come from get_vod_streams / get_series; stream URLs only
exist in the per-title info (get_vod_info / get_series_info), so every
title costs one extended-info call.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import UpstreamShapeError
from ..core.logging import get_logger
from ..models.titles import MAIN_STREAM, MOVIES, TVSHOWS, stream_key
from .base import BaseIPTVProvider

logger = get_logger(__name__)

XTREAM_ACTIONS: Dict[str, Dict[str, str]] = {
    MOVIES: {
        "categories": "get_vod_categories",
        "catalog": "get_vod_streams",
        "info": "get_vod_info",
        "info_param": "vod_id",
        "id_field": "stream_id",
    },
    TVSHOWS: {
        "categories": "get_series_categories",
        "catalog": "get_series",
        "info": "get_series_info",
        "info_param": "series_id",
        "id_field": "series_id",
    },
}


def _imdb_id(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.startswith("tt"):
            return value
    return None


class XtreamProvider(BaseIPTVProvider):
    provider_type = "xtream"
    supports_extended_info = True

    def _actions(self, media_type: str) -> Dict[str, str]:
        try:
            return XTREAM_ACTIONS[media_type]
        except KeyError:
            raise ValueError(f"unsupported media type: {media_type}")

    async def _player_api(self, action: str, cache_key: str, **extra) -> Any:
        params = {
            "username": self.config.username,
            "password": self.config.password,
            "action": action,
            **extra,
        }
        return await self.fetcher.get(
            self.id,
            f"{self.config.api_url}/player_api.php",
            params=params,
            cache_key=cache_key,
        )

    def _stream_url(self, kind: str, stream_id: Any, ext: Optional[str]) -> str:
        c = self.config
        return f"{c.api_url}/{kind}/{c.username}/{c.password}/{stream_id}.{ext or 'mp4'}"

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def fetch_categories(self, media_type: str) -> List[Dict[str, Any]]:
        body = await self._player_api(
            self._actions(media_type)["categories"],
            self.cache_key(media_type, "categories"),
        )
        if not isinstance(body, list):
            raise UpstreamShapeError(f"{self.id}/{media_type}: categories response is not a list")
        return [
            {
                "category_id": str(cat.get("category_id") or cat.get("id")),
                "category_name": cat.get("category_name") or cat.get("name"),
            }
            for cat in body
            if cat.get("category_id") or cat.get("id")
        ]

    async def fetch_catalog(self, media_type: str) -> List[Dict[str, Any]]:
        actions = self._actions(media_type)
        body = await self._player_api(actions["catalog"], self.cache_key(media_type, "list"))
        if not isinstance(body, list):
            raise UpstreamShapeError(f"{self.id}/{media_type}: catalog response is not a list")

        candidates = []
        for entry in body:
            candidates.append({
                "title_id": entry.get(actions["id_field"]),
                "title": entry.get("name") or entry.get("title"),
                "release_date": entry.get("releaseDate") or entry.get("release_date") or entry.get("year"),
                "external_id": _imdb_id(entry.get("imdb_id"), entry.get("imdb")),
                "category_id": entry.get("category_id"),
                "container_extension": entry.get("container_extension"),
                "streams": {},
            })
        return candidates

    async def fetch_extended_info(self, media_type: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
        actions = self._actions(media_type)
        title_id = candidate["title_id"]
        body = await self._player_api(
            actions["info"],
            f"{self.id}/{media_type}/extended/{title_id}.json",
            **{actions["info_param"]: title_id},
        )
        if not isinstance(body, dict):
            raise UpstreamShapeError(f"{self.id}/{media_type}/{title_id}: info response is not an object")

        info = body.get("info") or {}
        if not isinstance(info, dict):
            # Some panels answer [] for titles they no longer carry
            info = {}
        release_date = info.get("releasedate") or info.get("release_date") or info.get("releaseDate")
        external_id = _imdb_id(info.get("imdb_id"), info.get("imdb"), candidate.get("external_id"))

        if media_type == MOVIES:
            movie = body.get("movie_data") or {}
            stream_id = movie.get("stream_id") or title_id
            ext = movie.get("container_extension") or candidate.get("container_extension")
            streams = {MAIN_STREAM: self._stream_url("movie", stream_id, ext)}
        else:
            streams = self._episode_streams(body.get("episodes"))

        return {
            "release_date": release_date,
            "external_id": external_id,
            "streams": streams,
        }

    def _episode_streams(self, episodes: Any) -> Dict[str, str]:
        """episodes is {season: [episode, ...]} (or a flat list on older panels)."""
        if isinstance(episodes, dict):
            groups = list(episodes.items())
        elif isinstance(episodes, list):
            groups = [(None, episodes)]
        else:
            return {}

        streams: Dict[str, str] = {}
        for season_key, items in groups:
            for episode in items or []:
                season = episode.get("season") or season_key
                number = episode.get("episode_num")
                episode_id = episode.get("id")
                if season in (None, "") or number in (None, "") or episode_id in (None, ""):
                    continue
                try:
                    key = stream_key(int(season), int(number))
                except (TypeError, ValueError):
                    continue
                streams[key] = self._stream_url("series", episode_id, episode.get("container_extension"))
        return dict(sorted(streams.items()))

    # =========================================================================
    # LIVE
    # =========================================================================

    async def fetch_live_channels(self) -> List[Dict[str, Any]]:
        categories = await self._player_api("get_live_categories", self.cache_key("live", "categories"))
        names = {}
        if isinstance(categories, list):
            names = {str(c.get("category_id")): c.get("category_name") for c in categories}

        streams = await self._player_api("get_live_streams", self.cache_key("live", "list"))
        if not isinstance(streams, list):
            raise UpstreamShapeError(f"{self.id}/live: stream list is not a list")

        channels = []
        for entry in streams:
            stream_id = entry.get("stream_id")
            if stream_id in (None, ""):
                continue
            channels.append(self.build_channel_doc(
                channel_id=str(stream_id),
                name=entry.get("name"),
                url=f"{self.config.api_url}/live/{self.config.username}/{self.config.password}/{stream_id}.ts",
                tvg_id=entry.get("epg_channel_id"),
                tvg_name=entry.get("name"),
                tvg_logo=entry.get("stream_icon"),
                group_title=names.get(str(entry.get("category_id"))),
            ))
        return channels

    async def fetch_epg(self) -> Optional[Path]:
        if self.config.epg_url:
            url, params = self.config.epg_url, None
        else:
            url = f"{self.config.api_url}/xmltv.php"
            params = {"username": self.config.username, "password": self.config.password}
        return await self.fetcher.download(
            self.id, url, cache_key=f"{self.id}/live/metadata/epg.xml", params=params
        )
