"""
M3U Provider

Playlist-based upstream (AGTV-style API):
- {api_url}/api/list/{user}/{pass}/m3u8/{movies|tvshows}
- {api_url}/api/list/{user}/{pass}/m3u8/livetv

Movies are one #EXTINF entry each. TV entries are one per episode, carrying
an SxxEyy marker in the display name, and are grouped per show. Titles are
keyed by tvg-id when the upstream gives one (IMDB "tt" ids for AGTV).
"""

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import UpstreamShapeError
from ..core.logging import get_logger
from ..models.titles import LIVE, MAIN_STREAM, MOVIES, TVSHOWS, stream_key
from .base import BaseIPTVProvider

logger = get_logger(__name__)

ATTR_RE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')
DURATION_RE = re.compile(r"^#EXTINF:\s*(-?\d+(?:\.\d+)?)")
EPISODE_RE = re.compile(r"\s*[-:]?\s*S(\d{1,3})\s*E(\d{1,4})\b.*$", re.IGNORECASE)
TITLE_YEAR_RE = re.compile(r"\((\d{4})\)\s*$")


def parse_m3u(text: str) -> List[Dict[str, Any]]:
    """
    Parse an extended M3U playlist.

    Each entry: {name, url, duration, tvg_id, tvg_name, tvg_logo, group_title}.
    Directives other than #EXTINF are skipped; an #EXTINF without a URL line
    is dropped.
    """
    entries: List[Dict[str, Any]] = []
    pending: Optional[Dict[str, Any]] = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF:"):
            attrs = dict(ATTR_RE.findall(line))
            # Display name follows the last comma outside attribute quotes
            tail = ATTR_RE.sub("", line)
            name = tail.split(",", 1)[1].strip() if "," in tail else ""
            duration_match = DURATION_RE.match(line)
            pending = {
                "name": name,
                "url": None,
                "duration": float(duration_match.group(1)) if duration_match else -1,
                "tvg_id": attrs.get("tvg-id") or None,
                "tvg_name": attrs.get("tvg-name") or None,
                "tvg_logo": attrs.get("tvg-logo") or None,
                "group_title": attrs.get("group-title") or None,
            }
            continue
        if line.startswith("#"):
            continue
        if pending is not None:
            pending["url"] = line
            entries.append(pending)
            pending = None

    return entries


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:16]


def split_episode(name: str):
    """'Show (2019) S01E02 - Pilot' -> ('Show (2019)', 1, 2); no marker -> (name, None, None)."""
    match = EPISODE_RE.search(name)
    if not match:
        return name.strip(), None, None
    return name[:match.start()].strip(), int(match.group(1)), int(match.group(2))


class M3UProvider(BaseIPTVProvider):
    provider_type = "m3u"
    supports_extended_info = False

    def _playlist_url(self, media_type: str) -> str:
        segment = "livetv" if media_type == LIVE else media_type
        c = self.config
        return f"{c.api_url}/api/list/{c.username}/{c.password}/m3u8/{segment}"

    async def fetch_playlist(self, media_type: str) -> List[Dict[str, Any]]:
        text = await self.fetcher.get(
            self.id,
            self._playlist_url(media_type),
            cache_key=self.cache_key(media_type, "list", "m3u8"),
        )
        if not isinstance(text, str) or "#EXTINF" not in text:
            raise UpstreamShapeError(f"{self.id}/{media_type}: playlist has no #EXTINF entries")
        return parse_m3u(text)

    async def fetch_categories(self, media_type: str) -> List[Dict[str, Any]]:
        """group-title values double as categories."""
        groups = sorted({e["group_title"] for e in await self.fetch_playlist(media_type) if e["group_title"]})
        return [{"category_id": g, "category_name": g} for g in groups]

    async def fetch_catalog(self, media_type: str) -> List[Dict[str, Any]]:
        entries = await self.fetch_playlist(media_type)
        if media_type == MOVIES:
            return [self._movie_candidate(e) for e in entries]
        if media_type == TVSHOWS:
            return self._group_shows(entries)
        raise ValueError(f"unsupported media type: {media_type}")

    def _movie_candidate(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        title_id = entry["tvg_id"] or _short_hash(entry["url"])
        return {
            "title_id": title_id,
            "title": entry["name"] or entry["tvg_name"],
            "release_date": self._year_of(entry["name"]),
            "external_id": entry["tvg_id"] if (entry["tvg_id"] or "").startswith("tt") else None,
            "category_id": entry["group_title"],
            "streams": {MAIN_STREAM: entry["url"]},
        }

    def _group_shows(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        shows: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            base_name, season, episode = split_episode(entry["name"] or "")
            if season is None:
                logger.debug("m3u_episode_marker_missing", provider_id=self.id, name=entry["name"])
                continue
            title_id = entry["tvg_id"] or _short_hash(base_name.lower())
            show = shows.setdefault(title_id, {
                "title_id": title_id,
                "title": base_name,
                "release_date": self._year_of(base_name),
                "external_id": entry["tvg_id"] if (entry["tvg_id"] or "").startswith("tt") else None,
                "category_id": entry["group_title"],
                "streams": {},
            })
            show["streams"][stream_key(season, episode)] = entry["url"]
        for show in shows.values():
            show["streams"] = dict(sorted(show["streams"].items()))
        return list(shows.values())

    @staticmethod
    def _year_of(name: Optional[str]) -> Optional[str]:
        match = TITLE_YEAR_RE.search(name or "")
        return match.group(1) if match else None

    @staticmethod
    def _channel_id(entry: Dict[str, Any]) -> str:
        # Store document ids cannot contain "/"
        tvg_id = entry["tvg_id"]
        if tvg_id and "/" not in tvg_id:
            return tvg_id
        return _short_hash(entry["url"])

    async def fetch_live_channels(self) -> List[Dict[str, Any]]:
        channels = []
        for entry in await self.fetch_playlist(LIVE):
            channels.append(self.build_channel_doc(
                channel_id=self._channel_id(entry),
                name=entry["name"],
                url=entry["url"],
                tvg_id=entry["tvg_id"],
                tvg_name=entry["tvg_name"] or (entry["name"] if entry["tvg_id"] else None),
                tvg_logo=entry["tvg_logo"],
                group_title=entry["group_title"],
            ))
        return channels

    async def fetch_epg(self) -> Optional[Path]:
        if not self.config.epg_url:
            return None
        return await self.fetcher.download(
            self.id, self.config.epg_url, cache_key=f"{self.id}/live/metadata/epg.xml"
        )
