"""
Catalog Keys and Media Types

Deterministic identifiers shared by the pipeline, the reconciler and the
read surfaces that consume their documents.
"""

import re
from typing import Any, Dict, Optional

MOVIES = "movies"
TVSHOWS = "tvshows"
LIVE = "live"
MEDIA_TYPES = (MOVIES, TVSHOWS)

MAIN_STREAM = "main"

YEAR_PREFIX_RE = re.compile(r"^\s*(\d{4})")

# Per media type: TMDB path segment, title/date fields, find-result list and
# the search parameter that carries the year.
TYPE_CONFIG: Dict[str, Dict[str, str]] = {
    MOVIES: {
        "tmdb_type": "movie",
        "title_field": "title",
        "date_field": "release_date",
        "find_results": "movie_results",
        "year_param": "year",
    },
    TVSHOWS: {
        "tmdb_type": "tv",
        "title_field": "name",
        "date_field": "first_air_date",
        "find_results": "tv_results",
        "year_param": "first_air_date_year",
    },
}

IGNORED_EXTENDED_INFO = "extended info fetch failed"
IGNORED_NO_METADATA = "no canonical metadata"
IGNORED_BY_PROVIDER = "ignored by provider settings"


def title_key(media_type: str, title_id: Any) -> str:
    """'{media_type}-{id}'; used for provider titles and canonical titles alike."""
    return f"{media_type}-{title_id}"


def provider_title_doc_id(provider_id: str, key: str) -> str:
    return f"{provider_id}-{key}"


def channel_key(provider_id: str, channel_id: str) -> str:
    return f"live-{provider_id}-{channel_id}"


def category_key(provider_id: str, media_type: str, category_id: Any) -> str:
    return f"{provider_id}-{media_type}-{category_id}"


def stream_key(season: int, episode: int) -> str:
    """'S01-E02'."""
    return f"S{int(season):02d}-E{int(episode):02d}"


def parse_stream_key(key: str) -> Optional[tuple]:
    """'S01-E02' -> (1, 2); anything else (e.g. 'main') -> None."""
    if not key.startswith("S") or "-E" not in key:
        return None
    season, _, episode = key[1:].partition("-E")
    if not season.isdigit() or not episode.isdigit():
        return None
    return int(season), int(episode)


def year_from_date(value: Optional[str]) -> Optional[int]:
    """'2019-05-01' / '2019' -> 2019."""
    if not value:
        return None
    match = YEAR_PREFIX_RE.match(str(value))
    return int(match.group(1)) if match else None
