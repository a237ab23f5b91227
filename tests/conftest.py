"""
Pytest Fixtures

Shared settings, an in-memory store and a mocked TMDB client.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from iptv_ingest.config import Settings
from iptv_ingest.services.store import MemoryDocumentStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for tests: memory store, tmp cache dir, no backoff waits."""
    return Settings(
        environment="test",
        debug=False,
        store_backend="memory",
        cache_dir=str(tmp_path / "cache"),
        jobs_config_path=str(tmp_path / "jobs.json"),
        cache_policy_path=str(tmp_path / "cache-policy.json"),
        tmdb_api_key="test-tmdb-key",
        fetch_max_attempts=3,
        fetch_backoff_seconds=0,
        fetch_backoff_max_seconds=0,
        save_interval_seconds=3600,
        admin_api_key="test-admin-key",
    )


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def hour_ago() -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=1)


@pytest.fixture
def fake_tmdb():
    """TMDBClient stand-in; every endpoint is an AsyncMock."""
    tmdb = MagicMock()
    tmdb.concurrency = 4
    tmdb.details = AsyncMock(side_effect=lambda media_type, tmdb_id: movie_details(tmdb_id))
    tmdb.find_by_external_id = AsyncMock(return_value={"movie_results": [], "tv_results": []})
    tmdb.search = AsyncMock(return_value=[])
    tmdb.similar = AsyncMock(return_value={"results": [], "total_pages": 1})
    tmdb.season = AsyncMock(return_value={"episodes": []})
    tmdb.cached_season = MagicMock(return_value=None)
    return tmdb


def movie_details(tmdb_id: int, title: str = "Heat", release_date: str = "1995-12-15") -> Dict[str, Any]:
    return {
        "id": tmdb_id,
        "title": title,
        "release_date": release_date,
        "vote_average": 7.9,
        "vote_count": 7000,
        "overview": "A group of professional bank robbers...",
        "poster_path": "/poster.jpg",
        "backdrop_path": "/backdrop.jpg",
        "genres": [{"id": 80, "name": "Crime"}],
        "runtime": 170,
        "external_ids": {"imdb_id": "tt0113277"},
    }


def provider_title(
    provider_id: str,
    title_id: str,
    canonical_id=None,
    media_type: str = "movies",
    streams=None,
    last_updated=None,
    **extra,
) -> Dict[str, Any]:
    """A stored provider-title document."""
    key = f"{media_type}-{title_id}"
    now = last_updated or datetime.now(timezone.utc) - timedelta(hours=1)
    doc = {
        "_id": f"{provider_id}-{key}",
        "provider_id": provider_id,
        "title_id": title_id,
        "type": media_type,
        "title_key": key,
        "title": "Heat (1995)",
        "release_date": "1995",
        "external_id": None,
        "category_id": "1",
        "streams": streams if streams is not None else {"main": "http://s"},
        "canonical_id": canonical_id,
        "ignored": False,
        "ignored_reason": None,
        "createdAt": now,
        "lastUpdated": now,
    }
    doc.update(extra)
    return doc
