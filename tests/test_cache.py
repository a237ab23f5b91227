"""
Tests for the disk cache, its TTL policy and the purge sweep.
"""

import json
import os
import time

import pytest

from iptv_ingest.core.exceptions import ConfigInvalid
from iptv_ingest.jobs.cache_purge import CachePurgeJob
from iptv_ingest.services.disk_cache import CachePolicy, DiskCache

HOUR = 3600


def write(root, relative, content="{}", age_hours=0.0, now=None):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    mtime = (now or time.time()) - age_hours * HOUR
    os.utime(path, (mtime, mtime))
    return path


# =============================================================================
# POLICY
# =============================================================================

def test_policy_resolution():
    policy = CachePolicy({
        "tmdb/movie/details": 168,
        "tmdb/tv/{tmdbId}/season": 24,
        "{providerId}/movies/metadata": 6,
        "tmdb/find": None,
    })

    assert policy.ttl_for("tmdb/movie/details/603.json") == 168
    assert policy.ttl_for("tmdb/tv/1399/season/1.json") == 24
    assert policy.ttl_for("px/movies/metadata/list.m3u8") == 6
    assert policy.ttl_for("tmdb/find/tt0113277.json") is None
    assert policy.ttl_for("unknown/path/file.json") is None


def test_exact_key_beats_pattern():
    policy = CachePolicy({"{providerId}/movies/metadata": 6, "px/movies/metadata": 1})

    assert policy.ttl_for("px/movies/metadata/list.json") == 1
    assert policy.ttl_for("py/movies/metadata/list.json") == 6


def test_placeholder_matches_one_segment_only():
    policy = CachePolicy({"{providerId}/movies/metadata": 6})

    assert policy.ttl_for("a/b/movies/metadata/list.json") is None


@pytest.mark.parametrize("raw", [[], {"a": "24"}, {"a": -1}, {"a": True}])
def test_invalid_policy_rejected(raw):
    with pytest.raises(ConfigInvalid):
        CachePolicy.validate(raw)


def test_policy_file(tmp_path):
    path = tmp_path / "cache-policy.json"
    path.write_text(json.dumps({"tmdb/find": 720}), encoding="utf-8")

    assert CachePolicy.from_file(str(path)).ttl_for("tmdb/find/x.json") == 720
    assert CachePolicy.from_file(str(tmp_path / "missing.json")).rules == {}

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigInvalid):
        CachePolicy.from_file(str(path))


# =============================================================================
# CACHE
# =============================================================================

def test_cache_respects_ttl(tmp_path):
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/movie/details": 24}))
    cache.set("tmdb/movie/details/1.json", {"id": 1})
    cache.set("notes/plain.txt", "hello")

    assert cache.get("tmdb/movie/details/1.json") == {"id": 1}
    assert cache.get("notes/plain.txt") == "hello"

    write(tmp_path, "tmdb/movie/details/1.json", '{"id": 1}', age_hours=25)
    assert cache.get("tmdb/movie/details/1.json") is None
    assert cache.get("tmdb/movie/details/missing.json") is None


def test_key_for_is_stable():
    assert DiskCache.key_for("tmdb/search/movie", {"query": "Heat", "year": 1995}) == DiskCache.key_for(
        "tmdb/search/movie", {"year": 1995, "query": "Heat"}
    )


# =============================================================================
# PURGE SWEEP
# =============================================================================

def test_sweep_deletes_only_expired_files(tmp_path):
    now = time.time()
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/movie/details/{tmdbId}.json": 24}))
    old = write(tmp_path, "tmdb/movie/details/123.json", age_hours=25, now=now)
    fresh = write(tmp_path, "tmdb/movie/details/456.json", age_hours=1, now=now)
    unmatched = write(tmp_path, "other/thing.json", age_hours=10_000, now=now)

    result = CachePurgeJob(cache, delete_enabled=True).sweep(now=now)

    assert not old.exists()
    assert fresh.exists()
    assert unmatched.exists()
    assert result["purged"] == 1
    assert result["kept"] == 2
    assert result["files_to_delete"] == ["tmdb/movie/details/123.json"]
    # Still holds 456.json
    assert (tmp_path / "tmdb/movie/details").is_dir()


def test_sweep_removes_emptied_directories(tmp_path):
    now = time.time()
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/movie/details": 24}))
    write(tmp_path, "tmdb/movie/details/123.json", age_hours=48, now=now)
    (tmp_path / "tmdb/tv/empty").mkdir(parents=True)

    CachePurgeJob(cache, delete_enabled=True).sweep(now=now)

    assert not (tmp_path / "tmdb").exists()
    assert tmp_path.is_dir()


def test_dry_run_reports_without_deleting(tmp_path):
    now = time.time()
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/movie/details": 24}))
    old = write(tmp_path, "tmdb/movie/details/123.json", age_hours=25, now=now)
    (tmp_path / "empty").mkdir()

    result = CachePurgeJob(cache, delete_enabled=False).sweep(now=now)

    assert result["mode"] == "dry-run"
    assert result["files_to_delete"] == ["tmdb/movie/details/123.json"]
    assert result["purged"] == 0
    assert old.exists()
    assert (tmp_path / "empty").is_dir()


def test_null_ttl_is_never_purged(tmp_path):
    now = time.time()
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/find": None}))
    kept = write(tmp_path, "tmdb/find/tt1.json", age_hours=100_000, now=now)

    result = CachePurgeJob(cache, delete_enabled=True).sweep(now=now)

    assert kept.exists()
    assert result["purged"] == 0


def test_in_flight_temp_files_are_skipped(tmp_path):
    now = time.time()
    cache = DiskCache(str(tmp_path), CachePolicy({"px/live/metadata": 1}))
    tmp = write(tmp_path, "px/live/metadata/epg.xml.tmp", age_hours=5, now=now)

    result = CachePurgeJob(cache, delete_enabled=True).sweep(now=now)

    assert tmp.exists()
    assert result["scanned"] == 0


@pytest.mark.asyncio
async def test_purge_job_run(tmp_path):
    cache = DiskCache(str(tmp_path), CachePolicy({"tmdb/movie/details": 24}))
    write(tmp_path, "tmdb/movie/details/1.json", age_hours=30)

    result = await CachePurgeJob(cache, delete_enabled=True).run()

    assert result["mode"] == "delete"
    assert result["purged"] == 1
