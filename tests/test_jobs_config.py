"""
Tests for job definitions and the shipped config files.
"""

import json
from pathlib import Path

import pytest

from iptv_ingest.core.exceptions import ConfigInvalid
from iptv_ingest.jobs import (
    CLEANUP_PROVIDER_DATA,
    PROVIDER_TITLES_MONITOR,
    PURGE_CACHE,
    SYNC_LIVE_TV,
    SYNC_PROVIDER_CATEGORIES,
    SYNC_PROVIDER_TITLES,
)
from iptv_ingest.models.jobs import JobsConfig, parse_duration_ms
from iptv_ingest.services.disk_cache import CachePolicy

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.mark.parametrize("value,expected", [
    (1500, 1500),
    ("1500", 1500),
    ("45s", 45_000),
    ("30m", 1_800_000),
    ("2h", 7_200_000),
    ("1d", 86_400_000),
    ("0", None),
    (0, None),
    (None, None),
])
def test_parse_duration(value, expected):
    assert parse_duration_ms(value) == expected


@pytest.mark.parametrize("value", ["soon", "5w", True, -1])
def test_invalid_durations(value):
    with pytest.raises(ValueError):
        parse_duration_ms(value)


def test_manual_only_jobs():
    config = JobsConfig.parse({"jobs": [
        {"name": "A", "interval": 1000},
        {"name": "B"},
        {"name": "C", "cron": "0 4 * * *"},
    ]})
    jobs = config.by_name()

    assert not jobs["A"].is_manual_only
    assert jobs["B"].is_manual_only
    assert not jobs["C"].is_manual_only


@pytest.mark.parametrize("raw", [
    [{"name": "A", "postExecute": ["missing"]}],
    [{"name": "A", "skipIfOtherInProgress": ["missing"]}],
    [{"name": "A"}, {"name": "A"}],
    [{"name": "A", "interval": "often"}],
    [{"description": "no name"}],
    "not a list",
])
def test_invalid_job_configs(raw):
    with pytest.raises(ConfigInvalid):
        JobsConfig.parse(raw)


def test_missing_jobs_file(tmp_path):
    with pytest.raises(ConfigInvalid):
        JobsConfig.from_file(str(tmp_path / "nope.json"))


def test_shipped_jobs_config_is_valid():
    config = JobsConfig.from_file(str(CONFIG_DIR / "jobs.json"))
    jobs = config.by_name()

    assert set(jobs) == {
        SYNC_PROVIDER_TITLES,
        PROVIDER_TITLES_MONITOR,
        SYNC_PROVIDER_CATEGORIES,
        SYNC_LIVE_TV,
        PURGE_CACHE,
        CLEANUP_PROVIDER_DATA,
    }
    assert jobs[SYNC_PROVIDER_TITLES].post_execute == [PROVIDER_TITLES_MONITOR]
    assert jobs[PROVIDER_TITLES_MONITOR].skip_if_other_in_progress == [SYNC_PROVIDER_TITLES]


def test_shipped_cache_policy_is_valid():
    with open(CONFIG_DIR / "cache-policy.json", encoding="utf-8") as f:
        raw = json.load(f)
    policy = CachePolicy.validate(raw)

    assert policy.ttl_for("px/movies/metadata/list.json") is not None
    assert policy.ttl_for("tmdb/tv/1399/season/1.json") is not None
    assert policy.ttl_for("tmdb/movie/similar/603/1.json") is not None
