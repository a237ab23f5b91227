"""
Tests for the provider titles pipeline

M3U and Xtream catalogs through ProviderTitlesSyncJob against a mocked
upstream, change detection and category sync.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from iptv_ingest.jobs.provider_titles import (
    ProviderCategoriesSyncJob,
    ProviderTitlesSyncJob,
    merge_title_doc,
)
from iptv_ingest.models.jobs import JobParams
from iptv_ingest.providers.m3u import parse_m3u, split_episode
from iptv_ingest.services.context import IngestionContext
from iptv_ingest.services.disk_cache import CachePolicy

MOVIES_M3U = """#EXTM3U
#EXTINF:-1 tvg-id="tt0113277" tvg-name="Heat" tvg-logo="http://img/heat.jpg" group-title="Action",Heat (1995)
http://stream/heat.mp4
#EXTINF:-1 tvg-id="" group-title="Drama",Local Film (2001)
http://stream/local.mp4
#EXTINF:-1 tvg-id="tt9000001" group-title="Kids",Cartoon (2010)
http://stream/cartoon.mp4
"""

SHOWS_M3U = """#EXTM3U
#EXTINF:-1 tvg-id="tt0944947" group-title="Drama",Game of Thrones (2011) S01E02
http://stream/got/s1e2.mp4
#EXTINF:-1 tvg-id="tt0944947" group-title="Drama",Game of Thrones (2011) S01E01
http://stream/got/s1e1.mp4
#EXTINF:-1 tvg-id="" group-title="Drama",No Marker Show
http://stream/nomarker.mp4
"""

# Metadata lists are never served from cache, so each run sees the current upstream
NO_CACHE_POLICY = CachePolicy({
    "{providerId}/movies/metadata": 0,
    "{providerId}/tvshows/metadata": 0,
    "{providerId}/movies/extended": 0,
})


class Upstream:
    """Mutable fake upstream behind httpx.MockTransport."""

    def __init__(self):
        self.playlists = {"movies": MOVIES_M3U, "tvshows": SHOWS_M3U}
        self.fail = set()
        self.xtream = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api/list/"):
            segment = path.rsplit("/", 1)[-1]
            if segment in self.fail:
                return httpx.Response(500)
            return httpx.Response(200, text=self.playlists[segment])
        if path == "/player_api.php":
            params = dict(request.url.params)
            key = (params["action"], params.get("vod_id") or params.get("series_id"))
            if key in self.fail:
                return httpx.Response(500)
            return httpx.Response(200, json=self.xtream.get(key, []))
        return httpx.Response(404)


@pytest.fixture
def upstream():
    return Upstream()


@pytest_asyncio.fixture
async def ctx(settings, store, upstream):
    context = IngestionContext.create(
        settings, store, policy=NO_CACHE_POLICY, transport=httpx.MockTransport(upstream.handler)
    )
    yield context
    await context.fetcher.aclose()


async def add_m3u_provider(store, **extra):
    doc = {
        "_id": "px",
        "name": "Provider X",
        "type": "m3u",
        "api_url": "http://agtv.example/",
        "username": "u",
        "password": "p",
        "enabled_categories": {"movies": ["Action", "Drama"]},
        "sync_media_types": {"movies": True, "tvshows": True, "live": False},
    }
    doc.update(extra)
    await store.collection("iptv_providers").upsert(doc)


# =============================================================================
# M3U PARSING
# =============================================================================

def test_parse_m3u():
    entries = parse_m3u(MOVIES_M3U)

    assert len(entries) == 3
    assert entries[0] == {
        "name": "Heat (1995)",
        "url": "http://stream/heat.mp4",
        "duration": -1.0,
        "tvg_id": "tt0113277",
        "tvg_name": "Heat",
        "tvg_logo": "http://img/heat.jpg",
        "group_title": "Action",
    }
    assert entries[1]["tvg_id"] is None
    assert entries[1]["name"] == "Local Film (2001)"


def test_parse_m3u_comma_inside_attribute():
    entries = parse_m3u('#EXTINF:-1 group-title="News, Weather",Channel 5\nhttp://live/5.ts\n')

    assert entries[0]["group_title"] == "News, Weather"
    assert entries[0]["name"] == "Channel 5"


def test_parse_m3u_drops_entry_without_url():
    assert parse_m3u("#EXTM3U\n#EXTINF:-1,Dangling\n") == []


@pytest.mark.parametrize("name,expected", [
    ("Dark (2017) S01E02", ("Dark (2017)", 1, 2)),
    ("Dark - S1 E10 - Finale", ("Dark", 1, 10)),
    ("Just A Movie", ("Just A Movie", None, None)),
])
def test_split_episode(name, expected):
    assert split_episode(name) == expected


# =============================================================================
# CHANGE DETECTION
# =============================================================================

def base_doc(**overrides):
    doc = {
        "_id": "px-movies-1",
        "provider_id": "px",
        "title_id": "1",
        "type": "movies",
        "title_key": "movies-1",
        "title": "Heat",
        "release_date": "1995",
        "external_id": None,
        "category_id": "5",
        "streams": {"main": "http://s/1.mkv"},
        "canonical_id": None,
        "ignored": False,
        "ignored_reason": None,
    }
    doc.update(overrides)
    return doc


def test_merge_new_document_gets_timestamps():
    now = datetime.now(timezone.utc)
    merged = merge_title_doc(base_doc(), None, now)

    assert merged["createdAt"] == merged["lastUpdated"] == now


def test_merge_unchanged_document_is_skipped():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    current = {**base_doc(canonical_id=949, match_attempted_at=None), "createdAt": then, "lastUpdated": then}

    assert merge_title_doc(base_doc(), current, datetime.now(timezone.utc)) is None


def test_merge_keeps_match_when_only_streams_change():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    now = datetime.now(timezone.utc)
    current = {**base_doc(canonical_id=949), "createdAt": then, "lastUpdated": then}

    merged = merge_title_doc(base_doc(streams={"main": "http://s/2.mkv"}), current, now)

    assert merged["canonical_id"] == 949
    assert merged["createdAt"] == then
    assert merged["lastUpdated"] == now


def test_merge_resets_match_when_identity_changes():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    current = {**base_doc(canonical_id=949), "createdAt": then, "lastUpdated": then}

    merged = merge_title_doc(base_doc(title="Heat 2"), current, datetime.now(timezone.utc))

    assert merged["canonical_id"] is None


def test_merge_preserves_reconciler_ignore():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    current = {
        **base_doc(canonical_id=949, ignored=True, ignored_reason="no canonical metadata"),
        "createdAt": then,
        "lastUpdated": then,
    }

    assert merge_title_doc(base_doc(), current, datetime.now(timezone.utc)) is None


def test_merge_keeps_reconciler_ignore_when_only_streams_change():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    current = {
        **base_doc(canonical_id=949, ignored=True, ignored_reason="no canonical metadata"),
        "createdAt": then,
        "lastUpdated": then,
    }

    merged = merge_title_doc(base_doc(streams={"main": "http://s/2.mkv"}), current, datetime.now(timezone.utc))

    assert merged["streams"] == {"main": "http://s/2.mkv"}
    assert merged["canonical_id"] == 949
    assert merged["ignored"] is True
    assert merged["ignored_reason"] == "no canonical metadata"


def test_merge_drops_reconciler_ignore_when_identity_changes():
    then = datetime.now(timezone.utc) - timedelta(days=1)
    current = {
        **base_doc(canonical_id=949, ignored=True, ignored_reason="no canonical metadata"),
        "createdAt": then,
        "lastUpdated": then,
    }

    merged = merge_title_doc(base_doc(title="Heat 2"), current, datetime.now(timezone.utc))

    assert merged["canonical_id"] is None
    assert merged["ignored"] is False
    assert merged["ignored_reason"] is None


# =============================================================================
# PIPELINE
# =============================================================================

@pytest.mark.asyncio
async def test_m3u_sync_writes_provider_titles(store, ctx):
    await add_m3u_provider(store)

    summary = await ProviderTitlesSyncJob(ctx).run(JobParams())

    assert summary["providers_processed"] == 1
    assert summary["inserted"] == 3
    titles = store.collection("provider_titles")
    heat = await titles.get("px-movies-tt0113277")
    assert heat["streams"] == {"main": "http://stream/heat.mp4"}
    assert heat["external_id"] == "tt0113277"
    assert heat["release_date"] == "1995"
    assert heat["category_id"] == "Action"
    assert heat["canonical_id"] is None
    assert heat["ignored"] is False
    # Kids is not an enabled category
    assert await titles.get("px-movies-tt9000001") is None

    got = await titles.get("px-tvshows-tt0944947")
    assert list(got["streams"]) == ["S01-E01", "S01-E02"]
    assert got["title"] == "Game of Thrones (2011)"


@pytest.mark.asyncio
async def test_second_run_over_unchanged_upstream_writes_nothing(store, ctx):
    await add_m3u_provider(store)
    job = ProviderTitlesSyncJob(ctx)
    await job.run(JobParams())
    before = {d["_id"]: d for d in await store.collection("provider_titles").find()}

    summary = await job.run(JobParams())

    assert summary["inserted"] == summary["updated"] == summary["removed"] == 0
    assert sum(r["unchanged"] for r in summary["results"]) == 3
    after = {d["_id"]: d for d in await store.collection("provider_titles").find()}
    assert after == before


@pytest.mark.asyncio
async def test_titles_dropped_upstream_are_removed(store, ctx, upstream):
    await add_m3u_provider(store)
    job = ProviderTitlesSyncJob(ctx)
    await job.run(JobParams())

    upstream.playlists["movies"] = MOVIES_M3U.split("#EXTINF:-1 tvg-id=\"\"")[0]
    summary = await job.run(JobParams())

    assert summary["removed"] == 1
    assert await store.collection("provider_titles").count({"provider_id": "px", "type": "movies"}) == 1


@pytest.mark.asyncio
async def test_catalog_failure_aborts_only_that_pass(store, ctx, upstream):
    await add_m3u_provider(store)
    upstream.fail.add("tvshows")

    summary = await ProviderTitlesSyncJob(ctx).run(JobParams())

    results = {r["type"]: r for r in summary["results"]}
    assert summary["passes_failed"] == 1
    assert results["tvshows"]["success"] is False
    assert "500" in results["tvshows"]["error"]
    assert results["movies"]["inserted"] == 2


@pytest.mark.asyncio
async def test_disabled_providers_are_skipped(store, ctx):
    await add_m3u_provider(store, enabled=False)

    summary = await ProviderTitlesSyncJob(ctx).run(JobParams())

    assert summary["providers_processed"] == 0
    assert await store.collection("provider_titles").count() == 0


@pytest.mark.asyncio
async def test_xtream_extended_info_and_failures(store, ctx, upstream):
    await store.collection("iptv_providers").upsert({
        "_id": "xt",
        "type": "xtream",
        "api_url": "http://panel.example",
        "username": "u",
        "password": "p",
        "sync_media_types": {"movies": True},
        "ignored_titles": {"movies": ["3"]},
    })
    upstream.xtream = {
        ("get_vod_streams", None): [
            {"stream_id": 1, "name": "Heat", "category_id": "5", "container_extension": "mkv"},
            {"stream_id": 2, "name": "Broken", "category_id": "5"},
            {"stream_id": 3, "name": "Hidden", "category_id": "5"},
            {"name": "No id"},
        ],
        ("get_vod_info", "1"): {
            "info": {"releasedate": "1995-12-15", "imdb_id": "tt0113277"},
            "movie_data": {"stream_id": 1, "container_extension": "mkv"},
        },
    }
    upstream.fail.add(("get_vod_info", "2"))

    summary = await ProviderTitlesSyncJob(ctx).run(JobParams(provider_id="xt"))

    titles = store.collection("provider_titles")
    heat = await titles.get("xt-movies-1")
    broken = await titles.get("xt-movies-2")
    hidden = await titles.get("xt-movies-3")
    assert summary["inserted"] == 3
    assert heat["streams"] == {"main": "http://panel.example/movie/u/p/1.mkv"}
    assert heat["external_id"] == "tt0113277"
    assert heat["release_date"] == "1995-12-15"
    assert broken["ignored"] is True
    assert broken["ignored_reason"] == "extended info fetch failed"
    assert hidden["ignored_reason"] == "ignored by provider settings"


@pytest.mark.asyncio
async def test_category_sync_keeps_operator_flags(store, ctx):
    await add_m3u_provider(store, sync_media_types={"movies": True})
    job = ProviderCategoriesSyncJob(ctx)
    await job.run(JobParams())

    categories = store.collection("provider_categories")
    assert (await categories.get("px-movies-Action"))["enabled"] is True
    assert (await categories.get("px-movies-Kids"))["enabled"] is False

    await categories.update_one("px-movies-Action", {"enabled": False})
    await job.run(JobParams())

    assert (await categories.get("px-movies-Action"))["enabled"] is False


@pytest.mark.asyncio
async def test_m3u_live_channel_ids_are_safe_document_ids(store, ctx, upstream):
    upstream.playlists["livetv"] = (
        "#EXTM3U\n"
        '#EXTINF:-1 tvg-id="bbc1.uk" group-title="UK",BBC One\n'
        "http://up/live/1.ts\n"
        '#EXTINF:-1 tvg-id="" group-title="UK",No Guide\n'
        "http://up/live/2.ts\n"
    )
    await add_m3u_provider(store)
    provider = (await ctx.active_providers("px"))[0]

    channels = await provider.fetch_live_channels()

    assert channels[0]["_id"] == "live-px-bbc1.uk"
    assert channels[1]["channel_id"] != "http://up/live/2.ts"
    assert "/" not in channels[1]["_id"]
    assert channels[1]["url"] == "http://up/live/2.ts"


@pytest.mark.asyncio
async def test_category_switched_off_by_operator_is_not_synced(store, ctx):
    await add_m3u_provider(store)
    job = ProviderTitlesSyncJob(ctx)
    await job.run(JobParams())
    assert await store.collection("provider_titles").get("px-movies-tt0113277") is not None

    await store.collection("provider_categories").upsert({
        "_id": "px-movies-Action",
        "provider_id": "px",
        "type": "movies",
        "category_id": "Action",
        "enabled": False,
    })
    summary = await job.run(JobParams())

    titles = store.collection("provider_titles")
    assert summary["removed"] == 1
    assert await titles.get("px-movies-tt0113277") is None
    assert await titles.count({"provider_id": "px", "type": "movies"}) == 1
