"""
Tests for the Unwanted Provider Data Cleanup Job
"""

import pytest
import pytest_asyncio

from conftest import provider_title
from iptv_ingest.jobs.cleanup import ProviderCleanupJob
from iptv_ingest.models.jobs import JobParams
from iptv_ingest.services.context import IngestionContext
from iptv_ingest.services.disk_cache import CachePolicy


@pytest_asyncio.fixture
async def ctx(settings, store):
    context = IngestionContext.create(settings, store, policy=CachePolicy({}))
    yield context
    await context.fetcher.aclose()


async def add_provider(store, provider_id, **extra):
    await store.collection("iptv_providers").upsert({"_id": provider_id, "type": "m3u", "api_url": "http://x", **extra})


def canonical(media_type, canonical_id, *provider_ids):
    key = f"{media_type}-{canonical_id}"
    return {
        "_id": key,
        "title_key": key,
        "canonical_id": canonical_id,
        "type": media_type,
        "media": [{"name": "main", "sources": [{"provider_id": p, "provider_url": f"http://{p}"} for p in provider_ids]}],
    }


async def add_live_data(store, provider_id):
    await store.collection("channels").upsert({"_id": f"live-{provider_id}-1", "provider_id": provider_id, "channel_id": "1"})
    await store.collection("programs").upsert({"_id": f"{provider_id}-1-0-1", "provider_id": provider_id, "channel_id": "1"})


@pytest.mark.asyncio
async def test_media_type_no_longer_synced_is_removed(store, ctx):
    await add_provider(store, "pa", sync_media_types={"movies": False, "tvshows": True, "live": True})
    await add_provider(store, "pb")
    provider_titles = store.collection("provider_titles")
    await provider_titles.upsert(provider_title("pa", "1", canonical_id=949))
    await provider_titles.upsert(provider_title("pa", "2", media_type="tvshows", canonical_id=1399))
    await provider_titles.upsert(provider_title("pb", "1", canonical_id=949))
    titles = store.collection("titles")
    await titles.upsert(canonical("movies", 949, "pa", "pb"))
    await titles.upsert(canonical("tvshows", 1399, "pa"))
    await store.collection("provider_categories").upsert(
        {"_id": "pa-movies-Action", "provider_id": "pa", "type": "movies", "category_id": "Action"}
    )
    await add_live_data(store, "pa")

    stats = await ProviderCleanupJob(ctx).run(JobParams())

    assert stats["titles_deleted"] == 1
    assert stats["titles_updated"] == 1
    assert stats["categories_deleted"] == 1
    assert stats["channels_deleted"] == 0
    assert await provider_titles.get("pa-movies-1") is None
    assert await provider_titles.get("pa-tvshows-2") is not None
    movie = await titles.get("movies-949")
    assert [s["provider_id"] for s in movie["media"][0]["sources"]] == ["pb"]
    assert await titles.get("tvshows-1399") is not None


@pytest.mark.asyncio
async def test_disabled_provider_loses_titles_channels_and_programs(store, ctx):
    await add_provider(store, "pa", enabled=False)
    await add_provider(store, "pb")
    await store.collection("provider_titles").upsert(provider_title("pa", "1", canonical_id=300))
    await store.collection("titles").upsert(canonical("movies", 300, "pa"))
    await add_live_data(store, "pa")
    await add_live_data(store, "pb")

    stats = await ProviderCleanupJob(ctx).run(JobParams())

    assert stats["providers_processed"] == 2
    assert stats["empty_titles_deleted"] == 1
    assert stats["channels_deleted"] == 1
    assert stats["programs_deleted"] == 1
    assert await store.collection("titles").get("movies-300") is None
    assert await store.collection("channels").count({"provider_id": "pa"}) == 0
    assert await store.collection("programs").count({"provider_id": "pa"}) == 0
    assert await store.collection("channels").count({"provider_id": "pb"}) == 1


@pytest.mark.asyncio
async def test_live_sync_turned_off_drops_channels_only(store, ctx):
    await add_provider(store, "pa", sync_media_types={"movies": True, "tvshows": True, "live": False})
    await store.collection("provider_titles").upsert(provider_title("pa", "1", canonical_id=949))
    await add_live_data(store, "pa")

    stats = await ProviderCleanupJob(ctx).run(JobParams(provider_id="pa"))

    assert stats["titles_deleted"] == 0
    assert stats["channels_deleted"] == 1
    assert await store.collection("provider_titles").count() == 1
