"""
Tests for the Similar Titles Enricher
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from iptv_ingest.core.exceptions import FetchStatus, FetchTimeout
from iptv_ingest.services.similar import SimilarTitlesEnricher


def title(canonical_id, media_type="movies", **extra):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    key = f"{media_type}-{canonical_id}"
    doc = {
        "_id": key,
        "title_key": key,
        "canonical_id": canonical_id,
        "type": media_type,
        "createdAt": created,
        "lastUpdated": created,
        "media": [{"name": "main", "sources": [{"provider_id": "px"}]}],
    }
    doc.update(extra)
    return doc


@pytest.fixture
def enricher(store, fake_tmdb, settings):
    return SimilarTitlesEnricher(store, fake_tmdb, settings)


def test_needs_enrichment():
    fresh = title(1)
    rebuilt = title(2, lastUpdated=datetime(2024, 2, 1, tzinfo=timezone.utc))
    done = title(3, similar=[])

    assert SimilarTitlesEnricher.needs_enrichment(fresh) is True
    assert SimilarTitlesEnricher.needs_enrichment(rebuilt) is False
    assert SimilarTitlesEnricher.needs_enrichment(done) is False


@pytest.mark.asyncio
async def test_similar_ids_are_projected_on_local_catalog(store, enricher, fake_tmdb):
    titles = store.collection("titles")
    for doc in (title(1), title(2, similar=[]), title(3, similar=[])):
        await titles.upsert(doc)
    fake_tmdb.similar = AsyncMock(side_effect=[
        {"results": [{"id": 2}, {"id": 999}, {"id": 1}], "total_pages": 2},
        {"results": [{"id": 3}, {"id": 2}], "total_pages": 2},
    ])

    stats = await enricher.enrich()

    doc = await titles.get("movies-1")
    assert stats == {"processed": 1, "skipped": 2, "with_matches": 1, "failed": 0}
    assert doc["similar"] == ["movies-2", "movies-3"]
    assert doc["lastUpdated"] > doc["createdAt"]
    assert fake_tmdb.similar.await_count == 2


@pytest.mark.asyncio
async def test_no_local_matches_stores_empty_list(store, enricher, fake_tmdb):
    await store.collection("titles").upsert(title(1))
    fake_tmdb.similar = AsyncMock(return_value={"results": [{"id": 500}], "total_pages": 1})

    await enricher.enrich()
    second = await enricher.enrich()

    assert (await store.collection("titles").get("movies-1"))["similar"] == []
    assert second["processed"] == 0
    assert fake_tmdb.similar.await_count == 1


@pytest.mark.asyncio
async def test_page_walk_stops_after_consecutive_failures(enricher, fake_tmdb, settings):
    fake_tmdb.similar = AsyncMock(side_effect=[
        {"results": [{"id": 1}], "total_pages": 10},
        FetchTimeout("u"),
        FetchTimeout("u"),
        FetchTimeout("u"),
        {"results": [{"id": 2}], "total_pages": 10},
    ])

    ids = await enricher.fetch_similar_ids("movies", 42)

    assert ids == [1]
    assert fake_tmdb.similar.await_count == 1 + settings.similar_max_consecutive_failures


@pytest.mark.asyncio
async def test_page_walk_caps_pages(enricher, fake_tmdb, settings):
    fake_tmdb.similar = AsyncMock(return_value={"results": [{"id": 1}], "total_pages": 500})

    await enricher.fetch_similar_ids("movies", 42)

    assert fake_tmdb.similar.await_count == settings.similar_max_pages


@pytest.mark.asyncio
async def test_total_failure_is_counted(store, enricher, fake_tmdb):
    await store.collection("titles").upsert(title(1))
    fake_tmdb.similar = AsyncMock(side_effect=FetchStatus("u", 503))

    stats = await enricher.enrich()

    assert stats["failed"] == 1
    assert (await store.collection("titles").get("movies-1"))["similar"] == []


@pytest.mark.asyncio
async def test_dangling_references_are_pruned(store, enricher):
    later = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(days=1)
    await store.collection("titles").upsert(title(1, similar=["movies-2", "movies-404"], lastUpdated=later))
    await store.collection("titles").upsert(title(2, similar=[]))

    await enricher.enrich()

    doc = await store.collection("titles").get("movies-1")
    assert doc["similar"] == ["movies-2"]
    assert doc["lastUpdated"] == later
