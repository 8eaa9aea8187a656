from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import update

from fragment_store import (
    DecodeError,
    Fragment,
    FragmentStore,
    SearchResult,
    ValidationError,
)
from fragment_store.schema import MemoryEmbedding


async def _open_store(tmp_path: Path) -> FragmentStore:
    store = FragmentStore(str(tmp_path / "retrieval.db"))
    await store.init_db()
    return store


async def _seed_keyword_corpus(store: FragmentStore) -> dict:
    ids = {}
    docs = {
        "top": "kubernetes kubernetes kubernetes",
        "mid": "kubernetes cluster notes",
        "low": (
            "kubernetes appears once in this much longer paragraph about gardening, "
            "cooking, travel, music, weather and many other unrelated subjects"
        ),
    }
    for name, content in docs.items():
        created = await store.create_fragment(
            Fragment(agent="alpha", path=f"docs/{name}", content=content)
        )
        ids[name] = created.id
    for i in range(5):
        await store.create_fragment(
            Fragment(agent="alpha", path=f"filler/{i}", content=f"unrelated filler text {i}")
        )
    return ids


@pytest.mark.asyncio
async def test_keyword_search_ranks_higher_score_first(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    ids = await _seed_keyword_corpus(store)

    hits = await store.search_bm25("kubernetes", limit=10)

    assert [hit.fragment.id for hit in hits] == [ids["top"], ids["mid"], ids["low"]]
    assert all(hit.score > 0 for hit in hits)
    assert hits[0].score > hits[1].score > hits[2].score
    assert "[kubernetes]" in hits[0].snippet
    await store.close()


@pytest.mark.asyncio
async def test_keyword_search_limit_and_agent_filter(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    ids = await _seed_keyword_corpus(store)
    beta = await store.create_fragment(
        Fragment(agent="beta", path="docs/k8s", content="kubernetes for beta")
    )

    limited = await store.search_bm25("kubernetes", limit=2, agent="alpha")
    assert [hit.fragment.id for hit in limited] == [ids["top"], ids["mid"]]

    beta_only = await store.search_bm25("kubernetes", agent="beta")
    assert [hit.fragment.id for hit in beta_only] == [beta.id]

    default_limit = await store.search_bm25("filler", limit=0)
    assert len(default_limit) == 5
    await store.close()


@pytest.mark.asyncio
async def test_keyword_search_treats_query_as_plain_terms(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    ids = await _seed_keyword_corpus(store)

    hits = await store.search_bm25('kubernetes: "cluster*', limit=10)
    assert [hit.fragment.id for hit in hits] == [ids["mid"]]

    assert await store.search_bm25("!!! ???") == []
    with pytest.raises(ValidationError):
        await store.search_bm25("   ")
    await store.close()


@pytest.mark.asyncio
async def test_search_fragments_projects_results(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    await _seed_keyword_corpus(store)

    results = await store.search_fragments("cluster")

    assert results == [
        SearchResult(
            agent="alpha",
            path="docs/mid",
            snippet=results[0].snippet,
            score=results[0].score,
        )
    ]
    assert "[cluster]" in results[0].snippet
    assert results[0].score > 0
    await store.close()


@pytest.mark.asyncio
async def test_keyword_search_does_not_touch_access(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    ids = await _seed_keyword_corpus(store)

    await store.search_bm25("kubernetes")

    top = await store.get_fragment_by_id(ids["top"])
    assert top.access_count == 0
    assert top.accessed_at is None
    await store.close()


@pytest.mark.asyncio
async def test_vector_search_orders_by_cosine(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    vectors = {"top": [1.0, 0.0], "mid": [0.8, 0.2], "low": [-1.0, 0.0]}
    ids = {}
    for name, vector in vectors.items():
        created = await store.create_fragment(
            Fragment(agent="alpha", path=name, content=f"{name} content")
        )
        ids[name] = created.id
        await store.upsert_embedding(created.id, "hash", "hash-v1", 2, vector)
    # Different dimensionality and different model are both ignored.
    odd = await store.create_fragment(Fragment(agent="alpha", path="odd", content="odd"))
    await store.upsert_embedding(odd.id, "hash", "hash-v1", 3, [1.0, 0.0, 0.0])
    await store.upsert_embedding(odd.id, "hash", "hash-v2", 2, [1.0, 0.0])

    matches = await store.vector_search("alpha", "hash", "hash-v1", [1.0, 0.0], limit=3)

    assert [m.fragment.id for m in matches] == [ids["top"], ids["mid"], ids["low"]]
    assert matches[0].score == pytest.approx(1.0)
    assert matches[2].score == pytest.approx(-1.0)

    assert await store.vector_search("beta", "hash", "hash-v1", [1.0, 0.0]) == []
    await store.close()


@pytest.mark.asyncio
async def test_vector_search_breaks_ties_by_recent_update(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    base = datetime(2026, 3, 1, 12, 0, 0)
    older = await store.create_fragment(
        Fragment(agent="alpha", path="older", content="a", created_at=base)
    )
    newer = await store.create_fragment(
        Fragment(
            agent="alpha",
            path="newer",
            content="b",
            created_at=base,
            updated_at=base + timedelta(days=2),
        )
    )
    for fragment in (older, newer):
        await store.upsert_embedding(fragment.id, "hash", "hash-v1", 2, [0.0, 1.0])

    matches = await store.vector_search(None, "hash", "hash-v1", [0.0, 2.0], limit=0)

    assert [m.fragment.id for m in matches] == [newer.id, older.id]
    await store.close()


@pytest.mark.asyncio
async def test_vector_search_validates_and_detects_corrupt_payloads(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    created = await store.create_fragment(Fragment(agent="alpha", path="a", content="a"))
    await store.upsert_embedding(created.id, "hash", "hash-v1", 2, [1.0, 0.0])

    with pytest.raises(ValidationError):
        await store.vector_search("alpha", "hash", "hash-v1", [])
    with pytest.raises(ValidationError):
        await store.vector_search("alpha", "", "hash-v1", [1.0, 0.0])
    with pytest.raises(ValidationError):
        await store.vector_search("alpha", "hash", " ", [1.0, 0.0])

    async with store.session() as session:
        await session.execute(
            update(MemoryEmbedding)
            .where(MemoryEmbedding.fragment_id == created.id)
            .values(vector="{not json")
        )

    with pytest.raises(DecodeError) as exc_info:
        await store.vector_search("alpha", "hash", "hash-v1", [1.0, 0.0])
    assert exc_info.value.key == created.id
    with pytest.raises(DecodeError):
        await store.get_embedding(created.id, "hash", "hash-v1")
    await store.close()
