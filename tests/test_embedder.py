import math
from pathlib import Path

import pytest

from fragment_store import (
    Embedder,
    EmbeddingResult,
    Fragment,
    FragmentStore,
    HashEmbedder,
    backfill_embeddings,
)
from fragment_store.embedder import TASK_RETRIEVAL_DOCUMENT
from fragment_store.scoring import cosine_similarity


async def _open_store(tmp_path: Path) -> FragmentStore:
    store = FragmentStore(str(tmp_path / "embedder.db"))
    await store.init_db()
    return store


class _RecordingAsyncEmbedder:
    name = "remote"
    default_model = "remote-small"

    def __init__(self, fail_first: bool = False):
        self.calls = []
        self.fail_first = fail_first

    async def embed(self, texts, model=None, dimensions=None, task_type=None):
        self.calls.append((list(texts), model, task_type))
        if self.fail_first and len(self.calls) == 1:
            raise RuntimeError("rate limited")
        return EmbeddingResult(
            model=model or self.default_model,
            vectors=[[float(len(t)), 1.0] for t in texts],
        )


def test_hash_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashEmbedder()

    first = embedder.embed(["Alpha beta gamma"]).vectors[0]
    second = embedder.embed(["alpha   BETA gamma"]).vectors[0]

    assert isinstance(embedder, Embedder)
    assert len(first) == 64
    assert first == second
    assert math.sqrt(sum(v * v for v in first)) == pytest.approx(1.0)
    assert embedder.embed([""]).vectors[0] == [0.0] * 64


def test_hash_embedder_reflects_shared_vocabulary() -> None:
    embedder = HashEmbedder(dimensions=128)
    result = embedder.embed(
        ["deploy the kubernetes cluster", "kubernetes cluster deploy", "bake sourdough bread"],
        dimensions=128,
    )
    a, b, c = result.vectors

    assert result.model == "hash-v1"
    assert result.total_tokens == 10
    assert cosine_similarity(a, b) > cosine_similarity(a, c)


@pytest.mark.asyncio
async def test_backfill_fills_missing_embeddings_once(tmp_path: Path) -> None:
    store = await _open_store(tmp_path)
    embedder = HashEmbedder()
    created = []
    for i, content in enumerate(
        ["kubernetes rollout notes", "sourdough starter feeding", "garden tomato schedule"]
    ):
        created.append(
            await store.create_fragment(Fragment(agent="alpha", path=f"n/{i}", content=content))
        )

    written = await backfill_embeddings(store, embedder, batch_size=2)

    assert written == 3
    assert await store.needs_embedding("alpha", "hash", "hash-v1") == []
    assert await backfill_embeddings(store, embedder) == 0

    query = embedder.embed(["sourdough starter feeding"]).vectors[0]
    matches = await store.vector_search("alpha", "hash", "hash-v1", query, limit=1)
    assert [m.fragment.id for m in matches] == [created[1].id]
    assert matches[0].score == pytest.approx(1.0)
    await store.close()


@pytest.mark.asyncio
async def test_backfill_skips_failed_batches_and_awaits_async_embedders(
    tmp_path: Path,
) -> None:
    store = await _open_store(tmp_path)
    for i in range(3):
        await store.create_fragment(Fragment(agent="alpha", path=f"n/{i}", content="x" * (i + 1)))
    embedder = _RecordingAsyncEmbedder(fail_first=True)

    written = await backfill_embeddings(store, embedder, batch_size=2)

    assert written == 1
    assert all(call[1] == "remote-small" for call in embedder.calls)
    assert all(call[2] == TASK_RETRIEVAL_DOCUMENT for call in embedder.calls)
    remaining = await store.needs_embedding("alpha", "remote", "remote-small")
    assert len(remaining) == 2

    embedder.fail_first = False
    assert await backfill_embeddings(store, embedder) == 2
    await store.close()


def test_hash_embedder_uses_word_order_through_bigrams() -> None:
    embedder = HashEmbedder(dimensions=256)

    forward, reversed_, unrelated = embedder.embed(
        ["rotate api keys", "keys api rotate", "water the plants"]
    ).vectors

    assert forward != reversed_
    assert 0.5 < cosine_similarity(forward, reversed_) < 1.0
    assert cosine_similarity(forward, unrelated) < cosine_similarity(forward, reversed_)
