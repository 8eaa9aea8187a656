"""
Embedding providers and cache backfill.

The store never calls a remote service itself: callers hand in an object
satisfying `Embedder`, and `backfill_embeddings` fills the cache for every
fragment that lacks a vector under that provider/model.
"""

import hashlib
import inspect
import logging
import math
import re
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from .errors import ValidationError
from .types import EmbeddingResult

logger = logging.getLogger(__name__)

TASK_RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
TASK_RETRIEVAL_QUERY = "RETRIEVAL_QUERY"

DEFAULT_BACKFILL_BATCH_SIZE = 32

_WORD_PATTERN = re.compile(r"\w+")
_BIGRAM_WEIGHT = 0.5


@runtime_checkable
class Embedder(Protocol):
    name: str
    default_model: str

    def embed(
        self,
        texts: Sequence[str],
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        task_type: Optional[str] = None,
    ) -> Any:
        """Return an EmbeddingResult (or an awaitable of one), one vector per text."""
        ...


class HashEmbedder:
    """
    Deterministic local embedder.

    Feature hashing over lowercased word unigrams and adjacent-word bigrams:
    each feature lands in one signed bucket, bigrams at half weight, and the
    vector is L2-normalized. Digests are keyed by the model name so vectors
    from different hash models never share a layout. Useful offline and in
    tests; similarity reflects shared vocabulary only.
    """

    name = "hash"
    default_model = "hash-v1"

    def __init__(self, dimensions: int = 64):
        if dimensions <= 0:
            raise ValidationError("hash_embedder", "dimensions must be positive")
        self.dimensions = dimensions

    def _features(self, content: str) -> List[tuple]:
        words = _WORD_PATTERN.findall((content or "").lower())
        features = [(word, 1.0) for word in words]
        features.extend(
            (f"{left} {right}", _BIGRAM_WEIGHT) for left, right in zip(words, words[1:])
        )
        return features

    def embed_one(self, content: str, dim: Optional[int] = None) -> List[float]:
        embed_dim = dim or self.dimensions
        vector = [0.0] * embed_dim
        key = self.default_model.encode("utf-8")

        for feature, weight in self._features(content):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8, key=key).digest()
            bucket = int.from_bytes(digest[:4], "big") % embed_dim
            sign = -1.0 if digest[4] & 1 else 1.0
            vector[bucket] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    def embed(
        self,
        texts: Sequence[str],
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        task_type: Optional[str] = None,
    ) -> EmbeddingResult:
        dim = dimensions if dimensions and dimensions > 0 else self.dimensions
        vectors = [self.embed_one(text_value, dim) for text_value in texts]
        token_count = sum(len(_WORD_PATTERN.findall(t or "")) for t in texts)
        return EmbeddingResult(
            model=model or self.default_model,
            vectors=vectors,
            prompt_tokens=token_count,
            total_tokens=token_count,
        )


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def backfill_embeddings(
    store,
    embedder: Embedder,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    agent: str = "",
    batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
) -> int:
    """
    Embed every fragment missing a vector for (provider, model).

    Batches that fail to embed are logged and skipped so one bad batch does
    not stop the run. Returns the number of vectors written.
    """
    provider_name = (provider or getattr(embedder, "name", "") or "").strip()
    model_name = (model or getattr(embedder, "default_model", "") or "").strip()
    if not provider_name or not model_name:
        raise ValidationError("backfill_embeddings", "provider and model are required")
    if batch_size <= 0:
        batch_size = DEFAULT_BACKFILL_BATCH_SIZE

    pending = await store.needs_embedding(agent, provider_name, model_name)
    if not pending:
        return 0

    written = 0
    for start in range(0, len(pending), batch_size):
        batch = pending[start : start + batch_size]
        try:
            result = await _resolve(
                embedder.embed(
                    [fragment.content for fragment in batch],
                    model=model_name,
                    task_type=TASK_RETRIEVAL_DOCUMENT,
                )
            )
        except Exception as exc:
            logger.warning(
                "Embedding batch %d-%d failed (%s/%s): %s",
                start,
                start + len(batch),
                provider_name,
                model_name,
                exc,
            )
            continue

        vectors = list(getattr(result, "vectors", None) or [])
        if len(vectors) != len(batch):
            logger.warning(
                "Embedder returned %d vectors for %d fragments; skipping batch",
                len(vectors),
                len(batch),
            )
            continue

        for fragment, vector in zip(batch, vectors):
            if not vector:
                logger.warning("Empty vector for fragment %s; skipping", fragment.id)
                continue
            await store.upsert_embedding(
                fragment.id, provider_name, model_name, len(vector), vector
            )
            written += 1

    logger.info(
        "Backfilled %d/%d embeddings (%s/%s)",
        written,
        len(pending),
        provider_name,
        model_name,
    )
    return written
