"""Durable, searchable memory for agents backed by a local SQLite file."""

from .config import StoreConfig
from .embedder import Embedder, HashEmbedder, backfill_embeddings
from .errors import (
    ConsistencyError,
    DecodeError,
    FragmentStoreError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .sqlite_client import (
    FragmentStore,
    close_fragment_store,
    get_fragment_store,
    new_fragment_id,
)
from .types import (
    EmbeddingResult,
    Fragment,
    ListOptions,
    MiningState,
    ScoredFragment,
    SearchResult,
    UpdateOutcome,
)

__all__ = [
    "ConsistencyError",
    "DecodeError",
    "Embedder",
    "EmbeddingResult",
    "Fragment",
    "FragmentStore",
    "FragmentStoreError",
    "HashEmbedder",
    "ListOptions",
    "MiningState",
    "NotFoundError",
    "ScoredFragment",
    "SearchResult",
    "StorageError",
    "StoreConfig",
    "UpdateOutcome",
    "ValidationError",
    "backfill_embeddings",
    "close_fragment_store",
    "get_fragment_store",
    "new_fragment_id",
]
