"""Value objects returned by and passed to FragmentStore."""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

DEFAULT_SOURCE_MINE = "mine"


@dataclass
class Fragment:
    """A durable memory item, unique per (agent, path)."""

    agent: str
    path: str
    content: str
    id: str = ""
    source: str = DEFAULT_SOURCE_MINE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None
    access_count: int = 0
    decay_score: Optional[float] = None
    pinned: bool = False
    row_id: Optional[int] = None


@dataclass
class ScoredFragment:
    """A fragment with a retrieval score (higher = more relevant)."""

    fragment: Fragment
    score: float
    snippet: str = ""


@dataclass
class SearchResult:
    agent: str
    path: str
    snippet: str
    score: float


@dataclass
class ListOptions:
    agent: Optional[str] = None
    since: Optional[datetime] = None
    path_contains: Optional[str] = None
    limit: int = 0


@dataclass
class MiningState:
    """Per-session mining cursor."""

    session_id: str
    agent: str
    last_mined_offset: int = 0
    mined_at: Optional[datetime] = None


class UpdateOutcome(str, enum.Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"


@dataclass
class EmbeddingResult:
    """What an Embedder returns for one batch of texts."""

    model: str
    vectors: List[List[float]] = field(default_factory=list)
    prompt_tokens: int = 0
    total_tokens: int = 0
