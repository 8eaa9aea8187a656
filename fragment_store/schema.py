"""
Persistent layout of the fragment store.

Tables:
    memory_fragments     - Canonical fragments, unique per (agent, path)
    memory_fts           - FTS5 external-content mirror of memory_fragments
    memory_embeddings    - Cached vectors per (fragment, provider, model)
    memory_mining_state  - Per-session mining cursor
    memory_meta          - Flat key/value flags
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base

from .timestamps import utc_now_naive
from .types import DEFAULT_SOURCE_MINE

Base = declarative_base()


class MemoryFragment(Base):
    """A stored fragment.

    `row_id` is the SQLite rowid alias and keys the FTS mirror; `id` is the
    opaque public identifier referenced by embeddings.
    """

    __tablename__ = "memory_fragments"
    __table_args__ = (
        Index("idx_fragments_agent_path", "agent", "path", unique=True),
        Index("idx_fragments_created_at", "created_at"),
        Index("idx_fragments_decay", "pinned", "decay_score"),
    )

    row_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    agent = Column(String(128), nullable=False)
    path = Column(String(512), nullable=False)
    content = Column(Text, nullable=False)
    source = Column(
        String(64),
        nullable=False,
        default=DEFAULT_SOURCE_MINE,
        server_default=text(f"'{DEFAULT_SOURCE_MINE}'"),
    )
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    accessed_at = Column(DateTime, nullable=True)
    access_count = Column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    decay_score = Column(
        Float, default=1.0, server_default=text("1.0"), nullable=False
    )
    pinned = Column(Boolean, default=False, server_default=text("0"), nullable=False)


class MemoryEmbedding(Base):
    """Cached embedding vector (JSON array) for one provider/model pair."""

    __tablename__ = "memory_embeddings"
    __table_args__ = (
        Index("idx_embeddings_provider_model", "provider", "model", "dimensions"),
    )

    fragment_id = Column(
        String(64),
        ForeignKey("memory_fragments.id", ondelete="CASCADE"),
        primary_key=True,
    )
    provider = Column(String(64), primary_key=True)
    model = Column(String(128), primary_key=True)
    dimensions = Column(Integer, nullable=False)
    vector = Column(Text, nullable=False)
    embedded_at = Column(DateTime, nullable=False, default=utc_now_naive)


class MiningStateRow(Base):
    """Mining cursor; `mined_at` is kept as text because older rows differ in format."""

    __tablename__ = "memory_mining_state"

    session_id = Column(String(256), primary_key=True)
    agent = Column(String(128), nullable=False, index=True)
    last_mined_offset = Column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    mined_at = Column(String(64), nullable=False)


class MemoryMeta(Base):
    __tablename__ = "memory_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)


FTS_TABLE = "memory_fts"

# Column order matters: snippet() addresses `content` as column 3.
FTS_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5("
    "id UNINDEXED, "
    "agent UNINDEXED, "
    "path, "
    "content, "
    "content='memory_fragments', "
    "content_rowid='row_id', "
    "tokenize='unicode61'"
    ")"
)

FTS_CONTENT_COLUMN = 3

META_FTS_INITIALIZED = "fts_initialized"
META_FTS_REBUILT_AT = "fts_rebuilt_at"
