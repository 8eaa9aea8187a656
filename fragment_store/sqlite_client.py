"""
SQLite client for the fragment store.

This module implements the durable agent memory:
- Fragments addressed by (agent, path), mirrored into an FTS5 index
- Embedding cache per (fragment, provider, model), invalidated on content change
- Keyword (BM25) and full-scan cosine retrieval, both read-only
- Decay recomputation and garbage collection of stale, unpinned fragments
- Mining cursors and a small metadata table

Every mutation runs in one session/transaction. Primary-table writes and
their mirror writes happen only through the private helpers below, always
inside the caller's session, so the two indexes commit or roll back together.
"""

import json
import logging
import re
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, event, func, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .bootstrap import BootstrapResult, SchemaBootstrap, rebuild_fts_sync
from .config import StoreConfig
from .errors import (
    ConsistencyError,
    DecodeError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .paths import database_url, is_memory_path, resolve_db_path
from .schema import (
    FTS_CONTENT_COLUMN,
    MemoryEmbedding,
    MemoryFragment,
    MemoryMeta,
    MiningStateRow,
)
from .scoring import (
    ACCESS_BOOST,
    DECAY_CEILING,
    DEFAULT_HALF_LIFE_DAYS,
    GC_THRESHOLD,
    SCORE_PRECISION,
    age_in_days,
    cosine_similarity,
    decay_score,
    is_valid_decay_score,
    last_active,
)
from .timestamps import format_timestamp, parse_timestamp, to_naive_utc, utc_now_naive
from .types import (
    DEFAULT_SOURCE_MINE,
    Fragment,
    ListOptions,
    MiningState,
    ScoredFragment,
    SearchResult,
    UpdateOutcome,
)

logger = logging.getLogger(__name__)

DEFAULT_KEYWORD_LIMIT = 6
DEFAULT_VECTOR_LIMIT = 24

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
_ID_BATCH_SIZE = 500

_BEGIN_IMMEDIATE_OPTION = "fragment_store_begin_immediate"

_FTS_TERM_PATTERN = re.compile(r"\w+", re.UNICODE)


def new_fragment_id(now: Optional[datetime] = None) -> str:
    """Time-prefixed id with a random suffix, e.g. mem-20261018-120000-a1b2c3."""
    now_value = now or utc_now_naive()
    return f"mem-{now_value.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


def build_fts_query(query: str) -> str:
    """Quote each word term so user text is never parsed as FTS5 syntax."""
    terms = _FTS_TERM_PATTERN.findall(query or "")
    return " ".join(f'"{term}"' for term in terms)


def _require_text(operation: str, field_name: str, value: Optional[str]) -> str:
    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError(operation, f"{field_name} is required")
    return candidate


def _batched(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _decode_vector(operation: str, payload: Any, fragment_id: str) -> List[float]:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise DecodeError(
            operation, f"malformed vector for fragment {fragment_id}", key=fragment_id
        ) from exc
    if not isinstance(data, list) or any(
        isinstance(v, bool) or not isinstance(v, (int, float)) for v in data
    ):
        raise DecodeError(
            operation,
            f"stored vector for fragment {fragment_id} is not a numeric array",
            key=fragment_id,
        )
    return [float(v) for v in data]


def _to_fragment(row: MemoryFragment) -> Fragment:
    return Fragment(
        id=row.id,
        agent=row.agent,
        path=row.path,
        content=row.content,
        source=row.source,
        created_at=row.created_at,
        updated_at=row.updated_at,
        accessed_at=row.accessed_at,
        access_count=int(row.access_count or 0),
        decay_score=float(row.decay_score),
        pinned=bool(row.pinned),
        row_id=row.row_id,
    )


# =============================================================================
# Mirror unit-of-work helpers (session-scoped, never called outside a write)
# =============================================================================


async def _mirror_insert(
    session: AsyncSession, row_id: int, fragment_id: str, agent: str, path: str, content: str
) -> None:
    await session.execute(
        text(
            "INSERT INTO memory_fts(rowid, id, agent, path, content) "
            "VALUES (:rowid, :id, :agent, :path, :content)"
        ),
        {"rowid": row_id, "id": fragment_id, "agent": agent, "path": path, "content": content},
    )


async def _mirror_delete(
    session: AsyncSession, row_id: int, fragment_id: str, agent: str, path: str, content: str
) -> None:
    # External-content FTS5 needs the exact previously indexed values.
    await session.execute(
        text(
            "INSERT INTO memory_fts(memory_fts, rowid, id, agent, path, content) "
            "VALUES ('delete', :rowid, :id, :agent, :path, :content)"
        ),
        {"rowid": row_id, "id": fragment_id, "agent": agent, "path": path, "content": content},
    )


# =============================================================================
# Fragment Store
# =============================================================================


class FragmentStore:
    """
    Async SQLite store for agent memory fragments.

    Core operations:
    - create/update/delete: fragment writes paired with FTS mirror writes
    - get/find/list: side-effect free reads
    - search_bm25 / vector_search: independent read-only retrieval paths
    - bump_access: the only usage signal (raises decay_score)
    - recalculate_decay / gc_fragments: scheduled maintenance
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        config: Optional[StoreConfig] = None,
    ):
        """
        Initialize the store.

        Args:
            db_path: Optional path override; ":memory:" for a private
                     in-memory database. Falls back to config.db_path and
                     then to the XDG data directory.
            config: Settings; defaults to StoreConfig.from_env().
        """
        self.config = config or StoreConfig.from_env()
        self.db_path = resolve_db_path(
            db_path if db_path is not None else self.config.db_path
        )
        self.database_url = database_url(self.db_path)
        self._file_backed = not is_memory_path(self.db_path)

        engine_kwargs: Dict[str, Any] = {"echo": False}
        if not self._file_backed:
            engine_kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self._install_connection_hooks()
        # Writers take the RESERVED lock up front so busy_timeout applies to them.
        self.write_engine = self.engine.execution_options(**{_BEGIN_IMMEDIATE_OPTION: True})
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.async_write_session = async_sessionmaker(
            self.write_engine, class_=AsyncSession, expire_on_commit=False
        )
        self._bootstrap = SchemaBootstrap(
            self.write_engine,
            database_file=Path(self.db_path) if self._file_backed else None,
            lock_file_path=self.config.init_lock_file,
            lock_timeout_seconds=self.config.init_lock_timeout_sec,
        )

    def _install_connection_hooks(self) -> None:
        busy_timeout_ms = max(0, int(self.config.busy_timeout_ms))
        file_backed = self._file_backed

        @event.listens_for(self.engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Disable the driver's implicit BEGIN; _on_begin emits our own.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
                if file_backed:
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA synchronous=NORMAL")
            finally:
                cursor.close()

        @event.listens_for(self.engine.sync_engine, "begin")
        def _on_begin(conn):
            if conn.get_execution_options().get(_BEGIN_IMMEDIATE_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    async def init_db(self) -> BootstrapResult:
        """Create tables and the FTS mirror if they don't exist."""
        if self._file_backed:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            result = await self._bootstrap.apply()
        except SQLAlchemyError as exc:
            raise StorageError("init_db", str(exc)) from exc
        logger.debug("Fragment store initialized at %s", self.db_path)
        return result

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self, operation: str = "session", write: bool = False):
        """
        Get an async session context manager (one transaction).

        write=True opens the transaction with BEGIN IMMEDIATE; use it for any
        operation that reads and then writes.
        """
        maker = self.async_write_session if write else self.async_session
        async with maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError(operation, str(exc)) from exc
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    async def _get_row(
        session: AsyncSession, agent: str, path: str
    ) -> Optional[MemoryFragment]:
        result = await session.execute(
            select(MemoryFragment)
            .where(MemoryFragment.agent == agent)
            .where(MemoryFragment.path == path)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # Fragment writes
    # =========================================================================

    async def create_fragment(self, fragment: Fragment) -> Fragment:
        """
        Insert a fragment and its mirror entry atomically.

        Fills id, source, timestamps and decay_score when unset and returns
        the stored fragment.

        Raises:
            ValidationError: missing agent/path/content, invalid decay score,
                or (agent, path) already taken
        """
        operation = "create_fragment"
        if fragment is None:
            raise ValidationError(operation, "fragment is required")
        agent = _require_text(operation, "agent", fragment.agent)
        path = _require_text(operation, "path", fragment.path)
        if not (fragment.content or "").strip():
            raise ValidationError(operation, "content is required")

        score = 1.0 if fragment.decay_score is None else float(fragment.decay_score)
        if not is_valid_decay_score(score):
            raise ValidationError(
                operation, f"decay_score {score} outside [0.04, 1.0]"
            )

        now_value = utc_now_naive()
        created_at = to_naive_utc(fragment.created_at) or now_value
        updated_at = to_naive_utc(fragment.updated_at) or created_at
        if updated_at < created_at:
            raise ValidationError(operation, "updated_at must not precede created_at")

        fragment_id = (fragment.id or "").strip() or new_fragment_id(now_value)
        source = (fragment.source or "").strip() or DEFAULT_SOURCE_MINE

        async with self.session(operation, write=True) as session:
            if await self._get_row(session, agent, path) is not None:
                raise ValidationError(
                    operation, f"fragment already exists for {agent}/{path}"
                )

            row = MemoryFragment(
                id=fragment_id,
                agent=agent,
                path=path,
                content=fragment.content,
                source=source,
                created_at=created_at,
                updated_at=updated_at,
                accessed_at=to_naive_utc(fragment.accessed_at),
                access_count=max(0, int(fragment.access_count or 0)),
                decay_score=score,
                pinned=bool(fragment.pinned),
            )
            session.add(row)
            await session.flush()  # Get the row id

            await _mirror_insert(session, row.row_id, row.id, agent, path, row.content)
            logger.debug("Created fragment %s (%s/%s)", row.id, agent, path)
            return _to_fragment(row)

    async def update_fragment(
        self, agent: str, path: str, content: str
    ) -> UpdateOutcome:
        """
        Replace a fragment's content.

        Identical content is a no-op: timestamps, mirror and embeddings are
        left untouched. A real change bumps updated_at, drops every cached
        embedding for the fragment and re-mirrors the new content.
        """
        operation = "update_fragment"
        agent = _require_text(operation, "agent", agent)
        path = _require_text(operation, "path", path)
        if not (content or "").strip():
            raise ValidationError(operation, "content is required")

        async with self.session(operation, write=True) as session:
            row = await self._get_row(session, agent, path)
            if row is None:
                return UpdateOutcome.NOT_FOUND
            if row.content == content:
                return UpdateOutcome.UNCHANGED

            row_id, fragment_id, old_content = row.row_id, row.id, row.content
            updated_at = max(utc_now_naive(), row.created_at)
            if updated_at <= row.updated_at:
                updated_at = row.updated_at + timedelta(microseconds=1)

            result = await session.execute(
                update(MemoryFragment)
                .where(MemoryFragment.row_id == row_id)
                .values(content=content, updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConsistencyError(
                    operation, f"expected 1 row for {fragment_id}, got {result.rowcount}"
                )

            await session.execute(
                delete(MemoryEmbedding).where(MemoryEmbedding.fragment_id == fragment_id)
            )
            await _mirror_delete(session, row_id, fragment_id, agent, path, old_content)
            await _mirror_insert(session, row_id, fragment_id, agent, path, content)
            logger.debug("Updated fragment %s (%s/%s)", fragment_id, agent, path)
            return UpdateOutcome.UPDATED

    async def delete_fragment(self, agent: str, path: str) -> bool:
        """Remove a fragment and its mirror entry; embeddings cascade. False if absent."""
        operation = "delete_fragment"
        agent = _require_text(operation, "agent", agent)
        path = _require_text(operation, "path", path)

        async with self.session(operation, write=True) as session:
            row = await self._get_row(session, agent, path)
            if row is None:
                return False

            result = await session.execute(
                delete(MemoryFragment)
                .where(MemoryFragment.row_id == row.row_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConsistencyError(
                    operation, f"expected 1 row for {row.id}, got {result.rowcount}"
                )
            await _mirror_delete(session, row.row_id, row.id, row.agent, row.path, row.content)
            logger.debug("Deleted fragment %s (%s/%s)", row.id, agent, path)
            return True

    async def set_pinned(self, agent: str, path: str, pinned: bool) -> bool:
        """Pin or unpin a fragment. Pinned fragments skip decay and GC."""
        operation = "set_pinned"
        agent = _require_text(operation, "agent", agent)
        path = _require_text(operation, "path", path)

        async with self.session(operation, write=True) as session:
            result = await session.execute(
                update(MemoryFragment)
                .where(MemoryFragment.agent == agent)
                .where(MemoryFragment.path == path)
                .values(pinned=bool(pinned))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def bump_access(self, fragment_id: str) -> None:
        """
        Record a use of a fragment: accessed_at = now, access_count += 1,
        decay_score += 0.1 (capped at 1.0).

        Raises:
            NotFoundError: no fragment has this id
        """
        operation = "bump_access"
        fragment_id = _require_text(operation, "fragment_id", fragment_id)

        async with self.session(operation, write=True) as session:
            result = await session.execute(
                update(MemoryFragment)
                .where(MemoryFragment.id == fragment_id)
                .values(
                    accessed_at=utc_now_naive(),
                    access_count=MemoryFragment.access_count + 1,
                    decay_score=func.round(
                        func.min(MemoryFragment.decay_score + ACCESS_BOOST, DECAY_CEILING),
                        SCORE_PRECISION,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(operation, f"fragment {fragment_id} not found")

    # =========================================================================
    # Fragment reads
    # =========================================================================

    async def get_fragment(self, agent: str, path: str) -> Optional[Fragment]:
        async with self.session("get_fragment") as session:
            row = await self._get_row(session, (agent or "").strip(), (path or "").strip())
            return _to_fragment(row) if row is not None else None

    async def get_fragment_by_id(self, fragment_id: str) -> Optional[Fragment]:
        async with self.session("get_fragment_by_id") as session:
            result = await session.execute(
                select(MemoryFragment).where(
                    MemoryFragment.id == (fragment_id or "").strip()
                )
            )
            row = result.scalar_one_or_none()
            return _to_fragment(row) if row is not None else None

    async def find_fragments_by_path(self, path: str) -> List[Fragment]:
        """Fragments stored under `path` for any agent, newest update first."""
        async with self.session("find_fragments_by_path") as session:
            result = await session.execute(
                select(MemoryFragment)
                .where(MemoryFragment.path == (path or "").strip())
                .order_by(MemoryFragment.updated_at.desc(), MemoryFragment.row_id.desc())
            )
            return [_to_fragment(row) for row in result.scalars().all()]

    async def list_fragments(self, options: Optional[ListOptions] = None) -> List[Fragment]:
        """
        List fragments, newest creation first.

        Ordered by created_at because updated_at only moves on real content
        changes.
        """
        opts = options or ListOptions()
        query = select(MemoryFragment)

        agent = (opts.agent or "").strip()
        if agent:
            query = query.where(MemoryFragment.agent == agent)
        if opts.since is not None:
            query = query.where(MemoryFragment.created_at >= to_naive_utc(opts.since))
        if opts.path_contains:
            # instr() is a literal, case-sensitive substring test; LIKE is neither.
            query = query.where(func.instr(MemoryFragment.path, opts.path_contains) > 0)

        query = query.order_by(
            MemoryFragment.created_at.desc(), MemoryFragment.row_id.desc()
        )
        if opts.limit and opts.limit > 0:
            query = query.limit(opts.limit)

        async with self.session("list_fragments") as session:
            result = await session.execute(query)
            return [_to_fragment(row) for row in result.scalars().all()]

    async def fragment_counts_by_agent(self) -> Dict[str, int]:
        async with self.session("fragment_counts_by_agent") as session:
            result = await session.execute(
                select(MemoryFragment.agent, func.count()).group_by(MemoryFragment.agent)
            )
            return {agent: int(count) for agent, count in result.all()}

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def search_bm25(
        self,
        query: str,
        limit: int = DEFAULT_KEYWORD_LIMIT,
        agent: Optional[str] = None,
    ) -> List[ScoredFragment]:
        """
        Keyword search over the FTS mirror.

        Scores are negated BM25 values, so higher means more relevant.
        Snippets mark matched terms with [ and ].
        """
        operation = "search_bm25"
        if not (query or "").strip():
            raise ValidationError(operation, "query is required")
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        if limit <= 0:
            limit = DEFAULT_KEYWORD_LIMIT
        agent_value = (agent or "").strip()

        async with self.session(operation) as session:
            hit_result = await session.execute(
                text(
                    "SELECT memory_fts.rowid AS row_id, "
                    f"snippet(memory_fts, {FTS_CONTENT_COLUMN}, '[', ']', '...', 24) AS snippet, "
                    "bm25(memory_fts) AS text_rank "
                    "FROM memory_fts "
                    "JOIN memory_fragments mf ON mf.row_id = memory_fts.rowid "
                    "WHERE memory_fts MATCH :fts_query "
                    "AND (:agent = '' OR mf.agent = :agent) "
                    "ORDER BY text_rank ASC, mf.row_id ASC "
                    "LIMIT :limit"
                ),
                {"fts_query": fts_query, "agent": agent_value, "limit": limit},
            )
            hits = [dict(row) for row in hit_result.mappings().all()]
            if not hits:
                return []

            rows_result = await session.execute(
                select(MemoryFragment).where(
                    MemoryFragment.row_id.in_([hit["row_id"] for hit in hits])
                )
            )
            rows_by_id = {row.row_id: row for row in rows_result.scalars().all()}

        scored: List[ScoredFragment] = []
        for hit in hits:
            row = rows_by_id.get(hit["row_id"])
            if row is None:
                continue
            scored.append(
                ScoredFragment(
                    fragment=_to_fragment(row),
                    score=-float(hit["text_rank"]),
                    snippet=str(hit["snippet"] or ""),
                )
            )
        return scored

    async def search_fragments(
        self,
        query: str,
        limit: int = DEFAULT_KEYWORD_LIMIT,
        agent: Optional[str] = None,
    ) -> List[SearchResult]:
        scored = await self.search_bm25(query, limit=limit, agent=agent)
        return [
            SearchResult(
                agent=item.fragment.agent,
                path=item.fragment.path,
                snippet=item.snippet,
                score=item.score,
            )
            for item in scored
        ]

    async def vector_search(
        self,
        agent: Optional[str],
        provider: str,
        model: str,
        query_vector: Sequence[float],
        limit: int = DEFAULT_VECTOR_LIMIT,
    ) -> List[ScoredFragment]:
        """
        Full-scan cosine similarity over cached embeddings.

        Only embeddings whose dimensionality equals len(query_vector) are
        considered. Ties go to the most recently updated fragment.
        """
        operation = "vector_search"
        if not query_vector:
            raise ValidationError(operation, "query vector cannot be empty")
        provider = _require_text(operation, "provider", provider)
        model = _require_text(operation, "model", model)
        if limit <= 0:
            limit = DEFAULT_VECTOR_LIMIT
        query_values = [float(v) for v in query_vector]

        stmt = (
            select(MemoryFragment, MemoryEmbedding.vector)
            .join(MemoryEmbedding, MemoryEmbedding.fragment_id == MemoryFragment.id)
            .where(MemoryEmbedding.provider == provider)
            .where(MemoryEmbedding.model == model)
            .where(MemoryEmbedding.dimensions == len(query_values))
        )
        agent_value = (agent or "").strip()
        if agent_value:
            stmt = stmt.where(MemoryFragment.agent == agent_value)

        async with self.session(operation) as session:
            rows = (await session.execute(stmt)).all()

        matches: List[ScoredFragment] = []
        for row, payload in rows:
            vector = _decode_vector(operation, payload, row.id)
            matches.append(
                ScoredFragment(
                    fragment=_to_fragment(row),
                    score=cosine_similarity(query_values, vector),
                )
            )

        matches.sort(key=lambda m: (m.score, m.fragment.updated_at), reverse=True)
        return matches[:limit]

    # =========================================================================
    # Embedding cache
    # =========================================================================

    async def upsert_embedding(
        self,
        fragment_id: str,
        provider: str,
        model: str,
        dims: int,
        vector: Sequence[float],
    ) -> None:
        """
        Insert or replace the vector for (fragment_id, provider, model).

        dims <= 0 takes the vector length.

        Raises:
            ValidationError: blank identifiers, empty vector, dims mismatch
            NotFoundError: the fragment does not exist
        """
        operation = "upsert_embedding"
        fragment_id = _require_text(operation, "fragment_id", fragment_id)
        provider = _require_text(operation, "provider", provider)
        model = _require_text(operation, "model", model)
        if not vector:
            raise ValidationError(operation, "vector cannot be empty")
        try:
            values = [float(v) for v in vector]
        except (TypeError, ValueError) as exc:
            raise ValidationError(operation, "vector must contain numbers") from exc
        if dims <= 0:
            dims = len(values)
        if len(values) != dims:
            raise ValidationError(
                operation,
                f"vector dimensions mismatch: got {len(values)} values, dims={dims}",
            )
        payload = json.dumps(values, separators=(",", ":"))

        async with self.session(operation, write=True) as session:
            exists = await session.execute(
                select(MemoryFragment.row_id).where(MemoryFragment.id == fragment_id)
            )
            if exists.scalar_one_or_none() is None:
                raise NotFoundError(operation, f"fragment {fragment_id} not found")

            stmt = sqlite_insert(MemoryEmbedding).values(
                fragment_id=fragment_id,
                provider=provider,
                model=model,
                dimensions=dims,
                vector=payload,
                embedded_at=utc_now_naive(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["fragment_id", "provider", "model"],
                set_={
                    "dimensions": stmt.excluded.dimensions,
                    "vector": stmt.excluded.vector,
                    "embedded_at": stmt.excluded.embedded_at,
                },
            )
            await session.execute(stmt)

    async def get_embedding(
        self, fragment_id: str, provider: str, model: str
    ) -> Optional[List[float]]:
        """Cached vector, or None when this provider/model has none for the fragment."""
        operation = "get_embedding"
        fragment_id = _require_text(operation, "fragment_id", fragment_id)
        provider = _require_text(operation, "provider", provider)
        model = _require_text(operation, "model", model)

        async with self.session(operation) as session:
            result = await session.execute(
                select(MemoryEmbedding.vector)
                .where(MemoryEmbedding.fragment_id == fragment_id)
                .where(MemoryEmbedding.provider == provider)
                .where(MemoryEmbedding.model == model)
            )
            payload = result.scalar_one_or_none()
        if payload is None:
            return None
        return _decode_vector(operation, payload, fragment_id)

    async def get_embeddings(
        self, fragment_ids: Iterable[str], provider: str, model: str
    ) -> Dict[str, List[float]]:
        """Bulk lookup; ids without a cached vector are absent from the result."""
        operation = "get_embeddings"
        provider = _require_text(operation, "provider", provider)
        model = _require_text(operation, "model", model)

        ids: List[str] = []
        seen = set()
        for raw_id in fragment_ids or []:
            candidate = (raw_id or "").strip()
            if not candidate or candidate in seen:
                continue
            seen.add(candidate)
            ids.append(candidate)
        if not ids:
            return {}

        found: Dict[str, List[float]] = {}
        async with self.session(operation) as session:
            for batch in _batched(ids, _ID_BATCH_SIZE):
                result = await session.execute(
                    select(MemoryEmbedding.fragment_id, MemoryEmbedding.vector)
                    .where(MemoryEmbedding.provider == provider)
                    .where(MemoryEmbedding.model == model)
                    .where(MemoryEmbedding.fragment_id.in_(list(batch)))
                )
                for fragment_id, payload in result.all():
                    found[fragment_id] = _decode_vector(operation, payload, fragment_id)
        return found

    async def needs_embedding(
        self, agent: Optional[str], provider: str, model: str
    ) -> List[Fragment]:
        """Fragments with no cached vector for this exact provider/model."""
        operation = "needs_embedding"
        provider = _require_text(operation, "provider", provider)
        model = _require_text(operation, "model", model)

        stmt = (
            select(MemoryFragment)
            .outerjoin(
                MemoryEmbedding,
                and_(
                    MemoryEmbedding.fragment_id == MemoryFragment.id,
                    MemoryEmbedding.provider == provider,
                    MemoryEmbedding.model == model,
                ),
            )
            .where(MemoryEmbedding.fragment_id.is_(None))
        )
        agent_value = (agent or "").strip()
        if agent_value:
            stmt = stmt.where(MemoryFragment.agent == agent_value)
        stmt = stmt.order_by(MemoryFragment.updated_at.desc(), MemoryFragment.row_id.desc())

        async with self.session(operation) as session:
            result = await session.execute(stmt)
            return [_to_fragment(row) for row in result.scalars().all()]

    # =========================================================================
    # Decay & GC
    # =========================================================================

    async def recalculate_decay(
        self,
        agent: Optional[str] = None,
        half_life_days: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Recompute decay_score for every unpinned fragment in scope.

        score = max(0.5 ** (days since last activity / half_life), 0.04),
        where last activity is the later of updated_at and accessed_at.
        Returns the number of fragments rewritten.
        """
        operation = "recalculate_decay"
        half_life = (
            self.config.half_life_days if half_life_days is None else float(half_life_days)
        )
        if half_life <= 0:
            half_life = DEFAULT_HALF_LIFE_DAYS
        now_value = to_naive_utc(now) or utc_now_naive()

        stmt = select(MemoryFragment).where(MemoryFragment.pinned == False)
        agent_value = (agent or "").strip()
        if agent_value:
            stmt = stmt.where(MemoryFragment.agent == agent_value)

        async with self.session(operation, write=True) as session:
            fragments = list((await session.execute(stmt)).scalars().all())
            for row in fragments:
                age_days = age_in_days(now_value, last_active(row.updated_at, row.accessed_at))
                row.decay_score = decay_score(age_days, half_life)
            await session.flush()

        logger.info(
            "Decay recalculated for %d fragments (agent=%s, half_life_days=%s)",
            len(fragments),
            agent_value or "*",
            half_life,
        )
        return len(fragments)

    @staticmethod
    def _gc_candidates_query(agent: str):
        stmt = (
            select(MemoryFragment)
            .where(MemoryFragment.decay_score < GC_THRESHOLD)
            .where(MemoryFragment.pinned == False)
        )
        if agent:
            stmt = stmt.where(MemoryFragment.agent == agent)
        return stmt

    async def count_gc_candidates(self, agent: Optional[str] = None) -> int:
        agent_value = (agent or "").strip()
        subquery = self._gc_candidates_query(agent_value).subquery()
        async with self.session("count_gc_candidates") as session:
            result = await session.execute(select(func.count()).select_from(subquery))
            return int(result.scalar() or 0)

    async def gc_fragments(self, agent: Optional[str] = None) -> int:
        """Delete unpinned fragments with decay_score < 0.05. Returns rows removed."""
        operation = "gc_fragments"
        agent_value = (agent or "").strip()

        async with self.session(operation, write=True) as session:
            result = await session.execute(self._gc_candidates_query(agent_value))
            candidates = list(result.scalars().all())
            if not candidates:
                return 0

            removed = 0
            row_ids = [row.row_id for row in candidates]
            for batch in _batched(row_ids, _ID_BATCH_SIZE):
                deleted = await session.execute(
                    delete(MemoryFragment)
                    .where(MemoryFragment.row_id.in_(list(batch)))
                    .execution_options(synchronize_session=False)
                )
                removed += int(deleted.rowcount or 0)
            if removed != len(candidates):
                raise ConsistencyError(
                    operation,
                    f"expected to remove {len(candidates)} fragments, removed {removed}",
                )

            for row in candidates:
                await _mirror_delete(
                    session, row.row_id, row.id, row.agent, row.path, row.content
                )

        logger.info("GC removed %d fragments (agent=%s)", removed, agent_value or "*")
        return removed

    async def rebuild_fts(self) -> None:
        """Rebuild the full-text mirror from the fragment table."""
        async with self.write_engine.begin() as conn:
            try:
                await conn.run_sync(rebuild_fts_sync)
            except SQLAlchemyError as exc:
                raise StorageError("rebuild_fts", str(exc)) from exc
        logger.info("Full-text mirror rebuilt")

    # =========================================================================
    # Metadata
    # =========================================================================

    async def get_meta(self, key: str) -> Optional[str]:
        operation = "get_meta"
        key_value = _require_text(operation, "key", key)
        async with self.session(operation) as session:
            result = await session.execute(
                select(MemoryMeta.value).where(MemoryMeta.key == key_value)
            )
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        operation = "set_meta"
        key_value = _require_text(operation, "key", key)
        stmt = sqlite_insert(MemoryMeta).values(key=key_value, value=str(value))
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"], set_={"value": stmt.excluded.value}
        )
        async with self.session(operation, write=True) as session:
            await session.execute(stmt)

    # =========================================================================
    # Mining state
    # =========================================================================

    async def get_state(self, session_id: str) -> Optional[MiningState]:
        operation = "get_state"
        session_value = _require_text(operation, "session_id", session_id)
        async with self.session(operation) as session:
            row = await session.get(MiningStateRow, session_value)
            if row is None:
                return None
            mined_at = parse_timestamp(row.mined_at)
            if mined_at is None:
                raise DecodeError(
                    operation,
                    f"unreadable mined_at {row.mined_at!r} for session {session_value}",
                    key=session_value,
                )
            return MiningState(
                session_id=row.session_id,
                agent=row.agent,
                last_mined_offset=int(row.last_mined_offset or 0),
                mined_at=mined_at,
            )

    async def upsert_state(self, state: MiningState) -> MiningState:
        """Insert or replace the cursor for state.session_id; mined_at defaults to now."""
        operation = "upsert_state"
        if state is None:
            raise ValidationError(operation, "mining state is required")
        session_value = _require_text(operation, "session_id", state.session_id)
        agent = _require_text(operation, "agent", state.agent)
        offset = int(state.last_mined_offset or 0)
        if offset < 0:
            raise ValidationError(operation, "last_mined_offset must not be negative")
        mined_at = to_naive_utc(state.mined_at) or utc_now_naive()

        stmt = sqlite_insert(MiningStateRow).values(
            session_id=session_value,
            agent=agent,
            last_mined_offset=offset,
            mined_at=format_timestamp(mined_at),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id"],
            set_={
                "agent": stmt.excluded.agent,
                "last_mined_offset": stmt.excluded.last_mined_offset,
                "mined_at": stmt.excluded.mined_at,
            },
        )
        async with self.session(operation, write=True) as session:
            await session.execute(stmt)

        return MiningState(
            session_id=session_value,
            agent=agent,
            last_mined_offset=offset,
            mined_at=mined_at,
        )

    async def last_mined_per_agent(self) -> Dict[str, datetime]:
        """Latest mined_at per agent; rows with unreadable timestamps are skipped."""
        async with self.session("last_mined_per_agent") as session:
            result = await session.execute(
                select(MiningStateRow.session_id, MiningStateRow.agent, MiningStateRow.mined_at)
            )
            rows = result.all()

        latest: Dict[str, datetime] = {}
        for session_id, agent, raw_mined_at in rows:
            mined_at = parse_timestamp(raw_mined_at)
            if mined_at is None:
                logger.warning(
                    "Skipping mining state %s: unreadable mined_at %r",
                    session_id,
                    raw_mined_at,
                )
                continue
            current = latest.get(agent)
            if current is None or mined_at > current:
                latest[agent] = mined_at
        return latest


# =============================================================================
# Global Singleton
# =============================================================================

_fragment_store: Optional[FragmentStore] = None


def get_fragment_store() -> FragmentStore:
    """Get the global FragmentStore instance (configured from the environment)."""
    global _fragment_store
    if _fragment_store is None:
        _fragment_store = FragmentStore(config=StoreConfig.from_env())
    return _fragment_store


async def close_fragment_store():
    """Close the global FragmentStore connection."""
    global _fragment_store
    if _fragment_store:
        await _fragment_store.close()
        _fragment_store = None
