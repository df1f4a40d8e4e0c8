"""
Chunk Store with PostgreSQL + pgvector

Read-only access to the ``project_doc_chunks`` table populated by the
ingestion pipeline. Every query is scoped by ``project_id`` so retrieval
never crosses tenant boundaries.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass, field

import psycopg2
import psycopg2.extras
import psycopg2.pool

from .language_patterns import VALID_FTS_CONFIGS, DEFAULT_FTS_CONFIG

logger = logging.getLogger(__name__)


@dataclass
class VectorStoreConfig:
    """Configuration for the chunk store."""
    connection_string: Optional[str] = None
    table_name: str = "project_doc_chunks"
    embedding_dimensions: int = 1536
    fts_language: str = DEFAULT_FTS_CONFIG
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True


@dataclass
class RetrievedChunk:
    """A stored chunk plus the score it was retrieved with.

    ``similarity`` is a cosine similarity for vector hits, a ``ts_rank`` for
    keyword hits and a fused RRF score for hybrid hits.
    """
    id: str
    text: str
    index: int
    source_file: str
    similarity: float
    file_id: Optional[str] = None
    project_id: Optional[str] = None
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def hop_number(self) -> Optional[int]:
        return self.metadata.get("hop_number")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "index": self.index,
            "source_file": self.source_file,
            "page_number": self.page_number,
            "section_title": self.section_title,
            "similarity": self.similarity,
            "file_id": self.file_id,
            "project_id": self.project_id,
            "metadata": self.metadata,
        }


_CHUNK_COLUMNS = [
    "id", "chunk_text", "chunk_index", "source_file", "page_number",
    "section_title", "file_id", "project_id", "score",
]


def _row_to_chunk(row, columns: list[str]) -> RetrievedChunk:
    # Handle both RealDictRow and tuple
    if hasattr(row, "keys"):
        row_dict = dict(row)
    else:
        row_dict = dict(zip(columns, row))
    return RetrievedChunk(
        id=str(row_dict["id"]),
        text=row_dict["chunk_text"] or "",
        index=row_dict["chunk_index"] if row_dict["chunk_index"] is not None else 0,
        source_file=row_dict["source_file"] or "",
        similarity=float(row_dict["score"]),
        file_id=str(row_dict["file_id"]) if row_dict["file_id"] is not None else None,
        project_id=str(row_dict["project_id"]) if row_dict["project_id"] is not None else None,
        page_number=row_dict.get("page_number"),
        section_title=row_dict.get("section_title"),
    )


def _vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(str(float(v)) for v in embedding) + "]"


class ChunkStore:
    """
    PostgreSQL chunk store with pgvector.

    Features:
    - Cosine similarity search
    - Full-text keyword search (ts_rank)
    - Tenant isolation via project_id on every query
    - Connection pooling with one retry on stale connections
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize chunk store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/regulation_rag"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor
                )
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        # For single connection mode, only reconnect if connection is closed
        if self._conn is None or self._conn.closed:
            if self._conn is not None:
                logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()
        return self._get_connection()

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            logger.debug("Rollback skipped, connection already gone")

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                conn.rollback()  # read-only; end the implicit transaction
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                if self._pool:
                    self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                logger.error(f"{label} failed after reconnect: {e}")
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    def _fts_config(self, fts_language: Optional[str]) -> str:
        # Interpolated into SQL, so only whitelisted configs pass
        fts_language = fts_language or self.config.fts_language
        if fts_language not in VALID_FTS_CONFIGS:
            logger.warning(f"Invalid FTS language '{fts_language}', falling back to '{DEFAULT_FTS_CONFIG}'")
            return DEFAULT_FTS_CONFIG
        return fts_language

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        project_id: str,
        query_embedding: list[float],
        top_k: int = 5,
        threshold: Optional[float] = None,
        exclude_chunk_id: Optional[str] = None,
    ) -> list[RetrievedChunk]:
        """
        Semantic search using cosine similarity.

        Args:
            project_id: Tenant scope; only chunks of this project are considered
            query_embedding: Query embedding vector
            top_k: Number of results to return
            threshold: Optional minimum similarity (0-1)
            exclude_chunk_id: Chunk to leave out (used for "similar chunks")

        Returns:
            RetrievedChunk list ordered by ascending cosine distance
        """
        if len(query_embedding) != self.config.embedding_dimensions:
            raise ValueError(
                f"Query embedding has {len(query_embedding)} dimensions, "
                f"store expects {self.config.embedding_dimensions}"
            )

        vector = _vector_literal(query_embedding)
        filters = ["project_id = %s", "embedding IS NOT NULL"]
        filter_params: list = [project_id]

        if threshold is not None:
            filters.append("1 - (embedding <=> %s::vector) >= %s")
            filter_params.extend([vector, threshold])

        if exclude_chunk_id:
            filters.append("id <> %s")
            filter_params.append(exclude_chunk_id)

        sql = f"""
        SELECT
            id,
            chunk_text,
            chunk_index,
            source_file,
            page_number,
            section_title,
            file_id,
            project_id,
            1 - (embedding <=> %s::vector) as score
        FROM {self.config.table_name}
        WHERE {' AND '.join(filters)}
        ORDER BY embedding <=> %s::vector
        LIMIT %s
        """

        # Params in order: score calc embedding, filters, order embedding, limit
        params = [vector] + filter_params + [vector, top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [_row_to_chunk(row, _CHUNK_COLUMNS) for row in rows]

        return self._execute_with_retry(_op, "search")

    def keyword_search(
        self,
        project_id: str,
        query: str,
        top_k: int = 5,
        fts_language: Optional[str] = None,
    ) -> list[RetrievedChunk]:
        """
        Full-text keyword search using PostgreSQL ts_rank.

        Args:
            project_id: Tenant scope
            query: Search query string (plain text, parsed by plainto_tsquery)
            top_k: Number of results to return
            fts_language: PostgreSQL FTS config name; defaults to the store config

        Returns:
            RetrievedChunk list ordered by descending rank, matching rows only
        """
        cfg = self._fts_config(fts_language)

        sql = f"""
        SELECT
            id,
            chunk_text,
            chunk_index,
            source_file,
            page_number,
            section_title,
            file_id,
            project_id,
            ts_rank(to_tsvector(%s, chunk_text), plainto_tsquery(%s, %s)) as score
        FROM {self.config.table_name}
        WHERE project_id = %s
          AND to_tsvector(%s, chunk_text) @@ plainto_tsquery(%s, %s)
        ORDER BY score DESC
        LIMIT %s
        """

        params = [cfg, cfg, query, project_id, cfg, cfg, query, top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [_row_to_chunk(row, _CHUNK_COLUMNS) for row in rows]

        return self._execute_with_retry(_op, "keyword_search")

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_chunk_embedding(
        self, chunk_id: str, project_id: Optional[str] = None
    ) -> Optional[tuple[list[float], str]]:
        """Return ``(embedding, project_id)`` for a chunk, or None if unknown."""
        sql = f"SELECT embedding::text AS embedding, project_id FROM {self.config.table_name} WHERE id = %s"
        params: list = [chunk_id]
        if project_id:
            sql += " AND project_id = %s"
            params.append(project_id)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone()

        row = self._execute_with_retry(_op, "get_chunk_embedding")
        if not row:
            return None
        if not hasattr(row, "keys"):
            row = dict(zip(["embedding", "project_id"], row))
        if row["embedding"] is None:
            return None
        embedding = [float(v) for v in row["embedding"].strip("[]").split(",") if v]
        return embedding, str(row["project_id"])

    def count_chunks(self, project_id: str) -> int:
        """Number of embedded chunks in a project."""
        sql = (
            f"SELECT COUNT(*) AS n FROM {self.config.table_name} "
            f"WHERE project_id = %s AND embedding IS NOT NULL"
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, [project_id])
                return cur.fetchone()

        row = self._execute_with_retry(_op, "count_chunks")
        if not row:
            return 0
        return int(row["n"] if hasattr(row, "keys") else row[0])
