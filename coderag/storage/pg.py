"""
Postgres 存储实现（pgvector + pg_trgm + tsvector）。

表：
- `code_chunks`：chunk 内容 + embedding + 加权 `search_vector`
- `indexing_jobs`：每个 repository 最多一条 job（UNIQUE repository_id）

约定：
- 每次调用独立建连接（`with client.connect() as conn`），写操作显式 commit
- psycopg 异常统一包装为 `DatabaseError`
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime

import psycopg
from pgvector import Vector
from pgvector.psycopg import register_vector
from psycopg import sql

from coderag.errors import DatabaseError
from coderag.storage.models import TERMINAL_STATUSES
from coderag.storage.models import CodeChunk
from coderag.storage.models import FileMatch
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobStatus
from coderag.storage.models import MetadataFilter
from coderag.storage.models import RepositoryStats
from coderag.storage.models import RetrievedChunk

logger = logging.getLogger(__name__)

TRIGRAM_THRESHOLD = 0.3

_CHUNK_COLUMNS = (
    "id::text, file_path, start_line, end_line, content, language, chunk_type, symbol_name, context"
)


class IndexStorageClient:
    """Postgres + pgvector 连接器。"""

    def __init__(self, dsn: str, embedding_dim: int) -> None:
        if embedding_dim <= 0:
            raise ValueError("embedding_dim must be > 0")
        self._dsn = dsn
        self._embedding_dim = embedding_dim

    def connect(self) -> psycopg.Connection:
        conn = psycopg.connect(self._dsn)
        register_vector(conn)
        return conn

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim


@contextmanager
def _connection(client: IndexStorageClient) -> Iterator[psycopg.Connection]:
    try:
        with client.connect() as conn:
            yield conn
    except psycopg.Error as exc:
        logger.error(f"Postgres error: {exc}")
        raise DatabaseError(str(exc)) from exc


def ensure_schema(client: IndexStorageClient) -> None:
    with _connection(client) as conn:
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS code_chunks (
                    id UUID PRIMARY KEY,
                    repository_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    start_line INTEGER NOT NULL,
                    end_line INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    language TEXT NOT NULL,
                    chunk_type TEXT NOT NULL,
                    symbol_name TEXT,
                    dependencies TEXT[] NOT NULL DEFAULT '{{}}',
                    context TEXT,
                    file_hash TEXT NOT NULL DEFAULT '',
                    embedding VECTOR({client.embedding_dim}),
                    search_vector TSVECTOR,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_code_chunks_repo_path ON code_chunks (repository_id, file_path)"
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_code_chunks_embedding
                ON code_chunks USING hnsw (embedding vector_cosine_ops)
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_code_chunks_search ON code_chunks USING gin (search_vector)"
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_code_chunks_symbol_trgm
                ON code_chunks USING gin (symbol_name gin_trgm_ops)
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_code_chunks_path_trgm
                ON code_chunks USING gin (file_path gin_trgm_ops)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS indexing_jobs (
                    id TEXT PRIMARY KEY,
                    repository_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    current_phase TEXT,
                    progress INTEGER NOT NULL DEFAULT 0,
                    files_total INTEGER NOT NULL DEFAULT 0,
                    files_processed INTEGER NOT NULL DEFAULT 0,
                    chunks_created INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    commit_sha TEXT,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """
            )
        conn.commit()
    logger.info("Postgres schema ensured")


def _row_to_chunk(row: Sequence[object], **scores: float | None) -> RetrievedChunk:
    return RetrievedChunk(
        id=row[0],
        file_path=row[1],
        start_line=row[2],
        end_line=row[3],
        content=row[4],
        language=row[5],
        chunk_type=row[6],
        symbol_name=row[7],
        context=row[8],
        **scores,
    )


def _uuid_list(ids: Sequence[str]) -> list[uuid.UUID]:
    return [uuid.UUID(i) for i in ids]


class PgChunkStore:
    def __init__(self, client: IndexStorageClient) -> None:
        self._client = client

    def insert_chunks(self, repository_id: str, chunks: Sequence[CodeChunk]) -> list[str]:
        if not chunks:
            return []
        ids: list[str] = []
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                for chunk in chunks:
                    chunk_id = uuid.uuid4()
                    if chunk.embedding and len(chunk.embedding) != self._client.embedding_dim:
                        raise ValueError(
                            f"embedding dimension {len(chunk.embedding)} != {self._client.embedding_dim}"
                        )
                    cur.execute(
                        """
                        INSERT INTO code_chunks (
                            id, repository_id, file_path, start_line, end_line, content, language,
                            chunk_type, symbol_name, dependencies, context, file_hash, embedding, search_vector
                        ) VALUES (
                            %(id)s, %(repo)s, %(path)s, %(start)s, %(end)s, %(content)s, %(language)s,
                            %(chunk_type)s, %(symbol)s, %(deps)s, %(context)s, %(file_hash)s, %(embedding)s,
                            setweight(to_tsvector('simple', coalesce(%(symbol)s, '')), 'A')
                            || setweight(to_tsvector('simple', %(file_name)s || ' ' || %(chunk_type)s), 'B')
                            || setweight(to_tsvector('simple', %(content)s), 'C')
                            || setweight(to_tsvector('simple', %(deps_text)s), 'D')
                        )
                        """,
                        {
                            "id": chunk_id,
                            "repo": repository_id,
                            "path": chunk.file_path,
                            "start": chunk.start_line,
                            "end": chunk.end_line,
                            "content": chunk.content,
                            "language": chunk.language,
                            "chunk_type": chunk.chunk_type,
                            "symbol": chunk.symbol_name,
                            "deps": chunk.dependencies,
                            "context": chunk.context,
                            "file_hash": chunk.file_hash,
                            "embedding": Vector(chunk.embedding) if chunk.embedding else None,
                            "file_name": chunk.file_path.rsplit("/", 1)[-1],
                            "deps_text": " ".join(chunk.dependencies),
                        },
                    )
                    ids.append(str(chunk_id))
            conn.commit()
        return ids

    def delete_chunks_except(
        self,
        repository_id: str,
        keep_ids: Sequence[str],
        file_paths: Sequence[str] | None = None,
    ) -> int:
        query = "DELETE FROM code_chunks WHERE repository_id = %s AND NOT (id = ANY(%s))"
        params: list[object] = [repository_id, _uuid_list(keep_ids)]
        if file_paths is not None:
            query += " AND file_path = ANY(%s)"
            params.append(list(file_paths))
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                deleted = cur.rowcount
            conn.commit()
        return deleted

    def delete_repository_chunks(self, repository_id: str) -> int:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM code_chunks WHERE repository_id = %s", (repository_id,))
                deleted = cur.rowcount
            conn.commit()
        return deleted

    def list_file_hashes(self, repository_id: str) -> dict[str, str]:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT DISTINCT ON (file_path) file_path, file_hash FROM code_chunks WHERE repository_id = %s",
                    (repository_id,),
                )
                rows = cur.fetchall()
        return {row[0]: row[1] for row in rows}

    def count_chunks(self, repository_id: str) -> int:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT count(*) FROM code_chunks WHERE repository_id = %s", (repository_id,))
                row = cur.fetchone()
        return int(row[0]) if row else 0

    def vector_search(
        self,
        repository_id: str,
        embedding: Sequence[float],
        limit: int,
        threshold: float | None = None,
    ) -> list[RetrievedChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        vector = Vector(list(embedding))
        query = f"""
            SELECT {_CHUNK_COLUMNS}, 1 - (embedding <=> %s) AS similarity
            FROM code_chunks
            WHERE repository_id = %s AND embedding IS NOT NULL
        """
        params: list[object] = [vector, repository_id]
        if threshold is not None:
            query += " AND 1 - (embedding <=> %s) >= %s"
            params.extend([vector, threshold])
        query += " ORDER BY embedding <=> %s LIMIT %s"
        params.extend([vector, limit])
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=float(row[9]), vector_score=float(row[9])) for row in rows]

    def text_search(self, repository_id: str, query: str, limit: int) -> list[RetrievedChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if not query.strip():
            return []
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS}, ts_rank_cd(search_vector, q) AS rank
                    FROM code_chunks, plainto_tsquery('simple', %s) AS q
                    WHERE repository_id = %s AND search_vector @@ q
                    ORDER BY rank DESC
                    LIMIT %s
                    """,
                    (query, repository_id, limit),
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=float(row[9]), text_score=float(row[9])) for row in rows]

    def search_symbols(
        self,
        repository_id: str,
        pattern: str,
        chunk_type: str | None = None,
        limit: int = 20,
    ) -> list[RetrievedChunk]:
        query = f"""
            SELECT {_CHUNK_COLUMNS}, similarity(symbol_name, %s) AS sim
            FROM code_chunks
            WHERE repository_id = %s AND symbol_name IS NOT NULL AND similarity(symbol_name, %s) >= %s
        """
        params: list[object] = [pattern, repository_id, pattern, TRIGRAM_THRESHOLD]
        if chunk_type is not None:
            query += " AND chunk_type = %s"
            params.append(chunk_type)
        query += " ORDER BY sim DESC LIMIT %s"
        params.append(limit)
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=float(row[9])) for row in rows]

    def search_files(self, repository_id: str, pattern: str, limit: int = 20) -> list[FileMatch]:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT file_path, count(*) AS chunk_count, similarity(file_path, %s) AS sim
                    FROM code_chunks
                    WHERE repository_id = %s AND similarity(file_path, %s) >= %s
                    GROUP BY file_path
                    ORDER BY sim DESC
                    LIMIT %s
                    """,
                    (pattern, repository_id, pattern, TRIGRAM_THRESHOLD, limit),
                )
                rows = cur.fetchall()
        return [FileMatch(file_path=row[0], chunk_count=int(row[1]), similarity=float(row[2])) for row in rows]

    def retrieve_by_metadata(self, repository_id: str, filter: MetadataFilter, limit: int) -> list[RetrievedChunk]:
        clauses = ["repository_id = %s"]
        params: list[object] = [repository_id]
        if filter.file_path_patterns:
            clauses.append("file_path LIKE ANY(%s)")
            params.append(list(filter.file_path_patterns))
        if filter.chunk_types:
            clauses.append("chunk_type = ANY(%s)")
            params.append(list(filter.chunk_types))
        if filter.symbol_name_pattern:
            clauses.append("symbol_name LIKE %s")
            params.append(filter.symbol_name_pattern)
        params.append(limit)
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS}
                    FROM code_chunks
                    WHERE {" AND ".join(clauses)}
                    ORDER BY file_path, start_line
                    LIMIT %s
                    """,
                    params,
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=1.0) for row in rows]

    def search_by_file(self, repository_id: str, file_path: str) -> list[RetrievedChunk]:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS} FROM code_chunks
                    WHERE repository_id = %s AND file_path = %s
                    ORDER BY start_line
                    """,
                    (repository_id, file_path),
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=1.0) for row in rows]

    def search_by_symbol(self, repository_id: str, symbol_name: str) -> list[RetrievedChunk]:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS} FROM code_chunks
                    WHERE repository_id = %s AND symbol_name ILIKE %s
                    ORDER BY file_path, start_line
                    """,
                    (repository_id, f"%{symbol_name}%"),
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=1.0) for row in rows]

    def search_by_type(self, repository_id: str, chunk_type: str, limit: int = 50) -> list[RetrievedChunk]:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS} FROM code_chunks
                    WHERE repository_id = %s AND chunk_type = %s
                    ORDER BY file_path, start_line
                    LIMIT %s
                    """,
                    (repository_id, chunk_type, limit),
                )
                rows = cur.fetchall()
        return [_row_to_chunk(row, score=1.0) for row in rows]

    def repository_stats(self, repository_id: str) -> RepositoryStats:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT count(*), count(DISTINCT file_path) FROM code_chunks WHERE repository_id = %s",
                    (repository_id,),
                )
                totals = cur.fetchone()
                cur.execute(
                    "SELECT language, count(*) FROM code_chunks WHERE repository_id = %s GROUP BY language",
                    (repository_id,),
                )
                languages = cur.fetchall()
                cur.execute(
                    "SELECT chunk_type, count(*) FROM code_chunks WHERE repository_id = %s GROUP BY chunk_type",
                    (repository_id,),
                )
                chunk_types = cur.fetchall()
        return RepositoryStats(
            total_chunks=int(totals[0]) if totals else 0,
            total_files=int(totals[1]) if totals else 0,
            languages={row[0]: int(row[1]) for row in languages},
            chunk_types={row[0]: int(row[1]) for row in chunk_types},
        )


_JOB_COLUMNS = (
    "id",
    "repository_id",
    "status",
    "current_phase",
    "progress",
    "files_total",
    "files_processed",
    "chunks_created",
    "error_message",
    "commit_sha",
    "started_at",
    "completed_at",
    "created_at",
)


def _row_to_job(row: Sequence[object]) -> IndexingJob:
    return IndexingJob.model_validate(dict(zip(_JOB_COLUMNS, row, strict=True)))


def _db_value(value: object) -> object:
    if isinstance(value, JobStatus):
        return value.value
    return value


class PgJobStore:
    def __init__(self, client: IndexStorageClient) -> None:
        self._client = client

    def create(self, job: IndexingJob) -> bool:
        data = job.model_dump()
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        "INSERT INTO indexing_jobs ({}) VALUES ({}) "
                        "ON CONFLICT (repository_id) DO NOTHING RETURNING id"
                    ).format(
                        sql.SQL(", ").join(sql.Identifier(c) for c in _JOB_COLUMNS),
                        sql.SQL(", ").join(sql.Placeholder() for _ in _JOB_COLUMNS),
                    ),
                    [_db_value(data[c]) for c in _JOB_COLUMNS],
                )
                inserted = cur.fetchone() is not None
            conn.commit()
        return inserted

    def _fetch_one(self, where: str, value: str) -> IndexingJob | None:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("SELECT {} FROM indexing_jobs WHERE {} = %s").format(
                        sql.SQL(", ").join(sql.Identifier(c) for c in _JOB_COLUMNS),
                        sql.Identifier(where),
                    ),
                    (value,),
                )
                row = cur.fetchone()
        return _row_to_job(row) if row else None

    def get(self, job_id: str) -> IndexingJob | None:
        return self._fetch_one("id", job_id)

    def get_by_repository(self, repository_id: str) -> IndexingJob | None:
        return self._fetch_one("repository_id", repository_id)

    def update(self, job_id: str, **fields: object) -> IndexingJob | None:
        unknown = set(fields) - set(_JOB_COLUMNS[2:])
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        if not fields:
            return self.get(job_id)
        names = list(fields)
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("UPDATE indexing_jobs SET {} WHERE id = %s RETURNING {}").format(
                        sql.SQL(", ").join(
                            sql.SQL("{} = {}").format(sql.Identifier(n), sql.Placeholder()) for n in names
                        ),
                        sql.SQL(", ").join(sql.Identifier(c) for c in _JOB_COLUMNS),
                    ),
                    [_db_value(fields[n]) for n in names] + [job_id],
                )
                row = cur.fetchone()
            conn.commit()
        return _row_to_job(row) if row else None

    def delete(self, job_id: str) -> None:
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM indexing_jobs WHERE id = %s", (job_id,))
            conn.commit()

    def list_in_progress(self) -> list[IndexingJob]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("SELECT {} FROM indexing_jobs WHERE NOT (status = ANY(%s)) ORDER BY created_at").format(
                        sql.SQL(", ").join(sql.Identifier(c) for c in _JOB_COLUMNS),
                    ),
                    (terminal,),
                )
                rows = cur.fetchall()
        return [_row_to_job(row) for row in rows]

    def fail_stale(self, cutoff: datetime, message: str, now: datetime) -> int:
        terminal = [s.value for s in TERMINAL_STATUSES]
        with _connection(self._client) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE indexing_jobs
                    SET status = %s, error_message = %s, completed_at = %s
                    WHERE NOT (status = ANY(%s)) AND coalesce(started_at, created_at) < %s
                    """,
                    (JobStatus.FAILED.value, message, now, terminal, cutoff),
                )
                updated = cur.rowcount
            conn.commit()
        return updated
