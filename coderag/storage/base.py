"""
存储接口协议（依赖倒置：pipeline / retrieval 只依赖这里，不依赖 psycopg）。

实现：
- `coderag.storage.pg`：Postgres + pgvector + pg_trgm（生产）
- `coderag.storage.memory`：内存实现（开发 / 单元测试）

方法全部是同步的；async 调用方通过 `anyio.to_thread.run_sync` 调用。
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from coderag.storage.models import CodeChunk
from coderag.storage.models import FileMatch
from coderag.storage.models import IndexingJob
from coderag.storage.models import MetadataFilter
from coderag.storage.models import RepositoryStats
from coderag.storage.models import RetrievedChunk


class ChunkStore(Protocol):
    def insert_chunks(self, repository_id: str, chunks: Sequence[CodeChunk]) -> list[str]: ...

    def delete_chunks_except(
        self,
        repository_id: str,
        keep_ids: Sequence[str],
        file_paths: Sequence[str] | None = None,
    ) -> int: ...

    def delete_repository_chunks(self, repository_id: str) -> int: ...

    def list_file_hashes(self, repository_id: str) -> dict[str, str]: ...

    def count_chunks(self, repository_id: str) -> int: ...

    def vector_search(
        self,
        repository_id: str,
        embedding: Sequence[float],
        limit: int,
        threshold: float | None = None,
    ) -> list[RetrievedChunk]: ...

    def text_search(self, repository_id: str, query: str, limit: int) -> list[RetrievedChunk]: ...

    def search_symbols(
        self,
        repository_id: str,
        pattern: str,
        chunk_type: str | None = None,
        limit: int = 20,
    ) -> list[RetrievedChunk]: ...

    def search_files(self, repository_id: str, pattern: str, limit: int = 20) -> list[FileMatch]: ...

    def retrieve_by_metadata(self, repository_id: str, filter: MetadataFilter, limit: int) -> list[RetrievedChunk]: ...

    def search_by_file(self, repository_id: str, file_path: str) -> list[RetrievedChunk]: ...

    def search_by_symbol(self, repository_id: str, symbol_name: str) -> list[RetrievedChunk]: ...

    def search_by_type(self, repository_id: str, chunk_type: str, limit: int = 50) -> list[RetrievedChunk]: ...

    def repository_stats(self, repository_id: str) -> RepositoryStats: ...


class JobStore(Protocol):
    def create(self, job: IndexingJob) -> bool:
        """插入新 job；同一 repository 已有 job 时不插入并返回 False。"""
        ...

    def get(self, job_id: str) -> IndexingJob | None: ...

    def get_by_repository(self, repository_id: str) -> IndexingJob | None: ...

    def update(self, job_id: str, **fields: object) -> IndexingJob | None: ...

    def delete(self, job_id: str) -> None: ...

    def list_in_progress(self) -> list[IndexingJob]: ...

    def fail_stale(self, cutoff: datetime, message: str, now: datetime) -> int: ...
