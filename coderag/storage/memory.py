"""
内存版存储（开发 / 单元测试用）。

语义尽量贴近 Postgres 实现：
- 向量检索：cosine similarity
- 文本检索：按 `simple` 分词，所有 query term 都命中才返回；symbol(A) > 文件名/类型(B) > 内容(C) > 依赖(D) 加权
- symbol / 文件检索：pg_trgm 风格的三元组相似度，阈值 0.3
- metadata 过滤：SQL LIKE 语义（`%` / `_`）
"""

from __future__ import annotations

import re
import threading
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from coderag.embeddings.voyage import cosine_similarity
from coderag.parsing.languages import file_name
from coderag.storage.models import TERMINAL_STATUSES
from coderag.storage.models import CodeChunk
from coderag.storage.models import FileMatch
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobStatus
from coderag.storage.models import MetadataFilter
from coderag.storage.models import RepositoryStats
from coderag.storage.models import RetrievedChunk
from coderag.storage.models import StoredChunk

TRIGRAM_THRESHOLD = 0.3

_WORD = re.compile(r"[0-9A-Za-z_]+")
_TEXT_WEIGHTS = {"A": 1.0, "B": 0.4, "C": 0.2, "D": 0.1}


def _tokens(text: str) -> list[str]:
    return [t.lower() for t in _WORD.findall(text)]


def trigrams(text: str) -> set[str]:
    grams: set[str] = set()
    for word in _WORD.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i : i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float:
    left = trigrams(a)
    right = trigrams(b)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    body = "".join(".*" if c == "%" else "." if c == "_" else re.escape(c) for c in pattern)
    return re.compile(f"^{body}$", re.DOTALL)


def _to_retrieved(chunk: StoredChunk, score: float, **extra: float) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk.id,
        file_path=chunk.file_path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        content=chunk.content,
        language=chunk.language,
        chunk_type=chunk.chunk_type,
        symbol_name=chunk.symbol_name,
        context=chunk.context,
        score=score,
        **extra,
    )


def _weighted_fields(chunk: StoredChunk) -> dict[str, Counter[str]]:
    return {
        "A": Counter(_tokens(chunk.symbol_name or "")),
        "B": Counter(_tokens(file_name(chunk.file_path)) + _tokens(chunk.chunk_type)),
        "C": Counter(_tokens(chunk.content)),
        "D": Counter(_tokens(" ".join(chunk.dependencies))),
    }


@dataclass
class InMemoryChunkStore:
    chunks: dict[str, list[StoredChunk]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _repo(self, repository_id: str) -> list[StoredChunk]:
        return list(self.chunks.get(repository_id, []))

    def insert_chunks(self, repository_id: str, chunks: Sequence[CodeChunk]) -> list[str]:
        stored = [
            StoredChunk(id=str(uuid.uuid4()), repository_id=repository_id, **chunk.model_dump())
            for chunk in chunks
        ]
        with self._lock:
            self.chunks.setdefault(repository_id, []).extend(stored)
        return [c.id for c in stored]

    def delete_chunks_except(
        self,
        repository_id: str,
        keep_ids: Sequence[str],
        file_paths: Sequence[str] | None = None,
    ) -> int:
        keep = set(keep_ids)
        scope = set(file_paths) if file_paths is not None else None
        with self._lock:
            current = self.chunks.get(repository_id, [])
            remaining = [
                c for c in current if c.id in keep or (scope is not None and c.file_path not in scope)
            ]
            self.chunks[repository_id] = remaining
            return len(current) - len(remaining)

    def delete_repository_chunks(self, repository_id: str) -> int:
        with self._lock:
            removed = self.chunks.pop(repository_id, [])
        return len(removed)

    def list_file_hashes(self, repository_id: str) -> dict[str, str]:
        return {c.file_path: c.file_hash for c in self._repo(repository_id)}

    def count_chunks(self, repository_id: str) -> int:
        return len(self._repo(repository_id))

    def vector_search(
        self,
        repository_id: str,
        embedding: Sequence[float],
        limit: int,
        threshold: float | None = None,
    ) -> list[RetrievedChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        scored: list[tuple[float, StoredChunk]] = []
        for chunk in self._repo(repository_id):
            if not chunk.embedding:
                continue
            similarity = cosine_similarity(chunk.embedding, embedding)
            if threshold is not None and similarity < threshold:
                continue
            scored.append((similarity, chunk))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [_to_retrieved(c, s, vector_score=s) for s, c in scored[:limit]]

    def text_search(self, repository_id: str, query: str, limit: int) -> list[RetrievedChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        terms = list(dict.fromkeys(_tokens(query)))
        if not terms:
            return []
        scored: list[tuple[float, StoredChunk]] = []
        for chunk in self._repo(repository_id):
            fields = _weighted_fields(chunk)
            if not all(any(term in counts for counts in fields.values()) for term in terms):
                continue
            score = sum(_TEXT_WEIGHTS[w] * counts[term] for w, counts in fields.items() for term in terms)
            scored.append((score, chunk))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [_to_retrieved(c, s, text_score=s) for s, c in scored[:limit]]

    def search_symbols(
        self,
        repository_id: str,
        pattern: str,
        chunk_type: str | None = None,
        limit: int = 20,
    ) -> list[RetrievedChunk]:
        scored: list[tuple[float, StoredChunk]] = []
        for chunk in self._repo(repository_id):
            if chunk.symbol_name is None:
                continue
            if chunk_type is not None and chunk.chunk_type != chunk_type:
                continue
            similarity = trigram_similarity(chunk.symbol_name, pattern)
            if similarity >= TRIGRAM_THRESHOLD:
                scored.append((similarity, chunk))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [_to_retrieved(c, s) for s, c in scored[:limit]]

    def search_files(self, repository_id: str, pattern: str, limit: int = 20) -> list[FileMatch]:
        counts = Counter(c.file_path for c in self._repo(repository_id))
        matches = [
            FileMatch(file_path=path, chunk_count=count, similarity=trigram_similarity(path, pattern))
            for path, count in counts.items()
        ]
        matches = [m for m in matches if m.similarity >= TRIGRAM_THRESHOLD]
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    def retrieve_by_metadata(self, repository_id: str, filter: MetadataFilter, limit: int) -> list[RetrievedChunk]:
        path_patterns = [like_to_regex(p) for p in filter.file_path_patterns]
        symbol_pattern = like_to_regex(filter.symbol_name_pattern) if filter.symbol_name_pattern else None
        selected: list[StoredChunk] = []
        for chunk in self._repo(repository_id):
            if path_patterns and not any(p.match(chunk.file_path) for p in path_patterns):
                continue
            if filter.chunk_types and chunk.chunk_type not in filter.chunk_types:
                continue
            if symbol_pattern is not None and not (chunk.symbol_name and symbol_pattern.match(chunk.symbol_name)):
                continue
            selected.append(chunk)
        selected.sort(key=lambda c: (c.file_path, c.start_line))
        return [_to_retrieved(c, 1.0) for c in selected[:limit]]

    def search_by_file(self, repository_id: str, file_path: str) -> list[RetrievedChunk]:
        selected = sorted(
            (c for c in self._repo(repository_id) if c.file_path == file_path),
            key=lambda c: c.start_line,
        )
        return [_to_retrieved(c, 1.0) for c in selected]

    def search_by_symbol(self, repository_id: str, symbol_name: str) -> list[RetrievedChunk]:
        needle = symbol_name.lower()
        selected = sorted(
            (c for c in self._repo(repository_id) if c.symbol_name and needle in c.symbol_name.lower()),
            key=lambda c: (c.file_path, c.start_line),
        )
        return [_to_retrieved(c, 1.0) for c in selected]

    def search_by_type(self, repository_id: str, chunk_type: str, limit: int = 50) -> list[RetrievedChunk]:
        selected = sorted(
            (c for c in self._repo(repository_id) if c.chunk_type == chunk_type),
            key=lambda c: (c.file_path, c.start_line),
        )
        return [_to_retrieved(c, 1.0) for c in selected[:limit]]

    def repository_stats(self, repository_id: str) -> RepositoryStats:
        chunks = self._repo(repository_id)
        return RepositoryStats(
            total_chunks=len(chunks),
            total_files=len({c.file_path for c in chunks}),
            languages=dict(Counter(c.language for c in chunks)),
            chunk_types=dict(Counter(c.chunk_type for c in chunks)),
        )


@dataclass
class InMemoryJobStore:
    jobs: dict[str, IndexingJob] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def create(self, job: IndexingJob) -> bool:
        with self._lock:
            if any(j.repository_id == job.repository_id for j in self.jobs.values()):
                return False
            self.jobs[job.id] = job
            return True

    def get(self, job_id: str) -> IndexingJob | None:
        return self.jobs.get(job_id)

    def get_by_repository(self, repository_id: str) -> IndexingJob | None:
        for job in list(self.jobs.values()):
            if job.repository_id == repository_id:
                return job
        return None

    def update(self, job_id: str, **fields: object) -> IndexingJob | None:
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                return None
            updated = job.model_copy(update=fields)
            self.jobs[job_id] = updated
            return updated

    def delete(self, job_id: str) -> None:
        with self._lock:
            self.jobs.pop(job_id, None)

    def list_in_progress(self) -> list[IndexingJob]:
        return [j for j in self.jobs.values() if j.status not in TERMINAL_STATUSES]

    def fail_stale(self, cutoff: datetime, message: str, now: datetime) -> int:
        count = 0
        with self._lock:
            for job_id, job in list(self.jobs.items()):
                if job.status in TERMINAL_STATUSES:
                    continue
                reference = job.started_at or job.created_at
                if reference < cutoff:
                    self.jobs[job_id] = job.model_copy(
                        update={"status": JobStatus.FAILED, "error_message": message, "completed_at": now}
                    )
                    count += 1
        return count
