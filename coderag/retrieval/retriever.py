"""
基础检索原语（单一信号）。

- vector_search：query embedding + cosine similarity
- text_search：词法检索（query 先清洗为 word 字符）
- retrieve_relevant_chunks：向量 / 文本加权融合（旧版 hybrid，smart retrieval 的 `vector` / `hybrid` 策略使用）
- search_by_file / search_by_symbol / search_by_type / retrieve_by_metadata：结构化查找

store 是同步接口，这里统一经 `anyio.to_thread.run_sync` 调用。
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Callable
from typing import Literal, Protocol, TypeVar

import anyio

from coderag.storage.base import ChunkStore
from coderag.storage.models import FileMatch
from coderag.storage.models import MetadataFilter
from coderag.storage.models import RepositoryStats
from coderag.storage.models import RetrievedChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MATCH_COUNT = 15
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
DEFAULT_SIMILARITY_THRESHOLD = 0.5

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_NON_WORD = re.compile(r"[^\w\s]")
_CODE_PATTERNS = (
    re.compile(r"[{}()\[\]<>]"),
    re.compile(r"[=!<>]+"),
    re.compile(r"\b(function|class|const|let|var|def|fn|impl)\b"),
    re.compile(r"\w+\.\w+"),
    re.compile(r"\w+\([^)]*\)"),
)

QueryShape = Literal["identifier", "natural_language", "code"]


class QueryEmbedder(Protocol):
    async def embed_query(self, query: str) -> list[float]: ...


def sanitize_text_query(query: str) -> str:
    return " ".join(_NON_WORD.sub(" ", query).split())


def is_identifier(query: str) -> bool:
    return IDENTIFIER_PATTERN.match(query.strip()) is not None


def detect_query_shape(query: str) -> QueryShape:
    trimmed = query.strip()
    if is_identifier(trimmed):
        return "identifier"
    if any(p.search(trimmed) for p in _CODE_PATTERNS):
        return "code"
    return "natural_language"


class CodeRetriever:
    def __init__(self, store: ChunkStore, embedder: QueryEmbedder) -> None:
        self._store = store
        self._embedder = embedder

    async def _call(self, fn: Callable[..., T], *args: object) -> T:
        return await anyio.to_thread.run_sync(functools.partial(fn, *args))

    async def vector_search(
        self,
        query: str,
        repository_id: str,
        limit: int = DEFAULT_MATCH_COUNT,
        similarity_threshold: float | None = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> list[RetrievedChunk]:
        embedding = await self._embedder.embed_query(query)
        return await self._call(self._store.vector_search, repository_id, embedding, limit, similarity_threshold)

    async def text_search(self, query: str, repository_id: str, limit: int = DEFAULT_MATCH_COUNT) -> list[RetrievedChunk]:
        sanitized = sanitize_text_query(query)
        if not sanitized:
            return []
        return await self._call(self._store.text_search, repository_id, sanitized, limit)

    async def retrieve_relevant_chunks(
        self,
        query: str,
        repository_id: str,
        limit: int = DEFAULT_MATCH_COUNT,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        text_weight: float = DEFAULT_TEXT_WEIGHT,
    ) -> list[RetrievedChunk]:
        """
        加权融合：score = vector_weight * cosine + text_weight * (text_rank / max_text_rank)。

        文本分数按本次结果的最大值归一化，避免 ts_rank 的量级压过 cosine。
        """
        if limit <= 0:
            raise ValueError("limit must be > 0")
        vector_results = await self.vector_search(query, repository_id, limit=limit * 2, similarity_threshold=None)
        text_results = await self.text_search(query, repository_id, limit=limit * 2)

        max_text = max((c.text_score or 0.0 for c in text_results), default=0.0)
        merged: dict[str, RetrievedChunk] = {}
        for chunk in vector_results:
            merged[chunk.id] = chunk.model_copy(update={"score": vector_weight * (chunk.vector_score or 0.0)})
        for chunk in text_results:
            normalized = (chunk.text_score or 0.0) / max_text if max_text > 0 else 0.0
            existing = merged.get(chunk.id)
            if existing is None:
                merged[chunk.id] = chunk.model_copy(update={"score": text_weight * normalized})
            else:
                merged[chunk.id] = existing.model_copy(
                    update={"score": existing.score + text_weight * normalized, "text_score": chunk.text_score}
                )
        ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
        return ranked[:limit]

    async def smart_search(self, query: str, repository_id: str, limit: int = DEFAULT_MATCH_COUNT) -> list[RetrievedChunk]:
        """按 query 形态调整向量 / 文本权重：标识符偏文本，代码片段偏向量。"""
        shape = detect_query_shape(query)
        if shape == "identifier":
            return await self.retrieve_relevant_chunks(query, repository_id, limit, vector_weight=0.4, text_weight=0.6)
        if shape == "code":
            return await self.retrieve_relevant_chunks(query, repository_id, limit, vector_weight=0.8, text_weight=0.2)
        return await self.retrieve_relevant_chunks(query, repository_id, limit)

    async def search_symbols(
        self,
        pattern: str,
        repository_id: str,
        chunk_type: str | None = None,
        limit: int = 20,
    ) -> list[RetrievedChunk]:
        return await self._call(self._store.search_symbols, repository_id, pattern, chunk_type, limit)

    async def search_files(self, pattern: str, repository_id: str, limit: int = 20) -> list[FileMatch]:
        return await self._call(self._store.search_files, repository_id, pattern, limit)

    async def search_by_file(self, file_path: str, repository_id: str) -> list[RetrievedChunk]:
        return await self._call(self._store.search_by_file, repository_id, file_path)

    async def search_by_symbol(self, symbol_name: str, repository_id: str) -> list[RetrievedChunk]:
        return await self._call(self._store.search_by_symbol, repository_id, symbol_name)

    async def search_by_type(self, chunk_type: str, repository_id: str, limit: int = 50) -> list[RetrievedChunk]:
        return await self._call(self._store.search_by_type, repository_id, chunk_type, limit)

    async def retrieve_by_metadata(self, repository_id: str, filter: MetadataFilter, limit: int) -> list[RetrievedChunk]:
        return await self._call(self._store.retrieve_by_metadata, repository_id, filter, limit)

    async def get_repository_context(self, repository_id: str) -> RepositoryStats:
        return await self._call(self._store.repository_stats, repository_id)
