"""
Hybrid 检索：向量 + 词法，Reciprocal Rank Fusion (RRF) 融合。

score = Σ 1 / (k + rank)，rank 从 1 开始；只出现在一路结果里的 chunk 只拿一项。
"""

from __future__ import annotations

import logging

import anyio
from pydantic import BaseModel

from coderag.retrieval.retriever import CodeRetriever
from coderag.storage.models import FileMatch
from coderag.storage.models import RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_MATCH_COUNT = 15
DEFAULT_RRF_K = 60
DEFAULT_VECTOR_LIMIT = 50
DEFAULT_TEXT_LIMIT = 50


def rrf_fuse(
    vector_results: list[RetrievedChunk],
    text_results: list[RetrievedChunk],
    k: int = DEFAULT_RRF_K,
    limit: int = DEFAULT_MATCH_COUNT,
) -> list[RetrievedChunk]:
    if k <= 0:
        raise ValueError("k must be > 0")
    scores: dict[str, float] = {}
    chunks: dict[str, RetrievedChunk] = {}
    vector_scores: dict[str, float] = {}
    text_scores: dict[str, float] = {}

    for rank, chunk in enumerate(vector_results, start=1):
        scores[chunk.id] = scores.get(chunk.id, 0.0) + 1.0 / (k + rank)
        chunks.setdefault(chunk.id, chunk)
        vector_scores[chunk.id] = chunk.vector_score if chunk.vector_score is not None else chunk.score
    for rank, chunk in enumerate(text_results, start=1):
        scores[chunk.id] = scores.get(chunk.id, 0.0) + 1.0 / (k + rank)
        chunks.setdefault(chunk.id, chunk)
        text_scores[chunk.id] = chunk.text_score if chunk.text_score is not None else chunk.score

    ordered = sorted(scores, key=lambda chunk_id: scores[chunk_id], reverse=True)
    return [
        chunks[chunk_id].model_copy(
            update={
                "score": scores[chunk_id],
                "vector_score": vector_scores.get(chunk_id, 0.0),
                "text_score": text_scores.get(chunk_id, 0.0),
            }
        )
        for chunk_id in ordered[:limit]
    ]


def deduplicate_chunks(chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
    """按 id 去重，冲突时保留分数更高的一条；保持首次出现的顺序。"""
    seen: dict[str, RetrievedChunk] = {}
    for chunk in chunks:
        existing = seen.get(chunk.id)
        if existing is None or chunk.score > existing.score:
            seen[chunk.id] = chunk
    return list(seen.values())


class SearchAnalysis(BaseModel):
    total_results: int
    avg_vector_score: float
    avg_text_score: float
    avg_rrf_score: float
    vector_only_count: int
    text_only_count: int
    both_count: int


def analyze_search_results(results: list[RetrievedChunk]) -> SearchAnalysis:
    """统计每路信号对融合结果的贡献（调试 / 监控用）。"""
    if not results:
        return SearchAnalysis(
            total_results=0,
            avg_vector_score=0.0,
            avg_text_score=0.0,
            avg_rrf_score=0.0,
            vector_only_count=0,
            text_only_count=0,
            both_count=0,
        )
    vector_only = text_only = both = 0
    for result in results:
        has_vector = (result.vector_score or 0.0) > 0
        has_text = (result.text_score or 0.0) > 0
        if has_vector and has_text:
            both += 1
        elif has_vector:
            vector_only += 1
        elif has_text:
            text_only += 1
    n = len(results)
    return SearchAnalysis(
        total_results=n,
        avg_vector_score=sum(r.vector_score or 0.0 for r in results) / n,
        avg_text_score=sum(r.text_score or 0.0 for r in results) / n,
        avg_rrf_score=sum(r.score for r in results) / n,
        vector_only_count=vector_only,
        text_only_count=text_only,
        both_count=both,
    )


class HybridSearcher:
    def __init__(self, retriever: CodeRetriever) -> None:
        self._retriever = retriever

    async def hybrid_search_v2(
        self,
        query: str,
        repository_id: str,
        limit: int = DEFAULT_MATCH_COUNT,
        rrf_k: int = DEFAULT_RRF_K,
        vector_limit: int = DEFAULT_VECTOR_LIMIT,
        text_limit: int = DEFAULT_TEXT_LIMIT,
    ) -> list[RetrievedChunk]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        vector_results: list[RetrievedChunk] = []
        text_results: list[RetrievedChunk] = []

        async def run_vector() -> None:
            vector_results.extend(
                await self._retriever.vector_search(query, repository_id, limit=vector_limit, similarity_threshold=None)
            )

        async def run_text() -> None:
            text_results.extend(await self._retriever.text_search(query, repository_id, limit=text_limit))

        async with anyio.create_task_group() as tg:
            tg.start_soon(run_vector)
            tg.start_soon(run_text)
        fused = rrf_fuse(vector_results, text_results, k=rrf_k, limit=limit)
        logger.info(
            f"Hybrid search: vector={len(vector_results)} text={len(text_results)} fused={len(fused)}"
        )
        return fused

    async def search_symbols(
        self,
        pattern: str,
        repository_id: str,
        chunk_type: str | None = None,
        limit: int = 20,
    ) -> list[RetrievedChunk]:
        return await self._retriever.search_symbols(pattern, repository_id, chunk_type=chunk_type, limit=limit)

    async def search_files(self, pattern: str, repository_id: str, limit: int = 20) -> list[FileMatch]:
        return await self._retriever.search_files(pattern, repository_id, limit=limit)
