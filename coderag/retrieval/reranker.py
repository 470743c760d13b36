"""
检索结果重排（Voyage rerank）。

- 文档 = 类型 / symbol / 文件行号前缀 + 代码内容
- rerank 失败降级为原顺序（截断到 top_k），不会让检索失败
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import BaseModel

from coderag.embeddings.rerank import RerankResponse
from coderag.errors import RerankError
from coderag.storage.models import RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 15
DEFAULT_MIN_SCORE = 0.0
DEFAULT_RERANK_MODEL = "rerank-2.5"
MIN_CHUNKS_TO_RERANK = 3


class Reranker(Protocol):
    async def rerank(
        self,
        query: str,
        documents: list[str],
        top_k: int | None = None,
        model: str | None = None,
    ) -> RerankResponse: ...


class RerankOptions(BaseModel):
    top_k: int = DEFAULT_TOP_K
    min_score: float = DEFAULT_MIN_SCORE
    model: str = DEFAULT_RERANK_MODEL


class RerankMetrics(BaseModel):
    avg_position_change: float
    chunks_reordered: int
    biggest_risers: list[tuple[str, int, int]]


def build_rerank_document(chunk: RetrievedChunk) -> str:
    header = f"{chunk.chunk_type}: {chunk.symbol_name}\n" if chunk.symbol_name else ""
    return f"{header}File: {chunk.file_path}:{chunk.start_line}-{chunk.end_line}\n\n{chunk.content}"


def _keep_original(chunks: list[RetrievedChunk], top_k: int | None = None) -> list[RetrievedChunk]:
    selected = chunks if top_k is None else chunks[:top_k]
    return [c.model_copy(update={"original_score": c.score, "rerank_score": c.score}) for c in selected]


async def rerank_chunks(
    reranker: Reranker,
    query: str,
    chunks: list[RetrievedChunk],
    options: RerankOptions | None = None,
) -> list[RetrievedChunk]:
    opts = options or RerankOptions()
    if not chunks:
        return []
    if len(chunks) <= MIN_CHUNKS_TO_RERANK:
        return _keep_original(chunks)

    documents = [build_rerank_document(chunk) for chunk in chunks]
    try:
        response = await reranker.rerank(
            query=query,
            documents=documents,
            top_k=min(opts.top_k, len(chunks)),
            model=opts.model,
        )
    except RerankError as exc:
        logger.error(f"Reranking failed, using original order: {exc}")
        return _keep_original(chunks, opts.top_k)

    return [
        chunks[result.index].model_copy(
            update={
                "original_score": chunks[result.index].score,
                "rerank_score": result.relevance_score,
                "score": result.relevance_score,
            }
        )
        for result in response.results
        if result.relevance_score >= opts.min_score
    ]


def calculate_rerank_metrics(original: list[RetrievedChunk], reranked: list[RetrievedChunk]) -> RerankMetrics:
    positions = {chunk.id: i for i, chunk in enumerate(original)}
    total_change = 0
    reordered = 0
    risers: list[tuple[str, int, int]] = []
    for new_pos, chunk in enumerate(reranked):
        old_pos = positions.get(chunk.id)
        if old_pos is None:
            continue
        change = new_pos - old_pos
        total_change += change
        if change != 0:
            reordered += 1
        if change < 0:
            risers.append((chunk.id, old_pos, new_pos))
    risers.sort(key=lambda r: r[1] - r[2], reverse=True)
    return RerankMetrics(
        avg_position_change=total_change / len(reranked) if reranked else 0.0,
        chunks_reordered=reordered,
        biggest_risers=risers[:3],
    )


def get_rerank_summary(original_count: int, reranked: list[RetrievedChunk]) -> str:
    if not reranked:
        return "Reranker: no chunks to rerank"
    avg = sum(c.rerank_score or 0.0 for c in reranked) / len(reranked)
    return f"Reranker: {original_count} -> {len(reranked)} chunks, avg score: {avg:.3f}"
