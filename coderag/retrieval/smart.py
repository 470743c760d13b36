"""
Smart retrieval：根据 query 自动选择检索策略，再统一做 rerank。

策略优先级：
1. force_strategy
2. 标识符形态（`authenticate`）-> symbol；找不到 symbol 时回退 hybrid_v2
3. query expansion 给出了路径线索 -> expanded（路径过滤 + 扩展后的 hybrid，去重合并）
4. 明确类型 + list query + 置信度足够 -> metadata（穷举）
5. use_hybrid_v2 -> hybrid_v2（RRF）
6. 明确类型的非 list query -> hybrid（metadata + 加权检索）
7. 其他 -> vector
"""

from __future__ import annotations

import logging
from typing import Literal

import anyio
import httpx
from pydantic import BaseModel, Field

from coderag.config import AppConfig
from coderag.embeddings.rerank import VoyageRerankClient
from coderag.embeddings.voyage import VoyageEmbeddingClient
from coderag.llm.client import OpenAICompatLLMClient
from coderag.retrieval.classifier import QueryType
from coderag.retrieval.classifier import classify_query
from coderag.retrieval.classifier import get_metadata_filter
from coderag.retrieval.expander import ExpandedQuery
from coderag.retrieval.expander import QueryExpander
from coderag.retrieval.expander import fallback_expansion
from coderag.retrieval.expander import to_file_path_patterns
from coderag.retrieval.expander import to_search_query
from coderag.retrieval.hybrid import DEFAULT_RRF_K
from coderag.retrieval.hybrid import HybridSearcher
from coderag.retrieval.hybrid import deduplicate_chunks
from coderag.retrieval.reranker import MIN_CHUNKS_TO_RERANK
from coderag.retrieval.reranker import Reranker
from coderag.retrieval.reranker import RerankOptions
from coderag.retrieval.reranker import get_rerank_summary
from coderag.retrieval.reranker import rerank_chunks
from coderag.retrieval.retriever import CodeRetriever
from coderag.retrieval.retriever import is_identifier
from coderag.storage.base import ChunkStore
from coderag.storage.models import MetadataFilter
from coderag.storage.models import RetrievedChunk

logger = logging.getLogger(__name__)

Strategy = Literal["vector", "metadata", "hybrid", "hybrid_v2", "symbol", "expanded"]

DEFAULT_VECTOR_LIMIT = 30
MAX_METADATA_CHUNKS = 100
DEFAULT_MIN_CONFIDENCE = 0.3


class SmartRetrievalOptions(BaseModel):
    vector_limit: int = Field(default=DEFAULT_VECTOR_LIMIT, gt=0)
    metadata_limit: int = Field(default=MAX_METADATA_CHUNKS, gt=0)
    force_strategy: Strategy | None = None
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    use_hybrid_v2: bool = True
    rrf_k: int = Field(default=DEFAULT_RRF_K, gt=0)
    use_reranking: bool = True
    use_query_expansion: bool = True
    rerank_options: RerankOptions = Field(default_factory=RerankOptions)


class SmartRetrievalResult(BaseModel):
    chunks: list[RetrievedChunk]
    strategy: Strategy
    query_type: QueryType
    is_list_query: bool
    total_found: int
    reranked: bool
    chunks_before_rerank: int | None = None
    expanded_query: ExpandedQuery | None = None


class SmartRetriever:
    def __init__(
        self,
        retriever: CodeRetriever,
        hybrid: HybridSearcher,
        reranker: Reranker | None = None,
        expander: QueryExpander | None = None,
    ) -> None:
        self._retriever = retriever
        self._hybrid = hybrid
        self._reranker = reranker
        self._expander = expander

    async def retrieve(
        self,
        query: str,
        repository_id: str,
        options: SmartRetrievalOptions | None = None,
    ) -> SmartRetrievalResult:
        if not query.strip():
            raise ValueError("query must not be empty")
        opts = options or SmartRetrievalOptions()
        classification = classify_query(query)
        query_type = classification.type
        confident = classification.confidence >= opts.min_confidence

        strategy: Strategy | None = opts.force_strategy
        expanded: ExpandedQuery | None = None
        if strategy is None and is_identifier(query):
            strategy = "symbol"
        if strategy is None and opts.use_query_expansion and self._expander is not None:
            if query_type is QueryType.GENERIC or not confident:
                expanded = await self._expander.expand(query)
                if to_file_path_patterns(expanded):
                    strategy = "expanded"
        if strategy is None:
            if query_type is not QueryType.GENERIC and classification.is_list_query and confident:
                strategy = "metadata"
            elif opts.use_hybrid_v2:
                strategy = "hybrid_v2"
            elif query_type is not QueryType.GENERIC and confident:
                strategy = "hybrid"
            else:
                strategy = "vector"

        if strategy == "expanded" and expanded is None:
            expanded = await self._expander.expand(query) if self._expander is not None else fallback_expansion(query)

        chunks, strategy = await self._run_strategy(query, repository_id, strategy, query_type, opts, expanded)

        chunks_before = len(chunks)
        reranked = False
        if opts.use_reranking and self._reranker is not None and len(chunks) > MIN_CHUNKS_TO_RERANK:
            chunks = await rerank_chunks(self._reranker, query, chunks, opts.rerank_options)
            reranked = True
            logger.info(get_rerank_summary(chunks_before, chunks))

        result = SmartRetrievalResult(
            chunks=chunks,
            strategy=strategy,
            query_type=query_type,
            is_list_query=classification.is_list_query,
            total_found=len(chunks),
            reranked=reranked,
            chunks_before_rerank=chunks_before if reranked else None,
            expanded_query=expanded,
        )
        logger.info(get_retrieval_summary(result))
        return result

    async def _run_strategy(
        self,
        query: str,
        repository_id: str,
        strategy: Strategy,
        query_type: QueryType,
        opts: SmartRetrievalOptions,
        expanded: ExpandedQuery | None,
    ) -> tuple[list[RetrievedChunk], Strategy]:
        if strategy == "metadata":
            return await self._by_query_type(repository_id, query_type, opts.metadata_limit), strategy

        if strategy == "symbol":
            symbols = await self._hybrid.search_symbols(query.strip(), repository_id)
            if symbols:
                return symbols, strategy
            logger.info(f"No symbol matches for {query.strip()!r}, falling back to hybrid_v2")
            return await self._hybrid_v2(query, repository_id, opts), "hybrid_v2"

        if strategy == "hybrid_v2":
            return await self._hybrid_v2(query, repository_id, opts), strategy

        if strategy == "expanded":
            assert expanded is not None
            return await self._expanded(query, repository_id, expanded, opts), strategy

        if strategy == "hybrid":
            metadata_chunks: list[RetrievedChunk] = []
            vector_chunks: list[RetrievedChunk] = []

            async def load_metadata() -> None:
                metadata_chunks.extend(
                    await self._by_query_type(repository_id, query_type, max(1, opts.metadata_limit // 2))
                )

            async def load_vector() -> None:
                vector_chunks.extend(
                    await self._retriever.retrieve_relevant_chunks(
                        query, repository_id, limit=max(1, opts.vector_limit // 2)
                    )
                )

            async with anyio.create_task_group() as tg:
                tg.start_soon(load_metadata)
                tg.start_soon(load_vector)
            merged = deduplicate_chunks([*metadata_chunks, *vector_chunks])
            merged.sort(key=lambda c: c.score, reverse=True)
            return merged, strategy

        return await self._retriever.retrieve_relevant_chunks(query, repository_id, limit=opts.vector_limit), "vector"

    async def _hybrid_v2(self, query: str, repository_id: str, opts: SmartRetrievalOptions) -> list[RetrievedChunk]:
        return await self._hybrid.hybrid_search_v2(query, repository_id, limit=opts.vector_limit, rrf_k=opts.rrf_k)

    async def _by_query_type(self, repository_id: str, query_type: QueryType, limit: int) -> list[RetrievedChunk]:
        metadata_filter = get_metadata_filter(query_type)
        if metadata_filter is None:
            return []
        return await self._retriever.retrieve_by_metadata(repository_id, metadata_filter, limit)

    async def _expanded(
        self,
        query: str,
        repository_id: str,
        expanded: ExpandedQuery,
        opts: SmartRetrievalOptions,
    ) -> list[RetrievedChunk]:
        search_query = to_search_query(expanded) or query
        hybrid_chunks = await self._hybrid_v2(search_query, repository_id, opts)
        patterns = to_file_path_patterns(expanded)
        metadata_chunks: list[RetrievedChunk] = []
        if patterns:
            metadata_chunks = await self._retriever.retrieve_by_metadata(
                repository_id,
                MetadataFilter(file_path_patterns=patterns),
                max(1, opts.metadata_limit // 2),
            )
        return deduplicate_chunks([*hybrid_chunks, *metadata_chunks])


def get_retrieval_summary(result: SmartRetrievalResult) -> str:
    unique_files = len({c.file_path for c in result.chunks})
    rerank_info = f", reranked: {result.chunks_before_rerank} -> {result.total_found}" if result.reranked else ""
    return (
        f"Smart retrieval: strategy={result.strategy}, type={result.query_type.value}, "
        f"list_query={result.is_list_query}, found {result.total_found} chunks across {unique_files} files{rerank_info}"
    )


def build_smart_retriever(
    config: AppConfig,
    http_client: httpx.AsyncClient,
    llm_client: OpenAICompatLLMClient,
    embedder: VoyageEmbeddingClient,
    chunk_store: ChunkStore,
) -> SmartRetriever:
    retriever = CodeRetriever(store=chunk_store, embedder=embedder)
    reranker = VoyageRerankClient(
        api_key=config.voyage.api_key,
        http_client=http_client,
        model=config.voyage.rerank_model,
        base_url=str(config.voyage.base_url),
    )
    return SmartRetriever(
        retriever=retriever,
        hybrid=HybridSearcher(retriever),
        reranker=reranker,
        expander=QueryExpander(llm_client),
    )
