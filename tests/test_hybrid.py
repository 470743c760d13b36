from __future__ import annotations

import anyio
import pytest
from conftest import StaticEmbedder

from coderag.retrieval.hybrid import HybridSearcher
from coderag.retrieval.hybrid import analyze_search_results
from coderag.retrieval.hybrid import deduplicate_chunks
from coderag.retrieval.hybrid import rrf_fuse
from coderag.retrieval.retriever import CodeRetriever
from coderag.storage.memory import InMemoryChunkStore
from coderag.storage.models import CodeChunk
from coderag.storage.models import RetrievedChunk


def _hit(chunk_id: str, score: float = 0.5, **scores: float) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        file_path=f"src/{chunk_id}.ts",
        start_line=1,
        end_line=3,
        content=f"const {chunk_id} = 1",
        language="typescript",
        chunk_type="other",
        score=score,
        **scores,
    )


def test_rrf_fuse_sums_reciprocal_ranks() -> None:
    fused = rrf_fuse(
        [_hit("a", vector_score=0.9), _hit("b", vector_score=0.8)],
        [_hit("a", text_score=2.0), _hit("c", text_score=1.0)],
        k=60,
    )

    assert [c.id for c in fused] == ["a", "b", "c"]
    assert fused[0].score == pytest.approx(1 / 61 + 1 / 61)
    assert fused[1].score == pytest.approx(1 / 62)
    assert fused[0].vector_score == 0.9
    assert fused[0].text_score == 2.0
    assert fused[1].text_score == 0.0
    assert fused[2].vector_score == 0.0


def test_rrf_fuse_respects_limit_and_k() -> None:
    vector = [_hit(str(i)) for i in range(10)]
    assert len(rrf_fuse(vector, [], limit=3)) == 3
    with pytest.raises(ValueError):
        rrf_fuse(vector, [], k=0)


def test_deduplicate_keeps_best_score_in_first_position() -> None:
    deduped = deduplicate_chunks([_hit("a", 0.2), _hit("b", 0.5), _hit("a", 0.9)])
    assert [c.id for c in deduped] == ["a", "b"]
    assert deduped[0].score == 0.9


def test_analyze_search_results_counts_sources() -> None:
    fused = rrf_fuse(
        [_hit("a", vector_score=0.9), _hit("b", vector_score=0.8)],
        [_hit("a", text_score=2.0), _hit("c", text_score=1.0)],
    )
    analysis = analyze_search_results(fused)
    assert analysis.total_results == 3
    assert analysis.both_count == 1
    assert analysis.vector_only_count == 1
    assert analysis.text_only_count == 1
    assert analyze_search_results([]).total_results == 0


@pytest.mark.anyio
async def test_hybrid_search_v2_fuses_store_results() -> None:
    store = InMemoryChunkStore()
    store.insert_chunks(
        "r",
        [
            CodeChunk(
                content="export function createCheckoutSession() { return stripe.checkout() }",
                file_path="src/lib/stripe.ts",
                start_line=1,
                end_line=1,
                language="typescript",
                chunk_type="function",
                symbol_name="createCheckoutSession",
                embedding=[0.0, 1.0],
            ),
            CodeChunk(
                content="export function renderCart() { return cart }",
                file_path="src/components/Cart.tsx",
                start_line=1,
                end_line=1,
                language="typescript",
                chunk_type="function",
                symbol_name="renderCart",
                embedding=[1.0, 0.0],
            ),
        ],
    )
    searcher = HybridSearcher(CodeRetriever(store, StaticEmbedder([1.0, 0.0])))

    results = await searcher.hybrid_search_v2("stripe checkout", "r", limit=5)

    assert {r.symbol_name for r in results} == {"createCheckoutSession", "renderCart"}
    both = next(r for r in results if r.symbol_name == "createCheckoutSession")
    vector_only = next(r for r in results if r.symbol_name == "renderCart")
    assert both.score == pytest.approx(1 / 62 + 1 / 61)
    assert vector_only.score == pytest.approx(1 / 61)
    assert results[0].symbol_name == "createCheckoutSession"

    symbols = await searcher.search_symbols("renderCart", "r")
    assert [s.symbol_name for s in symbols] == ["renderCart"]


class HandshakeRetriever:
    """vector 查询要等 text 查询开始后才返回：两路必须并发执行。"""

    def __init__(self) -> None:
        self.text_started = anyio.Event()

    async def vector_search(self, query: str, repository_id: str, limit: int, similarity_threshold: float | None):
        await self.text_started.wait()
        return [_hit("a", vector_score=0.9)]

    async def text_search(self, query: str, repository_id: str, limit: int):
        self.text_started.set()
        return [_hit("b", text_score=0.4), _hit("a", text_score=0.2)]


@pytest.mark.anyio
async def test_hybrid_search_v2_runs_both_signals_concurrently() -> None:
    searcher = HybridSearcher(HandshakeRetriever())
    with anyio.fail_after(2):
        fused = await searcher.hybrid_search_v2("cart", "repo-1")

    assert [c.id for c in fused] == ["a", "b"]
    assert fused[0].score == pytest.approx(1 / 61 + 1 / 62)
