from __future__ import annotations

import pytest
from conftest import StaticEmbedder

from coderag.retrieval.retriever import CodeRetriever
from coderag.retrieval.retriever import detect_query_shape
from coderag.retrieval.retriever import is_identifier
from coderag.retrieval.retriever import sanitize_text_query
from coderag.storage.memory import InMemoryChunkStore
from coderag.storage.models import CodeChunk
from coderag.storage.models import MetadataFilter

REPO = "r"


def _chunk(symbol: str, content: str, embedding: list[float], path: str) -> CodeChunk:
    return CodeChunk(
        content=content,
        file_path=path,
        start_line=1,
        end_line=1,
        language="typescript",
        chunk_type="function",
        symbol_name=symbol,
        embedding=embedding,
    )


@pytest.fixture
def retriever() -> CodeRetriever:
    store = InMemoryChunkStore()
    store.insert_chunks(
        REPO,
        [
            _chunk("authenticateUser", "function authenticateUser() { return token }", [1.0, 0.0], "src/lib/auth.ts"),
            _chunk("refreshToken", "function refreshToken() { return token }", [0.6, 0.8], "src/lib/session.ts"),
            _chunk("renderPage", "function renderPage() { return html }", [0.0, 1.0], "src/app/page.tsx"),
        ],
    )
    return CodeRetriever(store, StaticEmbedder([1.0, 0.0]))


def test_query_helpers() -> None:
    assert sanitize_text_query("useAuth()!") == "useAuth"
    assert sanitize_text_query("where is   user.email?") == "where is user email"
    assert is_identifier("  getUserById ")
    assert not is_identifier("get user")
    assert detect_query_shape("getUserById") == "identifier"
    assert detect_query_shape("db.user.findFirst(") == "code"
    assert detect_query_shape("how do we log users in") == "natural_language"


@pytest.mark.anyio
async def test_vector_search_applies_threshold(retriever: CodeRetriever) -> None:
    results = await retriever.vector_search("login", REPO, limit=10)
    assert [r.symbol_name for r in results] == ["authenticateUser", "refreshToken"]
    assert results[1].vector_score == pytest.approx(0.6)


@pytest.mark.anyio
async def test_text_search_ignores_punctuation_only_query(retriever: CodeRetriever) -> None:
    assert await retriever.text_search("!!!", REPO) == []
    hits = await retriever.text_search("renderPage()", REPO)
    assert [h.symbol_name for h in hits] == ["renderPage"]


@pytest.mark.anyio
async def test_retrieve_relevant_chunks_weights_signals(retriever: CodeRetriever) -> None:
    results = await retriever.retrieve_relevant_chunks("token", REPO, limit=2)

    assert [r.symbol_name for r in results] == ["authenticateUser", "refreshToken"]
    assert results[0].score == pytest.approx(0.7 * 1.0 + 0.3 * 1.0)
    assert results[1].score == pytest.approx(0.7 * 0.6 + 0.3 * 1.0)

    with pytest.raises(ValueError):
        await retriever.retrieve_relevant_chunks("token", REPO, limit=0)


@pytest.mark.anyio
async def test_smart_search_favours_text_for_identifiers(retriever: CodeRetriever) -> None:
    results = await retriever.smart_search("renderPage", REPO, limit=3)
    assert results[0].symbol_name == "renderPage"
    assert results[0].score == pytest.approx(0.6)


@pytest.mark.anyio
async def test_structured_lookups(retriever: CodeRetriever) -> None:
    assert [c.symbol_name for c in await retriever.search_by_file("src/lib/session.ts", REPO)] == ["refreshToken"]
    assert [c.symbol_name for c in await retriever.search_by_symbol("auth", REPO)] == ["authenticateUser"]
    assert len(await retriever.search_by_type("function", REPO)) == 3
    by_path = await retriever.retrieve_by_metadata(REPO, MetadataFilter(file_path_patterns=["src/lib/%"]), 10)
    assert [c.file_path for c in by_path] == ["src/lib/auth.ts", "src/lib/session.ts"]
    stats = await retriever.get_repository_context(REPO)
    assert stats.total_files == 3
