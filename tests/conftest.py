from __future__ import annotations

from collections.abc import Sequence

import pytest

from coderag.dev.mock_voyage_server import mock_embedding
from coderag.dev.mock_voyage_server import mock_relevance
from coderag.embeddings.rerank import RerankResponse
from coderag.embeddings.rerank import RerankResult
from coderag.embeddings.voyage import EmbeddingResult
from coderag.errors import RerankError
from coderag.github.schemas import FileContent
from coderag.github.schemas import RepositoryStructure
from coderag.parsing.chunker import calculate_file_hash
from coderag.parsing.file_filter import FileInfo

TEST_DIMENSION = 64


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeEmbedder:
    """词袋哈希向量（与 mock Voyage server 相同算法）。"""

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.document_calls: list[list[str]] = []
        self.queries: list[str] = []

    @property
    def model(self) -> str:
        return "fake-embed"

    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingResult:
        self.document_calls.append(list(texts))
        return EmbeddingResult(
            vectors=[mock_embedding(text, self.dimension) for text in texts],
            total_tokens=sum(len(text.split()) for text in texts),
            model=self.model,
        )

    async def embed_query(self, query: str) -> list[float]:
        self.queries.append(query)
        return mock_embedding(query, self.dimension)


class StaticEmbedder:
    """每个 query 都返回同一个向量，便于构造确定的相似度。"""

    def __init__(self, vector: list[float]) -> None:
        self.vector = vector
        self.queries: list[str] = []

    async def embed_query(self, query: str) -> list[float]:
        self.queries.append(query)
        return list(self.vector)


class FakeSource:
    """内存 GitHub：path -> content；sha 为 git blob sha。"""

    def __init__(self, files: dict[str, str], gitignore: str | None = None, commit_sha: str = "commit-1") -> None:
        self.files = dict(files)
        self.gitignore = gitignore
        self.commit_sha = commit_sha
        self.fetched: list[str] = []
        self.failing: set[str] = set()
        self.raising: dict[str, Exception] = {}

    async def fetch_repository_structure(
        self, owner: str, repo: str, branch: str | None = None
    ) -> RepositoryStructure:
        infos = [
            FileInfo(path=path, size=len(content), sha=calculate_file_hash(content))
            for path, content in self.files.items()
        ]
        return RepositoryStructure(
            files=infos,
            gitignore=self.gitignore,
            commit_sha=self.commit_sha,
            branch=branch or "main",
            truncated=False,
            estimated_lines=sum(content.count("\n") + 1 for content in self.files.values()),
            is_large=False,
        )

    async def fetch_file_content(
        self, owner: str, repo: str, path: str, sha: str | None = None
    ) -> FileContent | None:
        self.fetched.append(path)
        if path in self.raising:
            raise self.raising[path]
        if path in self.failing or path not in self.files:
            return None
        content = self.files[path]
        return FileContent(path=path, content=content, sha=calculate_file_hash(content), size=len(content))


class FakeReranker:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, list[str], int | None]] = []

    async def rerank(
        self,
        query: str,
        documents: list[str],
        top_k: int | None = None,
        model: str | None = None,
    ) -> RerankResponse:
        self.calls.append((query, list(documents), top_k))
        if self.fail:
            raise RerankError("rerank unavailable", status_code=503)
        scored = sorted(
            (RerankResult(index=i, relevance_score=mock_relevance(query, doc)) for i, doc in enumerate(documents)),
            key=lambda r: r.relevance_score,
            reverse=True,
        )
        return RerankResponse(results=scored[:top_k] if top_k is not None else scored)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
