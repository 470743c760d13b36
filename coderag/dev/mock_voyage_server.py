"""
本地 Mock Voyage AI server（embeddings + rerank）。

用途：
- 没有 Voyage API key 时，本地跑通「索引 -> 检索」闭环
- 向量是确定性的 token 哈希（词袋），相同词的文本 cosine 更高；rerank 按词重叠打分

启动：
  python -m coderag.dev.mock_voyage_server
然后设置 VOYAGE_BASE_URL=http://127.0.0.1:9003/v1
"""

from __future__ import annotations

import hashlib
import math
import re

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel, Field

MOCK_DIMENSION = 1024

_WORD = re.compile(r"[0-9A-Za-z_]+")


class EmbeddingRequest(BaseModel):
    input: list[str]
    model: str
    input_type: str | None = None
    output_dimension: int | None = None


class RerankRequest(BaseModel):
    query: str
    documents: list[str] = Field(default_factory=list)
    model: str
    top_k: int | None = None
    truncation: bool = True


def _words(text: str) -> list[str]:
    return [w.lower() for w in _WORD.findall(text)]


def mock_embedding(text: str, dimension: int = MOCK_DIMENSION) -> list[float]:
    vector = [0.0] * dimension
    for word in _words(text):
        bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def mock_relevance(query: str, document: str) -> float:
    query_words = set(_words(query))
    if not query_words:
        return 0.0
    return len(query_words & set(_words(document))) / len(query_words)


app = FastAPI(title="Mock Voyage AI", version="0.1.0")


@app.post("/v1/embeddings")
async def embeddings(req: EmbeddingRequest) -> dict[str, object]:
    dimension = req.output_dimension or MOCK_DIMENSION
    return {
        "data": [{"embedding": mock_embedding(text, dimension), "index": i} for i, text in enumerate(req.input)],
        "model": req.model,
        "usage": {"total_tokens": sum(len(_words(text)) for text in req.input)},
    }


@app.post("/v1/rerank")
async def rerank(req: RerankRequest) -> dict[str, object]:
    scored = sorted(
        ({"index": i, "relevance_score": mock_relevance(req.query, doc)} for i, doc in enumerate(req.documents)),
        key=lambda r: r["relevance_score"],
        reverse=True,
    )
    if req.top_k is not None:
        scored = scored[: req.top_k]
    return {
        "data": scored,
        "usage": {"total_tokens": len(_words(req.query)) + sum(len(_words(doc)) for doc in req.documents)},
    }


def main() -> None:
    uvicorn.run(app, host="127.0.0.1", port=9003)


if __name__ == "__main__":
    main()
