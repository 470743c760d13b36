"""
Voyage AI embedding client（voyage-code-3，1024 维）。

- 每个请求最多 128 条文本
- 空白文本不发送，本地补零向量（保证输出与输入一一对应、维度一致）
- 返回 token usage，供计费 / 统计
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Literal

import httpx
from pydantic import BaseModel

from coderag.embeddings.retry import MAX_RETRIES
from coderag.embeddings.retry import RATE_LIMIT_BASE_DELAY_SECONDS
from coderag.embeddings.retry import RETRY_DELAY_SECONDS
from coderag.embeddings.retry import parse_provider_payload
from coderag.embeddings.retry import raise_for_provider_status
from coderag.embeddings.retry import request_with_retry
from coderag.errors import EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
DEFAULT_MODEL = "voyage-code-3"
DEFAULT_DIMENSION = 1024
MAX_BATCH_SIZE = 128

InputType = Literal["document", "query"]


class _EmbeddingItem(BaseModel):
    embedding: list[float]
    index: int


class _EmbeddingUsage(BaseModel):
    total_tokens: int = 0


class _EmbeddingResponse(BaseModel):
    data: list[_EmbeddingItem]
    model: str | None = None
    usage: _EmbeddingUsage = _EmbeddingUsage()


class EmbeddingResult(BaseModel):
    vectors: list[list[float]]
    total_tokens: int = 0
    model: str


class VoyageEmbeddingClient:
    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        model: str = DEFAULT_MODEL,
        dimension: int = DEFAULT_DIMENSION,
        base_url: str = DEFAULT_BASE_URL,
        max_batch_size: int = MAX_BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        rate_limit_base_delay: float = RATE_LIMIT_BASE_DELAY_SECONDS,
    ) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        if not 0 < max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"max_batch_size must be in 1..{MAX_BATCH_SIZE}")
        self._api_key = api_key
        self._http_client = http_client
        self._model = model
        self._dimension = dimension
        self._url = f"{base_url.rstrip('/')}/embeddings"
        self._max_batch_size = max_batch_size
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._rate_limit_base_delay = rate_limit_base_delay

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, texts: list[str], input_type: InputType) -> _EmbeddingResponse:
        if not self._api_key:
            raise EmbeddingError("VOYAGE_API_KEY is not set", error_type="configuration_error")

        async def send() -> _EmbeddingResponse:
            response = await self._http_client.post(
                self._url,
                headers=self._headers(),
                json={"input": texts, "model": self._model, "input_type": input_type},
            )
            raise_for_provider_status(response, EmbeddingError, "Voyage embeddings")
            parsed = parse_provider_payload(response, _EmbeddingResponse, EmbeddingError, "Voyage embeddings")
            if len(parsed.data) != len(texts):
                raise EmbeddingError(
                    f"Voyage returned {len(parsed.data)} embeddings for {len(texts)} inputs",
                    status_code=response.status_code,
                )
            return parsed

        return await request_with_retry(
            send,
            error_cls=EmbeddingError,
            label="Voyage embeddings",
            max_retries=self._max_retries,
            retry_delay=self._retry_delay,
            rate_limit_base_delay=self._rate_limit_base_delay,
        )

    def _check_dimension(self, vector: list[float]) -> list[float]:
        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: got {len(vector)}, expected {self._dimension}",
                error_type="validation_error",
            )
        return vector

    async def embed(self, texts: Sequence[str], input_type: InputType = "document") -> EmbeddingResult:
        """按 128 一批请求；结果与 `texts` 等长、同序。"""
        vectors: list[list[float]] = []
        total_tokens = 0
        for start in range(0, len(texts), self._max_batch_size):
            batch = list(texts[start : start + self._max_batch_size])
            valid = [text for text in batch if text.strip()]
            if not valid:
                vectors.extend([0.0] * self._dimension for _ in batch)
                continue

            response = await self._request(valid, input_type)
            total_tokens += response.usage.total_tokens
            embeddings = [item.embedding for item in sorted(response.data, key=lambda item: item.index)]
            position = 0
            for text in batch:
                if text.strip():
                    vectors.append(self._check_dimension(embeddings[position]))
                    position += 1
                else:
                    vectors.append([0.0] * self._dimension)

        logger.info(f"Embedded {len(texts)} text(s), tokens={total_tokens}")
        return EmbeddingResult(vectors=vectors, total_tokens=total_tokens, model=self._model)

    async def embed_documents(self, texts: Sequence[str]) -> EmbeddingResult:
        return await self.embed(texts, input_type="document")

    async def embed_query(self, query: str) -> list[float]:
        if not query.strip():
            raise EmbeddingError("Query cannot be empty", status_code=400, error_type="validation_error")
        result = await self.embed([query], input_type="query")
        return result.vectors[0]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    dot = sum(x * y for x, y in zip(a, b))
    magnitude = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if magnitude == 0:
        return 0.0
    return dot / magnitude
