"""
Voyage AI rerank client（rerank-2.5）。

空白文档不会发给 provider；返回的 `index` 始终指向调用方传入列表里的原始位置。
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx
from pydantic import BaseModel

from coderag.embeddings.retry import MAX_RETRIES
from coderag.embeddings.retry import RATE_LIMIT_BASE_DELAY_SECONDS
from coderag.embeddings.retry import RETRY_DELAY_SECONDS
from coderag.embeddings.retry import parse_provider_payload
from coderag.embeddings.retry import raise_for_provider_status
from coderag.embeddings.retry import request_with_retry
from coderag.embeddings.voyage import DEFAULT_BASE_URL
from coderag.errors import RerankError

logger = logging.getLogger(__name__)

DEFAULT_RERANK_MODEL = "rerank-2.5"
AVAILABLE_RERANK_MODELS: tuple[str, ...] = ("rerank-2.5", "rerank-2.5-lite")


class RerankResult(BaseModel):
    index: int
    relevance_score: float
    document: str | None = None


class RerankResponse(BaseModel):
    results: list[RerankResult]
    total_tokens: int = 0


class _RerankUsage(BaseModel):
    total_tokens: int = 0


class _RerankPayload(BaseModel):
    data: list[RerankResult]
    usage: _RerankUsage = _RerankUsage()


class VoyageRerankClient:
    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        model: str = DEFAULT_RERANK_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        rate_limit_base_delay: float = RATE_LIMIT_BASE_DELAY_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._http_client = http_client
        self._model = model
        self._url = f"{base_url.rstrip('/')}/rerank"
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._rate_limit_base_delay = rate_limit_base_delay

    @property
    def model(self) -> str:
        return self._model

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        top_k: int | None = None,
        model: str | None = None,
        truncation: bool = True,
    ) -> RerankResponse:
        if not query.strip():
            raise RerankError("Query cannot be empty", status_code=400, error_type="validation_error")
        if not self._api_key:
            raise RerankError("VOYAGE_API_KEY is not set", error_type="configuration_error")

        # 过滤空文档，并记录回原始下标的映射
        index_map = [i for i, doc in enumerate(documents) if doc.strip()]
        if not index_map:
            return RerankResponse(results=[], total_tokens=0)

        body: dict[str, object] = {
            "query": query,
            "documents": [documents[i] for i in index_map],
            "model": model or self._model,
            "truncation": truncation,
        }
        if top_k is not None:
            body["top_k"] = top_k

        async def send() -> _RerankPayload:
            response = await self._http_client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                json=body,
            )
            raise_for_provider_status(response, RerankError, "Voyage rerank")
            return parse_provider_payload(response, _RerankPayload, RerankError, "Voyage rerank")

        payload = await request_with_retry(
            send,
            error_cls=RerankError,
            label="Voyage rerank",
            max_retries=self._max_retries,
            retry_delay=self._retry_delay,
            rate_limit_base_delay=self._rate_limit_base_delay,
        )

        results: list[RerankResult] = []
        for item in payload.data:
            if not 0 <= item.index < len(index_map):
                raise RerankError(f"Rerank result index out of range: {item.index}")
            results.append(
                RerankResult(
                    index=index_map[item.index],
                    relevance_score=item.relevance_score,
                    document=item.document,
                )
            )
        logger.info(f"Reranked {len(index_map)} document(s), returned {len(results)}")
        return RerankResponse(results=results, total_tokens=payload.usage.total_tokens)
