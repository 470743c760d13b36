"""
Contextual Retrieval：embedding 前给每个 chunk 生成一句简短描述。

- 每次请求批量描述 15 个 chunk，要求模型返回 JSON 数组（顺序与输入一致）
- 失败策略：找不到 JSON / JSON 解析失败 -> 重试；限流 -> 固定等待后重试；
  其他错误或重试耗尽 -> 整批返回空字符串（降级，不影响索引流程）
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Awaitable, Callable, Sequence

import anyio
from pydantic import BaseModel

from coderag.llm.client import ChatMessage
from coderag.llm.client import OpenAICompatLLMClient
from coderag.storage.models import CodeChunk

logger = logging.getLogger(__name__)

CHUNKS_PER_REQUEST = 15
REQUEST_DELAY_SECONDS = 0.2
MAX_RETRIES = 3
RATE_LIMIT_DELAY_SECONDS = 10.0
MAX_OUTPUT_TOKENS = 2000

SYSTEM_PROMPT = """You are a code documentation assistant. You will receive multiple code chunks and must generate a brief description for each one.

Rules for each description:
- Be specific about what the code does, not generic
- Mention the function/class name if provided
- Include relevant implementation details that would help find this code
- Focus on the "what" and "why", not the "how"
- Keep each description under 40 words
- Do not use markdown formatting
- Start directly with the description (no "This code..." or "The function...")
- Use present tense

IMPORTANT: Return a JSON array with descriptions in the same order as the input chunks.
Example response format:
["Description for chunk 1", "Description for chunk 2", "Description for chunk 3"]"""

_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)

ContextProgressCallback = Callable[[int, int], None]
BatchHook = Callable[[], Awaitable[None]]


class ContextResult(BaseModel):
    contexts: list[str]
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class ContextCostEstimate(BaseModel):
    input_tokens: int
    output_tokens: int
    requests: int
    estimated_seconds: float


def _is_rate_limit(exc: Exception) -> bool:
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc).lower()
    return "rate limit" in message or "rate_limit" in message or "429" in message


def build_batch_prompt(chunks: Sequence[CodeChunk]) -> str:
    parts = [f"Generate brief descriptions for these {len(chunks)} code chunks:\n\n"]
    for index, chunk in enumerate(chunks, start=1):
        parts.append(f"--- CHUNK {index} ---\n")
        parts.append(f"File: {chunk.file_path}\n")
        parts.append(f"Lines: {chunk.start_line}-{chunk.end_line}\n")
        parts.append(f"Type: {chunk.chunk_type}\n")
        if chunk.symbol_name:
            parts.append(f"Name: {chunk.symbol_name}\n")
        parts.append(f"```{chunk.language}\n{chunk.content}\n```\n\n")
    parts.append(f"Return a JSON array with {len(chunks)} descriptions, one for each chunk in order.")
    return "".join(parts)


def _fit(descriptions: list[object], size: int) -> list[str]:
    fitted = [d if isinstance(d, str) else "" for d in descriptions[:size]]
    fitted.extend([""] * (size - len(fitted)))
    return fitted


class ContextualDescriber:
    def __init__(
        self,
        llm_client: OpenAICompatLLMClient,
        model: str | None = None,
        chunks_per_request: int = CHUNKS_PER_REQUEST,
        request_delay: float = REQUEST_DELAY_SECONDS,
        max_retries: int = MAX_RETRIES,
        rate_limit_delay: float = RATE_LIMIT_DELAY_SECONDS,
    ) -> None:
        if chunks_per_request <= 0:
            raise ValueError("chunks_per_request must be > 0")
        if max_retries <= 0:
            raise ValueError("max_retries must be > 0")
        self._llm_client = llm_client
        self._model = model
        self._chunks_per_request = chunks_per_request
        self._request_delay = request_delay
        self._max_retries = max_retries
        self._rate_limit_delay = rate_limit_delay
        self._input_tokens = 0
        self._output_tokens = 0

    @property
    def chunks_per_request(self) -> int:
        return self._chunks_per_request

    async def describe_batch(self, chunks: Sequence[CodeChunk]) -> list[str]:
        if not chunks:
            return []

        messages = [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=build_batch_prompt(chunks)),
        ]
        for attempt in range(self._max_retries):
            last_attempt = attempt == self._max_retries - 1
            try:
                completion = await self._llm_client.complete(
                    messages=messages,
                    max_tokens=MAX_OUTPUT_TOKENS,
                    temperature=0,
                    model=self._model,
                )
            except Exception as exc:
                if _is_rate_limit(exc) and not last_attempt:
                    logger.warning(
                        f"Context generation rate limited, waiting {self._rate_limit_delay}s "
                        f"before retry {attempt + 1}/{self._max_retries}"
                    )
                    await anyio.sleep(self._rate_limit_delay)
                    continue
                logger.error(f"Context generation failed for {len(chunks)} chunk(s): {exc}")
                return [""] * len(chunks)

            self._input_tokens += completion.input_tokens
            self._output_tokens += completion.output_tokens

            match = _JSON_ARRAY.search(completion.content)
            if match is None:
                logger.warning("Context response has no JSON array, retrying")
                continue
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError:
                logger.warning("Context response JSON parse error, retrying")
                continue
            if not isinstance(parsed, list):
                continue
            if len(parsed) != len(chunks):
                logger.warning(f"Got {len(parsed)} descriptions for {len(chunks)} chunks, padding/truncating")
            return _fit(parsed, len(chunks))

        return [""] * len(chunks)

    async def describe_chunks(
        self,
        chunks: Sequence[CodeChunk],
        on_progress: ContextProgressCallback | None = None,
        before_batch: BatchHook | None = None,
    ) -> ContextResult:
        """
        按批次描述所有 chunk；返回与输入等长的描述列表 + 本次消耗的 token。

        `before_batch` 在每个 batch 之前 await（pipeline 用它检查取消）。
        """
        self._input_tokens = 0
        self._output_tokens = 0
        contexts: list[str] = []
        size = self._chunks_per_request
        for start in range(0, len(chunks), size):
            if before_batch is not None:
                await before_batch()
            batch = chunks[start : start + size]
            contexts.extend(await self.describe_batch(batch))
            completed = min(start + size, len(chunks))
            if on_progress is not None:
                on_progress(completed, len(chunks))
            if completed < len(chunks):
                await anyio.sleep(self._request_delay)

        return ContextResult(
            contexts=contexts,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            model=self._model or getattr(self._llm_client, "model", ""),
        )


def build_contextual_content(content: str, context: str | None) -> str:
    if not context or not context.strip():
        return content
    return f"{context}\n\n{content}"


def estimate_context_generation_cost(chunk_count: int) -> ContextCostEstimate:
    requests = math.ceil(chunk_count / CHUNKS_PER_REQUEST)
    # 粗略估算：system prompt 200 + 每个 chunk 200 输入 / 50 输出
    input_per_batch = 200 + 200 * CHUNKS_PER_REQUEST
    output_per_batch = 50 * CHUNKS_PER_REQUEST
    return ContextCostEstimate(
        input_tokens=input_per_batch * requests,
        output_tokens=output_per_batch * requests,
        requests=requests,
        estimated_seconds=requests * REQUEST_DELAY_SECONDS,
    )
