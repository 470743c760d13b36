"""
OpenAI-compatible chat 客户端。

两个调用方：
- contextual retrieval：批量生成 chunk 描述，需要 token usage 记账
- query expansion：要求模型返回 JSON，并用 pydantic schema 校验

SDK / 网络错误原样上抛，降级策略留给调用方。
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any
from typing import TypeVar

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_FENCED_JSON = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ChatMessage(BaseModel):
    role: str
    content: str


class LLMCompletion(BaseModel):
    """一次 chat completion 的文本与 token 消耗。"""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


def _api_root(base_url: str) -> str:
    # SDK 期望 base_url 指向 /v1
    root = base_url.rstrip("/")
    return root if root.endswith("/v1") else root + "/v1"


def _request_options(max_tokens: int | None, temperature: float | None, json_mode: bool) -> dict[str, Any]:
    options: dict[str, Any] = {}
    if max_tokens is not None:
        options["max_tokens"] = max_tokens
    if temperature is not None:
        options["temperature"] = temperature
    if json_mode:
        options["response_format"] = {"type": "json_object"}
    return options


def parse_json_payload(raw: str) -> Any:
    """解析模型输出的 JSON；有的兼容服务忽略 json mode，仍会包一层 ```json 代码块。"""
    text = raw.strip()
    fenced = _FENCED_JSON.match(text)
    if fenced is not None:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"LLM output is not JSON: {raw[:200]!r}") from exc


class OpenAICompatLLMClient:
    def __init__(self, api_key: str, base_url: str, http_client: httpx.AsyncClient, model: str) -> None:
        self._model = model
        self._client = AsyncOpenAI(api_key=api_key, base_url=_api_root(base_url), http_client=http_client)

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
        model: str | None = None,
        json_mode: bool = False,
    ) -> LLMCompletion:
        """`model` 为空时用构造时的默认模型。"""
        model_name = model or self._model
        payload = [m.model_dump() for m in messages]
        logger.debug(f"Chat completion: model={model_name}, messages={len(payload)}, json_mode={json_mode}")

        try:
            response = await self._client.chat.completions.create(
                model=model_name,
                messages=payload,
                **_request_options(max_tokens, temperature, json_mode),
            )
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.error(f"Chat completion failed ({type(exc).__name__}): {exc}")
            raise

        if not response.choices or response.choices[0].message.content is None:
            raise RuntimeError(f"Empty completion from model {model_name}")

        usage = response.usage
        result = LLMCompletion(
            content=response.choices[0].message.content,
            model=model_name,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        logger.debug(f"Chat completion done: in={result.input_tokens}, out={result.output_tokens}")
        return result

    async def complete_text(self, messages: Sequence[ChatMessage]) -> str:
        return (await self.complete(messages=messages)).content

    async def complete_json(
        self,
        messages: Sequence[ChatMessage],
        schema: type[SchemaT],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> SchemaT:
        """JSON mode 调用并按 `schema` 校验；不合法时抛 `ValueError`。"""
        completion = await self.complete(messages, max_tokens=max_tokens, temperature=temperature, json_mode=True)
        data = parse_json_payload(completion.content)
        try:
            return schema.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"{schema.__name__} validation failed on LLM output: {exc.error_count()} error(s)")
            raise ValueError(f"LLM output does not match {schema.__name__}") from exc
