from __future__ import annotations

import json

import httpx
import pytest

from coderag.indexing.contextual import ContextualDescriber
from coderag.indexing.contextual import build_batch_prompt
from coderag.indexing.contextual import build_contextual_content
from coderag.indexing.contextual import estimate_context_generation_cost
from coderag.llm.client import OpenAICompatLLMClient
from coderag.storage.models import CodeChunk


def _chat_response(content: str, prompt_tokens: int = 100, completion_tokens: int = 20) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "id": "chatcmpl-test",
            "object": "chat.completion",
            "created": 0,
            "model": "ctx-model",
            "choices": [
                {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        },
    )


def _llm(handler: httpx.MockTransport) -> OpenAICompatLLMClient:
    return OpenAICompatLLMClient(
        api_key="k",
        base_url="https://llm.test",
        http_client=httpx.AsyncClient(transport=handler),
        model="ctx-model",
    )


def _chunk(i: int) -> CodeChunk:
    return CodeChunk(
        content=f"def handler_{i}(request):\n    return respond(request, {i})",
        file_path=f"src/handlers_{i}.py",
        start_line=1,
        end_line=2,
        language="python",
        chunk_type="function",
        symbol_name=f"handler_{i}",
    )


def _count_chunks(request: httpx.Request) -> int:
    body = json.loads(request.content)
    return body["messages"][-1]["content"].count("--- CHUNK ")


@pytest.mark.anyio
async def test_describe_chunks_batches_and_counts_tokens() -> None:
    batch_sizes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        n = _count_chunks(request)
        batch_sizes.append(n)
        return _chat_response("Here you go:\n" + json.dumps([f"desc {i}" for i in range(n)]))

    describer = ContextualDescriber(_llm(httpx.MockTransport(handler)), chunks_per_request=2, request_delay=0)
    progress: list[tuple[int, int]] = []
    result = await describer.describe_chunks(
        [_chunk(i) for i in range(5)], on_progress=lambda done, total: progress.append((done, total))
    )

    assert batch_sizes == [2, 2, 1]
    assert result.contexts == ["desc 0", "desc 1", "desc 0", "desc 1", "desc 0"]
    assert result.input_tokens == 300
    assert result.output_tokens == 60
    assert result.model == "ctx-model"
    assert progress == [(2, 5), (4, 5), (5, 5)]


@pytest.mark.anyio
async def test_describe_batch_pads_short_answers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _chat_response('["only one"]')

    describer = ContextualDescriber(_llm(httpx.MockTransport(handler)), request_delay=0)
    assert await describer.describe_batch([_chunk(1), _chunk(2)]) == ["only one", ""]


@pytest.mark.anyio
async def test_describe_batch_retries_missing_json_then_degrades() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return _chat_response("I cannot produce JSON today")

    describer = ContextualDescriber(_llm(httpx.MockTransport(handler)), max_retries=3, request_delay=0)
    assert await describer.describe_batch([_chunk(1)]) == [""]
    assert calls["n"] == 3


@pytest.mark.anyio
async def test_describe_batch_api_error_degrades_to_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad request", "type": "invalid_request_error"}})

    describer = ContextualDescriber(_llm(httpx.MockTransport(handler)), request_delay=0)
    assert await describer.describe_batch([_chunk(1), _chunk(2)]) == ["", ""]


@pytest.mark.anyio
async def test_describe_chunks_calls_before_batch_hook() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _chat_response(json.dumps(["d"] * _count_chunks(request)))

    hooks = {"n": 0}

    async def before_batch() -> None:
        hooks["n"] += 1

    describer = ContextualDescriber(_llm(httpx.MockTransport(handler)), chunks_per_request=2, request_delay=0)
    await describer.describe_chunks([_chunk(i) for i in range(3)], before_batch=before_batch)
    assert hooks["n"] == 2


def test_build_batch_prompt_lists_every_chunk() -> None:
    prompt = build_batch_prompt([_chunk(1), _chunk(2)])
    assert "--- CHUNK 1 ---" in prompt
    assert "--- CHUNK 2 ---" in prompt
    assert "Name: handler_2" in prompt
    assert "Return a JSON array with 2 descriptions" in prompt


def test_build_contextual_content() -> None:
    assert build_contextual_content("code", "Handles login.") == "Handles login.\n\ncode"
    assert build_contextual_content("code", "  ") == "code"
    assert build_contextual_content("code", None) == "code"


def test_estimate_context_generation_cost() -> None:
    estimate = estimate_context_generation_cost(30)
    assert estimate.requests == 2
    assert estimate.input_tokens > estimate.output_tokens > 0
