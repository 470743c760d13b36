"""
Voyage 请求的统一重试策略（embedding 与 rerank 共用）。

- 429：指数退避 `rate_limit_base_delay * 2**attempt`
- 400 / 401 / configuration_error：不重试，直接抛
- 其他（5xx、网络错误）：线性退避 `retry_delay * (attempt + 1)`
- 次数耗尽：抛最后一次的错误
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio
import httpx
from pydantic import BaseModel, ValidationError

from coderag.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")
PayloadT = TypeVar("PayloadT", bound=BaseModel)

MAX_RETRIES = 5
RETRY_DELAY_SECONDS = 1.0
RATE_LIMIT_BASE_DELAY_SECONDS = 2.0


def raise_for_provider_status(response: httpx.Response, error_cls: type[ProviderError], label: str) -> None:
    if response.status_code < 400:
        return
    message = f"{label} error: HTTP {response.status_code}"
    error_type = "rate_limit" if response.status_code == 429 else "api_error"
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or message)
            error_type = str(error.get("type") or error_type)
        elif isinstance(payload.get("detail"), str):
            message = payload["detail"]
    if response.status_code == 401:
        error_type = "authentication_error"
    raise error_cls(message, status_code=response.status_code, error_type=error_type)


def parse_provider_payload(
    response: httpx.Response,
    model: type[PayloadT],
    error_cls: type[ProviderError],
    label: str,
) -> PayloadT:
    """200 但 body 不是预期结构（HTML 错误页、字段缺失）时转成 provider 错误，按普通失败重试。"""
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise error_cls(
            f"{label} returned an invalid response body",
            status_code=response.status_code,
            error_type="invalid_response",
        ) from exc


async def request_with_retry(
    send: Callable[[], Awaitable[T]],
    error_cls: type[ProviderError],
    label: str,
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY_SECONDS,
    rate_limit_base_delay: float = RATE_LIMIT_BASE_DELAY_SECONDS,
) -> T:
    last_error: ProviderError | None = None
    for attempt in range(max_retries):
        last_attempt = attempt == max_retries - 1
        try:
            return await send()
        except httpx.HTTPError as exc:
            last_error = error_cls(f"{label} network error: {exc}", error_type="network_error")
        except ProviderError as exc:
            if not exc.is_retryable:
                logger.error(f"{label} non-retryable error: {exc}")
                raise
            last_error = exc
            if exc.status_code == 429:
                if last_attempt:
                    break
                delay = rate_limit_base_delay * (2**attempt)
                logger.warning(f"{label} rate limited, waiting {delay}s before retry {attempt + 1}/{max_retries}")
                await anyio.sleep(delay)
                continue

        if not last_attempt:
            delay = retry_delay * (attempt + 1)
            logger.warning(f"{label} request failed ({last_error}), retrying in {delay}s")
            await anyio.sleep(delay)

    if last_error is None:
        last_error = error_cls(f"{label} unknown error after retries")
    logger.error(f"{label} failed after {max_retries} attempt(s): {last_error}")
    raise last_error
