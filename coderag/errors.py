"""
统一的错误类型。

约定：
- 外部依赖（GitHub / Voyage / LLM / Postgres）出错时，先 log 再抛这里定义的类型
- 只有文档化的降级路径（单文件拉取、contextual 描述、rerank、query expansion）会吞错
"""

from __future__ import annotations


class CodeRagError(RuntimeError):
    """所有业务错误的基类。"""

    pass


class FetchError(CodeRagError):
    """仓库源（GitHub）不可达 / 被限流 / 返回非法结构。"""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(CodeRagError):
    """语法不可用或 AST 提取为空；只在 chunker 内部使用，永远不会逃逸出去。"""

    pass


class ProviderError(CodeRagError):
    """
    Embedding / Rerank provider 错误。

    - status_code: HTTP 状态码（网络错误时为 None）
    - error_type: `rate_limit` / `authentication_error` / `validation_error` / `invalid_response` /
      `configuration_error` / `api_error` / `network_error`
    """

    def __init__(self, message: str, status_code: int | None = None, error_type: str = "api_error") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type

    @property
    def is_retryable(self) -> bool:
        if self.error_type in {"authentication_error", "validation_error", "configuration_error"}:
            return False
        return self.status_code not in {400, 401}


class EmbeddingError(ProviderError):
    pass


class RerankError(ProviderError):
    pass


class DatabaseError(CodeRagError):
    pass


class JobNotFoundError(CodeRagError):
    pass


class JobCancelledError(CodeRagError):
    """cancellation token 在 batch 边界发现 job 已被取消。"""

    pass


JOB_TIMEOUT_MESSAGE = "Job timed out - please retry"
