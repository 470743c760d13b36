"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL/数值范围，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, Field, HttpUrl, ValidationError


class LLMConfig(BaseModel):
    """OpenAI-compatible LLM（用于 contextual 描述与 query expansion）。"""

    base_url: HttpUrl
    api_key: str
    model: str
    context_model: str


class VoyageConfig(BaseModel):
    api_key: str
    base_url: HttpUrl = Field(default="https://api.voyageai.com/v1", validate_default=True)
    embedding_model: str = "voyage-code-3"
    embedding_dim: int = Field(default=1024, gt=0)
    rerank_model: str = "rerank-2.5"


class DatabaseConfig(BaseModel):
    dsn: str


class GitHubConfig(BaseModel):
    api_base_url: HttpUrl
    token: str


class IndexingConfig(BaseModel):
    use_contextual_retrieval: bool = True
    stale_job_minutes: int = Field(default=30, gt=0)
    stale_sweep_interval_seconds: float = Field(default=300.0, gt=0)


class AppConfig(BaseModel):
    llm: LLMConfig
    voyage: VoyageConfig
    database: DatabaseConfig
    github: GitHubConfig | None
    indexing: IndexingConfig
    log_level: str = "INFO"


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {key}: {raw}")


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：必填项缺失/为空、GitHub 只配了一半、数值非法，都抛 `ValueError`
    """

    required_keys: tuple[str, ...] = (
        "LLM_BASE_URL",
        "LLM_API_KEY",
        "LLM_MODEL",
        "VOYAGE_API_KEY",
        "DATABASE_URL",
    )
    missing: list[str] = [key for key in required_keys if not environ.get(key)]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")

    github_keys = ("GITHUB_API_BASE_URL", "GITHUB_TOKEN")
    github_present = [key for key in github_keys if environ.get(key)]
    if github_present and len(github_present) != len(github_keys):
        absent = [key for key in github_keys if key not in github_present]
        raise ValueError(f"Partial GitHub config, missing: {', '.join(absent)}")

    github = None
    if github_present:
        github = GitHubConfig(
            api_base_url=environ["GITHUB_API_BASE_URL"],
            token=environ["GITHUB_TOKEN"],
        )

    voyage_fields: dict[str, object] = {"api_key": environ["VOYAGE_API_KEY"]}
    if environ.get("VOYAGE_BASE_URL"):
        voyage_fields["base_url"] = environ["VOYAGE_BASE_URL"]
    if environ.get("EMBEDDING_MODEL"):
        voyage_fields["embedding_model"] = environ["EMBEDDING_MODEL"]
    if environ.get("EMBEDDING_DIM"):
        voyage_fields["embedding_dim"] = environ["EMBEDDING_DIM"]
    if environ.get("RERANK_MODEL"):
        voyage_fields["rerank_model"] = environ["RERANK_MODEL"]

    indexing_fields: dict[str, object] = {}
    if environ.get("USE_CONTEXTUAL_RETRIEVAL"):
        indexing_fields["use_contextual_retrieval"] = _parse_bool(
            "USE_CONTEXTUAL_RETRIEVAL", environ["USE_CONTEXTUAL_RETRIEVAL"]
        )
    if environ.get("STALE_JOB_MINUTES"):
        indexing_fields["stale_job_minutes"] = environ["STALE_JOB_MINUTES"]
    if environ.get("STALE_SWEEP_INTERVAL_SECONDS"):
        indexing_fields["stale_sweep_interval_seconds"] = environ["STALE_SWEEP_INTERVAL_SECONDS"]

    # 交给 Pydantic 做类型校验（例如 URL 合法性、正整数）
    try:
        return AppConfig(
            llm=LLMConfig(
                base_url=environ["LLM_BASE_URL"],
                api_key=environ["LLM_API_KEY"],
                model=environ["LLM_MODEL"],
                context_model=environ.get("CONTEXT_MODEL") or environ["LLM_MODEL"],
            ),
            voyage=VoyageConfig(**voyage_fields),
            database=DatabaseConfig(dsn=environ["DATABASE_URL"]),
            github=github,
            indexing=IndexingConfig(**indexing_fields),
            log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
        )
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
