"""
Indexing Orchestrator（装配 + 单次运行入口）。

- `build_indexing_orchestrator`：把 GitHub / LLM / Voyage / 存储绑定成一条 pipeline
- `run_indexing`：跑一次（全量或增量），token 用量默认写日志

job 的创建（去重）在 `JobManager.start_indexing_job`，这里只负责跑。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from coderag.config import AppConfig
from coderag.embeddings.voyage import VoyageEmbeddingClient
from coderag.github.client import GitHubClient
from coderag.indexing.contextual import ContextualDescriber
from coderag.indexing.jobs import JobManager
from coderag.indexing.pipeline import IndexationPipeline
from coderag.indexing.pipeline import PipelineDeps
from coderag.indexing.pipeline import PipelineOptions
from coderag.indexing.pipeline import PipelineResult
from coderag.indexing.pipeline import ProgressCallback
from coderag.indexing.pipeline import TokenUsageCallback
from coderag.infra.cache import Cache
from coderag.llm.client import OpenAICompatLLMClient
from coderag.parsing.grammars import GrammarRegistry
from coderag.parsing.grammars import build_grammar_registry
from coderag.storage.base import ChunkStore
from coderag.storage.base import JobStore
from coderag.storage.models import TokenUsageEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexingOrchestrator:
    pipeline: IndexationPipeline
    job_manager: JobManager
    use_contextual_retrieval: bool = True


def build_indexing_orchestrator(
    config: AppConfig,
    http_client: httpx.AsyncClient,
    llm_client: OpenAICompatLLMClient,
    embedder: VoyageEmbeddingClient,
    chunk_store: ChunkStore,
    job_store: JobStore,
    grammars: GrammarRegistry | None = None,
    cache: Cache | None = None,
) -> IndexingOrchestrator:
    """GitHub 配置缺失时无法拉代码，直接抛 `ValueError`。"""
    if config.github is None:
        raise ValueError("GitHub config is required for indexing")

    source = GitHubClient(
        api_base_url=str(config.github.api_base_url),
        token=config.github.token,
        http_client=http_client,
        cache=cache,
    )
    describer = ContextualDescriber(llm_client=llm_client, model=config.llm.context_model)
    job_manager = JobManager(store=job_store)
    pipeline = IndexationPipeline(
        PipelineDeps(
            source=source,
            chunk_store=chunk_store,
            job_manager=job_manager,
            embedder=embedder,
            grammars=grammars if grammars is not None else build_grammar_registry(),
            describer=describer,
        )
    )
    return IndexingOrchestrator(
        pipeline=pipeline,
        job_manager=job_manager,
        use_contextual_retrieval=config.indexing.use_contextual_retrieval,
    )


def log_token_usage(event: TokenUsageEvent) -> None:
    logger.info(
        f"Token usage: type={event.type} model={event.model} "
        f"input={event.input_tokens} output={event.output_tokens}"
    )


async def run_indexing(
    orchestrator: IndexingOrchestrator,
    repository_id: str,
    owner: str,
    repo: str,
    job_id: str,
    branch: str | None = None,
    incremental: bool = False,
    use_contextual_retrieval: bool | None = None,
    on_progress: ProgressCallback | None = None,
    on_token_usage: TokenUsageCallback | None = None,
) -> PipelineResult:
    options = PipelineOptions(
        repository_id=repository_id,
        owner=owner,
        repo=repo,
        job_id=job_id,
        branch=branch,
        use_contextual_retrieval=(
            orchestrator.use_contextual_retrieval if use_contextual_retrieval is None else use_contextual_retrieval
        ),
        on_progress=on_progress,
        on_token_usage=on_token_usage or log_token_usage,
    )
    logger.info(f"Indexing {owner}/{repo} into {repository_id} (job={job_id}, incremental={incremental})")
    if incremental:
        result = await orchestrator.pipeline.run_incremental(options)
    else:
        result = await orchestrator.pipeline.run(options)
    if result.success:
        logger.info(f"Indexing finished: {repository_id} chunks={result.chunks_created} files={result.files_processed}")
    else:
        logger.warning(f"Indexing did not complete: {repository_id} error={result.error}")
    return result
