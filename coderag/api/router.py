"""
HTTP 接入层（薄路由）。

- POST   /repositories/{repository_id}/index   启动（或复用）索引 job，pipeline 在后台跑
- GET    /jobs/{job_id}                         查询 job
- DELETE /jobs/{job_id}                         取消 job
- POST   /repositories/{repository_id}/search   smart retrieval + 组装后的上下文

业务逻辑不写在这里：job 去重在 `JobManager`，检索策略在 `SmartRetriever`。
"""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter
from fastapi import BackgroundTasks
from fastapi import HTTPException
from pydantic import BaseModel, Field

from coderag.errors import EmbeddingError
from coderag.indexing.orchestrator import IndexingOrchestrator
from coderag.indexing.orchestrator import run_indexing
from coderag.retrieval.context_builder import ContextOptions
from coderag.retrieval.context_builder import ContextResult
from coderag.retrieval.context_builder import build_code_context
from coderag.retrieval.smart import SmartRetrievalOptions
from coderag.retrieval.smart import SmartRetrievalResult
from coderag.retrieval.smart import SmartRetriever
from coderag.retrieval.smart import Strategy
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobStatus

logger = logging.getLogger(__name__)


class IndexRequest(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    branch: str | None = None
    incremental: bool = False
    use_contextual_retrieval: bool | None = None


class IndexResponse(BaseModel):
    job_id: str
    is_new: bool
    status: JobStatus


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    force_strategy: Strategy | None = None
    vector_limit: int = Field(default=30, gt=0)
    use_reranking: bool = True
    use_query_expansion: bool = True
    language: Literal["en", "fr"] = "fr"
    max_tokens: int = Field(default=30000, gt=0)


class SearchResponse(BaseModel):
    result: SmartRetrievalResult
    context: ContextResult


def build_indexing_router(orchestrator: IndexingOrchestrator) -> APIRouter:
    router = APIRouter()
    job_manager = orchestrator.job_manager

    @router.post("/repositories/{repository_id}/index")
    async def start_indexing(
        repository_id: str,
        request: IndexRequest,
        background_tasks: BackgroundTasks,
    ) -> IndexResponse:
        started = await job_manager.start_indexing_job(repository_id)
        if not started.is_new:
            status = started.existing_status or JobStatus.PENDING
            logger.info(f"Indexing already in progress: repository={repository_id} job={started.job_id}")
            return IndexResponse(job_id=started.job_id, is_new=False, status=status)

        background_tasks.add_task(
            run_indexing,
            orchestrator,
            repository_id=repository_id,
            owner=request.owner,
            repo=request.repo,
            job_id=started.job_id,
            branch=request.branch,
            incremental=request.incremental,
            use_contextual_retrieval=request.use_contextual_retrieval,
        )
        return IndexResponse(job_id=started.job_id, is_new=True, status=JobStatus.PENDING)

    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str) -> IndexingJob:
        job = await job_manager.get_job_status(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @router.delete("/jobs/{job_id}")
    async def cancel_job(job_id: str) -> IndexingJob:
        job = await job_manager.cancel_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    return router


def build_search_router(retriever: SmartRetriever) -> APIRouter:
    router = APIRouter()

    @router.post("/repositories/{repository_id}/search")
    async def search(repository_id: str, request: SearchRequest) -> SearchResponse:
        options = SmartRetrievalOptions(
            vector_limit=request.vector_limit,
            force_strategy=request.force_strategy,
            use_reranking=request.use_reranking,
            use_query_expansion=request.use_query_expansion,
        )
        try:
            result = await retriever.retrieve(request.query, repository_id, options)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except EmbeddingError as exc:
            logger.error(f"Search failed for {repository_id}: {exc}")
            raise HTTPException(status_code=502, detail="Embedding provider error") from exc

        context = build_code_context(
            result.chunks,
            ContextOptions(max_tokens=request.max_tokens, language=request.language),
        )
        return SearchResponse(result=result, context=context)

    return router
