"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（严格校验环境变量）并初始化日志
- 组装外部依赖（HTTP Client / LLM Client / Voyage / Postgres 存储）
- 装配路由（health + indexing + search），lifespan 里建表并启动超时 job 清理

注意：
- 业务流程不写在这里（索引由 `indexing/orchestrator.py`，检索由 `retrieval/smart.py` 负责）
- GitHub / Voyage / LLM 共用一个 `httpx.AsyncClient` 连接池
"""

from __future__ import annotations

import functools
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
import httpx
from fastapi import FastAPI

from coderag.api.router import build_indexing_router
from coderag.api.router import build_search_router
from coderag.config import load_config_from_env
from coderag.embeddings.voyage import VoyageEmbeddingClient
from coderag.indexing.jobs import run_stale_job_sweeper
from coderag.indexing.orchestrator import build_indexing_orchestrator
from coderag.infra.cache import InMemoryCache
from coderag.llm.client import OpenAICompatLLMClient
from coderag.retrieval.smart import build_smart_retriever
from coderag.storage.pg import IndexStorageClient
from coderag.storage.pg import PgChunkStore
from coderag.storage.pg import PgJobStore
from coderag.storage.pg import ensure_schema

logger = logging.getLogger(__name__)


def build_app() -> FastAPI:
    """按环境变量装配服务；配置缺失时直接抛错。"""

    # 1) 配置 + 日志
    config = load_config_from_env(os.environ)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # 2) 外部服务客户端
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    llm_client = OpenAICompatLLMClient(
        api_key=config.llm.api_key,
        base_url=str(config.llm.base_url),
        http_client=http_client,
        model=config.llm.model,
    )
    embedder = VoyageEmbeddingClient(
        api_key=config.voyage.api_key,
        http_client=http_client,
        model=config.voyage.embedding_model,
        dimension=config.voyage.embedding_dim,
        base_url=str(config.voyage.base_url),
    )

    # 3) 存储：同步 psycopg，由调用方放进线程
    storage = IndexStorageClient(dsn=config.database.dsn, embedding_dim=config.voyage.embedding_dim)
    chunk_store = PgChunkStore(storage)
    job_store = PgJobStore(storage)

    orchestrator = None
    if config.github is not None:
        orchestrator = build_indexing_orchestrator(
            config=config,
            http_client=http_client,
            llm_client=llm_client,
            embedder=embedder,
            chunk_store=chunk_store,
            job_store=job_store,
            cache=InMemoryCache(),
        )
    else:
        logger.warning("GitHub is not configured: indexing endpoints are disabled")

    smart_retriever = build_smart_retriever(
        config=config,
        http_client=http_client,
        llm_client=llm_client,
        embedder=embedder,
        chunk_store=chunk_store,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await anyio.to_thread.run_sync(functools.partial(ensure_schema, storage))
        async with anyio.create_task_group() as tg:
            if orchestrator is not None:
                tg.start_soon(
                    run_stale_job_sweeper,
                    orchestrator.job_manager,
                    config.indexing.stale_sweep_interval_seconds,
                    config.indexing.stale_job_minutes,
                )
            yield
            tg.cancel_scope.cancel()
        await http_client.aclose()

    app = FastAPI(title="Code RAG", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """探活，不检查数据库。"""
        return {"status": "ok"}

    if orchestrator is not None:
        app.include_router(build_indexing_router(orchestrator))
    app.include_router(build_search_router(smart_retriever))
    return app


# uvicorn coderag.main:app
app = build_app()
