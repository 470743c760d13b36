from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import FakeEmbedder
from conftest import FakeSource
from fastapi import FastAPI
from fastapi.testclient import TestClient

from coderag.api.router import build_indexing_router
from coderag.api.router import build_search_router
from coderag.indexing.jobs import JobManager
from coderag.indexing.orchestrator import IndexingOrchestrator
from coderag.indexing.pipeline import IndexationPipeline
from coderag.indexing.pipeline import PipelineDeps
from coderag.parsing.grammars import GrammarRegistry
from coderag.retrieval.hybrid import HybridSearcher
from coderag.retrieval.retriever import CodeRetriever
from coderag.retrieval.smart import SmartRetriever
from coderag.storage.memory import InMemoryChunkStore
from coderag.storage.memory import InMemoryJobStore
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobStatus

FILES = {
    "src/lib/auth.ts": (
        "export async function authenticateUser(email: string, password: string) {\n"
        "  const user = await db.user.findFirst({ where: { email } })\n"
        "  return verifyPassword(user, password)\n"
        "}\n"
    ),
    "src/app/api/users/route.ts": (
        "export async function GET(request: Request) {\n"
        "  const users = await db.user.findMany()\n"
        "  return Response.json(users)\n"
        "}\n"
    ),
}


class Env:
    def __init__(self) -> None:
        self.chunk_store = InMemoryChunkStore()
        self.job_store = InMemoryJobStore()
        embedder = FakeEmbedder()
        job_manager = JobManager(self.job_store)
        pipeline = IndexationPipeline(
            PipelineDeps(
                source=FakeSource(FILES),
                chunk_store=self.chunk_store,
                job_manager=job_manager,
                embedder=embedder,
                grammars=GrammarRegistry(grammars={}),
                embedding_batch_delay=0,
            )
        )
        orchestrator = IndexingOrchestrator(pipeline=pipeline, job_manager=job_manager, use_contextual_retrieval=False)
        retriever = CodeRetriever(self.chunk_store, embedder)

        app = FastAPI()
        app.include_router(build_indexing_router(orchestrator))
        app.include_router(build_search_router(SmartRetriever(retriever, HybridSearcher(retriever))))
        self.client = TestClient(app)


@pytest.fixture
def env() -> Env:
    return Env()


def test_index_runs_in_background_and_completes(env: Env) -> None:
    resp = env.client.post("/repositories/repo-1/index", json={"owner": "acme", "repo": "shop"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_new"] is True
    assert body["status"] == "pending"

    job = env.client.get(f"/jobs/{body['job_id']}").json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["chunks_created"] == env.chunk_store.count_chunks("repo-1") > 0
    assert job["commit_sha"] == "commit-1"


def test_index_reuses_in_progress_job(env: Env) -> None:
    env.job_store.create(
        IndexingJob(
            id="busy-job",
            repository_id="repo-busy",
            status=JobStatus.PARSING,
            created_at=datetime.now(timezone.utc),
        )
    )
    resp = env.client.post("/repositories/repo-busy/index", json={"owner": "acme", "repo": "shop"})
    assert resp.json() == {"job_id": "busy-job", "is_new": False, "status": "parsing"}
    assert env.chunk_store.count_chunks("repo-busy") == 0


def test_cancel_and_missing_jobs(env: Env) -> None:
    env.job_store.create(
        IndexingJob(id="j1", repository_id="repo-2", status=JobStatus.EMBEDDING, created_at=datetime.now(timezone.utc))
    )
    cancelled = env.client.delete("/jobs/j1")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    assert env.client.get("/jobs/nope").status_code == 404
    assert env.client.delete("/jobs/nope").status_code == 404


def test_index_request_validation(env: Env) -> None:
    assert env.client.post("/repositories/repo-1/index", json={"owner": "", "repo": "shop"}).status_code == 422


def test_search_returns_chunks_and_context(env: Env) -> None:
    env.client.post("/repositories/repo-1/index", json={"owner": "acme", "repo": "shop"})

    resp = env.client.post(
        "/repositories/repo-1/search",
        json={"query": "authenticateUser", "language": "en", "use_reranking": False},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["result"]["strategy"] == "symbol"
    assert body["result"]["chunks"][0]["symbol_name"] == "authenticateUser"
    assert body["context"]["context"].startswith("## Relevant Source Code")
    assert "[src/lib/auth.ts:1-4]" in body["context"]["context"]


def test_search_rejects_blank_query(env: Env) -> None:
    assert env.client.post("/repositories/repo-1/search", json={"query": ""}).status_code == 422
    blank = env.client.post("/repositories/repo-1/search", json={"query": "   "})
    assert blank.status_code == 400
