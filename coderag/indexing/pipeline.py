"""
索引主流程（单个 repository 的一次运行）。

阶段与进度区间：
- Fetching files         0-10
- Parsing code           10-50
- Generating context     50-60（可选）
- Generating embeddings  60-95（无 context 时 50-95）
- Finalizing             95-100

约定：
- 单文件拉取失败只 log 并跳过；其余任何异常在 `_guarded` 统一捕获，写入 job 并返回失败结果（run 不抛异常）
- 存储走 `ChunkSwap`（先插后删），读者不会看到 0 chunk 的窗口
- 每个 batch 开始前检查 cancellation token；取消后 job 保持 cancelled
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

import anyio
from pydantic import BaseModel

from coderag.errors import CodeRagError
from coderag.errors import JobCancelledError
from coderag.github.schemas import FileContent
from coderag.github.schemas import RepositoryStructure
from coderag.indexing.contextual import ContextualDescriber
from coderag.indexing.contextual import build_contextual_content
from coderag.indexing.jobs import CancellationToken
from coderag.indexing.jobs import JobManager
from coderag.indexing.jobs import calculate_progress
from coderag.indexing.swap import ChunkSwap
from coderag.parsing.ast_chunker import chunk_file_ast
from coderag.parsing.chunker import calculate_file_hash
from coderag.parsing.file_filter import FileInfo
from coderag.parsing.file_filter import FilterOptions
from coderag.parsing.file_filter import filter_files
from coderag.parsing.grammars import GrammarRegistry
from coderag.parsing.grammars import ParserContext
from coderag.storage.base import ChunkStore
from coderag.storage.models import CodeChunk
from coderag.storage.models import JobPhase
from coderag.storage.models import JobStatus
from coderag.storage.models import RepositoryStats
from coderag.storage.models import TokenUsageEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILE_FETCH_BATCH_SIZE = 10
EMBEDDING_BATCH_SIZE = 50
EMBEDDING_BATCH_DELAY_SECONDS = 0.1
CANCELLED_ERROR = "cancelled"

ProgressCallback = Callable[[JobPhase, int, str], None]
TokenUsageCallback = Callable[[TokenUsageEvent], None]


class RepositorySource(Protocol):
    async def fetch_repository_structure(
        self, owner: str, repo: str, branch: str | None = None
    ) -> RepositoryStructure: ...

    async def fetch_file_content(
        self, owner: str, repo: str, path: str, sha: str | None = None
    ) -> FileContent | None: ...


class _EmbeddingBatch(Protocol):
    vectors: list[list[float]]
    total_tokens: int


class Embedder(Protocol):
    @property
    def model(self) -> str: ...

    async def embed_documents(self, texts: Sequence[str]) -> _EmbeddingBatch: ...


@dataclass(frozen=True)
class PipelineDeps:
    source: RepositorySource
    chunk_store: ChunkStore
    job_manager: JobManager
    embedder: Embedder
    grammars: GrammarRegistry
    describer: ContextualDescriber | None = None
    embedding_batch_delay: float = EMBEDDING_BATCH_DELAY_SECONDS


@dataclass
class PipelineOptions:
    repository_id: str
    owner: str
    repo: str
    job_id: str
    branch: str | None = None
    use_contextual_retrieval: bool = True
    on_progress: ProgressCallback | None = None
    on_token_usage: TokenUsageCallback | None = None


class PipelineResult(BaseModel):
    success: bool
    chunks_created: int = 0
    files_processed: int = 0
    files_total: int = 0
    files_changed: int = 0
    files_deleted: int = 0
    commit_sha: str | None = None
    error: str | None = None


@dataclass
class _RunState:
    files_total: int = 0
    files_processed: int = 0
    files_changed: int = 0
    files_deleted: int = 0
    chunks_created: int = 0
    commit_sha: str | None = None
    processed_paths: list[str] = field(default_factory=list)


class _ProgressReporter:
    """进度单调不减：同时写 job 与回调。"""

    def __init__(self, manager: JobManager, job_id: str, callback: ProgressCallback | None) -> None:
        self._manager = manager
        self._job_id = job_id
        self._callback = callback
        self._last = 0

    @property
    def last(self) -> int:
        return self._last

    async def report(self, phase: JobPhase, percent: int, message: str, persist: bool = True, **counters: int) -> None:
        self._last = max(self._last, min(100, percent))
        if persist:
            await self._manager.update_job_progress(
                self._job_id, progress=self._last, current_phase=phase, **counters
            )
        logger.info(f"[{self._job_id}] {phase.value} {self._last}%: {message}")
        if self._callback is not None:
            self._callback(phase, self._last, message)


def _root_cause(exc: BaseException) -> BaseException:
    # task group 把子任务异常包成 ExceptionGroup；job 上记录第一个真实原因
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class IndexationPipeline:
    def __init__(self, deps: PipelineDeps) -> None:
        self._deps = deps

    async def run(self, options: PipelineOptions) -> PipelineResult:
        return await self._guarded(options, incremental=False)

    async def run_incremental(self, options: PipelineOptions) -> PipelineResult:
        """
        文件级增量索引：比较 tree sha 与已存 `file_hash`，只处理新增 / 修改的文件，
        并删除已不存在文件的 chunk。仓库还没有任何 chunk 时退化为全量运行。
        """
        return await self._guarded(options, incremental=True)

    async def _guarded(self, options: PipelineOptions, incremental: bool) -> PipelineResult:
        state = _RunState()
        reporter = _ProgressReporter(self._deps.job_manager, options.job_id, options.on_progress)
        try:
            return await self._index(options, state, reporter, incremental)
        except Exception as exc:
            cause = _root_cause(exc)
            if isinstance(cause, JobCancelledError):
                logger.info(f"Indexing cancelled: repository={options.repository_id} job={options.job_id}")
                return self._result(state, success=False, error=CANCELLED_ERROR)
            message = str(cause) or cause.__class__.__name__
            logger.exception(f"Indexing failed: repository={options.repository_id} job={options.job_id}")
            try:
                await self._deps.job_manager.mark_job_failed(options.job_id, message)
            except CodeRagError as mark_exc:
                logger.error(f"Could not mark job {options.job_id} as failed: {mark_exc}")
            if options.on_progress is not None:
                options.on_progress(JobPhase.FINALIZING, reporter.last, f"Error: {message}")
            return self._result(state, success=False, error=message)

    async def _index(
        self,
        options: PipelineOptions,
        state: _RunState,
        reporter: _ProgressReporter,
        incremental: bool,
    ) -> PipelineResult:
        deps = self._deps
        token = deps.job_manager.cancellation_token(options.job_id)

        stored_hashes: dict[str, str] | None = None
        if incremental:
            stored_hashes = await self._store_call(deps.chunk_store.list_file_hashes, options.repository_id)
            if not stored_hashes:
                logger.info(f"No stored chunks for {options.repository_id}, running full indexation")
                stored_hashes = None

        await token.raise_if_cancelled()
        await reporter.report(JobPhase.FETCHING, 0, "Analyzing repository structure...", persist=False)
        structure = await deps.source.fetch_repository_structure(options.owner, options.repo, options.branch)
        state.files_total = len(structure.files)
        state.commit_sha = structure.commit_sha
        await deps.job_manager.mark_job_started(options.job_id, state.files_total)

        if not structure.files and stored_hashes is None:
            return await self._complete(options, state, reporter)
        await reporter.report(JobPhase.FETCHING, 5, f"Found {state.files_total} files in repository")

        filtered = filter_files(
            structure.files,
            FilterOptions(gitignore_content=structure.gitignore or "", respect_gitignore=True),
        )
        for warning in filtered.warnings:
            logger.warning(f"[{options.repository_id}] {warning}")
        if filtered.is_empty and stored_hashes is None:
            return await self._complete(options, state, reporter)

        files = list(filtered.included)
        deleted_paths: list[str] = []
        if stored_hashes is not None:
            current = {f.path for f in files}
            deleted_paths = sorted(path for path in stored_hashes if path not in current)
            files = [f for f in files if f.sha is None or stored_hashes.get(f.path) != f.sha]
            state.files_changed = len(files)
            state.files_deleted = len(deleted_paths)
            logger.info(
                f"Incremental diff for {options.repository_id}: "
                f"{len(files)} changed/added, {len(deleted_paths)} deleted"
            )
            if not files and not deleted_paths:
                state.chunks_created = await self._store_call(deps.chunk_store.count_chunks, options.repository_id)
                return await self._complete(options, state, reporter)

        await reporter.report(JobPhase.FETCHING, 10, f"{len(files)} files to index after filtering")

        await token.raise_if_cancelled()
        await deps.job_manager.update_job_status(options.job_id, JobStatus.PARSING, phase=JobPhase.PARSING)
        chunks = await self._fetch_and_chunk(options, files, token, reporter, state)

        if not chunks and stored_hashes is None:
            return await self._complete(options, state, reporter)

        use_context = options.use_contextual_retrieval and deps.describer is not None
        if chunks and use_context:
            chunks = await self._describe(options, chunks, token, reporter)

        if chunks:
            chunks = await self._embed(options, chunks, token, reporter, start=60 if use_context else 50)

        await token.raise_if_cancelled()
        await reporter.report(JobPhase.FINALIZING, 95, "Storing chunks in database...")
        scope = None if stored_hashes is None else sorted(set(state.processed_paths) | set(deleted_paths))
        swap = ChunkSwap(deps.chunk_store, options.repository_id, file_paths=scope)
        await swap.insert(chunks, before_batch=token.raise_if_cancelled)
        await swap.reconcile()
        state.chunks_created = len(chunks)
        return await self._complete(options, state, reporter)

    async def _fetch_and_chunk(
        self,
        options: PipelineOptions,
        files: Sequence[FileInfo],
        token: CancellationToken,
        reporter: _ProgressReporter,
        state: _RunState,
    ) -> list[CodeChunk]:
        ctx = ParserContext(self._deps.grammars)
        all_chunks: list[CodeChunk] = []
        total = len(files)
        for start in range(0, total, FILE_FETCH_BATCH_SIZE):
            await token.raise_if_cancelled()
            batch = files[start : start + FILE_FETCH_BATCH_SIZE]
            results: list[list[CodeChunk] | None] = [None] * len(batch)

            async def load(index: int, file: FileInfo) -> None:
                results[index] = await self._load_file(options, file, ctx)

            async with anyio.create_task_group() as tg:
                for index, file in enumerate(batch):
                    tg.start_soon(load, index, file)

            for file, chunks in zip(batch, results, strict=True):
                if chunks is None:
                    continue
                all_chunks.extend(chunks)
                state.files_processed += 1
                state.processed_paths.append(file.path)

            percent = calculate_progress(min(start + len(batch), total), total, JobPhase.PARSING)
            await reporter.report(
                JobPhase.PARSING,
                percent,
                f"Parsed {state.files_processed}/{total} files ({len(all_chunks)} chunks)",
                files_processed=state.files_processed,
            )
        return all_chunks

    async def _load_file(self, options: PipelineOptions, file: FileInfo, ctx: ParserContext) -> list[CodeChunk] | None:
        content = await self._deps.source.fetch_file_content(options.owner, options.repo, file.path, file.sha)
        if content is None:
            logger.warning(f"Skipping {file.path}: content unavailable")
            return None
        file_hash = file.sha or calculate_file_hash(content.content)
        chunks = chunk_file_ast(content.content, file.path, ctx)
        return [chunk.model_copy(update={"file_hash": file_hash}) for chunk in chunks]

    async def _describe(
        self,
        options: PipelineOptions,
        chunks: list[CodeChunk],
        token: CancellationToken,
        reporter: _ProgressReporter,
    ) -> list[CodeChunk]:
        describer = self._deps.describer
        assert describer is not None
        await reporter.report(
            JobPhase.CONTEXT, 50, f"Generating contextual descriptions for {len(chunks)} chunks..."
        )

        def on_progress(completed: int, total: int) -> None:
            percent = 50 + round(completed / total * 10)
            if options.on_progress is not None:
                options.on_progress(JobPhase.CONTEXT, max(reporter.last, percent), f"Generated context for {completed}/{total} chunks")

        result = await describer.describe_chunks(chunks, on_progress=on_progress, before_batch=token.raise_if_cancelled)
        if result.input_tokens or result.output_tokens:
            self._emit_usage(
                options,
                TokenUsageEvent(
                    type="indexing_context",
                    model=result.model,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                ),
            )
        await reporter.report(JobPhase.CONTEXT, 60, f"Context generation complete for {len(chunks)} chunks")
        return [
            chunk.model_copy(update={"context": context or None})
            for chunk, context in zip(chunks, result.contexts, strict=True)
        ]

    async def _embed(
        self,
        options: PipelineOptions,
        chunks: list[CodeChunk],
        token: CancellationToken,
        reporter: _ProgressReporter,
        start: int,
    ) -> list[CodeChunk]:
        deps = self._deps
        await token.raise_if_cancelled()
        await deps.job_manager.update_job_status(options.job_id, JobStatus.EMBEDDING, phase=JobPhase.EMBEDDING)
        await reporter.report(JobPhase.EMBEDDING, start, f"Generating embeddings for {len(chunks)} chunks...")

        embedded: list[CodeChunk] = []
        total_tokens = 0
        span = 95 - start
        for offset in range(0, len(chunks), EMBEDDING_BATCH_SIZE):
            await token.raise_if_cancelled()
            batch = chunks[offset : offset + EMBEDDING_BATCH_SIZE]
            result = await deps.embedder.embed_documents(
                [build_contextual_content(c.content, c.context) for c in batch]
            )
            total_tokens += result.total_tokens
            embedded.extend(
                chunk.model_copy(update={"embedding": vector})
                for chunk, vector in zip(batch, result.vectors, strict=True)
            )
            done = offset + len(batch)
            await reporter.report(
                JobPhase.EMBEDDING,
                start + round(done / len(chunks) * span),
                f"Generated embeddings for {done}/{len(chunks)} chunks",
            )
            if done < len(chunks):
                await anyio.sleep(deps.embedding_batch_delay)

        self._emit_usage(
            options,
            TokenUsageEvent(type="indexing_embedding", model=deps.embedder.model, input_tokens=total_tokens),
        )
        return embedded

    async def _complete(
        self,
        options: PipelineOptions,
        state: _RunState,
        reporter: _ProgressReporter,
    ) -> PipelineResult:
        job = await self._deps.job_manager.mark_job_completed(options.job_id, state.chunks_created, state.commit_sha)
        if job.status is not JobStatus.COMPLETED:
            # stale sweep 已经把 job 判成 failed
            return self._result(state, success=False, error=job.error_message or job.status.value)
        await reporter.report(
            JobPhase.FINALIZING,
            100,
            f"Indexation complete: {state.chunks_created} chunks created",
            persist=False,
        )
        return self._result(state, success=True)

    @staticmethod
    def _result(state: _RunState, success: bool, error: str | None = None) -> PipelineResult:
        return PipelineResult(
            success=success,
            chunks_created=state.chunks_created,
            files_processed=state.files_processed,
            files_total=state.files_total,
            files_changed=state.files_changed,
            files_deleted=state.files_deleted,
            commit_sha=state.commit_sha,
            error=error,
        )

    @staticmethod
    def _emit_usage(options: PipelineOptions, event: TokenUsageEvent) -> None:
        if options.on_token_usage is not None:
            options.on_token_usage(event)

    @staticmethod
    async def _store_call(fn: Callable[..., T], *args: object) -> T:
        return await anyio.to_thread.run_sync(functools.partial(fn, *args))

    async def delete_repository_chunks(self, repository_id: str) -> int:
        return await self._store_call(self._deps.chunk_store.delete_repository_chunks, repository_id)

    async def get_repository_index_stats(self, repository_id: str) -> RepositoryStats:
        return await self._store_call(self._deps.chunk_store.repository_stats, repository_id)

    async def is_repository_indexed(self, repository_id: str) -> bool:
        return await self._store_call(self._deps.chunk_store.count_chunks, repository_id) > 0
