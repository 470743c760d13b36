"""
索引 job 生命周期管理。

状态机：pending → fetching → parsing → embedding → completed | failed | cancelled

不变量：
- 每个 repository 同时最多一个非终态 job（重复 start 返回已有 job）
- `started_at` 只在第一次进入 active 状态时写入；`completed_at` 在进入终态时写入
- `progress` 单调不减，只有 completed 会强制为 100
- 进程崩溃后的恢复只靠 stale sweep（超时的非终态 job 标记为 failed）
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TypeVar

import anyio

from coderag.errors import JOB_TIMEOUT_MESSAGE
from coderag.errors import CodeRagError
from coderag.errors import JobCancelledError
from coderag.errors import JobNotFoundError
from coderag.storage.base import JobStore
from coderag.storage.models import TERMINAL_STATUSES
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobPhase
from coderag.storage.models import JobStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STALE_MINUTES = 30
ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.FETCHING, JobStatus.PARSING, JobStatus.EMBEDDING}
)


def is_job_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_job_in_progress(status: JobStatus) -> bool:
    return status not in TERMINAL_STATUSES


def calculate_progress(files_processed: int, files_total: int, phase: JobPhase | str) -> int:
    """
    按阶段把 files_processed / files_total 映射到整体进度。

    - Fetching: 0-10
    - Parsing: 10-50
    - Context: 50-60
    - Embeddings: 50-95
    - Finalizing: 95
    """
    if files_total <= 0:
        return 0
    ratio = min(max(files_processed / files_total, 0.0), 1.0)
    phase = JobPhase(phase)
    if phase is JobPhase.INITIALIZING:
        return 0
    if phase is JobPhase.FETCHING:
        return round(ratio * 10)
    if phase is JobPhase.PARSING:
        return 10 + round(ratio * 40)
    if phase is JobPhase.CONTEXT:
        return 50 + round(ratio * 10)
    if phase is JobPhase.EMBEDDING:
        return 50 + round(ratio * 45)
    return 95


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_settled(job: IndexingJob, cancelled_is_error: bool = True) -> bool:
    """
    终态 job 不再变化：调用方应原样返回它。

    已取消的 job 默认抛 `JobCancelledError`，让还在跑的 pipeline 在下一步停下。
    """
    if job.status not in TERMINAL_STATUSES:
        return False
    if job.status is JobStatus.CANCELLED and cancelled_is_error:
        raise JobCancelledError(f"Job {job.id} was cancelled")
    logger.info(f"Ignoring update for job {job.id}: already {job.status.value}")
    return True


@dataclass(frozen=True)
class StartJobResult:
    job_id: str
    is_new: bool
    existing_status: JobStatus | None = None


async def _run(fn: Callable[..., T], *args: object, **kwargs: object) -> T:
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


class JobManager:
    def __init__(self, store: JobStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    async def start_indexing_job(self, repository_id: str) -> StartJobResult:
        """
        为 repository 启动 job。

        - 已有非终态 job：直接返回（is_new=False）
        - 已有终态 job：删除后新建（不保留历史）
        """
        if not repository_id:
            raise ValueError("repository_id is required")
        existing = await _run(self._store.get_by_repository, repository_id)
        if existing is not None:
            if is_job_in_progress(existing.status):
                return StartJobResult(job_id=existing.id, is_new=False, existing_status=existing.status)
            await _run(self._store.delete, existing.id)

        job = IndexingJob(
            id=str(uuid.uuid4()),
            repository_id=repository_id,
            status=JobStatus.PENDING,
            current_phase=JobPhase.INITIALIZING.value,
            created_at=self._clock(),
        )
        created = await _run(self._store.create, job)
        if not created:
            # 并发 start：另一个调用方先插入了
            winner = await _run(self._store.get_by_repository, repository_id)
            if winner is None:
                raise JobNotFoundError(f"Job for repository {repository_id} vanished during start")
            return StartJobResult(job_id=winner.id, is_new=False, existing_status=winner.status)
        logger.info(f"Indexing job created: job={job.id} repository={repository_id}")
        return StartJobResult(job_id=job.id, is_new=True)

    async def get_job_status(self, job_id: str) -> IndexingJob | None:
        return await _run(self._store.get, job_id)

    async def get_job_by_repository(self, repository_id: str) -> IndexingJob | None:
        return await _run(self._store.get_by_repository, repository_id)

    async def _require(self, job_id: str) -> IndexingJob:
        job = await _run(self._store.get, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def _update(self, job_id: str, **fields: object) -> IndexingJob:
        job = await _run(self._store.update, job_id, **fields)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    async def update_job_progress(
        self,
        job_id: str,
        files_total: int | None = None,
        files_processed: int | None = None,
        chunks_created: int | None = None,
        progress: int | None = None,
        current_phase: JobPhase | str | None = None,
    ) -> IndexingJob:
        fields: dict[str, object] = {}
        if files_total is not None:
            fields["files_total"] = files_total
        if files_processed is not None:
            fields["files_processed"] = files_processed
        if chunks_created is not None:
            fields["chunks_created"] = chunks_created
        if current_phase is not None:
            fields["current_phase"] = JobPhase(current_phase).value
        if progress is not None:
            current = await self._require(job_id)
            fields["progress"] = max(current.progress, min(100, max(0, progress)))
        if not fields:
            return await self._require(job_id)
        return await self._update(job_id, **fields)

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        phase: JobPhase | str | None = None,
        error_message: str | None = None,
    ) -> IndexingJob:
        current = await self._require(job_id)
        if _is_settled(current):
            return current
        fields: dict[str, object] = {"status": status}
        if phase is not None:
            fields["current_phase"] = JobPhase(phase).value
        if error_message:
            fields["error_message"] = error_message
        if status in ACTIVE_STATUSES and current.started_at is None:
            fields["started_at"] = self._clock()
        if status in TERMINAL_STATUSES:
            if current.completed_at is None:
                fields["completed_at"] = self._clock()
            if status is JobStatus.COMPLETED:
                fields["progress"] = 100
        return await self._update(job_id, **fields)

    async def mark_job_started(self, job_id: str, files_total: int = 0) -> IndexingJob:
        current = await self._require(job_id)
        if _is_settled(current):
            return current
        fields: dict[str, object] = {
            "status": JobStatus.FETCHING,
            "current_phase": JobPhase.FETCHING.value,
            "files_total": files_total,
        }
        if current.started_at is None:
            fields["started_at"] = self._clock()
        return await self._update(job_id, **fields)

    async def mark_job_completed(
        self,
        job_id: str,
        chunks_created: int,
        commit_sha: str | None = None,
    ) -> IndexingJob:
        current = await self._require(job_id)
        if _is_settled(current):
            return current
        fields: dict[str, object] = {
            "status": JobStatus.COMPLETED,
            "progress": 100,
            "chunks_created": chunks_created,
            "current_phase": None,
            "completed_at": current.completed_at or self._clock(),
        }
        if commit_sha is not None:
            fields["commit_sha"] = commit_sha
        job = await self._update(job_id, **fields)
        logger.info(f"Indexing job completed: job={job_id} chunks={chunks_created}")
        return job

    async def mark_job_failed(self, job_id: str, error_message: str) -> IndexingJob:
        current = await self._require(job_id)
        if _is_settled(current, cancelled_is_error=False):
            return current
        job = await self._update(
            job_id,
            status=JobStatus.FAILED,
            error_message=error_message,
            completed_at=current.completed_at or self._clock(),
        )
        logger.warning(f"Indexing job failed: job={job_id} error={error_message}")
        return job

    async def cancel_job(self, job_id: str) -> IndexingJob | None:
        job = await _run(self._store.get, job_id)
        if job is None:
            return None
        if is_job_terminal(job.status):
            return job
        logger.info(f"Indexing job cancelled: job={job_id}")
        return await self._update(job_id, status=JobStatus.CANCELLED, completed_at=self._clock())

    async def delete_job(self, job_id: str) -> bool:
        job = await _run(self._store.get, job_id)
        if job is None:
            return False
        await _run(self._store.delete, job_id)
        return True

    async def get_in_progress_jobs(self) -> list[IndexingJob]:
        return await _run(self._store.list_in_progress)

    async def cleanup_stale_jobs(self, max_age_minutes: int = DEFAULT_STALE_MINUTES) -> int:
        if max_age_minutes <= 0:
            raise ValueError("max_age_minutes must be > 0")
        now = self._clock()
        cutoff = now - timedelta(minutes=max_age_minutes)
        count = await _run(self._store.fail_stale, cutoff, JOB_TIMEOUT_MESSAGE, now)
        if count:
            logger.warning(f"Marked {count} stale indexing job(s) as failed (older than {max_age_minutes} min)")
        return count

    def cancellation_token(self, job_id: str) -> CancellationToken:
        return CancellationToken(manager=self, job_id=job_id)


@dataclass(frozen=True)
class CancellationToken:
    """在 batch 边界检查 job 是否已被取消（或被删除）。"""

    manager: JobManager
    job_id: str

    async def is_cancelled(self) -> bool:
        job = await self.manager.get_job_status(self.job_id)
        return job is None or job.status is JobStatus.CANCELLED

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancelled():
            raise JobCancelledError(f"Job {self.job_id} was cancelled")


async def run_stale_job_sweeper(
    manager: JobManager,
    interval_seconds: float,
    max_age_minutes: int = DEFAULT_STALE_MINUTES,
) -> None:
    """后台循环：定期把超时 job 标记为 failed；单次失败只 log，不退出循环。"""
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be > 0")
    while True:
        try:
            await manager.cleanup_stale_jobs(max_age_minutes=max_age_minutes)
        except CodeRagError as exc:
            logger.error(f"Stale job sweep failed: {exc}")
        await anyio.sleep(interval_seconds)
