from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from coderag.errors import JOB_TIMEOUT_MESSAGE
from coderag.errors import JobCancelledError
from coderag.errors import JobNotFoundError
from coderag.indexing.jobs import JobManager
from coderag.indexing.jobs import calculate_progress
from coderag.storage.memory import InMemoryJobStore
from coderag.storage.models import IndexingJob
from coderag.storage.models import JobPhase
from coderag.storage.models import JobStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now = self.now + timedelta(minutes=minutes)


def test_calculate_progress_per_phase() -> None:
    assert calculate_progress(50, 100, "Parsing code") == 30
    assert calculate_progress(100, 100, JobPhase.EMBEDDING) == 95
    assert calculate_progress(5, 10, JobPhase.FETCHING) == 5
    assert calculate_progress(1, 1, JobPhase.FINALIZING) == 95
    assert calculate_progress(3, 0, JobPhase.PARSING) == 0
    assert calculate_progress(200, 100, JobPhase.PARSING) == 50


def test_job_store_rejects_second_job_for_repository() -> None:
    store = InMemoryJobStore()
    now = datetime.now(timezone.utc)
    assert store.create(IndexingJob(id="a", repository_id="r", created_at=now)) is True
    assert store.create(IndexingJob(id="b", repository_id="r", created_at=now)) is False
    assert store.get_by_repository("r").id == "a"


@pytest.mark.anyio
async def test_start_twice_returns_existing_job() -> None:
    manager = JobManager(InMemoryJobStore())
    first = await manager.start_indexing_job("repo-1")
    second = await manager.start_indexing_job("repo-1")

    assert first.is_new is True
    assert second.is_new is False
    assert second.job_id == first.job_id
    assert second.existing_status is JobStatus.PENDING


@pytest.mark.anyio
async def test_start_after_terminal_job_creates_new_one() -> None:
    manager = JobManager(InMemoryJobStore())
    first = await manager.start_indexing_job("repo-1")
    await manager.mark_job_completed(first.job_id, chunks_created=3)

    second = await manager.start_indexing_job("repo-1")
    assert second.is_new is True
    assert second.job_id != first.job_id
    assert await manager.get_job_status(first.job_id) is None


@pytest.mark.anyio
async def test_lifecycle_timestamps_and_progress() -> None:
    clock = FakeClock()
    manager = JobManager(InMemoryJobStore(), clock=clock)
    job_id = (await manager.start_indexing_job("repo-1")).job_id

    started = await manager.mark_job_started(job_id, files_total=10)
    assert started.status is JobStatus.FETCHING
    assert started.started_at == clock.now

    clock.advance(1)
    parsing = await manager.update_job_status(job_id, JobStatus.PARSING, phase=JobPhase.PARSING)
    assert parsing.started_at == started.started_at
    assert parsing.current_phase == "Parsing code"

    await manager.update_job_progress(job_id, files_processed=5, progress=30)
    lowered = await manager.update_job_progress(job_id, progress=10)
    assert lowered.progress == 30

    done = await manager.mark_job_completed(job_id, chunks_created=42, commit_sha="abc")
    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100
    assert done.chunks_created == 42
    assert done.commit_sha == "abc"
    assert done.completed_at == clock.now


@pytest.mark.anyio
async def test_cancelled_job_cannot_be_reactivated() -> None:
    manager = JobManager(InMemoryJobStore())
    job_id = (await manager.start_indexing_job("repo-1")).job_id

    cancelled = await manager.cancel_job(job_id)
    assert cancelled is not None
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.completed_at is not None

    with pytest.raises(JobCancelledError):
        await manager.update_job_status(job_id, JobStatus.EMBEDDING)
    with pytest.raises(JobCancelledError):
        await manager.mark_job_started(job_id)

    assert await manager.cancel_job("missing") is None


@pytest.mark.anyio
async def test_cancel_terminal_job_is_noop() -> None:
    manager = JobManager(InMemoryJobStore())
    job_id = (await manager.start_indexing_job("repo-1")).job_id
    await manager.mark_job_failed(job_id, "boom")

    job = await manager.cancel_job(job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_message == "boom"


@pytest.mark.anyio
async def test_cancellation_token_sees_cancel_and_delete() -> None:
    manager = JobManager(InMemoryJobStore())
    job_id = (await manager.start_indexing_job("repo-1")).job_id
    token = manager.cancellation_token(job_id)

    assert await token.is_cancelled() is False
    await manager.cancel_job(job_id)
    with pytest.raises(JobCancelledError):
        await token.raise_if_cancelled()

    other_id = (await manager.start_indexing_job("repo-2")).job_id
    assert await manager.delete_job(other_id) is True
    assert await manager.cancellation_token(other_id).is_cancelled() is True
    assert await manager.delete_job(other_id) is False


@pytest.mark.anyio
async def test_cleanup_stale_jobs() -> None:
    clock = FakeClock()
    manager = JobManager(InMemoryJobStore(), clock=clock)
    stale_id = (await manager.start_indexing_job("repo-old")).job_id
    await manager.mark_job_started(stale_id, files_total=3)

    clock.advance(20)
    fresh_id = (await manager.start_indexing_job("repo-new")).job_id
    assert len(await manager.get_in_progress_jobs()) == 2

    clock.advance(15)
    assert await manager.cleanup_stale_jobs(max_age_minutes=30) == 1

    stale = await manager.get_job_status(stale_id)
    assert stale is not None
    assert stale.status is JobStatus.FAILED
    assert stale.error_message == JOB_TIMEOUT_MESSAGE
    fresh = await manager.get_job_status(fresh_id)
    assert fresh is not None
    assert fresh.status is JobStatus.PENDING

    with pytest.raises(ValueError):
        await manager.cleanup_stale_jobs(max_age_minutes=0)


@pytest.mark.anyio
async def test_update_missing_job_raises() -> None:
    manager = JobManager(InMemoryJobStore())
    with pytest.raises(JobNotFoundError):
        await manager.update_job_progress("missing", files_processed=1)
    with pytest.raises(ValueError):
        await manager.start_indexing_job("")


@pytest.mark.anyio
async def test_terminal_job_stays_terminal() -> None:
    clock = FakeClock()
    manager = JobManager(InMemoryJobStore(), clock=clock)
    job_id = (await manager.start_indexing_job("repo-1")).job_id
    await manager.mark_job_started(job_id, files_total=2)
    cancelled = await manager.cancel_job(job_id)
    assert cancelled is not None

    clock.advance(5)
    failed = await manager.mark_job_failed(job_id, "late error")
    assert failed.status is JobStatus.CANCELLED
    assert failed.completed_at == cancelled.completed_at
    assert failed.error_message is None
    with pytest.raises(JobCancelledError):
        await manager.mark_job_completed(job_id, chunks_created=9)

    job = await manager.get_job_status(job_id)
    assert job is not None
    assert job.status is JobStatus.CANCELLED
    assert job.progress == 0


@pytest.mark.anyio
async def test_completed_or_swept_job_ignores_late_updates() -> None:
    clock = FakeClock()
    manager = JobManager(InMemoryJobStore(), clock=clock)
    done_id = (await manager.start_indexing_job("repo-done")).job_id
    done = await manager.mark_job_completed(done_id, chunks_created=4)

    clock.advance(1)
    again = await manager.update_job_status(done_id, JobStatus.FETCHING, phase=JobPhase.FETCHING)
    assert again.status is JobStatus.COMPLETED
    assert (await manager.mark_job_started(done_id)).status is JobStatus.COMPLETED
    assert (await manager.mark_job_failed(done_id, "boom")).status is JobStatus.COMPLETED
    assert (await manager.get_job_status(done_id)).completed_at == done.completed_at

    swept_id = (await manager.start_indexing_job("repo-swept")).job_id
    await manager.mark_job_started(swept_id)
    clock.advance(40)
    assert await manager.cleanup_stale_jobs(max_age_minutes=30) == 1
    late = await manager.mark_job_completed(swept_id, chunks_created=7)
    assert late.status is JobStatus.FAILED
    assert late.error_message == JOB_TIMEOUT_MESSAGE
    assert late.chunks_created == 0
