from __future__ import annotations

import pytest

from coderag.indexing.swap import ChunkSwap
from coderag.indexing.swap import SwapState
from coderag.storage.memory import InMemoryChunkStore
from coderag.storage.models import CodeChunk

REPO = "repo-1"


def _chunk(path: str, n: int) -> CodeChunk:
    return CodeChunk(
        content=f"const v{n} = {n}",
        file_path=path,
        start_line=n,
        end_line=n,
        language="typescript",
        chunk_type="other",
    )


@pytest.mark.anyio
async def test_old_chunks_visible_until_reconcile() -> None:
    store = InMemoryChunkStore()
    store.insert_chunks(REPO, [_chunk("a.ts", 1), _chunk("b.ts", 1)])

    swap = ChunkSwap(store, REPO, batch_size=2)
    batches = {"n": 0}

    async def before_batch() -> None:
        batches["n"] += 1

    new_ids = await swap.insert([_chunk("a.ts", i) for i in range(1, 6)], before_batch=before_batch)
    assert batches["n"] == 3
    assert swap.state is SwapState.INSERTED
    assert store.count_chunks(REPO) == 7

    assert await swap.reconcile() == 2
    assert swap.state is SwapState.SWAPPED
    assert {c.id for c in store.chunks[REPO]} == set(new_ids)
    assert await swap.reconcile() == 0


@pytest.mark.anyio
async def test_scoped_swap_keeps_untouched_files() -> None:
    store = InMemoryChunkStore()
    store.insert_chunks(REPO, [_chunk("a.ts", 1), _chunk("b.ts", 1), _chunk("gone.ts", 1)])

    swap = ChunkSwap(store, REPO, file_paths=["a.ts", "gone.ts"])
    await swap.insert([_chunk("a.ts", 2)])
    assert await swap.reconcile() == 2
    assert sorted(c.file_path for c in store.chunks[REPO]) == ["a.ts", "b.ts"]


@pytest.mark.anyio
async def test_failed_insert_leaves_old_chunks() -> None:
    store = InMemoryChunkStore()
    old_ids = store.insert_chunks(REPO, [_chunk("a.ts", 1)])
    swap = ChunkSwap(store, REPO, batch_size=1)

    async def explode() -> None:
        if store.count_chunks(REPO) >= 2:
            raise RuntimeError("insert interrupted")

    with pytest.raises(RuntimeError):
        await swap.insert([_chunk("a.ts", 2), _chunk("a.ts", 3)], before_batch=explode)

    assert swap.state is SwapState.PENDING
    assert store.count_chunks(REPO) == 2
    assert old_ids[0] in {c.id for c in store.chunks[REPO]}
    assert sorted(c.start_line for c in store.chunks[REPO]) == [1, 2]
    with pytest.raises(RuntimeError):
        await swap.reconcile()
    assert store.count_chunks(REPO) == 2


def test_invalid_batch_size() -> None:
    with pytest.raises(ValueError):
        ChunkSwap(InMemoryChunkStore(), REPO, batch_size=0)
