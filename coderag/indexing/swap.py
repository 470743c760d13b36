"""
两阶段替换（saga）：先插入新 chunk，全部成功后再删除旧 chunk。

PENDING --insert()--> INSERTED(new_ids) --reconcile()--> SWAPPED

- 插入期间读者始终能看到旧 chunk（仓库不会出现 0 chunk 的窗口）
- 插入中途失败：新旧 chunk 并存；下一次成功运行的 reconcile 会清掉孤儿
- reconcile 幂等：对同一组 new_ids 重复执行只会删 0 行
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum

import anyio

from coderag.storage.base import ChunkStore
from coderag.storage.models import CodeChunk

logger = logging.getLogger(__name__)

DB_INSERT_BATCH_SIZE = 100


class SwapState(str, Enum):
    PENDING = "pending"
    INSERTED = "inserted"
    SWAPPED = "swapped"


class ChunkSwap:
    def __init__(
        self,
        store: ChunkStore,
        repository_id: str,
        file_paths: Sequence[str] | None = None,
        batch_size: int = DB_INSERT_BATCH_SIZE,
    ) -> None:
        """
        file_paths:
        - None：全量替换（删除该仓库所有不在 new_ids 里的 chunk）
        - 给定：增量替换，只删除这些路径下的旧 chunk
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._store = store
        self._repository_id = repository_id
        self._file_paths = list(file_paths) if file_paths is not None else None
        self._batch_size = batch_size
        self._state = SwapState.PENDING
        self._new_ids: list[str] = []

    @property
    def state(self) -> SwapState:
        return self._state

    @property
    def new_ids(self) -> list[str]:
        return list(self._new_ids)

    async def insert(
        self,
        chunks: Sequence[CodeChunk],
        before_batch: Callable[[], Awaitable[None]] | None = None,
    ) -> list[str]:
        if self._state is not SwapState.PENDING:
            raise RuntimeError(f"Cannot insert in state {self._state.value}")
        for start in range(0, len(chunks), self._batch_size):
            if before_batch is not None:
                await before_batch()
            batch = list(chunks[start : start + self._batch_size])
            ids = await anyio.to_thread.run_sync(
                functools.partial(self._store.insert_chunks, self._repository_id, batch)
            )
            self._new_ids.extend(ids)
        self._state = SwapState.INSERTED
        return self.new_ids

    async def reconcile(self) -> int:
        if self._state is SwapState.PENDING:
            raise RuntimeError("Cannot reconcile before insert() completed")
        deleted = await anyio.to_thread.run_sync(
            functools.partial(
                self._store.delete_chunks_except,
                self._repository_id,
                self._new_ids,
                self._file_paths,
            )
        )
        self._state = SwapState.SWAPPED
        logger.info(
            f"Chunk swap for {self._repository_id}: kept {len(self._new_ids)} new, deleted {deleted} old"
        )
        return deleted
