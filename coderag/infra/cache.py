from __future__ import annotations

"""
GitHub 文件内容缓存。

key 形如 `file:{owner}/{repo}:{blob_sha}`：同一个 blob sha 的内容永远不变，所以没有 TTL，
只按条数做 LRU 淘汰。生产多实例部署时可以换成共享缓存，只要满足 `Cache` 协议。
"""

import threading
from collections import OrderedDict
from typing import Protocol

DEFAULT_MAX_ENTRIES = 10_000


class Cache(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryCache:
    """进程内 LRU（读命中会刷新顺序）。"""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._entries.get(key)
            if value is not None:
                self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
