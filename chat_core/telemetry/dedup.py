"""Bounded recency set of correlation ids already logged."""

from __future__ import annotations

from typing import Dict


class DedupWindow:
    """记录最近写过响应事件的 request id。

    超过容量后丢弃最早插入的一半，保证内存有界；
    被淘汰的 id 理论上可能再次写入，这是有意接受的近似。
    """

    def __init__(self, capacity: int = 100):
        if capacity < 2:
            raise ValueError("capacity must be >= 2")
        self.capacity = capacity
        # dict 保留插入顺序，用作有序集合
        self._seen: Dict[str, None] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: str) -> bool:
        """插入 key；已存在时返回 False。"""

        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > self.capacity:
            for old in list(self._seen)[: self.capacity // 2]:
                del self._seen[old]
        return True
