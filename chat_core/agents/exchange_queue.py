"""Single-slot queue that admits one exchange at a time per session."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ExchangeQueue:
    """一个会话同一时刻只允许一个交换在进行。

    后来的调用在 ``slot()`` 处排队等待，前一个交换无论成功还是失败，
    离开 slot 时都会放行下一个。流式交换在整个生成器生命周期内占用 slot。
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._waiting = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def waiting(self) -> int:
        return self._waiting

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._lock.release()
