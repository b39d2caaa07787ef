"""按会话划分的 asyncio 锁。

同一会话的事件串行处理，不同会话之间并发。锁在首次使用时创建，
最后一个持有者或等待者离开时移除，因此登记表只包含正在处理事件的会话。
事件循环单线程，计数与增删无需额外同步。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ConversationLocks:
    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}
        # 会话 id -> 持有或等待该锁的协程数
        self._users: Dict[int, int] = {}

    def get(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        return lock

    @asynccontextmanager
    async def hold(self, conversation_id: int) -> AsyncIterator[None]:
        lock = self.get(conversation_id)
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[conversation_id] - 1
            if remaining:
                self._users[conversation_id] = remaining
            else:
                del self._users[conversation_id]
                self._locks.pop(conversation_id, None)

    def __len__(self) -> int:
        return len(self._locks)
