"""
Per-entity write serialization

Writes touching the same entity id run one at a time, in the order they were
issued. Writes to different ids never wait on each other. asyncio.Lock wakes
waiters first-in first-out, which gives issue order for free.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, TypeVar

from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class EntityWriteQueue:
    def __init__(self):
        # entity_id -> lock, plus how many writers hold or await it
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, entity_id: str):
        """Hold the write slot for entity_id for the duration of the block"""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._waiters[entity_id] = self._waiters.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[entity_id] -= 1
            if self._waiters[entity_id] == 0:
                del self._waiters[entity_id]
                del self._locks[entity_id]

    async def run(self, entity_id: str, write: Callable[[], Awaitable[T]]) -> T:
        """
        Run one store write once every earlier write on entity_id has finished

        Args:
            entity_id: Entity the write targets (cascades pass the root id)
            write: Zero-argument coroutine factory; called only when it is
                this write's turn

        Returns:
            Whatever the write returns. Errors propagate unchanged.
        """
        async with self.hold(entity_id):
            return await write()

    def is_busy(self, entity_id: str) -> bool:
        return entity_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)
