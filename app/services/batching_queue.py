"""Per-conversation debounce: rapid-fire messages become one pipeline run."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar, Union

from app.logging_config import get_logger
from app.schemas.message import InboundMessage

logger = get_logger("batching_queue")

T = TypeVar("T")

BatchHandler = Callable[[str, List[InboundMessage]], Awaitable[object]]


@dataclass
class PendingBatch:
    key: str
    messages: List[InboundMessage] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None


class BatchingQueue:
    """Owns the pending batches and their timers, one per conversation key.

    Every ``enqueue`` restarts the key's timer. When a timer survives the
    whole delay the batch is detached from the registry (no await between
    the check and the detach) and handed to ``handler``. Flushes for the
    same key are serialized so a reply is persisted and sent before the
    next batch of that key starts.
    """

    def __init__(
        self,
        handler: BatchHandler,
        *,
        delay_seconds: Union[float, Callable[[], float]] = 10.0,
        sleep_func=asyncio.sleep,
    ):
        self._handler = handler
        self._delay = delay_seconds
        self._sleep = sleep_func
        self._pending: Dict[str, PendingBatch] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _current_delay(self) -> float:
        delay = self._delay() if callable(self._delay) else self._delay
        return max(float(delay), 0.0)

    def enqueue(self, message: InboundMessage) -> int:
        """Add a message to its key's batch. Returns the batch size."""
        key = message.conversation_key
        batch = self._pending.get(key)
        if batch is None:
            batch = PendingBatch(key=key)
            self._pending[key] = batch
        elif batch.timer is not None:
            batch.timer.cancel()

        batch.messages.append(message)
        batch.timer = asyncio.create_task(self._fire(batch), name=f"batch:{key}")
        self._tasks.add(batch.timer)
        batch.timer.add_done_callback(self._tasks.discard)

        logger.debug(f"Batched message: key={key}, size={len(batch.messages)}")
        return len(batch.messages)

    def pending_count(self, key: str) -> int:
        batch = self._pending.get(key)
        return len(batch.messages) if batch else 0

    def busy_keys(self) -> List[str]:
        """Keys with a batch waiting for its timer or a pipeline run in flight."""
        return sorted(set(self._pending) | set(self._lock_users))

    def discard(self, key: str) -> List[InboundMessage]:
        """Drop the key's waiting batch and cancel its timer. Returns the dropped messages."""
        batch = self._pending.pop(key, None)
        if batch is None:
            return []
        if batch.timer is not None:
            batch.timer.cancel()
            batch.timer = None
        return batch.messages

    @asynccontextmanager
    async def _key_lock(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def run_exclusive(self, key: str, func: Callable[..., Awaitable[T]], *args) -> T:
        """Await ``func(*args)`` while holding the key's flush lock.

        Sweeps that re-inject messages go through here so they never overlap
        a live flush (or each other) for the same conversation.
        """
        async with self._key_lock(key):
            return await func(*args)

    async def _fire(self, batch: PendingBatch) -> None:
        await self._sleep(self._current_delay())

        if self._pending.get(batch.key) is not batch:
            return
        del self._pending[batch.key]
        batch.timer = None

        key = batch.key
        async with self._key_lock(key):
            logger.info(
                "Flushing batch",
                extra={"context": {"conversation_key": key, "messages": len(batch.messages)}},
            )
            try:
                await self._handler(key, list(batch.messages))
            except Exception as exc:
                logger.error(
                    "Batch handler failed",
                    extra={"context": {"conversation_key": key, "error": str(exc)}},
                    exc_info=True,
                )

    async def drain(self) -> None:
        """Wait for every timer and in-flight flush to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._pending.clear()


async def run_unlocked(key: str, func: Callable[..., Awaitable[T]], *args) -> T:
    """Stand-in for ``BatchingQueue.run_exclusive`` when no queue is wired."""
    return await func(*args)
