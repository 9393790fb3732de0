"""Bounded channel between the transport adapter and the batching queue."""

import asyncio
from typing import Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundMessage
from app.services.batching_queue import BatchingQueue
from app.services.loop_guard import LoopGuard
from app.services.tracking_service import mark_conversation_responded, mark_handled_without_reply, track_incoming

logger = get_logger("dispatcher")

OUTCOME_DUPLICATE = "duplicate"
OUTCOME_MANUAL = "manual_reply"
OUTCOME_SUPPRESSED = "suppressed"
OUTCOME_BATCHED = "batched"


class InboundDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        loop_guard: LoopGuard,
        queue: BatchingQueue,
        *,
        maxsize: int = settings.inbound_queue_size,
    ):
        self._session_factory = session_factory
        self.loop_guard = loop_guard
        self.queue = queue
        self._channel: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def submit(self, message: InboundMessage) -> bool:
        """Non-blocking hand-off from the ingress. False when the channel is full."""
        try:
            self._channel.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Inbound channel full, message rejected",
                extra={"context": {"conversation_key": message.conversation_key, "message_id": message.message_id}},
            )
            return False
        return True

    async def put(self, message: InboundMessage) -> None:
        await self._channel.put(message)

    def qsize(self) -> int:
        return self._channel.qsize()

    async def join(self) -> None:
        await self._channel.join()

    async def run(self) -> None:
        """Consume the channel until cancelled."""
        while True:
            message = await self._channel.get()
            try:
                await self.handle(message)
            except Exception as exc:
                logger.error(
                    "Inbound message handling failed",
                    extra={"context": {"conversation_key": message.conversation_key, "error": str(exc)}},
                    exc_info=True,
                )
            finally:
                self._channel.task_done()

    async def handle(self, message: InboundMessage) -> str:
        db = self._session_factory()
        try:
            if not track_incoming(db, message):
                logger.debug(f"Duplicate message dropped: {message.message_id}")
                return OUTCOME_DUPLICATE

            if message.from_me:
                mark_conversation_responded(db, message.conversation_key, manual=True, now=message.received_at)
                dropped = self.queue.discard(message.conversation_key)
                if dropped:
                    logger.info(
                        "Operator replied, pending batch dropped",
                        extra={"context": {"conversation_key": message.conversation_key, "messages": len(dropped)}},
                    )
                db.commit()
                return OUTCOME_MANUAL

            if self.loop_guard.should_suppress(message):
                mark_handled_without_reply(db, [message.message_id])
                db.commit()
                return OUTCOME_SUPPRESSED

            db.commit()
        finally:
            db.close()

        self.queue.enqueue(message)
        return OUTCOME_BATCHED
