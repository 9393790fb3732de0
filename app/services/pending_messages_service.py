"""Periodic sweep for tracked messages that never got an answer."""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import MessageTracking
from app.schemas.message import InboundMessage, MessageKind
from app.services.batching_queue import run_unlocked
from app.services.config_service import ConfigService
from app.services.tracking_service import get_unresponded

logger = get_logger("pending_messages_service")


def to_inbound(row: MessageTracking) -> InboundMessage:
    try:
        kind = MessageKind(row.message_type)
    except ValueError:
        kind = MessageKind.TEXT
    return InboundMessage(
        message_id=row.message_id,
        conversation_key=row.conversation_key,
        kind=kind,
        text=row.content,
        received_at=row.received_at,
        is_replay=True,
    )


class PendingMessagesSweeper:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline,
        config: ConfigService,
        *,
        busy_keys: Optional[Callable[[], List[str]]] = None,
        run_exclusive=run_unlocked,
        older_than_minutes: int = settings.pending_older_than_minutes,
        batch_size: int = settings.pending_batch_size,
        batch_delay_seconds: float = settings.pending_batch_delay_seconds,
        sleep_func=asyncio.sleep,
        now_func: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self.pipeline = pipeline
        self.config = config
        self._busy_keys = busy_keys or (lambda: [])
        self._run_exclusive = run_exclusive
        self.older_than_minutes = older_than_minutes
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep_func
        self._now = now_func
        self.is_processing = False
        self._task: Optional[asyncio.Task] = None

    def trigger(self) -> asyncio.Task:
        """Run a sweep in the background unless one is already in flight."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.sweep(), name="pending-sweep")
        return self._task

    def collect(self) -> Dict[str, List[InboundMessage]]:
        db = self._session_factory()
        try:
            grouped = get_unresponded(db, older_than_minutes=self.older_than_minutes, now=self._now())
            busy = set(self._busy_keys())
            return {
                key: [to_inbound(row) for row in rows]
                for key, rows in grouped.items()
                if key not in busy
            }
        finally:
            db.close()

    async def sweep(self) -> dict:
        if not self.config.get_bool("pending_sweep_enabled", True):
            return {"skipped": True, "reason": "disabled"}
        if self.is_processing:
            return {"skipped": True, "reason": "running"}
        self.is_processing = True
        try:
            pending = self.collect()
            results = {"skipped": False, "conversations": len(pending), "responded": 0, "no_reply": 0}
            keys = list(pending)
            for start in range(0, len(keys), self.batch_size):
                if start:
                    await self._sleep(self.batch_delay_seconds)
                for key in keys[start : start + self.batch_size]:
                    reply = await self._run_exclusive(key, self.pipeline.process, key, pending[key])
                    results["responded" if reply else "no_reply"] += 1
            if keys:
                logger.info("Pending messages swept", extra={"context": results})
            return results
        finally:
            self.is_processing = False
