"""Reconnect-time recovery of conversations whose last user message went unanswered."""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundMessage
from app.services import history_service
from app.services.ai_service import ResponseGenerator, format_transcript
from app.services.batching_queue import run_unlocked
from app.services.config_service import ConfigService
from app.services.conversation_service import (
    ROLE_USER,
    _ensure_timezone,
    last_turn,
    list_recent_conversations,
    turn_timestamp,
)
from app.services.history_service import FollowupType
from app.services.llm.base import LLMError

logger = get_logger("recovery_service")

ACK_ONLY = re.compile(r"^(ok|okay|👍|👌|😊|😂|haha|rsrs)$", re.IGNORECASE)
GREETING_ONLY = re.compile(r"^(oi|olá|ola|hey|hi)[!.]*$", re.IGNORECASE)
PUNCTUATION_ONLY = re.compile(r"^[\s\W_]*$")

MIN_MEANINGFUL_LENGTH = 3
MIN_CONTEXT_TURNS = 2
MIN_SUBSTANTIAL_TURN_LENGTH = 5

RECOVERY_SYSTEM_PROMPT = "Você decide se uma mensagem antiga de cliente ainda precisa de resposta."
RECOVERY_PROMPT = """Uma conversa de WhatsApp ficou sem resposta enquanto o sistema estava desconectado.

CONTEXTO DA CONVERSA:
{transcript}

ÚLTIMA MENSAGEM DO CLIENTE (há {hours:.1f} horas): "{message}"

Responda "RESPONDER" se a mensagem ainda merece uma resposta agora (pergunta em aberto, pedido, interesse).
Responda "NAO_RESPONDER" se a resposta seria inútil ou inconveniente (despedida, assunto encerrado, mensagem sem conteúdo).

Responda APENAS com "RESPONDER" ou "NAO_RESPONDER"."""


@dataclass
class RecoveryCandidate:
    conversation_key: str
    message: str
    message_id: Optional[str]
    sent_at: datetime
    age_hours: float
    turns: int
    priority: float
    history: List[dict]
    contact_name: Optional[str] = None


def is_meaningful(text: Optional[str]) -> bool:
    text = (text or "").strip()
    if len(text) < MIN_MEANINGFUL_LENGTH:
        return False
    return not (ACK_ONLY.match(text) or GREETING_ONLY.match(text) or PUNCTUATION_ONLY.match(text))


def has_valid_context(history: Sequence[dict]) -> bool:
    if len(history) < MIN_CONTEXT_TURNS:
        return False
    substantial = sum(1 for turn in history if len((turn.get("content") or "").strip()) > MIN_SUBSTANTIAL_TURN_LENGTH)
    return substantial >= MIN_CONTEXT_TURNS


def priority_score(age_hours: float, message: str, turns: int) -> float:
    """Recent, long, questioning messages in longer conversations come first."""
    score = max(0.0, 24 - age_hours)
    score += min(len(message) / 10, 20)
    score += 15 if "?" in message else 0
    score += min(turns, 10)
    return score


class RecoveryScanner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        pipeline,
        generator: Optional[ResponseGenerator],
        config: ConfigService,
        *,
        settle_seconds: float = settings.recovery_settle_seconds,
        scan_hours: int = settings.recovery_scan_hours,
        min_age_minutes: int = settings.recovery_min_age_minutes,
        max_age_hours: int = settings.recovery_max_age_hours,
        max_candidates: int = settings.recovery_max_candidates,
        batch_size: int = settings.recovery_batch_size,
        batch_delay_seconds: float = settings.recovery_batch_delay_seconds,
        item_delay_seconds: float = settings.recovery_item_delay_seconds,
        recent_send_hours: int = settings.recovery_recent_send_hours,
        high_priority: float = settings.recovery_high_priority,
        run_exclusive=run_unlocked,
        sleep_func=asyncio.sleep,
        now_func: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self.pipeline = pipeline
        self.generator = generator
        self.config = config
        self.settle_seconds = settle_seconds
        self.scan_window = timedelta(hours=scan_hours)
        self.min_age = timedelta(minutes=min_age_minutes)
        self.max_age = timedelta(hours=max_age_hours)
        self.max_candidates = max_candidates
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.item_delay_seconds = item_delay_seconds
        self.recent_send_hours = recent_send_hours
        self.high_priority = high_priority
        self._run_exclusive = run_exclusive
        self._sleep = sleep_func
        self._now = now_func
        self.is_processing = False
        self._task: Optional[asyncio.Task] = None

    def on_connected(self) -> Optional[asyncio.Task]:
        """Schedule one scan after the settle delay. Returns the scan task."""
        if not self.config.get_bool("smart_recovery_enabled", True):
            logger.info("Smart recovery disabled, skipping reconnect scan")
            return None
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self._run_after_settle(), name="recovery-scan")
        return self._task

    async def _run_after_settle(self) -> dict:
        await self._sleep(self.settle_seconds)
        return await self.run()

    async def run(self) -> dict:
        if self.is_processing:
            logger.info("Recovery scan already running")
            return {"skipped": True}
        self.is_processing = True
        try:
            return await self._run()
        finally:
            self.is_processing = False

    async def _run(self) -> dict:
        db = self._session_factory()
        try:
            candidates = self.find_candidates(db)
            approved = await self.filter_candidates(db, candidates)
        finally:
            db.close()

        summary = {"skipped": False, "eligible": len(candidates), "selected": len(approved), "responded": 0, "failed": 0}
        logger.info(
            "Recovery scan selected conversations",
            extra={"context": {"eligible": len(candidates), "selected": len(approved)}},
        )

        for start in range(0, len(approved), self.batch_size):
            if start:
                await self._sleep(self.batch_delay_seconds)
            batch = approved[start : start + self.batch_size]
            for index, candidate in enumerate(batch):
                if index:
                    await self._sleep(self.item_delay_seconds)
                try:
                    recovered = await self.recover(candidate)
                except Exception as exc:
                    logger.error(
                        "Recovery attempt failed",
                        extra={"context": {"conversation_key": candidate.conversation_key, "error": str(exc)}},
                        exc_info=True,
                    )
                    recovered = False
                summary["responded" if recovered else "failed"] += 1

        logger.info("Recovery scan finished", extra={"context": summary})
        return summary

    def find_candidates(self, db: Session) -> List[RecoveryCandidate]:
        """Eligible conversations, highest priority first."""
        now = self._now()
        candidates = []
        for conversation in list_recent_conversations(db, now - self.scan_window):
            history = list(conversation.messages or [])
            turn = last_turn(history)
            if turn is None or turn.get("role") != ROLE_USER:
                continue
            sent_at = turn_timestamp(turn) or _ensure_timezone(conversation.last_activity)
            age = now - sent_at
            if age < self.min_age or age > self.max_age:
                continue
            message = (turn.get("content") or "").strip()
            if not is_meaningful(message) or not has_valid_context(history):
                continue

            age_hours = age.total_seconds() / 3600
            candidate = RecoveryCandidate(
                conversation_key=conversation.conversation_key,
                message=message,
                message_id=turn.get("message_id"),
                sent_at=sent_at,
                age_hours=age_hours,
                turns=len(history),
                priority=priority_score(age_hours, message, len(history)),
                history=history,
                contact_name=conversation.contact_name,
            )
            if candidate.priority >= self.high_priority:
                logger.info(
                    "High priority recovery candidate",
                    extra={"context": {"conversation_key": candidate.conversation_key, "priority": candidate.priority}},
                )
            candidates.append(candidate)

        candidates.sort(key=lambda c: c.priority, reverse=True)
        return candidates

    async def filter_candidates(self, db: Session, candidates: Sequence[RecoveryCandidate]) -> List[RecoveryCandidate]:
        now = self._now()
        approved = []
        for candidate in candidates:
            if len(approved) >= self.max_candidates:
                break
            key = candidate.conversation_key
            if history_service.has_recent_send(db, key, within_hours=self.recent_send_hours, now=now):
                reason = "recent_send"
            elif history_service.is_stopped(db, key):
                reason = "stop_marker"
            elif history_service.is_finalized(db, key, within_hours=settings.finalization_suppression_hours, now=now):
                reason = "conversation_finalized"
            elif not await self.should_respond(candidate):
                reason = "model_declined"
            else:
                approved.append(candidate)
                continue
            logger.debug(f"Recovery candidate skipped: key={key}, reason={reason}")
        return approved

    async def should_respond(self, candidate: RecoveryCandidate) -> bool:
        """Final model check. Errors answer no."""
        if self.generator is None:
            return True
        prompt = RECOVERY_PROMPT.format(
            transcript=format_transcript(candidate.history, limit=8),
            hours=candidate.age_hours,
            message=candidate.message,
        )
        try:
            answer = (await self.generator.ask(RECOVERY_SYSTEM_PROMPT, prompt, max_tokens=50)).upper()
        except LLMError as exc:
            logger.warning(f"Recovery check failed, skipping {candidate.conversation_key}: {exc}")
            return False
        return "RESPONDER" in answer and "NAO_RESPONDER" not in answer

    async def recover(self, candidate: RecoveryCandidate) -> bool:
        key = candidate.conversation_key
        message_id = candidate.message_id or f"recovery:{key}:{int(candidate.sent_at.timestamp())}"
        message = InboundMessage(
            message_id=message_id,
            conversation_key=key,
            text=candidate.message,
            contact_name=candidate.contact_name,
            received_at=candidate.sent_at,
            is_replay=True,
        )
        reply = await self._run_exclusive(key, self.pipeline.process, key, [message])
        status = "responded" if reply else "no_reply"

        db = self._session_factory()
        try:
            history_service.record_event(
                db,
                key,
                FollowupType.RECOVERY_ATTEMPT,
                message=reply,
                details={"status": status, "priority": round(candidate.priority, 2), "message_id": message_id},
                now=self._now(),
            )
            db.commit()
        finally:
            db.close()
        logger.info(f"Recovery attempt: key={key}, status={status}")
        return reply is not None
