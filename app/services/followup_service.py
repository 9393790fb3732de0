"""Follow-up scheduling: inactivity -> analysis -> generated message -> delayed send."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings as app_settings
from app.logging_config import get_logger
from app.models import FollowupQueueItem, FollowupSettings
from app.schemas.followup import FollowupSettingsUpdate, FollowupStats
from app.services import history_service
from app.services.ai_service import ReasoningTier, ResponseGenerator, compute_token_budget, format_transcript
from app.services.alert_service import alert_error
from app.services.conversation_service import (
    ROLE_ASSISTANT,
    _ensure_timezone,
    add_message,
    find_conversation,
)
from app.services.history_service import FollowupType
from app.services.llm.base import LLMError
from app.services.result import Result
from app.services.state_machine import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    FollowupStatus,
    approve_for_send,
    complete,
    fail,
    retry,
)
from app.services.transport import ChatTransport, TransportError

logger = get_logger("followup_service")

DEFAULT_GENERATE_PROMPT = (
    "Analise a conversa e identifique se o cliente demonstrou interesse em produtos/serviços mas não "
    "finalizou a compra, ou se ficou com dúvidas pendentes, ou se a conversa terminou sem conclusão satisfatória."
)
DEFAULT_NO_GENERATE_PROMPT = (
    "NÃO gere followup se: cliente já comprou, cliente disse que não tem interesse, cliente pediu para não "
    "entrar em contato, conversa foi finalizada satisfatoriamente, cliente demonstrou irritação."
)

FOLLOWUP_MESSAGE_TYPE = "followup"
ANALYSIS_TURNS = 15
GENERATION_TURNS = 10
MAX_FOLLOWUP_CHARS = 200
MIN_FOLLOWUP_CHARS = 10
ANALYSIS_SPACING_SECONDS = 1.0
SEND_SPACING_SECONDS = 2.0
QUEUE_RETENTION_DAYS = 30
HISTORY_RETENTION_DAYS = 90

ANALYSIS_SYSTEM_PROMPT = "Você decide se uma conversa de atendimento merece uma mensagem de acompanhamento."
ANALYSIS_PROMPT = """ANÁLISE PARA FOLLOWUP:

CRITÉRIOS PARA GERAR FOLLOWUP:
{generate_prompt}

CRITÉRIOS PARA NÃO GERAR FOLLOWUP:
{no_generate_prompt}

CONTEXTO DA CONVERSA:
{transcript}

INSTRUÇÕES:
1. Analise a conversa considerando AMBOS os critérios
2. Se a conversa atende aos critérios de GERAR followup, responda com "GERAR_FOLLOWUP"
3. Se atende aos critérios de NÃO GERAR ou não há dados suficientes, responda com "NAO_GERAR"

IMPORTANTE: Responda APENAS com "GERAR_FOLLOWUP" ou "NAO_GERAR"."""

GENERATION_SYSTEM_PROMPT = "Você é um assistente que gera mensagens de followup naturais e úteis."
GENERATION_PROMPT = """GERAÇÃO DE MENSAGEM DE FOLLOWUP:

CONTEXTO DA CONVERSA:
{transcript}

INSTRUÇÕES:
1. Crie uma mensagem natural e personalizada de followup
2. Seja útil e não invasivo, referencie a conversa anterior de forma sutil
3. Ofereça ajuda adicional ou esclarecimento
4. Máximo de {max_chars} caracteres

Gere APENAS a mensagem de followup, sem explicações ou formatação adicional."""

CONTINUATION_SYSTEM_PROMPT = "Você analisa respostas de clientes a mensagens de acompanhamento."
CONTINUATION_PROMPT = """CONTEXTO DA CONVERSA:
{transcript}

ÚLTIMA RESPOSTA DO CLIENTE: "{reply}"

CRITÉRIOS PARA PARAR FOLLOW-UPS (responda "PARAR_FOLLOWUPS"):
- Cliente demonstrou desinteresse claro ou pediu para não ser mais contatado
- Cliente disse que já resolveu ou comprou em outro lugar
- Cliente demonstrou irritação ou deu uma resposta definitiva de "não"

CRITÉRIOS PARA CONTINUAR FOLLOW-UPS (responda "CONTINUAR_FOLLOWUPS"):
- Cliente mostrou interesse mas não pode no momento
- Cliente fez uma pergunta ou pediu mais tempo para decidir

Responda APENAS com "PARAR_FOLLOWUPS" ou "CONTINUAR_FOLLOWUPS"."""


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def get_settings(db: Session) -> FollowupSettings:
    """Singleton settings row, created with defaults on first access."""
    settings = db.query(FollowupSettings).filter(FollowupSettings.id == 1).first()
    if settings is None:
        settings = FollowupSettings(
            id=1,
            enabled=False,
            generate_prompt=DEFAULT_GENERATE_PROMPT,
            no_generate_prompt=DEFAULT_NO_GENERATE_PROMPT,
            inactivity_hours=24,
            delay_hours=2,
            max_followups_per_conversation=2,
            followup_interval_hours=168,
        )
        db.add(settings)
        db.flush()
    return settings


def update_settings(db: Session, update: FollowupSettingsUpdate) -> FollowupSettings:
    settings = get_settings(db)
    for field_name, value in update.model_dump(exclude_none=True).items():
        setattr(settings, field_name, value)
    db.flush()
    logger.info("Follow-up settings updated", extra={"context": update.model_dump(exclude_none=True)})
    return settings


def get_active_item(db: Session, conversation_key: str) -> Optional[FollowupQueueItem]:
    return (
        db.query(FollowupQueueItem)
        .filter(
            FollowupQueueItem.conversation_key == conversation_key,
            FollowupQueueItem.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        .first()
    )


def get_due_items(db: Session, status: FollowupStatus, *, limit: int, now: Optional[datetime] = None) -> List[FollowupQueueItem]:
    return (
        db.query(FollowupQueueItem)
        .filter(FollowupQueueItem.status == status.value, FollowupQueueItem.scheduled_for <= _now(now))
        .order_by(FollowupQueueItem.scheduled_for.asc())
        .limit(limit)
        .all()
    )


def schedule_analysis(db: Session, conversation_key: str, *, now: Optional[datetime] = None) -> Optional[FollowupQueueItem]:
    """Queue an inactivity analysis for a key, or do nothing when suppressed.

    Commit pending work before calling: a lost race on the one-active-item
    index rolls the session back.
    """
    now = _now(now)
    settings = get_settings(db)
    if not settings.enabled:
        return None

    if get_active_item(db, conversation_key) is not None:
        logger.debug(f"Follow-up already queued: key={conversation_key}")
        return None

    if history_service.is_stopped(db, conversation_key):
        logger.info(f"Follow-up skipped, stop marker active: key={conversation_key}")
        return None

    if history_service.is_finalized(
        db, conversation_key, within_hours=app_settings.finalization_suppression_hours, now=now
    ):
        logger.info(f"Follow-up skipped, conversation finalized: key={conversation_key}")
        return None

    sent = history_service.count_followups_sent(
        db, conversation_key, window_hours=settings.followup_interval_hours, now=now
    )
    if sent >= settings.max_followups_per_conversation:
        logger.info(
            "Follow-up skipped, rate limit reached",
            extra={"context": {"conversation_key": conversation_key, "sent": sent}},
        )
        return None

    item = FollowupQueueItem(
        conversation_key=conversation_key,
        status=FollowupStatus.SCHEDULED_FOR_ANALYSIS.value,
        scheduled_for=now + timedelta(hours=settings.inactivity_hours),
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(f"Follow-up already queued by a concurrent writer: key={conversation_key}")
        return None

    logger.info(
        "Follow-up analysis scheduled",
        extra={"context": {"conversation_key": conversation_key, "scheduled_for": item.scheduled_for.isoformat()}},
    )
    return item


def cancel_active_items(db: Session, conversation_key: str, reason: str, *, now: Optional[datetime] = None) -> int:
    items = (
        db.query(FollowupQueueItem)
        .filter(
            FollowupQueueItem.conversation_key == conversation_key,
            FollowupQueueItem.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        .all()
    )
    for item in items:
        item.status = complete(item.status).value
        item.analysis_result = f"cancelled:{reason}"
        item.updated_at = _now(now)
    db.flush()
    return len(items)


def mark_no_more_followups(db: Session, conversation_key: str, reason: str, *, now: Optional[datetime] = None) -> None:
    cancelled = cancel_active_items(db, conversation_key, reason, now=now)
    history_service.record_event(
        db,
        conversation_key,
        FollowupType.STOP_MARKER,
        message=f"[SYSTEM] Follow-ups stopped: {reason}",
        details={"reason": reason, "cancelled_items": cancelled},
        now=now,
    )
    logger.info(f"Stop marker set: key={conversation_key}, reason={reason}")


def reset_stop_marker_if_new_cycle(
    db: Session,
    conversation_key: str,
    previous_activity: Optional[datetime],
    *,
    reset_hours: int = app_settings.followup_stop_reset_hours,
    now: Optional[datetime] = None,
) -> bool:
    """A user returning after a long silence starts a new cycle and lifts the stop marker."""
    if previous_activity is None or not history_service.is_stopped(db, conversation_key):
        return False
    now = _now(now)
    if now - _ensure_timezone(previous_activity) < timedelta(hours=reset_hours):
        return False
    history_service.record_event(db, conversation_key, FollowupType.STOP_RESET, now=now)
    logger.info(f"Stop marker lifted, new conversation cycle: key={conversation_key}")
    return True


def cleanup_queue(db: Session, *, days: int = QUEUE_RETENTION_DAYS, now: Optional[datetime] = None) -> int:
    cutoff = _now(now) - timedelta(days=days)
    removed = (
        db.query(FollowupQueueItem)
        .filter(
            FollowupQueueItem.status.in_([s.value for s in TERMINAL_STATUSES]),
            FollowupQueueItem.updated_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.flush()
    return removed


def get_stats(db: Session, *, now: Optional[datetime] = None) -> FollowupStats:
    rows = db.query(FollowupQueueItem.status, func.count(FollowupQueueItem.id)).group_by(FollowupQueueItem.status).all()
    return FollowupStats(
        queue={status: count for status, count in rows},
        history=history_service.history_stats(db, now=now),
        enabled=bool(get_settings(db).enabled),
    )


class FollowupScheduler:
    """Owns every FollowupQueueItem transition. One sweep at a time."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generator: ResponseGenerator,
        transport: ChatTransport,
        *,
        analysis_batch: int = app_settings.followup_analysis_batch,
        send_batch: int = app_settings.followup_send_batch,
        max_attempts: int = app_settings.followup_max_attempts,
        retry_minutes: int = app_settings.followup_retry_minutes,
        sleep_func=asyncio.sleep,
        now_func: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self.generator = generator
        self.transport = transport
        self.analysis_batch = analysis_batch
        self.send_batch = send_batch
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(minutes=retry_minutes)
        self._sleep = sleep_func
        self._now = now_func
        self.is_processing = False

    async def process_queue(self) -> dict:
        """One sweep tick: analysis pass then send pass. Overlapping ticks are skipped."""
        if self.is_processing:
            logger.debug("Follow-up sweep already running, skipping tick")
            return {"skipped": True}
        self.is_processing = True
        try:
            analysis = await self.run_analysis_pass()
            send = await self.run_send_pass()
        finally:
            self.is_processing = False
        results = {"skipped": False, "analysis": analysis, "send": send}
        if analysis["processed"] or send["processed"]:
            logger.info("Follow-up sweep processed", extra={"context": results})
        return results

    async def run_analysis_pass(self) -> dict:
        return await self._run_pass(FollowupStatus.SCHEDULED_FOR_ANALYSIS, self.analysis_batch, ANALYSIS_SPACING_SECONDS, self.analyze_item)

    async def run_send_pass(self) -> dict:
        return await self._run_pass(FollowupStatus.SCHEDULED_FOR_SEND, self.send_batch, SEND_SPACING_SECONDS, self.send_item)

    async def _run_pass(self, status: FollowupStatus, limit: int, spacing: float, handler) -> dict:
        results = {"processed": 0, "errors": 0, "outcomes": {}}
        db = self._session_factory()
        try:
            items = get_due_items(db, status, limit=limit, now=self._now())
            for index, item in enumerate(items):
                if index:
                    await self._sleep(spacing)
                try:
                    outcome = await handler(db, item)
                    db.commit()
                except Exception as exc:
                    db.rollback()
                    results["errors"] += 1
                    logger.error(
                        "Follow-up item failed",
                        extra={"context": {"item_id": str(item.id), "status": status.value, "error": str(exc)}},
                        exc_info=True,
                    )
                    continue
                results["processed"] += 1
                results["outcomes"][outcome] = results["outcomes"].get(outcome, 0) + 1
        finally:
            db.close()
        return results

    def _finish(self, item: FollowupQueueItem, result: str) -> str:
        item.status = complete(item.status).value
        item.analysis_result = result
        item.updated_at = self._now()
        return result

    def _register_failure(self, item: FollowupQueueItem, failure: Result) -> str:
        """Count an attempt; retry after the backoff or give up at the limit.

        Failures that are not retryable give up at once.
        """
        now = self._now()
        error = failure.error or failure.error_code or "unknown"
        item.attempts = (item.attempts or 0) + 1
        item.last_error = error[:1000]
        item.updated_at = now
        if item.attempts >= self.max_attempts or not failure.retryable:
            item.status = fail(item.status).value
            logger.error(
                "Follow-up failed",
                extra={"context": {"conversation_key": item.conversation_key, "attempts": item.attempts, "error": error}},
            )
            alert_error(
                "Follow-up failed",
                {"conversation_key": item.conversation_key, "item_id": str(item.id), "error": error[:200]},
            )
            return "failed"
        item.status = retry(item.status).value
        item.scheduled_for = now + self.retry_delay
        logger.warning(
            "Follow-up attempt failed, retrying",
            extra={"context": {"conversation_key": item.conversation_key, "attempts": item.attempts, "error": error}},
        )
        return "retry_scheduled"

    async def analyze_item(self, db: Session, item: FollowupQueueItem) -> str:
        settings = get_settings(db)
        if not settings.enabled:
            return self._finish(item, "followups_disabled")

        conversation = find_conversation(db, item.conversation_key)
        history = list(conversation.messages or []) if conversation else []
        if len(history) < 2:
            return self._finish(item, "no_conversation_data")

        # Talk resumed after scheduling: wait for a full inactivity window again.
        horizon = _ensure_timezone(conversation.last_activity) + timedelta(hours=settings.inactivity_hours)
        if horizon > self._now():
            item.scheduled_for = horizon
            item.status = retry(item.status).value
            item.updated_at = self._now()
            return "rescheduled"

        judgment = await self.judge(settings, history)
        if not judgment.ok:
            return self._register_failure(item, judgment)
        if not judgment.value:
            return self._finish(item, "negative")

        generated = await self.generate_message(history)
        if not generated.ok:
            return self._register_failure(item, generated)

        now = self._now()
        item.status = approve_for_send(item.status).value
        item.message = generated.value
        item.conversation_context = {
            "transcript": format_transcript(history, limit=GENERATION_TURNS),
            "last_activity": _ensure_timezone(conversation.last_activity).isoformat(),
        }
        item.analysis_result = "positive"
        item.scheduled_for = now + timedelta(hours=settings.delay_hours)
        item.updated_at = now
        logger.info(
            "Follow-up message generated",
            extra={"context": {"conversation_key": item.conversation_key, "send_at": item.scheduled_for.isoformat()}},
        )
        return "approved"

    async def judge(self, settings: FollowupSettings, history: List[dict]) -> Result[bool]:
        prompt = ANALYSIS_PROMPT.format(
            generate_prompt=settings.generate_prompt,
            no_generate_prompt=settings.no_generate_prompt,
            transcript=format_transcript(history, limit=ANALYSIS_TURNS),
        )
        try:
            answer = await self.generator.ask(ANALYSIS_SYSTEM_PROMPT, prompt, max_tokens=50)
        except LLMError as exc:
            return Result.failure(f"analysis failed: {exc}", "provider_error")
        return Result.success("GERAR_FOLLOWUP" in answer.upper())

    async def generate_message(self, history: List[dict]) -> Result[str]:
        prompt = GENERATION_PROMPT.format(
            transcript=format_transcript(history, limit=GENERATION_TURNS),
            max_chars=MAX_FOLLOWUP_CHARS,
        )
        try:
            message = await self.generator.ask(
                GENERATION_SYSTEM_PROMPT,
                prompt,
                max_tokens=compute_token_budget(MAX_FOLLOWUP_CHARS, ReasoningTier.MINIMAL),
            )
        except LLMError as exc:
            return Result.failure(f"generation failed: {exc}", "provider_error")
        message = message.strip().strip('"').strip()
        if len(message) < MIN_FOLLOWUP_CHARS:
            return Result.failure("failed_to_generate_message", "short_message")
        return Result.success(message[:MAX_FOLLOWUP_CHARS])

    async def send_item(self, db: Session, item: FollowupQueueItem) -> str:
        now = self._now()
        key = item.conversation_key
        settings = get_settings(db)

        if history_service.is_stopped(db, key):
            return self._finish(item, "stop_marker")
        if history_service.is_finalized(db, key, within_hours=app_settings.finalization_suppression_hours, now=now):
            return self._finish(item, "conversation_finalized")
        sent = history_service.count_followups_sent(db, key, window_hours=settings.followup_interval_hours, now=now)
        if sent >= settings.max_followups_per_conversation:
            return self._finish(item, "rate_limited")

        if not item.message:
            return self._register_failure(item, Result.failure("no message to send", "missing_message"))

        conversation = find_conversation(db, key)
        approved_activity = (item.conversation_context or {}).get("last_activity")
        if conversation and approved_activity:
            if _ensure_timezone(conversation.last_activity) > datetime.fromisoformat(approved_activity):
                return self._finish(item, "conversation_resumed")

        try:
            await self.transport.send_text(key, item.message)
        except TransportError as exc:
            return self._register_failure(item, Result.failure(f"send failed: {exc}", "transport_error"))

        add_message(db, key, ROLE_ASSISTANT, item.message, message_type=FOLLOWUP_MESSAGE_TYPE, now=now)
        history_service.record_event(
            db, key, FollowupType.AUTOMATIC, message=item.message, queue_item_id=item.id, now=now
        )
        item.attempts = (item.attempts or 0) + 1
        self._finish(item, item.analysis_result or "positive")
        logger.info(f"Follow-up sent: key={key}")
        return "sent"

    async def analyze_continuation(self, db: Session, conversation_key: str, reply: str, history: List[dict]) -> bool:
        """After a user answers a follow-up, decide whether to stop further ones."""
        prompt = CONTINUATION_PROMPT.format(transcript=format_transcript(history, limit=6), reply=reply)
        try:
            answer = await self.generator.ask(CONTINUATION_SYSTEM_PROMPT, prompt, max_tokens=50)
        except LLMError as exc:
            logger.warning(f"Follow-up continuation check failed: {exc}")
            return False
        if "PARAR_FOLLOWUPS" not in answer.upper():
            return False
        mark_no_more_followups(db, conversation_key, "client_response_indicates_stop", now=self._now())
        return True

    def cleanup(self) -> dict:
        db = self._session_factory()
        try:
            queue_removed = cleanup_queue(db, now=self._now())
            history_removed = history_service.cleanup_history(db, days=HISTORY_RETENTION_DAYS, now=self._now())
            db.commit()
        finally:
            db.close()
        return {"queue_removed": queue_removed, "history_removed": history_removed}
