"""Decides whether a conversation has naturally ended.

Two stages: ``DeterministicClassifier`` (lexicons, context density, loop
shape) and ``ModelArbitratedClassifier`` (a FINALIZAR/CONTINUAR question
for short ambiguous messages). ``FinalizationClassifier`` composes them,
caches decisions and owns the finalized marker in the history log.

Errors anywhere in classification resolve to "continue the conversation".
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.services.ai_service import ResponseGenerator, format_transcript
from app.services.history_service import FollowupType, is_finalized, record_event
from app.services.llm.base import LLMError
from app.services.text_utils import normalize_for_matching

logger = get_logger("finalization_service")

GOODBYE_PATTERN = re.compile(r"\b(tchau|xau|até logo|até mais|falou|flw|bye|adeus|goodbye)\b", re.IGNORECASE)
THANKS_PATTERN = re.compile(
    r"\b(muito obrigad[ao]|brigad[ao] mesmo|obrigad[ao] pela ajuda|thank you very much)\b", re.IGNORECASE
)
CONFIRMATION_PATTERN = re.compile(
    r"\b(tá bom então|ok então|beleza então|perfeito obrigad[ao]|entendi obrigad[ao])\b", re.IGNORECASE
)
POLITE_CLOSING_PATTERN = re.compile(
    r"\b(boa noite para voc[êe]|bom dia para voc[êe]|boa tarde para voc[êe]|tenha um bom [a-z]+)\b", re.IGNORECASE
)
FINALIZATION_PATTERNS = (GOODBYE_PATTERN, THANKS_PATTERN, CONFIRMATION_PATTERN, POLITE_CLOSING_PATTERN)

BOT_CLOSING_PATTERNS = (
    re.compile(r"\b(de nada|disponha|imagina|por nada|sempre às ordens)\b", re.IGNORECASE),
    re.compile(r"\b(até logo|até mais|até breve|falou)\b", re.IGNORECASE),
    re.compile(r"\b(qualquer coisa|precisa de mais|posso ajudar)\b", re.IGNORECASE),
)

THANK_YOU_SIGNAL = re.compile(r"\b(muito obrigad[ao]|brigad[ao] mesmo|obrigad[ao] pela ajuda)\b", re.IGNORECASE)
STRONG_THANKS = re.compile(r"\b(muito obrigad[ao]|brigad[ao] mesmo)\b", re.IGNORECASE)
GOODBYE_SIGNAL = re.compile(r"\b(tchau|xau|até logo|até mais|bye|adeus|falou)\b", re.IGNORECASE)
SIMPLE_CONFIRMATION = re.compile(r"^(tá bom então|ok então|beleza então|perfeito obrigad[ao])$", re.IGNORECASE)

REASON_CONTEXT = "multiple_clear_finalization_signals"
REASON_THANKS = "explicit_thank_you_message"
REASON_LOOP = "clear_automatic_response_loop"
REASON_MODEL = "ai_natural_ending"
REASON_CONTINUE = "conversation_continues"
REASON_ERROR = "error_in_analysis"

MODEL_SYSTEM_PROMPT = "Você analisa conversas de atendimento pelo WhatsApp. Seja conservador."
MODEL_PROMPT = """ANÁLISE DE FINALIZAÇÃO DE CONVERSA:

CONTEXTO DA CONVERSA:
{transcript}

NOVA MENSAGEM DO CLIENTE: "{message}"

CRITÉRIOS PARA FINALIZAR (responda "FINALIZAR"):
- Cliente demonstrou claramente que quer encerrar a conversa
- Cliente agradeceu e não fez nova pergunta
- Padrão de despedida ou confirmação final

CRITÉRIOS PARA CONTINUAR (responda "CONTINUAR"):
- Cliente fez nova pergunta ou demonstra interesse em continuar
- Não há sinais claros de finalização

Responda APENAS com "FINALIZAR" ou "CONTINUAR". Finalize apenas se realmente apropriado."""


@dataclass
class FinalizationDecision:
    should_finalize: bool
    reason: str
    confidence: float
    details: dict = field(default_factory=dict)


CONTINUE = FinalizationDecision(should_finalize=False, reason=REASON_CONTINUE, confidence=0.1)


@dataclass
class MessageSignals:
    indicates_finalization: bool = False
    is_thank_you: bool = False
    is_goodbye: bool = False
    is_simple_confirmation: bool = False
    needs_model: bool = False


@dataclass(frozen=True)
class FinalizationThresholds:
    context_turns: int = settings.finalization_context_turns
    min_pattern_hits: int = settings.finalization_min_pattern_hits
    loop_turns: int = settings.finalization_loop_turns
    loop_min_bot_closings: int = settings.finalization_loop_min_bot_closings
    loop_min_user_closings: int = settings.finalization_loop_min_user_closings
    thanks_max_length: int = settings.finalization_thanks_max_length
    model_max_length: int = settings.finalization_ai_max_length
    # Loop confirmation accepts a short trailing message without a question.
    loop_short_message_length: int = 20


def matches_finalization(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in FINALIZATION_PATTERNS)


def matches_bot_closing(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in BOT_CLOSING_PATTERNS)


class DeterministicClassifier:
    def __init__(self, thresholds: Optional[FinalizationThresholds] = None):
        self.thresholds = thresholds or FinalizationThresholds()

    def analyze_message(self, text: str) -> MessageSignals:
        text = (text or "").strip().lower()
        signals = MessageSignals()
        if matches_finalization(text):
            signals.indicates_finalization = True
            signals.is_thank_you = bool(THANK_YOU_SIGNAL.search(text))
            signals.is_goodbye = bool(GOODBYE_SIGNAL.search(text))
            signals.is_simple_confirmation = bool(SIMPLE_CONFIRMATION.match(text))
        elif len(text) < self.thresholds.model_max_length:
            signals.needs_model = True
        return signals

    def context_hits(self, history: Sequence[dict]) -> int:
        """Turns among the recent context that match any finalization lexicon."""
        recent = list(history)[-self.thresholds.context_turns :]
        return sum(1 for turn in recent if matches_finalization(turn.get("content", "")))

    def loop_counts(self, history: Sequence[dict]) -> Tuple[int, int]:
        """(bot closing replies, user closing messages) over the loop window."""
        recent = list(history)[-self.thresholds.loop_turns :]
        bot = sum(1 for t in recent if t.get("role") == "assistant" and matches_bot_closing(t.get("content", "")))
        user = sum(1 for t in recent if t.get("role") == "user" and matches_finalization(t.get("content", "")))
        return bot, user

    def classify(self, text: str, history: Sequence[dict]) -> Optional[FinalizationDecision]:
        """A finalizing decision, or None when the cheap stage does not fire."""
        thresholds = self.thresholds
        message = (text or "").strip().lower()
        signals = self.analyze_message(message)
        hits = self.context_hits(history)

        if (
            signals.indicates_finalization
            and hits >= thresholds.min_pattern_hits
            and (signals.is_goodbye or signals.is_thank_you)
        ):
            return FinalizationDecision(True, REASON_CONTEXT, 0.95, {"context_hits": hits})

        if signals.is_thank_you and len(message) <= thresholds.thanks_max_length and STRONG_THANKS.search(message):
            return FinalizationDecision(True, REASON_THANKS, 0.90)

        if len(history) >= thresholds.loop_turns:
            bot, user = self.loop_counts(history)
            closing_message = signals.indicates_finalization or matches_bot_closing(message) or (
                len(message) <= thresholds.loop_short_message_length and "?" not in message
            )
            if bot >= thresholds.loop_min_bot_closings and user >= thresholds.loop_min_user_closings and closing_message:
                return FinalizationDecision(
                    True, REASON_LOOP, 0.90, {"bot_closings": bot, "user_closings": user}
                )
        return None

    def needs_model(self, text: str) -> bool:
        return self.analyze_message(text).needs_model


class ModelArbitratedClassifier:
    def __init__(self, generator: ResponseGenerator, *, transcript_turns: int = 8):
        self.generator = generator
        self.transcript_turns = transcript_turns

    async def classify(self, text: str, history: Sequence[dict]) -> FinalizationDecision:
        prompt = MODEL_PROMPT.format(
            transcript=format_transcript(history, limit=self.transcript_turns) or "(sem histórico)",
            message=text,
        )
        try:
            answer = await self.generator.ask(MODEL_SYSTEM_PROMPT, prompt, max_tokens=50)
        except LLMError as exc:
            logger.warning(f"Model finalization check failed, continuing conversation: {exc}")
            return FinalizationDecision(False, "ai_analysis_error", 0.0)

        if "FINALIZAR" in answer.upper():
            return FinalizationDecision(True, REASON_MODEL, 0.85, {"model_answer": answer[:50]})
        return FinalizationDecision(False, "ai_continue_conversation", 0.85, {"model_answer": answer[:50]})


class FinalizationClassifier:
    def __init__(
        self,
        deterministic: Optional[DeterministicClassifier] = None,
        model: Optional[ModelArbitratedClassifier] = None,
        *,
        cache_seconds: float = settings.finalization_cache_seconds,
        suppression_hours: int = settings.finalization_suppression_hours,
        clock: Callable[[], float] = time.monotonic,
        now_func: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.deterministic = deterministic or DeterministicClassifier()
        self.model = model
        self.cache_seconds = cache_seconds
        self.suppression_hours = suppression_hours
        self._clock = clock
        self._now = now_func
        self._cache: Dict[Tuple[str, str], Tuple[float, FinalizationDecision]] = {}

    async def classify(self, db: Session, conversation_key: str, text: str, history: List[dict]) -> FinalizationDecision:
        cache_key = (conversation_key, normalize_for_matching(text))
        cached = self._cache.get(cache_key)
        if cached and self._clock() - cached[0] < self.cache_seconds:
            return cached[1]

        try:
            decision = self.deterministic.classify(text, history)
            if decision is None and self.model is not None and self.deterministic.needs_model(text):
                decision = await self.model.classify(text, history)
        except Exception as exc:
            logger.error(
                "Finalization classification failed",
                extra={"context": {"conversation_key": conversation_key, "error": str(exc)}},
                exc_info=True,
            )
            return FinalizationDecision(False, REASON_ERROR, 0.0)

        decision = decision or CONTINUE
        self._cache[cache_key] = (self._clock(), decision)

        if decision.should_finalize:
            logger.info(
                "Conversation finalization detected",
                extra={"context": {"conversation_key": conversation_key, "reason": decision.reason}},
            )
            try:
                record_event(
                    db,
                    conversation_key,
                    FollowupType.FINALIZATION_DETECTED,
                    message=text[:500],
                    details={"reason": decision.reason, "confidence": decision.confidence},
                    now=self._now(),
                )
            except SQLAlchemyError as exc:
                logger.error(f"Failed to log finalization decision: {exc}")
        return decision

    def mark_finalized(self, db: Session, conversation_key: str, reason: str) -> None:
        record_event(
            db,
            conversation_key,
            FollowupType.CONVERSATION_FINALIZED,
            details={"reason": reason},
            now=self._now(),
        )

    def is_finalized(self, db: Session, conversation_key: str) -> bool:
        return is_finalized(db, conversation_key, within_hours=self.suppression_hours, now=self._now())

    def check_and_auto_reset(self, db: Session, conversation_key: str, text: str) -> bool:
        """A non-closing message from a finalized key starts a new conversation."""
        if matches_finalization(text) or not self.is_finalized(db, conversation_key):
            return False
        record_event(
            db,
            conversation_key,
            FollowupType.FINALIZATION_RESET,
            message=(text or "")[:500],
            now=self._now(),
        )
        self.clear_cache(conversation_key)
        logger.info(f"Finalization reset by new message: key={conversation_key}")
        return True

    def clear_cache(self, conversation_key: str) -> None:
        for cache_key in [k for k in self._cache if k[0] == conversation_key]:
            del self._cache[cache_key]

    def prune_cache(self) -> int:
        now = self._clock()
        stale = [k for k, (stamp, _) in self._cache.items() if now - stamp >= self.cache_seconds]
        for cache_key in stale:
            del self._cache[cache_key]
        return len(stale)
