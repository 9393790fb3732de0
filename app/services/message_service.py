"""Response pipeline: one debounced batch in, at most one humanized reply out."""

from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.logging_config import conversation_logger, get_logger
from app.schemas.message import InboundMessage, MessageKind
from app.services import followup_service
from app.services.ai_service import (
    CONTACT_INFO_TYPE,
    ResponseGenerator,
    build_model_context,
    build_system_prompt,
    extract_content,
    parse_tier,
)
from app.services.alert_service import alert_error
from app.services.config_service import ConfigService
from app.services.conversation_service import (
    ROLE_ASSISTANT,
    ROLE_USER,
    add_message,
    find_conversation,
    get_history,
    last_turn,
    stored_message_ids,
)
from app.services.delivery_service import DeliveryOptions, HumanizedDelivery
from app.services.finalization_service import FinalizationClassifier
from app.services.followup_service import FOLLOWUP_MESSAGE_TYPE, FollowupScheduler
from app.services.text_utils import combine_batch_text
from app.services.tracking_service import is_batch_answered, mark_handled_without_reply, mark_response_sent

logger = get_logger("message_service")


class ResponsePipeline:
    """Runs a flushed batch through finalization, generation, persistence and delivery.

    ``process`` never raises: any fault is logged, alerted and reported as
    ``None`` so one conversation cannot take down the batching queue or the
    sweeps that re-inject messages.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        generator: ResponseGenerator,
        delivery: HumanizedDelivery,
        classifier: FinalizationClassifier,
        scheduler: FollowupScheduler,
        config: ConfigService,
        *,
        now_func: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self.generator = generator
        self.delivery = delivery
        self.classifier = classifier
        self.scheduler = scheduler
        self.config = config
        self._now = now_func

    async def process(self, conversation_key: str, messages: List[InboundMessage]) -> Optional[str]:
        if not messages:
            return None
        try:
            return await self._process(conversation_key, messages)
        except Exception as exc:
            logger.error(
                "Response pipeline failed",
                extra={"context": {"conversation_key": conversation_key, "messages": len(messages), "error": str(exc)}},
                exc_info=True,
            )
            alert_error("Response pipeline failed", {"conversation_key": conversation_key, "error": str(exc)[:200]})
            return None

    async def _process(self, conversation_key: str, messages: List[InboundMessage]) -> Optional[str]:
        log = conversation_logger("message_service", conversation_key)
        if all(message.is_replay for message in messages) and self._already_answered(messages):
            log.info("Replayed messages were answered meanwhile, skipping")
            return None

        provider = self.generator.provider
        contents = [await extract_content(provider, message) for message in messages]
        message_ids = [message.message_id for message in messages]
        contact_name = next((m.contact_name for m in reversed(messages) if m.contact_name), None)
        combined = combine_batch_text(content for content in contents if content)

        db = self._session_factory()
        try:
            now = self._now()
            stored = find_conversation(db, conversation_key)
            full_history = list(stored.messages or []) if stored else []
            history = get_history(db, conversation_key, now=now)
            known_ids = stored_message_ids(history)
            fresh = [(m, c) for m, c in zip(messages, contents) if c and m.message_id not in known_ids]

            if not combined:
                log.info("Batch has no usable content")
                mark_handled_without_reply(db, message_ids)
                db.commit()
                return None

            followup_service.reset_stop_marker_if_new_cycle(
                db, conversation_key, stored.last_activity if stored else None, now=now
            )

            if self.classifier.check_and_auto_reset(db, conversation_key, combined):
                log.info("Finalized conversation reopened by new message")
            elif self.classifier.is_finalized(db, conversation_key):
                log.info("Conversation already finalized, not replying")
                return self._close_without_reply(db, conversation_key, fresh, message_ids, contact_name)
            else:
                decision = await self.classifier.classify(db, conversation_key, combined, history)
                if decision.should_finalize:
                    self.classifier.mark_finalized(db, conversation_key, decision.reason)
                    log.info(
                        "Conversation finalized",
                        context={"reason": decision.reason, "confidence": decision.confidence},
                    )
                    return self._close_without_reply(db, conversation_key, fresh, message_ids, contact_name)

            previous_reply = last_turn(full_history, ROLE_ASSISTANT)
            if previous_reply and previous_reply.get("message_type") == FOLLOWUP_MESSAGE_TYPE:
                await self.scheduler.analyze_continuation(db, conversation_key, combined, full_history)

            persona = self.config.get_str("system_prompt") or ""
            max_chars = self.config.get_int("max_response_length", 200)
            system_prompt = build_system_prompt(
                persona,
                max_chars,
                contact_name=contact_name,
                use_contact_name=self.config.get_bool("use_client_name"),
            )
            model_messages = build_model_context(system_prompt, history, [content for _, content in fresh])

            # User turns are stored before the provider call so a crash leaves them recoverable.
            self._persist_user_turns(db, conversation_key, fresh, contact_name)
            db.commit()

            outcome = await self.generator.generate(
                model_messages,
                max_chars=max_chars,
                tier=parse_tier(self.config.get_str("reasoning_effort")),
                emoji_enabled=self.config.get_bool("emoji_enabled"),
                validation_enabled=self.config.get_bool("response_validation_enabled"),
                persona=persona,
            )
            add_message(db, conversation_key, ROLE_ASSISTANT, outcome.text, now=self._now())
            db.commit()

            options = DeliveryOptions(
                as_audio=self.config.get_bool("audio_enabled") and any(m.kind == MessageKind.AUDIO for m in messages),
                contact_cards=self.config.get_bool("contact_card_enabled", True),
                tts_voice=self.config.get_str("tts_voice") or "alloy",
            )
            report = await self.delivery.deliver(conversation_key, outcome.text, options)

            for contact_message in report.contact_messages:
                add_message(
                    db, conversation_key, ROLE_ASSISTANT, contact_message, message_type=CONTACT_INFO_TYPE, now=self._now()
                )
            if report.parts_sent:
                mark_response_sent(db, message_ids, now=self._now())
            db.commit()

            log.info(
                "Reply delivered",
                context={
                    "messages": len(messages),
                    "attempts": outcome.attempts,
                    "fallback": outcome.fallback,
                    "parts_sent": report.parts_sent,
                    "parts_total": report.parts_total,
                    "audio": report.sent_as_audio,
                },
            )

            followup_service.schedule_analysis(db, conversation_key, now=self._now())
            db.commit()
            return outcome.text
        finally:
            db.close()

    def _already_answered(self, messages: List[InboundMessage]) -> bool:
        db = self._session_factory()
        try:
            return is_batch_answered(db, [message.message_id for message in messages])
        finally:
            db.close()

    def _persist_user_turns(
        self,
        db: Session,
        conversation_key: str,
        fresh: List[Tuple[InboundMessage, str]],
        contact_name: Optional[str],
    ) -> None:
        for message, content in fresh:
            add_message(
                db,
                conversation_key,
                ROLE_USER,
                content,
                message_type=message.kind.value,
                message_id=message.message_id,
                contact_name=contact_name,
                now=self._now(),
            )

    def _close_without_reply(
        self,
        db: Session,
        conversation_key: str,
        fresh: List[Tuple[InboundMessage, str]],
        message_ids: List[str],
        contact_name: Optional[str],
    ) -> None:
        self._persist_user_turns(db, conversation_key, fresh, contact_name)
        mark_handled_without_reply(db, message_ids)
        db.commit()
        return None
