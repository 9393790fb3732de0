"""Wiring of the long-lived components shared by the routers and background loops."""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.services.ai_service import ResponseGenerator
from app.services.batching_queue import BatchingQueue
from app.services.chatflow_service import ChatFlowTransport
from app.services.config_service import ConfigService
from app.services.delivery_service import HumanizedDelivery
from app.services.dispatcher import InboundDispatcher
from app.services.finalization_service import (
    DeterministicClassifier,
    FinalizationClassifier,
    ModelArbitratedClassifier,
)
from app.services.followup_service import FollowupScheduler
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.loop_guard import LoopGuard
from app.services.message_service import ResponsePipeline
from app.services.pending_messages_service import PendingMessagesSweeper
from app.services.recovery_service import RecoveryScanner
from app.services.transport import ChatTransport


@dataclass
class Runtime:
    config: ConfigService
    provider: LLMProvider
    transport: ChatTransport
    generator: ResponseGenerator
    classifier: FinalizationClassifier
    scheduler: FollowupScheduler
    pipeline: ResponsePipeline
    queue: BatchingQueue
    loop_guard: LoopGuard
    dispatcher: InboundDispatcher
    recovery: RecoveryScanner
    pending_sweeper: PendingMessagesSweeper


def build_runtime(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    provider: Optional[LLMProvider] = None,
    transport: Optional[ChatTransport] = None,
) -> Runtime:
    config = ConfigService(session_factory)
    provider = provider or OpenAIProvider(
        settings.openai_api_key,
        settings.openai_primary_model,
        timeout_seconds=settings.openai_timeout_seconds,
    )
    transport = transport or ChatFlowTransport(
        settings.chatflow_api_url,
        settings.chatflow_token,
        settings.chatflow_instance_id,
    )
    generator = ResponseGenerator(provider)
    classifier = FinalizationClassifier(DeterministicClassifier(), ModelArbitratedClassifier(generator))
    scheduler = FollowupScheduler(session_factory, generator, transport)
    pipeline = ResponsePipeline(
        session_factory,
        generator,
        HumanizedDelivery(transport, provider),
        classifier,
        scheduler,
        config,
    )
    queue = BatchingQueue(
        pipeline.process,
        delay_seconds=lambda: config.get_int("response_delay_seconds", 10),
    )
    loop_guard = LoopGuard()
    return Runtime(
        config=config,
        provider=provider,
        transport=transport,
        generator=generator,
        classifier=classifier,
        scheduler=scheduler,
        pipeline=pipeline,
        queue=queue,
        loop_guard=loop_guard,
        dispatcher=InboundDispatcher(session_factory, loop_guard, queue),
        recovery=RecoveryScanner(session_factory, pipeline, generator, config, run_exclusive=queue.run_exclusive),
        pending_sweeper=PendingMessagesSweeper(
            session_factory,
            pipeline,
            config,
            busy_keys=queue.busy_keys,
            run_exclusive=queue.run_exclusive,
        ),
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Process-wide runtime, built on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime
