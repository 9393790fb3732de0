"""Humanized delivery of a generated reply: presence, pacing, parts, contact artifacts."""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider
from app.services.text_utils import (
    ContactArtifacts,
    extract_contact_artifacts,
    filter_contact_info_for_audio,
    split_response_parts,
)
from app.services.transport import ChatTransport, Presence, TransportError

logger = get_logger("delivery_service")

TYPING_MS_PER_CHAR = 50
MAX_TYPING_SECONDS = 3.0
PAUSE_BETWEEN_PARTS_SECONDS = 1.0
RECORDING_SECONDS = 2.0


@dataclass
class DeliveryOptions:
    as_audio: bool = False
    contact_cards: bool = True
    tts_voice: str = "alloy"


@dataclass
class DeliveryReport:
    parts_total: int = 0
    parts_sent: int = 0
    sent_as_audio: bool = False
    aborted: bool = False
    # Text actually sent for contact artifacts, persisted as contact_info turns.
    contact_messages: List[str] = field(default_factory=list)


def typing_delay(text: str) -> float:
    return min(len(text) * TYPING_MS_PER_CHAR / 1000.0, MAX_TYPING_SECONDS)


def format_contact_groups(artifacts: ContactArtifacts, *, include_phones: bool) -> List[str]:
    messages = []
    phones = artifacts.phones + [f"+{number}" for number in artifacts.whatsapp_numbers]
    if include_phones and phones:
        messages.append("📱 *Contatos:*\n" + "\n".join(phones))
    info = artifacts.links + artifacts.emails
    if info:
        messages.append("📧 *Informações:*\n" + "\n".join(info))
    return messages


class HumanizedDelivery:
    def __init__(self, transport: ChatTransport, provider: Optional[LLMProvider] = None, *, sleep_func=asyncio.sleep):
        self.transport = transport
        self.provider = provider
        self._sleep = sleep_func

    async def deliver(self, conversation_key: str, reply: str, options: Optional[DeliveryOptions] = None) -> DeliveryReport:
        """Send a reply. Transport faults stop the remaining parts and are logged."""
        options = options or DeliveryOptions()
        report = DeliveryReport()
        artifacts = extract_contact_artifacts(reply)

        try:
            sent_audio = options.as_audio and await self._send_audio(conversation_key, reply, options.tts_voice, report)
            if not sent_audio:
                await self._send_text_parts(conversation_key, artifacts.text, report)
            if artifacts.has_artifacts:
                await self._send_artifacts(conversation_key, artifacts, options, report)
        except TransportError as exc:
            report.aborted = True
            logger.error(
                "Delivery aborted",
                extra={
                    "context": {
                        "conversation_key": conversation_key,
                        "parts_sent": report.parts_sent,
                        "parts_total": report.parts_total,
                        "error": str(exc),
                    }
                },
            )
        return report

    async def _send_text_parts(self, conversation_key: str, text: str, report: DeliveryReport) -> None:
        parts = split_response_parts(text)
        report.parts_total = len(parts)
        for index, part in enumerate(parts):
            await self.transport.set_presence(conversation_key, Presence.COMPOSING)
            await self._sleep(typing_delay(part))
            await self.transport.send_text(conversation_key, part)
            report.parts_sent += 1
            await self.transport.set_presence(conversation_key, Presence.PAUSED)
            if index < len(parts) - 1:
                await self._sleep(PAUSE_BETWEEN_PARTS_SECONDS)

    async def _send_audio(self, conversation_key: str, reply: str, voice: str, report: DeliveryReport) -> bool:
        """Whole reply as one voice note. False means fall back to text."""
        spoken = filter_contact_info_for_audio(reply)
        if not spoken or self.provider is None:
            return False
        try:
            audio = await self.provider.synthesize_speech(spoken, voice=voice)
        except LLMError as exc:
            logger.warning(f"Speech synthesis failed, sending text: {exc}")
            return False
        if not audio:
            return False

        report.parts_total = 1
        await self.transport.set_presence(conversation_key, Presence.RECORDING)
        await self._sleep(RECORDING_SECONDS)
        await self.transport.send_audio(conversation_key, audio)
        await self.transport.set_presence(conversation_key, Presence.PAUSED)
        report.parts_sent = 1
        report.sent_as_audio = True
        return True

    async def _send_artifacts(
        self,
        conversation_key: str,
        artifacts: ContactArtifacts,
        options: DeliveryOptions,
        report: DeliveryReport,
    ) -> None:
        await self._sleep(PAUSE_BETWEEN_PARTS_SECONDS)
        if options.contact_cards:
            for phone in artifacts.phones + artifacts.whatsapp_numbers:
                await self.transport.send_contact_card(conversation_key, phone)
                report.contact_messages.append(f"[Contato]: {phone}")
        for message in format_contact_groups(artifacts, include_phones=not options.contact_cards):
            await self.transport.send_text(conversation_key, message)
            report.contact_messages.append(message)

