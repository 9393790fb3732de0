from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional


class Presence(str, Enum):
    COMPOSING = "composing"
    RECORDING = "recording"
    PAUSED = "paused"
    AVAILABLE = "available"


class TransportError(Exception):
    """Chat transport refused or failed to deliver."""

    def __init__(self, message: str, conversation_key: Optional[str] = None):
        self.conversation_key = conversation_key
        super().__init__(message)


class ChatTransport(ABC):
    """Outbound side of the chat transport."""

    @abstractmethod
    async def send_text(self, conversation_key: str, text: str) -> None:
        ...

    @abstractmethod
    async def send_audio(self, conversation_key: str, audio: bytes) -> None:
        ...

    @abstractmethod
    async def send_contact_card(self, conversation_key: str, phone: str, name: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def set_presence(self, conversation_key: str, state: Presence) -> None:
        ...
