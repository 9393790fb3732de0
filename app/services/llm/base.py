from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMError(Exception):
    """Provider fault. Transient unless a subclass says otherwise."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMAuthError(LLMError):
    """Invalid or revoked API key."""


class LLMQuotaError(LLMError):
    """Account quota exhausted."""


class LLMTimeoutError(LLMError):
    """Client-side timeout."""


class LLMUnavailableError(LLMError):
    """Model missing or provider down."""


class LLMProvider(ABC):
    """Abstract base class for completion / speech providers."""

    @abstractmethod
    async def complete(
        self,
        messages: List[dict],
        *,
        model: Optional[str] = None,
        max_tokens: int = 1000,
        reasoning_effort: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a chat completion."""

    @abstractmethod
    async def transcribe(self, audio_bytes: bytes, *, filename: str = "audio.ogg", mime_type: Optional[str] = None) -> str:
        """Speech to text."""

    @abstractmethod
    async def synthesize_speech(self, text: str, voice: str = "alloy") -> bytes:
        """Text to speech."""

    @abstractmethod
    async def describe_image(self, image_bytes: bytes, *, mime_type: str = "image/jpeg", prompt: Optional[str] = None) -> str:
        """Short textual description of an image."""
