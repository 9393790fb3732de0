from app.services.llm.base import (
    LLMAuthError,
    LLMError,
    LLMProvider,
    LLMQuotaError,
    LLMResponse,
    LLMTimeoutError,
    LLMUnavailableError,
)
from app.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LLMError",
    "LLMAuthError",
    "LLMQuotaError",
    "LLMTimeoutError",
    "LLMUnavailableError",
    "OpenAIProvider",
]
