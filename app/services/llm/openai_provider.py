import base64
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import (
    LLMAuthError,
    LLMError,
    LLMProvider,
    LLMQuotaError,
    LLMResponse,
    LLMTimeoutError,
    LLMUnavailableError,
)

logger = get_logger("llm.openai")

DEFAULT_IMAGE_PROMPT = (
    "Descreva esta imagem de forma objetiva em português, em no máximo duas frases, "
    "destacando textos, produtos ou informações relevantes para um atendimento."
)


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    status = response.status_code
    if status == 200:
        return

    body = response.text or ""
    logger.error(f"OpenAI {operation} error: {status} - {body[:500]}")
    message = f"OpenAI {operation} error: {status} - {body}"

    if status in (401, 403):
        raise LLMAuthError(message, status_code=status)
    if status == 429 and ("insufficient_quota" in body or "quota" in body.lower()):
        raise LLMQuotaError(message, status_code=status)
    if status == 404 or status >= 500:
        raise LLMUnavailableError(message, status_code=status)
    raise LLMError(message, status_code=status)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-5-mini",
        *,
        timeout_seconds: float = 60.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"
        self.speech_url = "https://api.openai.com/v1/audio/speech"
        self._http_transport = http_transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._http_transport)

    async def _post(self, url: str, operation: str, timeout: float, **kwargs) -> httpx.Response:
        if not self.api_key:
            raise LLMAuthError(f"OpenAI {operation} error: API key not configured")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with self._client(timeout) as client:
                response = await client.post(url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"OpenAI {operation} timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"OpenAI {operation} transport error: {exc}") from exc
        _raise_for_status(response, operation)
        return response

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
        """Generate response from OpenAI."""
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
        }
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort
        if temperature is not None:
            payload["temperature"] = temperature

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, max_tokens={max_tokens}")
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        response = await self._post(self.base_url, "completion", timeout, json=payload)

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def transcribe(self, audio_bytes: bytes, *, filename: str = "audio.ogg", mime_type: Optional[str] = None) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio.ogg", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": "whisper-1", "response_format": "text", "language": "pt"}
        response = await self._post(self.audio_url, "transcription", 30.0, files=files, data=data)

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript

    async def synthesize_speech(self, text: str, voice: str = "alloy") -> bytes:
        payload = {"model": "tts-1", "input": text, "voice": voice, "response_format": "opus"}
        response = await self._post(self.speech_url, "speech", 30.0, json=payload)
        return response.content

    async def describe_image(self, image_bytes: bytes, *, mime_type: str = "image/jpeg", prompt: Optional[str] = None) -> str:
        if not image_bytes:
            raise ValueError("image_bytes is empty")
        encoded = base64.b64encode(image_bytes).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt or DEFAULT_IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                ],
            }
        ]
        result = await self.complete(messages, model="gpt-4o-mini", max_tokens=300, temperature=0.2)
        return result.content.strip()
