import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundMessage, MessageKind
from app.services.alert_service import alert_critical
from app.services.llm.base import LLMAuthError, LLMError, LLMProvider, LLMQuotaError
from app.services.text_utils import truncate_text

logger = get_logger("ai_service")

MSG_AUTH_ERROR = "Configuração da API OpenAI inválida. Verifique sua chave API nas configurações."
MSG_QUOTA_ERROR = "Cota da API OpenAI excedida. Verifique sua conta OpenAI."
MSG_EMPTY_RESPONSE = "Desculpe, tive um problema técnico. Pode repetir sua mensagem?"
MSG_TECHNICAL_ERROR = "Estou com problemas técnicos no momento. Tente novamente em alguns segundos."

CHARS_PER_TOKEN = 3.5
MAX_COMPLETION_TOKENS = 1000
HISTORY_TURNS = 10
CONTACT_INFO_TYPE = "contact_info"


class ReasoningTier(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


REASONING_BUFFERS = {
    ReasoningTier.MINIMAL: 150,
    ReasoningTier.LOW: 300,
    ReasoningTier.MEDIUM: 450,
    ReasoningTier.HIGH: 600,
}


def parse_tier(value: Optional[str]) -> ReasoningTier:
    try:
        return ReasoningTier((value or "").strip().lower())
    except ValueError:
        return ReasoningTier.MINIMAL


def compute_token_budget(max_chars: int, tier: ReasoningTier) -> int:
    """Room for the answer (chars / 3.5) plus the tier's reasoning allowance."""
    base_tokens = math.ceil(max_chars / CHARS_PER_TOKEN)
    return min(base_tokens + REASONING_BUFFERS[tier], MAX_COMPLETION_TOKENS)


@dataclass(frozen=True)
class ProviderProfile:
    model: str
    reasoning: bool = True
    temperature: Optional[float] = None
    max_tokens_cap: Optional[int] = None

    def request_kwargs(self, max_tokens: int, tier: ReasoningTier) -> dict:
        if self.max_tokens_cap is not None:
            max_tokens = min(max_tokens, self.max_tokens_cap)
        kwargs = {"model": self.model, "max_tokens": max_tokens}
        if self.reasoning:
            kwargs["reasoning_effort"] = tier.value
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs


DEFAULT_PROFILES = (
    ProviderProfile(model=settings.openai_primary_model, reasoning=True),
    ProviderProfile(model=settings.openai_fallback_model, reasoning=False, temperature=0.7, max_tokens_cap=500),
)


@dataclass
class GenerationOutcome:
    text: str
    attempts: int
    fallback: bool = False
    error_code: Optional[str] = None
    model: Optional[str] = None


def build_system_prompt(
    persona: str,
    max_chars: int,
    *,
    contact_name: Optional[str] = None,
    use_contact_name: bool = False,
) -> str:
    prompt = (
        f"PAPEL E PERSONALIDADE:\n{persona}\n\n"
        "REGRAS CRÍTICAS - SIGA RIGOROSAMENTE:\n"
        f"1. LIMITE DE CARACTERES: Suas respostas devem ter NO MÁXIMO {max_chars} caracteres. "
        "Conte os caracteres e não exceda este limite jamais.\n"
        "2. FIDELIDADE AO PAPEL: Responda apenas conforme a personalidade definida acima.\n"
        "3. PROIBIDO INVENTAR: Não invente informações, números de telefone, endereços ou fatos.\n"
        "4. MANTENHA O FOCO: Se perguntado sobre algo fora do seu escopo, redirecione educadamente.\n\n"
        "INSTRUÇÕES DE RESPOSTA:\n"
        "- Seja conciso, natural e humano\n"
        "- Use linguagem apropriada para WhatsApp (informal, mas educada)"
    )
    if contact_name and use_contact_name:
        prompt += (
            "\n\nINFORMAÇÕES DO CLIENTE:\n"
            f"- Nome do cliente: {contact_name}\n"
            "- Use o nome de forma natural e sutil, não em todas as mensagens"
        )
    prompt += (
        "\n\nCONTEXTO DA CONVERSA:\n"
        '- Mensagens com role "user" foram enviadas pelo cliente\n'
        '- Mensagens com role "assistant" são respostas que você enviou\n'
        "- Não repita informações já fornecidas recentemente"
    )
    return prompt


def build_model_context(
    system_prompt: str,
    history: Sequence[dict],
    new_contents: Sequence[str],
    *,
    history_turns: int = HISTORY_TURNS,
) -> List[dict]:
    """System instruction, the last turns of history, then the new batch."""
    turns = [
        {"role": turn["role"], "content": turn["content"]}
        for turn in history
        if turn.get("content") and turn.get("message_type") != CONTACT_INFO_TYPE
    ]
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(turns[-history_turns:] if history_turns > 0 else [])
    messages.extend({"role": "user", "content": content} for content in new_contents if content)
    return messages


async def extract_content(provider: LLMProvider, message: InboundMessage) -> str:
    """Text that stands in for the message in history and model context."""
    caption = (message.text or "").strip()

    if message.kind == MessageKind.TEXT:
        return caption

    if message.kind == MessageKind.AUDIO:
        if not message.media:
            return "[Áudio recebido]"
        try:
            transcript = await provider.transcribe(message.media, mime_type=message.mime_type)
        except (LLMError, ValueError) as exc:
            logger.warning(f"Audio transcription failed: {exc}")
            return "[Áudio recebido - não foi possível transcrever]"
        return f"[Áudio transcrito]: {transcript}" if transcript else "[Áudio recebido]"

    if message.kind == MessageKind.IMAGE:
        description = ""
        if message.media:
            try:
                description = await provider.describe_image(message.media, mime_type=message.mime_type or "image/jpeg")
            except (LLMError, ValueError) as exc:
                logger.warning(f"Image description failed: {exc}")
        content = f"[Imagem]: {description or 'Imagem recebida'}"
        return f"{content}\n{caption}" if caption else content

    content = f"[Documento enviado]: {message.filename or 'documento'}"
    return f"{content}\n{caption}" if caption else content


class ResponseGenerator:
    """Completion calls with the retry/fallback policy for user replies."""

    def __init__(self, provider: LLMProvider, profiles: Sequence[ProviderProfile] = DEFAULT_PROFILES):
        if not profiles:
            raise ValueError("at least one provider profile is required")
        self.provider = provider
        self.profiles = list(profiles)

    async def generate(
        self,
        messages: List[dict],
        *,
        max_chars: int,
        tier: ReasoningTier = ReasoningTier.MINIMAL,
        emoji_enabled: bool = False,
        validation_enabled: bool = False,
        persona: str = "",
    ) -> GenerationOutcome:
        """Never returns empty text: canned messages replace a missing reply."""
        budget = compute_token_budget(max_chars, tier)
        profile = self.profiles[0]

        try:
            response = await self.provider.complete(messages, **profile.request_kwargs(budget, tier))
        except LLMAuthError as exc:
            return self._auth_failure(exc, attempts=1)
        except LLMQuotaError as exc:
            return self._quota_failure(exc, attempts=1)
        except LLMError as exc:
            logger.warning(f"Completion failed, retrying with next profile: {exc}")
            return await self._retry(messages, max_chars, self._next_profile(0), first_error="provider_error")

        content = (response.content or "").strip()
        if not content:
            logger.warning("Empty completion, retrying with minimal reasoning")
            return await self._retry(messages, max_chars, profile, first_error="empty_response")

        content = truncate_text(content, max_chars)
        if validation_enabled:
            content = await self.validate_reply(content, persona=persona, max_chars=max_chars)
        if emoji_enabled:
            content = truncate_text(await self.enhance_with_emojis(content), max_chars)
        return GenerationOutcome(text=content, attempts=1, model=response.model)

    def _next_profile(self, index: int) -> ProviderProfile:
        return self.profiles[min(index + 1, len(self.profiles) - 1)]

    async def _retry(self, messages: List[dict], max_chars: int, profile: ProviderProfile, *, first_error: str) -> GenerationOutcome:
        budget = compute_token_budget(max_chars, ReasoningTier.MINIMAL)
        try:
            response = await self.provider.complete(messages, **profile.request_kwargs(budget, ReasoningTier.MINIMAL))
        except LLMAuthError as exc:
            return self._auth_failure(exc, attempts=2)
        except LLMQuotaError as exc:
            return self._quota_failure(exc, attempts=2)
        except LLMError as exc:
            logger.error(f"Completion retry failed: {exc}", extra={"context": {"first_error": first_error}})
            return GenerationOutcome(text=MSG_TECHNICAL_ERROR, attempts=2, fallback=True, error_code="provider_error")

        content = (response.content or "").strip()
        if not content:
            logger.error("Completion empty after retry")
            return GenerationOutcome(text=MSG_EMPTY_RESPONSE, attempts=2, fallback=True, error_code="empty_response")
        return GenerationOutcome(text=truncate_text(content, max_chars), attempts=2, model=response.model)

    def _auth_failure(self, exc: LLMError, attempts: int) -> GenerationOutcome:
        logger.error(f"Invalid OpenAI credentials: {exc}")
        alert_critical("OpenAI API key rejected", {"status": exc.status_code})
        return GenerationOutcome(text=MSG_AUTH_ERROR, attempts=attempts, fallback=True, error_code="auth")

    def _quota_failure(self, exc: LLMError, attempts: int) -> GenerationOutcome:
        logger.error(f"OpenAI quota exceeded: {exc}")
        alert_critical("OpenAI quota exceeded", {"status": exc.status_code})
        return GenerationOutcome(text=MSG_QUOTA_ERROR, attempts=attempts, fallback=True, error_code="quota")

    async def enhance_with_emojis(self, text: str) -> str:
        """Best effort; the original text comes back on any failure."""
        messages = [
            {
                "role": "system",
                "content": "Adicione emojis naturalmente ao texto fornecido, mantendo-o natural e não exagerado.",
            },
            {"role": "user", "content": text},
        ]
        try:
            response = await self.provider.complete(
                messages, **self.profiles[0].request_kwargs(200, ReasoningTier.MINIMAL)
            )
        except LLMError as exc:
            logger.info(f"Emoji enhancement failed, keeping original: {exc}")
            return text
        return (response.content or "").strip() or text

    async def validate_reply(self, text: str, *, persona: str, max_chars: int) -> str:
        """Ask for a corrected version when the draft breaks the persona rules."""
        prompt = (
            f'PROMPT ORIGINAL: "{persona[:500]}"\n\n'
            f'RESPOSTA PARA VALIDAR: "{text}"\n\n'
            "A resposta segue a personalidade, não inventa informações e mantém o foco? "
            'Responda apenas "APROVADA" ou "CORRIGIR: <resposta corrigida>" '
            f"com no máximo {max_chars} caracteres."
        )
        messages = [
            {"role": "system", "content": "Você é um validador rigoroso de respostas de atendimento."},
            {"role": "user", "content": prompt},
        ]
        try:
            response = await self.provider.complete(
                messages, **self.profiles[0].request_kwargs(compute_token_budget(max_chars, ReasoningTier.MINIMAL), ReasoningTier.MINIMAL)
            )
        except LLMError as exc:
            logger.info(f"Reply validation failed, keeping draft: {exc}")
            return text

        verdict = (response.content or "").strip()
        if not verdict.upper().startswith("CORRIGIR"):
            return text
        corrected = verdict.split(":", 1)[1].strip() if ":" in verdict else ""
        if not corrected or len(corrected) > max_chars:
            return text
        logger.info("Reply replaced by validated correction")
        return corrected

    async def ask(self, system: str, prompt: str, *, max_tokens: int = 50) -> str:
        """One-shot classification / generation call. Provider faults propagate."""
        messages = [{"role": "system", "content": system}, {"role": "user", "content": prompt}]
        response = await self.provider.complete(
            messages, **self.profiles[0].request_kwargs(max_tokens, ReasoningTier.MINIMAL)
        )
        return (response.content or "").strip()


def format_transcript(history: Sequence[dict], *, limit: int, user_label: str = "Cliente", bot_label: str = "Assistente") -> str:
    lines = []
    for turn in list(history)[-limit:]:
        label = user_label if turn.get("role") == "user" else bot_label
        lines.append(f"{label}: {turn.get('content', '')}")
    return "\n".join(lines)
