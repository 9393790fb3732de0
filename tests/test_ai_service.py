from unittest.mock import patch

import pytest
from conftest import llm_response, make_message

from app.schemas.message import MessageKind
from app.services.ai_service import (
    DEFAULT_PROFILES,
    MSG_AUTH_ERROR,
    MSG_EMPTY_RESPONSE,
    MSG_QUOTA_ERROR,
    MSG_TECHNICAL_ERROR,
    ProviderProfile,
    ReasoningTier,
    ResponseGenerator,
    build_model_context,
    build_system_prompt,
    compute_token_budget,
    extract_content,
    format_transcript,
    parse_tier,
)
from app.services.llm.base import LLMAuthError, LLMError, LLMQuotaError, LLMTimeoutError

MESSAGES = [{"role": "system", "content": "persona"}, {"role": "user", "content": "Oi"}]


class TestTokenBudget:
    def test_minimal_tier(self):
        # ceil(200 / 3.5) = 58, plus 150
        assert compute_token_budget(200, ReasoningTier.MINIMAL) == 208

    def test_each_tier_adds_its_buffer(self):
        budgets = [compute_token_budget(350, tier) for tier in ReasoningTier]
        assert budgets == [250, 400, 550, 700]

    def test_capped_at_thousand(self):
        assert compute_token_budget(3000, ReasoningTier.HIGH) == 1000

    def test_parse_tier(self):
        assert parse_tier("LOW") == ReasoningTier.LOW
        assert parse_tier("bogus") == ReasoningTier.MINIMAL
        assert parse_tier(None) == ReasoningTier.MINIMAL


class TestProviderProfile:
    def test_reasoning_profile_sends_tier(self):
        kwargs = ProviderProfile(model="gpt-5-mini").request_kwargs(300, ReasoningTier.MEDIUM)
        assert kwargs == {"model": "gpt-5-mini", "max_tokens": 300, "reasoning_effort": "medium"}

    def test_fallback_profile_caps_tokens_and_sets_temperature(self):
        profile = ProviderProfile(model="gpt-4o-mini", reasoning=False, temperature=0.7, max_tokens_cap=500)
        kwargs = profile.request_kwargs(900, ReasoningTier.HIGH)
        assert kwargs == {"model": "gpt-4o-mini", "max_tokens": 500, "temperature": 0.7}


class TestContextBuilding:
    def test_system_prompt_mentions_limit(self):
        prompt = build_system_prompt("Você é a Bia da Loja Azul.", 150)
        assert "Você é a Bia da Loja Azul." in prompt
        assert "150 caracteres" in prompt
        assert "Nome do cliente" not in prompt

    def test_system_prompt_contact_name_only_when_enabled(self):
        assert "Ana" not in build_system_prompt("p", 100, contact_name="Ana")
        assert "Nome do cliente: Ana" in build_system_prompt("p", 100, contact_name="Ana", use_contact_name=True)

    def test_keeps_last_ten_history_turns(self):
        history = [{"role": "user" if i % 2 else "assistant", "content": f"turno {i}"} for i in range(14)]
        context = build_model_context("sys", history, ["nova"])

        assert context[0] == {"role": "system", "content": "sys"}
        assert [m["content"] for m in context[1:-1]] == [f"turno {i}" for i in range(4, 14)]
        assert context[-1] == {"role": "user", "content": "nova"}

    def test_contact_info_turns_are_excluded(self):
        history = [
            {"role": "assistant", "content": "📧 *Informações:*\nhttps://loja.com.br", "message_type": "contact_info"},
            {"role": "user", "content": "obrigado"},
        ]
        context = build_model_context("sys", history, [])
        assert [m["content"] for m in context] == ["sys", "obrigado"]

    def test_format_transcript(self):
        history = [{"role": "user", "content": "Oi"}, {"role": "assistant", "content": "Olá!"}]
        assert format_transcript(history, limit=5) == "Cliente: Oi\nAssistente: Olá!"


class TestExtractContent:
    @pytest.mark.asyncio
    async def test_text(self, provider):
        assert await extract_content(provider, make_message("  Oi  ")) == "Oi"

    @pytest.mark.asyncio
    async def test_audio_is_transcribed(self, provider):
        message = make_message(None, kind=MessageKind.AUDIO, media=b"ogg", mime_type="audio/ogg")
        assert await extract_content(provider, message) == "[Áudio transcrito]: quero saber o preço"

    @pytest.mark.asyncio
    async def test_audio_transcription_failure_degrades(self, provider):
        provider.transcribe.side_effect = LLMError("whisper down")
        message = make_message(None, kind=MessageKind.AUDIO, media=b"ogg")
        content = await extract_content(provider, message)
        assert content.startswith("[Áudio recebido")

    @pytest.mark.asyncio
    async def test_image_with_caption(self, provider):
        message = make_message("quanto custa?", kind=MessageKind.IMAGE, media=b"jpg")
        assert await extract_content(provider, message) == "[Imagem]: foto de um sofá azul\nquanto custa?"

    @pytest.mark.asyncio
    async def test_document(self, provider):
        message = make_message(None, kind=MessageKind.DOCUMENT, filename="orcamento.pdf")
        assert await extract_content(provider, message) == "[Documento enviado]: orcamento.pdf"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self, provider):
        generator = ResponseGenerator(provider)
        outcome = await generator.generate(MESSAGES, max_chars=200)

        assert outcome.text == "Claro! Posso ajudar com o orçamento."
        assert outcome.attempts == 1
        assert outcome.fallback is False
        kwargs = provider.complete.await_args.kwargs
        assert kwargs["max_tokens"] == 208
        assert kwargs["reasoning_effort"] == "minimal"

    @pytest.mark.asyncio
    async def test_long_reply_is_truncated(self, provider):
        provider.complete.return_value = llm_response("x" * 300)
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=100)
        assert len(outcome.text) == 100
        assert outcome.text.endswith("...")

    @pytest.mark.asyncio
    async def test_empty_twice_returns_fixed_apology(self, provider):
        provider.complete.side_effect = [llm_response(""), llm_response("   ")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, tier=ReasoningTier.HIGH)

        assert outcome.text == MSG_EMPTY_RESPONSE
        assert outcome.attempts == 2
        assert outcome.error_code == "empty_response"
        first, second = provider.complete.await_args_list
        assert first.kwargs["reasoning_effort"] == "high"
        assert second.kwargs["reasoning_effort"] == "minimal"
        assert second.kwargs["model"] == first.kwargs["model"]

    @pytest.mark.asyncio
    async def test_empty_then_success(self, provider):
        provider.complete.side_effect = [llm_response(""), llm_response("Segunda tentativa")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200)
        assert outcome.text == "Segunda tentativa"
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    @patch("app.services.ai_service.alert_critical")
    async def test_auth_error_is_not_retried(self, mock_alert, provider):
        provider.complete.side_effect = LLMAuthError("bad key", status_code=401)
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200)

        assert outcome.text == MSG_AUTH_ERROR
        assert provider.complete.await_count == 1
        mock_alert.assert_called_once()

    @pytest.mark.asyncio
    @patch("app.services.ai_service.alert_critical")
    async def test_quota_error_is_not_retried(self, mock_alert, provider):
        provider.complete.side_effect = LLMQuotaError("insufficient_quota", status_code=429)
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200)

        assert outcome.text == MSG_QUOTA_ERROR
        assert provider.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_retries_with_next_profile(self, provider):
        provider.complete.side_effect = [LLMTimeoutError("timeout"), llm_response("Resposta do fallback")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200)

        assert outcome.text == "Resposta do fallback"
        assert outcome.attempts == 2
        retry_kwargs = provider.complete.await_args_list[1].kwargs
        assert retry_kwargs["model"] == DEFAULT_PROFILES[1].model
        assert "reasoning_effort" not in retry_kwargs
        assert retry_kwargs["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_transient_error_twice_returns_fallback_message(self, provider):
        provider.complete.side_effect = LLMError("502")
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200)

        assert outcome.text == MSG_TECHNICAL_ERROR
        assert outcome.fallback is True
        assert provider.complete.await_count == 2


class TestEnhancements:
    @pytest.mark.asyncio
    async def test_emoji_pass_on_first_attempt(self, provider):
        provider.complete.side_effect = [llm_response("Bom dia"), llm_response("Bom dia ☀️")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, emoji_enabled=True)
        assert outcome.text == "Bom dia ☀️"

    @pytest.mark.asyncio
    async def test_emoji_failure_keeps_original(self, provider):
        provider.complete.side_effect = [llm_response("Bom dia"), LLMError("down")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, emoji_enabled=True)
        assert outcome.text == "Bom dia"

    @pytest.mark.asyncio
    async def test_emoji_skipped_after_retry(self, provider):
        provider.complete.side_effect = [llm_response(""), llm_response("Bom dia")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, emoji_enabled=True)
        assert outcome.text == "Bom dia"
        assert provider.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_validation_correction_replaces_draft(self, provider):
        provider.complete.side_effect = [llm_response("Rascunho"), llm_response("CORRIGIR: Versão corrigida")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, validation_enabled=True)
        assert outcome.text == "Versão corrigida"

    @pytest.mark.asyncio
    async def test_validation_approval_keeps_draft(self, provider):
        provider.complete.side_effect = [llm_response("Rascunho"), llm_response("APROVADA")]
        outcome = await ResponseGenerator(provider).generate(MESSAGES, max_chars=200, validation_enabled=True)
        assert outcome.text == "Rascunho"


class TestAsk:
    @pytest.mark.asyncio
    async def test_returns_stripped_answer(self, provider):
        provider.complete.return_value = llm_response("  FINALIZAR \n")
        assert await ResponseGenerator(provider).ask("sys", "prompt") == "FINALIZAR"

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self, provider):
        provider.complete.side_effect = LLMError("down")
        with pytest.raises(LLMError):
            await ResponseGenerator(provider).ask("sys", "prompt")

    def test_requires_a_profile(self, provider):
        with pytest.raises(ValueError):
            ResponseGenerator(provider, profiles=[])
