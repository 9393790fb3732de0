"""Operator-editable runtime settings stored in the ``app_config`` table."""

import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AppConfig

logger = get_logger("config_service")

DEFAULT_SYSTEM_PROMPT = (
    "PAPEL: Você é um assistente virtual de atendimento pelo WhatsApp, educado, objetivo e prestativo.\n"
    "REGRAS: Responda sempre em português do Brasil. Não invente informações. "
    "Se não souber a resposta, diga que vai verificar com a equipe."
)

DEFAULTS = {
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "max_response_length": "200",
    "response_delay_seconds": "10",
    "reasoning_effort": "minimal",
    "audio_enabled": "false",
    "emoji_enabled": "false",
    "contact_card_enabled": "true",
    "use_client_name": "false",
    "tts_voice": "alloy",
    "smart_recovery_enabled": "true",
    "pending_sweep_enabled": "true",
    "response_validation_enabled": "false",
}

CACHE_TTL_SECONDS = 300.0
FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        cache_ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, str] = {}
        self._loaded_at: Optional[float] = None

    def _refresh(self) -> None:
        db = self._session_factory()
        try:
            rows = db.query(AppConfig).all()
            self._cache = {row.key: row.value for row in rows if row.value is not None}
        finally:
            db.close()
        self._loaded_at = self._clock()

    def _values(self) -> dict[str, str]:
        if self._loaded_at is None or self._clock() - self._loaded_at > self._cache_ttl:
            self._refresh()
        return self._cache

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._values().get(key)
        if value is None:
            value = DEFAULTS.get(key, default)
        return value

    def get_int(self, key: str, default: int = 0) -> int:
        raw = self.get_str(key)
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            logger.warning(f"Config {key}={raw!r} is not a number, using {default}")
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get_str(key)
        if raw is None:
            return default
        return raw.strip().lower() not in FALSE_VALUES

    def set_value(self, key: str, value) -> None:
        db = self._session_factory()
        try:
            row = db.query(AppConfig).filter(AppConfig.key == key).first()
            if row is None:
                row = AppConfig(key=key)
                db.add(row)
            row.value = str(value).lower() if isinstance(value, bool) else str(value)
            db.commit()
        finally:
            db.close()
        self.invalidate()
        logger.info(f"Config updated: {key}")

    def invalidate(self) -> None:
        self._loaded_at = None
