from unittest.mock import Mock

import pytest

from app.models import AppConfig
from app.services.config_service import DEFAULT_SYSTEM_PROMPT, ConfigService


@pytest.fixture
def clock():
    return Mock(return_value=0.0)


@pytest.fixture
def config(session_factory, clock):
    return ConfigService(session_factory, cache_ttl_seconds=300, clock=clock)


class TestDefaults:
    def test_defaults_when_table_empty(self, config):
        assert config.get_str("system_prompt") == DEFAULT_SYSTEM_PROMPT
        assert config.get_int("max_response_length") == 200
        assert config.get_bool("contact_card_enabled") is True
        assert config.get_bool("audio_enabled") is False

    def test_unknown_key_uses_caller_default(self, config):
        assert config.get_str("nope", "x") == "x"
        assert config.get_bool("nope", True) is True
        assert config.get_int("nope", 7) == 7


class TestStoredValues:
    def test_row_overrides_default(self, db, config):
        db.add(AppConfig(key="max_response_length", value="350"))
        db.commit()
        assert config.get_int("max_response_length") == 350

    def test_non_numeric_falls_back(self, db, config):
        db.add(AppConfig(key="response_delay_seconds", value="soon"))
        db.commit()
        assert config.get_int("response_delay_seconds", 10) == 10

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("off", False), ("0", False), ("", False)])
    def test_bool_parsing(self, db, config, raw, expected):
        db.add(AppConfig(key="emoji_enabled", value=raw))
        db.commit()
        assert config.get_bool("emoji_enabled") is expected


class TestCache:
    def test_values_cached_until_ttl(self, db, config, clock):
        assert config.get_int("max_response_length") == 200
        db.add(AppConfig(key="max_response_length", value="120"))
        db.commit()

        assert config.get_int("max_response_length") == 200
        clock.return_value = 301.0
        assert config.get_int("max_response_length") == 120

    def test_set_value_invalidates(self, config):
        assert config.get_bool("audio_enabled") is False
        config.set_value("audio_enabled", True)
        assert config.get_str("audio_enabled") == "true"
        assert config.get_bool("audio_enabled") is True
