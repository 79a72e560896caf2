"""Tests for environment / .env configuration."""

import os
from unittest import mock

import pytest

from agent_config import (
    DEFAULT_CHAT_MODEL,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_FINAL_PROMPT,
    ConfigurationError,
    EnvConfig,
    load_config,
    save_config,
)


@pytest.fixture
def env_file(tmp_path):
    return tmp_path / ".env"


class TestLoadConfig:

    def test_defaults_without_file_or_environment(self, env_file):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(str(env_file))
        assert config.chat_api_key == ""
        assert config.chat_model == DEFAULT_CHAT_MODEL
        assert config.final_prompt == DEFAULT_FINAL_PROMPT
        assert config.command_timeout == DEFAULT_COMMAND_TIMEOUT

    def test_reads_env_file(self, env_file):
        env_file.write_text(
            "OPENAI_API_KEY=sk-file\n"
            "OPENAI_BASE_URL=http://localhost:1234/v1\n"
            "OPENAI_CHAT_MODEL=local-model\n",
            encoding="utf-8"
        )
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(str(env_file))
        assert config.chat_api_key == "sk-file"
        assert config.chat_base_url == "http://localhost:1234/v1"
        assert config.chat_model == "local-model"

    def test_environment_wins_over_file(self, env_file):
        env_file.write_text("OPENAI_API_KEY=sk-file\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {"OPENAI_API_KEY": "sk-env"}, clear=True):
            config = load_config(str(env_file))
        assert config.chat_api_key == "sk-env"

    def test_empty_environment_value_does_not_mask_file(self, env_file):
        env_file.write_text("OPENAI_API_KEY=sk-file\n", encoding="utf-8")
        with mock.patch.dict(os.environ, {"OPENAI_API_KEY": ""}, clear=True):
            config = load_config(str(env_file))
        assert config.chat_api_key == "sk-file"

    def test_legacy_model_variable(self, env_file):
        with mock.patch.dict(os.environ, {"OPENAI_MODEL": "old-name"}, clear=True):
            assert load_config(str(env_file)).chat_model == "old-name"
        with mock.patch.dict(os.environ, {"OPENAI_MODEL": "old-name", "OPENAI_CHAT_MODEL": "new-name"}, clear=True):
            assert load_config(str(env_file)).chat_model == "new-name"

    def test_agent_settings(self, env_file):
        environ = {
            "AGENT_INSTRUCTIONS": "Be terse.",
            "AGENT_FINAL_PROMPT": "Summarize.",
            "AGENT_COMMAND_TIMEOUT": "5",
        }
        with mock.patch.dict(os.environ, environ, clear=True):
            config = load_config(str(env_file))
        assert config.instructions == "Be terse."
        assert config.final_prompt == "Summarize."
        assert config.command_timeout == 5

    def test_invalid_timeout_keeps_default(self, env_file):
        with mock.patch.dict(os.environ, {"AGENT_COMMAND_TIMEOUT": "soon"}, clear=True):
            assert load_config(str(env_file)).command_timeout == DEFAULT_COMMAND_TIMEOUT


class TestEnvConfig:

    def test_require_chat(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            EnvConfig().require_chat()
        config = EnvConfig(chat_api_key="sk")
        assert config.require_chat() is config

    def test_vision_falls_back_to_chat(self):
        config = EnvConfig(chat_api_key="sk", chat_base_url="http://a", chat_model="m", vision_model="v")
        assert config.vision_settings() == {"api_key": "sk", "base_url": "http://a", "model": "v"}

    def test_to_dict_lists_endpoint_settings(self):
        data = EnvConfig(chat_api_key="sk").to_dict()
        assert data["chat_api_key"] == "sk"
        assert "instructions" not in data


class TestSaveConfig:

    def test_round_trip_keeps_other_lines(self, env_file):
        env_file.write_text("# local settings\nOTHER=1\nOPENAI_API_KEY=old\n", encoding="utf-8")
        save_config(EnvConfig(chat_api_key="sk-new", chat_model="m1"), str(env_file))

        text = env_file.read_text(encoding="utf-8")
        assert "# local settings" in text
        assert "OTHER=1" in text
        assert text.count("OPENAI_API_KEY") == 1

        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config(str(env_file))
        assert config.chat_api_key == "sk-new"
        assert config.chat_model == "m1"

    def test_creates_missing_file(self, tmp_path):
        target = tmp_path / "nested" / ".env"
        assert save_config(EnvConfig(chat_api_key="sk"), str(target)) == target
        assert target.is_file()
