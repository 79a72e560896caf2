"""
Configuration for the Terminal Agent
====================================

Settings come from two places, in priority order:
    1. Process environment variables
    2. A `.env` file (default: `.env` in the current working directory)

Chat settings drive the tool-calling agent. Vision settings are kept for
prompts that carry image attachments and fall back to the chat settings
when left empty.
"""

import os
import logging
from pathlib import Path
from typing import Dict, Optional
from dataclasses import dataclass

from dotenv import dotenv_values, set_key

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_COMMAND_TIMEOUT = 60

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant that can run shell commands, fetch web pages "
    "and manage local files. Every tool call is reviewed by a human before it "
    "runs; if a call is denied, adapt your plan instead of retrying it."
)
DEFAULT_FINAL_PROMPT = "Give your final answer."

# Attribute name -> environment variable
ENV_KEYS = {
    "chat_api_key": "OPENAI_API_KEY",
    "chat_base_url": "OPENAI_BASE_URL",
    "chat_model": "OPENAI_CHAT_MODEL",
    "vision_api_key": "OPENAI_VISION_API_KEY",
    "vision_base_url": "OPENAI_VISION_BASE_URL",
    "vision_model": "OPENAI_VISION_MODEL",
}


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing."""


@dataclass
class EnvConfig:
    """Model endpoints and agent knobs."""
    chat_api_key: str = ""
    chat_base_url: str = ""
    chat_model: str = DEFAULT_CHAT_MODEL

    vision_api_key: str = ""
    vision_base_url: str = ""
    vision_model: str = ""

    instructions: str = DEFAULT_INSTRUCTIONS
    final_prompt: str = DEFAULT_FINAL_PROMPT
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT

    def require_chat(self) -> "EnvConfig":
        """Fail fast if the chat endpoint cannot be reached."""
        if not self.chat_api_key:
            raise ConfigurationError(f"{ENV_KEYS['chat_api_key']} is not set")
        return self

    def vision_settings(self) -> Dict[str, str]:
        """Vision endpoint, falling back to the chat endpoint per field."""
        return {
            "api_key": self.vision_api_key or self.chat_api_key,
            "base_url": self.vision_base_url or self.chat_base_url,
            "model": self.vision_model or self.chat_model,
        }

    def to_dict(self) -> Dict[str, str]:
        return {attr: getattr(self, attr) for attr in ENV_KEYS}


def _read_values(env_file: Optional[str]) -> Dict[str, str]:
    """Merge the .env file with the environment (environment wins)."""
    values: Dict[str, str] = {}
    path = Path(env_file or DEFAULT_ENV_FILE)
    if path.is_file():
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        logger.debug(f"Loaded settings from {path}")
    for key, value in os.environ.items():
        if value:
            values[key] = value
    return values


def load_config(env_file: Optional[str] = None) -> EnvConfig:
    """
    Build an EnvConfig from the environment and an optional .env file.

    Args:
        env_file: Path to a .env file. Defaults to `.env` in the working directory.

    Returns:
        EnvConfig with every field resolved (missing values keep their defaults)
    """
    values = _read_values(env_file)
    config = EnvConfig()

    for attr, env_var in ENV_KEYS.items():
        if values.get(env_var):
            setattr(config, attr, values[env_var].strip())

    # Older setups name the chat model OPENAI_MODEL
    if not values.get(ENV_KEYS["chat_model"]) and values.get("OPENAI_MODEL"):
        config.chat_model = values["OPENAI_MODEL"].strip()

    if values.get("AGENT_INSTRUCTIONS"):
        config.instructions = values["AGENT_INSTRUCTIONS"]
    if values.get("AGENT_FINAL_PROMPT"):
        config.final_prompt = values["AGENT_FINAL_PROMPT"]
    if values.get("AGENT_COMMAND_TIMEOUT"):
        try:
            config.command_timeout = int(values["AGENT_COMMAND_TIMEOUT"])
        except ValueError:
            logger.warning(f"Ignoring invalid AGENT_COMMAND_TIMEOUT: {values['AGENT_COMMAND_TIMEOUT']!r}")

    return config


def save_config(config: EnvConfig, env_file: Optional[str] = None) -> Path:
    """
    Write the endpoint settings back to a .env file.

    Existing keys are updated in place; comments and unrelated keys are kept.
    """
    path = Path(env_file or DEFAULT_ENV_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)

    for attr, env_var in ENV_KEYS.items():
        set_key(str(path), env_var, getattr(config, attr), quote_mode="always")

    logger.info(f"💾 Settings saved to {path}")
    return path
