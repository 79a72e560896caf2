"""
Model Client Wrapper
====================

Thin layer over an OpenAI-compatible chat-completions endpoint. It exposes the
two calls the conversation session needs:

- `chat()`: one complete response (text and/or tool calls)
- `stream()`: the incremental text deltas of a response

Any endpoint that speaks the OpenAI protocol works (OpenAI, DeepSeek, Qwen,
a local server...); the base URL comes from configuration.
"""

import json
import logging
from typing import List, Dict, Any, Optional, Iterator
from dataclasses import dataclass

from openai import OpenAI

from agent_config import EnvConfig

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """Represents a tool call from the model."""
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ChatCompletionResponse:
    """Standardized response from the model."""
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: str = "stop"
    raw_response: Any = None  # Original response for debugging


def _parse_arguments(raw: Optional[str], tool_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Unparseable arguments for {tool_name}: {raw[:200]!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ModelClientWrapper:
    """
    Wraps an OpenAI client bound to one model.

    The underlying client is injected, which keeps tests free of network
    access: anything with a `chat.completions.create` method will do.
    """

    def __init__(
        self,
        model_instance: Any,
        model_name: str,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ):
        """
        Initialize the model client wrapper.

        Args:
            model_instance: An `openai.OpenAI` client (or compatible object)
            model_name: Model identifier sent with every request
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate per call
        """
        self.model_instance = model_instance
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None
    ) -> ChatCompletionResponse:
        """
        Chat completion with optional tool calling.

        Args:
            messages: Provider-format message dicts
            tools: Optional list of tool schemas (OpenAI format)
            tool_choice: Optional tool choice ("auto", "none", ...)

        Returns:
            ChatCompletionResponse with content and/or tool calls
        """
        payload = {
            "model": self.model_name,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice

        response = self.model_instance.chat.completions.create(**payload)
        choice = response.choices[0]
        message = choice.message

        tool_calls = None
        if getattr(message, "tool_calls", None):
            tool_calls = [
                ToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=_parse_arguments(tc.function.arguments, tc.function.name)
                )
                for tc in message.tool_calls
            ]

        return ChatCompletionResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            raw_response=response
        )

    def stream(self, messages: List[Dict[str, Any]]) -> Iterator[str]:
        """Yields the text deltas of a streamed completion, in order."""
        stream = self.model_instance.chat.completions.create(
            model=self.model_name,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=True
        )
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield str(delta)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()


def create_model_client(config: EnvConfig, vision: bool = False) -> ModelClientWrapper:
    """
    Build a ModelClientWrapper from configuration.

    Example:
        >>> client = create_model_client(load_config())
        >>> client.chat(messages=[{"role": "user", "content": "hi"}])
    """
    config.require_chat()
    if vision:
        settings = config.vision_settings()
    else:
        settings = {"api_key": config.chat_api_key, "base_url": config.chat_base_url, "model": config.chat_model}

    model_instance = OpenAI(api_key=settings["api_key"], base_url=settings["base_url"] or None)
    logger.info(f"✅ Model client ready: {settings['model']} @ {settings['base_url'] or 'default endpoint'}")
    return ModelClientWrapper(model_instance, settings["model"])
