"""Tests for the OpenAI client wrapper, using fake response objects."""

from types import SimpleNamespace
from unittest import mock

import pytest

from agent_config import ConfigurationError, EnvConfig
from model_client_wrapper import ModelClientWrapper, create_model_client


def fake_client(result):
    client = mock.Mock()
    client.chat.completions.create.return_value = result
    return client


def completion(content=None, tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


def function_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class TestChat:

    def test_text_response(self):
        client = fake_client(completion("hello"))
        response = ModelClientWrapper(client, "m").chat([{"role": "user", "content": "hi"}])
        assert response.content == "hello"
        assert response.tool_calls is None
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "m"
        assert "tools" not in kwargs

    def test_tool_calls_are_parsed(self):
        client = fake_client(completion(tool_calls=[
            function_call("c1", "read_file", '{"path": "a.txt"}'),
            function_call("c2", "get_current_time", ""),
        ], finish_reason="tool_calls"))
        tools = [{"type": "function", "function": {"name": "read_file"}}]
        response = ModelClientWrapper(client, "m").chat([], tools=tools, tool_choice="auto")

        assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
            ("c1", "read_file", {"path": "a.txt"}),
            ("c2", "get_current_time", {}),
        ]
        assert response.finish_reason == "tool_calls"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"

    def test_malformed_arguments_become_empty(self):
        client = fake_client(completion(tool_calls=[function_call("c1", "read_file", "{not json")]))
        response = ModelClientWrapper(client, "m").chat([])
        assert response.tool_calls[0].arguments == {}

    def test_errors_propagate(self):
        client = mock.Mock()
        client.chat.completions.create.side_effect = RuntimeError("rate limited")
        with pytest.raises(RuntimeError):
            ModelClientWrapper(client, "m").chat([])


class TestStream:

    def test_yields_non_empty_deltas(self):
        chunks = [chunk("Hel"), SimpleNamespace(choices=[]), chunk(None), chunk(""), chunk("lo")]
        client = fake_client(iter(chunks))
        assert list(ModelClientWrapper(client, "m").stream([])) == ["Hel", "lo"]
        assert client.chat.completions.create.call_args.kwargs["stream"] is True

    def test_stream_is_closed_when_abandoned(self):
        stream = mock.MagicMock()
        stream.__iter__.return_value = iter([chunk("a"), chunk("b")])
        deltas = ModelClientWrapper(fake_client(stream), "m").stream([])
        assert next(deltas) == "a"
        deltas.close()
        stream.close.assert_called_once()


class TestCreateModelClient:

    def test_uses_chat_settings(self):
        config = EnvConfig(chat_api_key="sk", chat_base_url="http://local/v1", chat_model="local")
        with mock.patch("model_client_wrapper.OpenAI") as openai_cls:
            client = create_model_client(config)
        openai_cls.assert_called_once_with(api_key="sk", base_url="http://local/v1")
        assert client.model_name == "local"

    def test_default_endpoint(self):
        with mock.patch("model_client_wrapper.OpenAI") as openai_cls:
            create_model_client(EnvConfig(chat_api_key="sk"))
        openai_cls.assert_called_once_with(api_key="sk", base_url=None)

    def test_vision_settings(self):
        config = EnvConfig(chat_api_key="sk", chat_model="text", vision_model="eyes")
        with mock.patch("model_client_wrapper.OpenAI"):
            assert create_model_client(config, vision=True).model_name == "eyes"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            create_model_client(EnvConfig())
