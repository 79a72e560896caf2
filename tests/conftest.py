"""
Shared fixtures: a scripted stand-in for the model client and a registry
rooted in a temporary directory.
"""

import copy

import pytest

import tool_state
from agent_tools import default_registry
from model_client_wrapper import ChatCompletionResponse, ToolCall


class ScriptedModel:
    """
    Plays back canned responses in order and records every call.
    An Exception in the script is raised instead of returned.
    """

    def __init__(self, responses=None, deltas=None):
        self.responses = list(responses or [])
        self.deltas = list(deltas if deltas is not None else ["Done."])
        self.chat_calls = []
        self.stream_calls = []

    @property
    def call_count(self):
        return len(self.chat_calls) + len(self.stream_calls)

    def chat(self, messages, tools=None, tool_choice=None):
        self.chat_calls.append(copy.deepcopy(messages))
        if not self.responses:
            return ChatCompletionResponse(content="")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def stream(self, messages):
        self.stream_calls.append(copy.deepcopy(messages))
        for delta in self.deltas:
            yield delta


def text_response(content):
    return ChatCompletionResponse(content=content)


def tool_response(*calls, content=None):
    """calls: (id, name, arguments) tuples"""
    return ChatCompletionResponse(
        content=content,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls],
        finish_reason="tool_calls"
    )


@pytest.fixture(autouse=True)
def clean_tool_state():
    tool_state.clear_history()
    yield
    tool_state.clear_history()


@pytest.fixture
def registry(tmp_path):
    return default_registry(str(tmp_path), command_timeout=10)
