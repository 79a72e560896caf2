"""
Conversation Session
====================

Holds the message history of one conversation and talks to the model.

The session keeps two views of the conversation:
- `messages`: the public transcript (`Message` objects) for display
- `thread`: the model-side state (provider-format messages plus the tool
  calls still waiting for a human decision). The thread is opaque to callers
  and must be handed back unchanged on every call of a run.

Tools that do not need approval are executed right here, inside `submit()`.
Gated tools come back to the caller as `pending_requests` and stay pending
until a later `submit()` answers them with `ApprovalDecision`s.
"""

import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from agent_config import DEFAULT_INSTRUCTIONS
from agent_tools import CapabilityRegistry
from model_client_wrapper import ModelClientWrapper

logger = logging.getLogger(__name__)

MAX_AUTO_ROUNDS = 8


class SessionError(RuntimeError):
    """Base class for misuse of a conversation session."""


class PendingApprovalError(SessionError):
    """The thread still has tool calls waiting for a decision."""


class UnknownRequestError(SessionError):
    """A decision refers to a request the thread is not waiting for."""


class Role(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class Message:
    """One entry of the conversation. `data` holds an optional binary attachment."""
    role: Role
    content: str = ""
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    tool_call_id: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        return self.data is not None

    def to_provider(self) -> Dict[str, Any]:
        """OpenAI chat-completions representation."""
        if self.role is Role.TOOL:
            return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}

        if self.has_attachment:
            encoded = base64.b64encode(self.data).decode("ascii")
            mime_type = self.mime_type or "application/octet-stream"
            parts: List[Dict[str, Any]] = []
            if self.content:
                parts.append({"type": "text", "text": self.content})
            parts.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}})
            return {"role": self.role.value, "content": parts}

        return {"role": self.role.value, "content": self.content}


@dataclass
class ToolInvocationRequest:
    """A gated tool call waiting for a human decision."""
    id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalDecision:
    """
    The answer to one ToolInvocationRequest.

    `result` is the text of the local execution of an approved tool. When the
    tool failed, that failure text is what goes back to the model.
    """
    request_id: str
    approved: bool
    result: Optional[str] = None

    def feedback(self, tool_name: str) -> str:
        if not self.approved:
            return f"The user denied permission to run {tool_name}. The tool was not executed."
        if self.result is not None:
            return self.result
        return f"The user approved {tool_name}."


@dataclass
class AgentThread:
    """Model-side conversation state."""
    id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    pending: Dict[str, ToolInvocationRequest] = field(default_factory=dict)


@dataclass
class AgentResponse:
    text: str = ""
    pending_requests: List[ToolInvocationRequest] = field(default_factory=list)

    @property
    def has_pending(self) -> bool:
        return bool(self.pending_requests)


SubmitInput = Union[str, Message, ApprovalDecision, Sequence[Union[Message, ApprovalDecision]]]


class ConversationSession:
    """
    Message history plus the model client.

    Args:
        client: ModelClientWrapper (or anything with `chat()` / `stream()`)
        registry: Tools offered to the model
        instructions: System prompt placed at the start of every new thread
        max_auto_rounds: How many times in a row the session will execute
            ungated tools and ask the model again before giving up
    """

    def __init__(
        self,
        client: ModelClientWrapper,
        registry: CapabilityRegistry,
        instructions: str = DEFAULT_INSTRUCTIONS,
        max_auto_rounds: int = MAX_AUTO_ROUNDS
    ):
        self.client = client
        self.registry = registry
        self.instructions = instructions
        self.max_auto_rounds = max_auto_rounds
        self.messages: List[Message] = []
        self.thread: Optional[AgentThread] = None

    # =========================================================================
    # THREAD MANAGEMENT
    # =========================================================================

    def get_new_thread(self) -> AgentThread:
        thread = AgentThread(id=uuid.uuid4().hex[:8])
        if self.instructions:
            thread.messages.append(Message(Role.SYSTEM, self.instructions).to_provider())
        return thread

    def ensure_thread(self) -> AgentThread:
        if self.thread is None:
            self.thread = self.get_new_thread()
            logger.info(f"🧵 New conversation thread {self.thread.id}")
        return self.thread

    def clear_context(self):
        """Drop the thread; the next submit starts a new conversation."""
        if self.thread is not None:
            logger.info(f"🧹 Cleared conversation thread {self.thread.id}")
        self.thread = None
        self.messages.clear()

    # =========================================================================
    # SUBMIT
    # =========================================================================

    def submit(self, items: SubmitInput, thread: Optional[AgentThread] = None) -> AgentResponse:
        """
        Send user input and/or approval decisions and return the model's answer.

        Decisions for every pending request must be in hand before the model is
        called again; with only some of them answered, the remaining requests
        are returned without a model call.
        """
        thread = thread if thread is not None else self.ensure_thread()
        messages, decisions = self._split(items)

        if decisions:
            self._apply_decisions(thread, decisions)
        if messages and thread.pending:
            raise PendingApprovalError(
                f"{len(thread.pending)} tool call(s) still waiting for a decision"
            )

        for message in messages:
            self.messages.append(message)
            thread.messages.append(message.to_provider())

        if thread.pending:
            return AgentResponse(pending_requests=list(thread.pending.values()))

        return self._complete(thread)

    def abandon_pending(
        self,
        thread: Optional[AgentThread] = None,
        decisions: Sequence[ApprovalDecision] = ()
    ) -> int:
        """
        Settle every pending request without calling the model.

        `decisions` already taken are recorded as given; every other pending
        request is recorded as not approved. Returns the number of requests
        settled.
        """
        thread = thread if thread is not None else self.thread
        if thread is None or not thread.pending:
            return 0

        settled = len(thread.pending)
        known = [d for d in decisions if d.request_id in thread.pending]
        self._apply_decisions(thread, known)
        remaining = [ApprovalDecision(request_id, approved=False) for request_id in list(thread.pending)]
        self._apply_decisions(thread, remaining)
        return settled

    def _split(self, items: SubmitInput) -> Tuple[List[Message], List[ApprovalDecision]]:
        if isinstance(items, (str, Message, ApprovalDecision)):
            items = [items]

        messages: List[Message] = []
        decisions: List[ApprovalDecision] = []
        for item in items:
            if isinstance(item, str):
                messages.append(Message(Role.USER, item))
            elif isinstance(item, Message):
                messages.append(item)
            elif isinstance(item, ApprovalDecision):
                decisions.append(item)
            else:
                raise TypeError(f"Cannot submit {type(item).__name__}")
        return messages, decisions

    def _apply_decisions(self, thread: AgentThread, decisions: List[ApprovalDecision]):
        unknown = [d.request_id for d in decisions if d.request_id not in thread.pending]
        if unknown:
            raise UnknownRequestError(f"No pending request with id: {', '.join(unknown)}")

        for decision in decisions:
            request = thread.pending.pop(decision.request_id)
            self._append_tool_result(thread, request.id, decision.feedback(request.tool_name))

    def _append_tool_result(self, thread: AgentThread, call_id: str, content: str):
        message = Message(Role.TOOL, content, tool_call_id=call_id)
        self.messages.append(message)
        thread.messages.append(message.to_provider())

    def _complete(self, thread: AgentThread) -> AgentResponse:
        texts: List[str] = []
        tools = self.registry.schemas()

        for _ in range(self.max_auto_rounds + 1):
            response = self.client.chat(thread.messages, tools=tools, tool_choice="auto")
            thread.messages.append(self._assistant_entry(response))
            if response.content:
                texts.append(response.content)
                self.messages.append(Message(Role.ASSISTANT, response.content))

            if not response.tool_calls:
                return AgentResponse(text="".join(texts))

            gated: List[ToolInvocationRequest] = []
            for call in response.tool_calls:
                if self.registry.requires_approval(call.name):
                    request = ToolInvocationRequest(call.id, call.name, dict(call.arguments))
                    thread.pending[call.id] = request
                    gated.append(request)
                else:
                    logger.info(f"Running ungated tool {call.name}")
                    self._append_tool_result(thread, call.id, self.registry.execute(call.name, call.arguments))

            if gated:
                return AgentResponse(text="".join(texts), pending_requests=gated)

        raise SessionError(f"Model kept calling tools after {self.max_auto_rounds} automatic rounds")

    @staticmethod
    def _assistant_entry(response) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"role": "assistant", "content": response.content or ""}
        if response.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                }
                for call in response.tool_calls
            ]
        return entry

    # =========================================================================
    # FINAL ANSWER
    # =========================================================================

    def stream_final(self, prompt: str, thread: Optional[AgentThread] = None) -> Iterator[str]:
        """
        Ask for the closing answer and stream it.

        Only valid once no tool calls are pending. The prompt enters the
        history when iteration starts; whatever text was received is kept,
        even if the caller stops reading early. A stream that is closed
        before it starts leaves the history untouched.
        """
        thread = thread if thread is not None else self.ensure_thread()
        if thread.pending:
            raise PendingApprovalError("Cannot stream a final answer while tool calls are pending")
        return self._stream(thread, Message(Role.USER, prompt))

    def _stream(self, thread: AgentThread, prompt: Message) -> Iterator[str]:
        self.messages.append(prompt)
        thread.messages.append(prompt.to_provider())
        received: List[str] = []
        try:
            for delta in self.client.stream(thread.messages):
                received.append(delta)
                yield delta
        finally:
            text = "".join(received)
            thread.messages.append({"role": "assistant", "content": text})
            self.messages.append(Message(Role.ASSISTANT, text))
