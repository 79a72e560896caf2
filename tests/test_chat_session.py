"""Tests for the conversation session."""

import pytest

from chat_session import (
    ApprovalDecision,
    ConversationSession,
    Message,
    PendingApprovalError,
    Role,
    SessionError,
    UnknownRequestError,
)
from conftest import ScriptedModel, text_response, tool_response


def make_session(registry, *responses, deltas=None, **kwargs):
    model = ScriptedModel(list(responses), deltas)
    return ConversationSession(model, registry, instructions="be brief", **kwargs), model


class TestSubmit:

    def test_plain_answer(self, registry):
        session, model = make_session(registry, text_response("Hi there"))
        response = session.submit("hello")
        assert response.text == "Hi there"
        assert response.pending_requests == []
        sent = model.chat_calls[0]
        assert sent[0] == {"role": "system", "content": "be brief"}
        assert sent[1] == {"role": "user", "content": "hello"}

    def test_thread_created_once_and_reused(self, registry):
        session, model = make_session(registry, text_response("a"), text_response("b"))
        session.submit("one")
        thread = session.thread
        session.submit("two", thread)
        assert session.thread is thread
        assert [m["content"] for m in model.chat_calls[1] if m["role"] == "user"] == ["one", "two"]

    def test_gated_call_becomes_pending(self, registry):
        session, model = make_session(
            registry,
            tool_response(("call_1", "delete_file", {"path": "a.txt"}), content="Let me delete it.")
        )
        response = session.submit("delete a.txt")
        assert response.text == "Let me delete it."
        assert [(r.id, r.tool_name, r.arguments) for r in response.pending_requests] == [
            ("call_1", "delete_file", {"path": "a.txt"})
        ]
        assert "call_1" in session.thread.pending

    def test_ungated_call_runs_automatically(self, registry, tmp_path):
        (tmp_path / "a.txt").write_text("x", encoding="utf-8")
        session, model = make_session(
            registry,
            tool_response(("call_1", "path_exists", {"path": "a.txt"})),
            text_response("It exists."),
        )
        response = session.submit("does a.txt exist?")
        assert response.text == "It exists."
        assert response.pending_requests == []
        tool_message = model.chat_calls[1][-1]
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_1"
        assert tool_message["content"].startswith("file:")

    def test_mixed_batch_only_surfaces_gated(self, registry):
        session, model = make_session(
            registry,
            tool_response(("c1", "get_current_time", {}), ("c2", "run_command", {"command": "dir"})),
        )
        response = session.submit("go")
        assert [r.id for r in response.pending_requests] == ["c2"]
        roles = [m["role"] for m in session.thread.messages]
        assert roles == ["system", "user", "assistant", "tool"]

    def test_decisions_are_fed_back_as_tool_messages(self, registry):
        session, model = make_session(
            registry,
            tool_response(("c1", "run_command", {"command": "dir"}), ("c2", "delete_file", {"path": "a"})),
            text_response("ok"),
        )
        session.submit("go")
        response = session.submit([
            ApprovalDecision("c1", True, "listing"),
            ApprovalDecision("c2", False),
        ])
        assert response.text == "ok"
        tool_messages = [m for m in model.chat_calls[1] if m["role"] == "tool"]
        assert tool_messages[0] == {"role": "tool", "tool_call_id": "c1", "content": "listing"}
        assert tool_messages[1]["tool_call_id"] == "c2"
        assert "denied" in tool_messages[1]["content"]

    def test_assistant_tool_calls_are_recorded(self, registry):
        session, model = make_session(registry, tool_response(("c1", "run_command", {"command": "dir"})))
        session.submit("go")
        assistant = session.thread.messages[-1]
        assert assistant["tool_calls"][0]["id"] == "c1"
        assert assistant["tool_calls"][0]["function"]["arguments"] == '{"command": "dir"}'

    def test_partial_decisions_do_not_call_model(self, registry):
        session, model = make_session(
            registry,
            tool_response(("c1", "run_command", {"command": "a"}), ("c2", "run_command", {"command": "b"})),
        )
        session.submit("go")
        response = session.submit(ApprovalDecision("c1", False))
        assert [r.id for r in response.pending_requests] == ["c2"]
        assert len(model.chat_calls) == 1

    def test_unknown_request_id(self, registry):
        session, model = make_session(registry, tool_response(("c1", "run_command", {"command": "a"})))
        session.submit("go")
        with pytest.raises(UnknownRequestError):
            session.submit(ApprovalDecision("zzz", True))
        assert "c1" in session.thread.pending

    def test_new_message_while_pending(self, registry):
        session, model = make_session(registry, tool_response(("c1", "run_command", {"command": "a"})))
        session.submit("go")
        with pytest.raises(PendingApprovalError):
            session.submit("something else")

    def test_endless_tool_calls_are_bounded(self, registry):
        responses = [tool_response((f"c{i}", "get_current_time", {})) for i in range(5)]
        session, model = make_session(registry, *responses, max_auto_rounds=2)
        with pytest.raises(SessionError):
            session.submit("loop")
        assert len(model.chat_calls) == 3

    def test_abandon_pending(self, registry):
        session, model = make_session(
            registry,
            tool_response(("c1", "run_command", {"command": "a"}), ("c2", "run_command", {"command": "b"})),
        )
        session.submit("go")
        settled = session.abandon_pending(decisions=[ApprovalDecision("c1", True, "done")])
        assert settled == 2
        assert session.thread.pending == {}
        contents = [m["content"] for m in session.thread.messages if m["role"] == "tool"]
        assert contents[0] == "done"
        assert "denied" in contents[1]
        assert len(model.chat_calls) == 1

    def test_model_error_propagates(self, registry):
        session, model = make_session(registry, RuntimeError("503"))
        with pytest.raises(RuntimeError):
            session.submit("hi")


class TestStreamFinal:

    def test_streams_deltas_and_records_answer(self, registry):
        session, model = make_session(registry, text_response(""), deltas=["The ", "answer."])
        session.submit("question")
        assert list(session.stream_final("Final answer please")) == ["The ", "answer."]
        assert model.stream_calls[0][-1] == {"role": "user", "content": "Final answer please"}
        assert session.thread.messages[-1] == {"role": "assistant", "content": "The answer."}
        assert session.messages[-1].content == "The answer."

    def test_refused_while_pending(self, registry):
        session, model = make_session(registry, tool_response(("c1", "run_command", {"command": "a"})))
        session.submit("go")
        with pytest.raises(PendingApprovalError):
            session.stream_final("final")

    def test_partial_stream_is_kept(self, registry):
        session, model = make_session(registry, deltas=["one ", "two ", "three"])
        deltas = session.stream_final("final")
        assert next(deltas) == "one "
        deltas.close()
        assert session.thread.messages[-1] == {"role": "assistant", "content": "one "}

    def test_unstarted_stream_leaves_history_untouched(self, registry):
        session, model = make_session(registry, text_response("answer"))
        session.submit("question")
        before = list(session.thread.messages)
        session.stream_final("final").close()
        assert session.thread.messages == before
        assert session.thread.messages[-1]["role"] == "assistant"
        assert model.stream_calls == []

    def test_stream_failure_still_closes_the_turn(self, registry):
        session, model = make_session(registry)

        def broken_stream(messages):
            raise RuntimeError("connection reset")
            yield  # pragma: no cover

        model.stream = broken_stream
        with pytest.raises(RuntimeError):
            list(session.stream_final("final"))
        assert session.thread.messages[-2] == {"role": "user", "content": "final"}
        assert session.thread.messages[-1] == {"role": "assistant", "content": ""}


class TestContext:

    def test_clear_context_starts_new_thread(self, registry):
        session, model = make_session(registry, text_response("a"), text_response("b"))
        session.submit("first")
        old = session.thread
        session.clear_context()
        assert session.thread is None
        assert session.messages == []
        session.submit("second")
        assert session.thread is not old
        assert [m["content"] for m in model.chat_calls[1] if m["role"] == "user"] == ["second"]

    def test_transcript(self, registry):
        session, model = make_session(registry, text_response("hello back"))
        session.submit("hello")
        assert [(m.role, m.content) for m in session.messages] == [
            (Role.USER, "hello"),
            (Role.ASSISTANT, "hello back"),
        ]


class TestMessage:

    def test_attachment_becomes_data_url(self):
        message = Message(Role.USER, "What is this?", data=b"\x89PNG", mime_type="image/png")
        provider = message.to_provider()
        assert provider["content"][0] == {"type": "text", "text": "What is this?"}
        assert provider["content"][1]["image_url"]["url"] == "data:image/png;base64,iVBORw=="

    def test_tool_message(self):
        message = Message(Role.TOOL, "result", tool_call_id="c1")
        assert message.to_provider() == {"role": "tool", "tool_call_id": "c1", "content": "result"}

    def test_decision_feedback(self):
        assert ApprovalDecision("c1", True, "execution failed: boom").feedback("x") == "execution failed: boom"
        assert ApprovalDecision("c1", True).feedback("x") == "The user approved x."
        assert "denied" in ApprovalDecision("c1", False, "ignored").feedback("x")
