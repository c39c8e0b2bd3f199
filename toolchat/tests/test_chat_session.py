import json
import threading

import pytest
from pydantic import BaseModel

from toolchat.agents.chat_session import ChatSession, SessionConfig
from toolchat.domain.exceptions import NetworkError, OperationCancelled
from toolchat.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatResult,
    ChatUsage,
    StreamFragment,
)
from toolchat.tools.definitions import Tool, ToolCall, ToolDef
from toolchat.tools.rate_limiter import RateLimiter
from toolchat.tools.registry import ToolRegistry, build_default_registry
from toolchat.tools.security import SecurityGuard, SecurityPolicy


def _reply(content="", tool_calls=None, finish_reason=None, usage=None, reasoning=None):
    message = ChatMessage(role="assistant", content=content, tool_calls=tool_calls, reasoning=reasoning)
    return ChatResult(
        model="local-model",
        choices=[ChatChoice(index=0, message=message, finish_reason=finish_reason)],
        usage=usage,
    )


class FakeClient:
    base_url = "http://localhost:1234/v1"

    def __init__(self, replies):
        self._replies = list(replies)
        self.requests = []

    def _next(self, req):
        self.requests.append(req)
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def chat(self, req):
        return self._next(req)

    def chat_stream(self, req, cancel=None):
        raise AssertionError("session uses complete_stream")

    def complete_stream(self, req, on_fragment, cancel=None):
        result = self._next(req)
        message = result.choices[0].message
        if message.reasoning:
            on_fragment(StreamFragment(kind="thinking", text=message.reasoning))
        if message.content:
            on_fragment(StreamFragment(kind="content", text=message.content))
        return result

    def list_models(self):
        return ["local-model", "other-model"]


@pytest.fixture()
def registry(tmp_path):
    guard = SecurityGuard(SecurityPolicy(root=tmp_path))
    return build_default_registry(guard=guard, limiter=RateLimiter.per_minute(5))


def _session(client, registry, system_prompt="You are helpful.", **config):
    return ChatSession(client, registry, SessionConfig(model="local-model", **config), system_prompt=system_prompt)


def test_tool_call_then_final_answer(registry, tmp_path):
    (tmp_path / "readme.md").write_text("hi", encoding="utf-8")
    client = FakeClient(
        [
            _reply(tool_calls=[ToolCall(id="call_1", name="list_directory", arguments='{"path": "."}')],
                   finish_reason="tool_calls"),
            _reply("There is one file: readme.md", finish_reason="stop"),
        ]
    )
    session = _session(client, registry)
    resp = session.send_message("list files")

    assert resp.content == "There is one file: readme.md"
    assert resp.used_tools is True
    assert resp.finish_reason == "stop"
    assert resp.iterations == 2

    history = session.get_history()
    assert [m.role for m in history] == ["system", "user", "assistant", "tool", "assistant"]
    assert history[3].tool_call_id == "call_1"
    assert history[3].content.startswith("Contents of .:")
    assert "[FILE] readme.md (2 bytes)" in history[3].content

    # 第二次调用能看到工具结果
    assert [m.role for m in client.requests[1].messages] == ["system", "user", "assistant", "tool"]


def test_plain_answer_does_not_use_tools(registry):
    client = FakeClient([_reply("hello", finish_reason="stop")])
    resp = _session(client, registry).send_message("hi")
    assert resp.used_tools is False
    assert resp.format_response() == "hello"


def test_request_carries_settings_and_tools(registry):
    client = FakeClient([_reply("ok", finish_reason="stop")])
    session = _session(client, registry, temperature=0.2, max_tokens=128)
    session.send_message("hi")

    req = client.requests[0]
    assert req.model == "local-model"
    assert req.temperature == 0.2
    assert req.max_tokens == 128
    assert [t.name for t in req.tools] == registry.names


def test_tool_results_follow_call_order(registry):
    calls = [
        ToolCall(id="c1", name="no_such_tool", arguments="{}"),
        ToolCall(id="c2", name="list_directory", arguments='{"path": "."}'),
        ToolCall(id="c3", name="read_file", arguments="{not json"),
    ]
    client = FakeClient([_reply(tool_calls=calls), _reply("done", finish_reason="stop")])
    session = _session(client, registry)
    resp = session.send_message("go")

    assert resp.content == "done"
    tool_messages = [m for m in session.get_history() if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2", "c3"]
    assert tool_messages[0].content == "Error executing tool no_such_tool: tool not found: no_such_tool"
    assert tool_messages[1].content.startswith("Contents of .")
    assert tool_messages[2].content.startswith("Error executing tool read_file: parse tool arguments")


def test_iteration_cap_returns_last_content(registry):
    loop_call = [ToolCall(id="c", name="list_directory", arguments='{"path": "."}')]
    client = FakeClient([_reply(f"step {i}", tool_calls=loop_call) for i in range(1, 10)])
    session = _session(client, registry, max_iterations=3)
    resp = session.send_message("loop forever")

    assert len(client.requests) == 3
    assert resp.finish_reason == "max_iterations"
    assert resp.hit_iteration_cap
    assert resp.content == "step 3"
    assert resp.iterations == 3
    text = resp.format_response()
    assert "[Tools were used to generate this response]" in text
    assert "max iterations reached" in text


def test_usage_is_summed_across_model_calls(registry):
    client = FakeClient(
        [
            _reply(tool_calls=[ToolCall(id="c", name="list_directory", arguments='{"path": "."}')],
                   usage=ChatUsage(1, 1, 2)),
            _reply("ok", finish_reason="stop", usage=ChatUsage(2, 3, 5)),
        ]
    )
    resp = _session(client, registry).send_message("hi")
    assert resp.usage == ChatUsage(3, 4, 7)


def test_transport_error_aborts_turn(registry):
    client = FakeClient([NetworkError(code="NETWORK_ERROR", message="connection refused")])
    session = _session(client, registry)
    with pytest.raises(NetworkError):
        session.send_message("hi")
    assert [m.role for m in session.get_history()] == ["system", "user"]


def test_cancelled_before_model_call(registry):
    client = FakeClient([_reply("never")])
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        _session(client, registry).send_message("hi", cancel=cancel)
    assert client.requests == []


def test_streaming_turn_forwards_fragments(registry):
    client = FakeClient(
        [
            _reply(reasoning="need a listing",
                   tool_calls=[ToolCall(id="c", name="list_directory", arguments='{"path": "."}')]),
            _reply("Hello", reasoning="done thinking", finish_reason="stop"),
        ]
    )
    fragments = []
    resp = _session(client, registry).send_message_stream("hi", fragments.append)

    assert resp.content == "Hello"
    assert resp.used_tools is True
    assert [(f.kind, f.text) for f in fragments] == [
        ("thinking", "need a listing"),
        ("thinking", "done thinking"),
        ("content", "Hello"),
    ]


def test_history_trim_keeps_system_and_recent_messages(registry):
    client = FakeClient([_reply("ok", finish_reason="stop")])
    session = _session(client, registry, history_limit=50)
    old = [ChatMessage(role="system", content="sys")]
    for i in range(59):
        old.append(ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"m{i}"))
    session.set_history(old)
    assert len(session.get_history()) == 60

    session.send_message("newest")

    sent = client.requests[0].messages
    assert len(sent) == 50
    assert sent[0].content == "sys"
    expected = [m.content for m in old[1:]] + ["newest"]
    assert [m.content for m in sent[1:]] == expected[-49:]


def test_history_trim_drops_orphan_tool_messages(registry):
    client = FakeClient([_reply("ok", finish_reason="stop")])
    session = _session(client, registry, history_limit=4)
    calls = [ToolCall(id="a", name="read_file", arguments="{}"), ToolCall(id="b", name="read_file", arguments="{}")]
    session.set_history(
        [
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="u1"),
            ChatMessage(role="assistant", content="", tool_calls=calls),
            ChatMessage(role="tool", content="ra", tool_call_id="a"),
            ChatMessage(role="tool", content="rb", tool_call_id="b"),
            ChatMessage(role="assistant", content="answer"),
        ]
    )
    session.send_message("u2")
    assert [(m.role, m.content) for m in client.requests[0].messages] == [
        ("system", "sys"),
        ("assistant", "answer"),
        ("user", "u2"),
    ]


def test_history_without_system_message_keeps_latest(registry):
    client = FakeClient([_reply("ok", finish_reason="stop")])
    session = _session(client, registry, system_prompt=None, history_limit=3)
    session.set_history([ChatMessage(role="user", content=f"u{i}") for i in range(5)])
    session.send_message("last")
    assert [m.content for m in client.requests[0].messages] == ["u3", "u4", "last"]


def test_settings_are_clamped(registry):
    session = _session(FakeClient([]), registry)
    assert session.set_temperature(2.5) == 1.0
    assert session.get_temperature() == 1.0
    assert session.set_temperature(-0.3) == 0.0
    assert session.set_max_tokens(0) == 1
    assert session.set_max_tokens(100000) == 8192
    assert session.get_max_tokens() == 8192

    config = SessionConfig(temperature=3, max_tokens=-5)
    assert (config.temperature, config.max_tokens) == (1.0, 1)


def test_set_system_message_replaces_existing(registry):
    session = _session(FakeClient([]), registry)
    session.set_system_message("new rules")
    history = session.get_history()
    assert len(history) == 1
    assert history[0].content == "new rules"

    bare = _session(FakeClient([]), registry, system_prompt=None)
    bare.set_history([ChatMessage(role="user", content="hi")])
    bare.set_system_message("rules")
    assert [m.role for m in bare.get_history()] == ["system", "user"]


def test_history_accessors_copy(registry):
    session = _session(FakeClient([]), registry)
    history = session.get_history()
    history.append(ChatMessage(role="user", content="x"))
    assert len(session.get_history()) == 1
    session.clear_history()
    assert session.get_history() == []


def test_model_info_and_models(registry):
    session = _session(FakeClient([]), registry)
    session.set_model("other-model")
    info = json.loads(session.model_info())
    assert info["name"] == "other-model"
    assert info["base_url"] == "http://localhost:1234/v1"
    assert info["tools_count"] == 6
    assert "web_search" in info["tools"]
    assert session.list_models() == ["local-model", "other-model"]


class EmptyArgs(BaseModel):
    pass


class CancellingTool(Tool):
    definition = ToolDef(name="stop_after_me", description="Sets the cancel event while running")
    Arguments = EmptyArgs

    def __init__(self, event):
        self._event = event

    def execute(self, args, cancel=None):
        self._event.set()
        return "first call finished"


def test_cancel_between_tool_calls_answers_every_call():
    cancel = threading.Event()
    registry = ToolRegistry([CancellingTool(cancel)])
    calls = [
        ToolCall(id="a", name="stop_after_me", arguments="{}"),
        ToolCall(id="b", name="stop_after_me", arguments="{}"),
    ]
    client = FakeClient([_reply(tool_calls=calls), _reply("fresh start", finish_reason="stop")])
    session = _session(client, registry, system_prompt=None)

    with pytest.raises(OperationCancelled):
        session.send_message("run both", cancel=cancel)

    history = session.get_history()
    assert [(m.role, m.tool_call_id) for m in history] == [
        ("user", None),
        ("assistant", None),
        ("tool", "a"),
        ("tool", "b"),
    ]
    assert history[2].content == "first call finished"
    assert history[3].content == "Error executing tool stop_after_me: tool execution cancelled"

    session.send_message("try again")
    sent = client.requests[1].messages
    for i, message in enumerate(sent):
        if message.tool_calls:
            answered = {m.tool_call_id for m in sent[i + 1:i + 1 + len(message.tool_calls)]}
            assert answered == {c.id for c in message.tool_calls}
