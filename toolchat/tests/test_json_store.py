import tempfile
from pathlib import Path

import pytest

from toolchat.domain.exceptions import BusinessError, ValidationError
from toolchat.domain.models import ChatMessage
from toolchat.infrastructure.storage.json_store import JsonHistoryStore
from toolchat.tools.definitions import ToolCall


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d) / ".storage")
        messages = [
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="list files"),
            ChatMessage(
                role="assistant",
                content="",
                tool_calls=[ToolCall(id="call_1", name="list_directory", arguments='{"path": "."}')],
            ),
            ChatMessage(role="tool", content="Contents of .:\n", tool_call_id="call_1"),
            ChatMessage(role="assistant", content="Nothing here."),
        ]
        store.save("session-1", messages)
        loaded = store.load("session-1")

        assert [m.role for m in loaded] == ["system", "user", "assistant", "tool", "assistant"]
        assert loaded[2].tool_calls[0].name == "list_directory"
        assert loaded[2].tool_calls[0].arguments == '{"path": "."}'
        assert loaded[3].tool_call_id == "call_1"
        assert store.list_names() == ["session-1"]
        assert not list((Path(d) / ".storage" / "histories").glob("*.tmp"))


def test_json_store_delete():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d) / ".storage")
        store.save("a", [ChatMessage(role="user", content="x")])
        store.save("b", [ChatMessage(role="user", content="y")])
        store.delete("a")
        assert store.list_names() == ["b"]
        with pytest.raises(BusinessError) as exc:
            store.load("a")
        assert exc.value.code == "HISTORY_NOT_FOUND"
        assert store.delete_all() == 1
        assert store.list_names() == []


def test_json_store_rejects_unsafe_names():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=Path(d) / ".storage")
        for name in ["", "../escape", "a/b"]:
            with pytest.raises(ValidationError):
                store.save(name, [])
