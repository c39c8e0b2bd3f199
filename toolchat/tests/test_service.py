import json

from toolchat.agents.chat_session import ChatSession, SessionConfig
from toolchat.api import service
from toolchat.config.settings import Settings
from toolchat.domain.models import ChatChoice, ChatMessage, ChatResult, ChatUsage
from toolchat.infrastructure.storage.json_store import JsonHistoryStore
from toolchat.tools.registry import build_default_registry


class EchoClient:
    base_url = "http://fake/v1"

    def chat(self, req):
        text = req.messages[-1].content
        return ChatResult(
            model=req.model,
            choices=[ChatChoice(index=0, message=ChatMessage(role="assistant", content=f"echo: {text}"), finish_reason="stop")],
            usage=ChatUsage(1, 2, 3),
        )

    def list_models(self):
        return []


def test_build_session_from_settings(tmp_path):
    cfg = Settings(
        workspace_root=str(tmp_path),
        openai_base_url="http://example:8080/v1/",
        default_model="qwen3-8b",
        temperature=0.5,
    )
    session = service.build_session(cfg)
    info = json.loads(session.model_info())
    assert info["name"] == "qwen3-8b"
    assert info["base_url"] == "http://example:8080/v1"
    assert info["temperature"] == 0.5
    assert info["tools_count"] == 6
    history = session.get_history()
    assert history[0].role == "system"
    assert "read_file" in history[0].content


def test_run_chat_and_history_snapshots(tmp_path, monkeypatch):
    monkeypatch.setattr(service, "_store", JsonHistoryStore(tmp_path / ".storage"))
    session = ChatSession(EchoClient(), build_default_registry(), SessionConfig(model="local-model"))

    reply = service.run_chat("ping", session=session)
    assert reply["content"] == "echo: ping"
    assert reply["used_tools"] is False
    assert reply["usage"]["total_tokens"] == 3
    assert reply["display"] == "echo: ping"

    name = service.save_history("first", session=session)
    assert service.list_histories() == ["first"]
    session.clear_history()
    assert service.load_history(name, session=session) == 2
    assert [m.content for m in session.get_history()] == ["ping", "echo: ping"]
