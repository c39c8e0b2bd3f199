"""对外 API 服务模块。

读取 settings，组装 SecurityGuard / RateLimiter / ToolRegistry /
客户端 / ChatSession，并提供简化的函数接口供命令行等上层调用。
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from toolchat.agents.chat_session import ChatSession, SessionConfig
from toolchat.config.settings import Settings, settings
from toolchat.domain.models import AgenticResponse
from toolchat.infrastructure.logging.logger import logger
from toolchat.infrastructure.storage.json_store import JsonHistoryStore
from toolchat.prompts import load_system_prompt
from toolchat.providers import create_client
from toolchat.providers.base import FragmentCallback
from toolchat.tools.rate_limiter import RateLimiter
from toolchat.tools.registry import build_default_registry
from toolchat.tools.security import SecurityGuard, SecurityPolicy


_session: Optional[ChatSession] = None
_store: Optional[JsonHistoryStore] = None


def build_session(cfg: Optional[Settings] = None, system_prompt: Optional[str] = None) -> ChatSession:
    """按配置创建一个全新的 ChatSession（每次调用都有独立的限流器）。"""

    cfg = cfg or settings
    guard = SecurityGuard(SecurityPolicy(root=Path(cfg.workspace_root)))
    limiter = RateLimiter.per_minute(cfg.web_search_per_minute)
    registry = build_default_registry(
        guard=guard,
        limiter=limiter,
        brave_api_key=cfg.brave_api_key,
        search_timeout=cfg.search_timeout,
    )
    return ChatSession(
        client=create_client(cfg),
        registry=registry,
        config=SessionConfig.from_settings(cfg),
        system_prompt=system_prompt if system_prompt is not None else load_system_prompt(),
    )


def get_default_session() -> ChatSession:
    """获取默认会话实例（单例）。"""
    global _session
    if _session is None:
        _session = build_session()
    return _session


def get_history_store() -> JsonHistoryStore:
    global _store
    if _store is None:
        _store = JsonHistoryStore(root=settings.storage_root)
    return _store


def _response_to_dict(resp: AgenticResponse) -> Dict[str, Any]:
    return {
        "content": resp.content,
        "used_tools": resp.used_tools,
        "finish_reason": resp.finish_reason,
        "iterations": resp.iterations,
        "usage": {
            "prompt_tokens": resp.usage.prompt_tokens,
            "completion_tokens": resp.usage.completion_tokens,
            "total_tokens": resp.usage.total_tokens,
        },
        "display": resp.format_response(),
    }


def run_chat(
    user_input: str,
    on_fragment: Optional[FragmentCallback] = None,
    cancel: Optional[threading.Event] = None,
    session: Optional[ChatSession] = None,
) -> Dict[str, Any]:
    """运行一轮对话。

    Args:
        user_input: 用户输入内容
        on_fragment: 提供时使用流式模式，每个增量片段都会回调
        cancel: 取消信号
        session: 指定会话，默认使用单例会话

    Returns:
        包含回复内容、是否用过工具、结束原因、迭代次数与 token 统计的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    chat = session or get_default_session()
    try:
        if on_fragment is not None:
            resp = chat.send_message_stream(user_input, on_fragment, cancel)
        else:
            resp = chat.send_message(user_input, cancel)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {"model": chat.get_model(), "error": str(e)}})
        raise
    return _response_to_dict(resp)


def save_history(name: Optional[str] = None, session: Optional[ChatSession] = None) -> str:
    """把会话历史保存为命名快照，返回快照名。"""
    chat = session or get_default_session()
    key = name or JsonHistoryStore.default_name()
    get_history_store().save(key, chat.get_history())
    return key


def load_history(name: str, session: Optional[ChatSession] = None) -> int:
    """用命名快照替换会话历史，返回加载的消息条数。"""
    chat = session or get_default_session()
    messages = get_history_store().load(name)
    chat.set_history(messages)
    return len(messages)


def list_histories() -> List[str]:
    return get_history_store().list_names()
