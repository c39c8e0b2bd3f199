"""Toolchat 顶层包。

提供一个面向 OpenAI 兼容接口的工具调用型对话引擎：
会话循环、流式解码客户端、工具注册与分发，以及文件沙箱与限流。
"""

from toolchat.agents.chat_session import ChatSession, SessionConfig
from toolchat.api.service import build_session, run_chat

__all__ = ["ChatSession", "SessionConfig", "build_session", "run_chat"]
