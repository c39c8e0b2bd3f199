"""LLM Provider 集成层。

该包下的模块负责：
- 定义客户端抽象接口 (base)。
- 提供 OpenAI 兼容协议的具体实现 (openai_client)。
"""

from typing import Optional

from toolchat.config.settings import Settings, settings
from toolchat.providers.base import CompletionClient
from toolchat.providers.openai_client import OpenAICompatibleClient


def create_client(cfg: Optional[Settings] = None) -> CompletionClient:
    """根据配置创建客户端实例，默认取全局 settings。"""

    return OpenAICompatibleClient.from_settings(cfg or settings)
