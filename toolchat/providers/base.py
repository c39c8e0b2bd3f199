"""Provider 抽象接口。

ChatSession 不直接依赖具体的 HTTP 实现，而是依赖此协议：
测试中可以用假的客户端替换，生产中使用 OpenAICompatibleClient。
"""

import threading
from typing import Callable, Iterable, List, Optional, Protocol

from toolchat.domain.models import ChatRequest, ChatResult, ChatStreamChunk, StreamFragment

FragmentCallback = Callable[[StreamFragment], None]


class CompletionClient(Protocol):
    """chat/completions 客户端协议。

    实现者需要提供：
    - base_url: 服务地址，用于展示模型信息。
    - chat(req): 一次阻塞调用，返回 ChatResult。
    - chat_stream(req, cancel): 逐帧产出 ChatStreamChunk。
    - complete_stream(req, on_fragment, cancel): 流式调用，逐片段回调，
      结束后返回组装好的 ChatResult。
    """

    base_url: str

    def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest, cancel: Optional[threading.Event] = None) -> Iterable[ChatStreamChunk]:
        ...

    def complete_stream(
        self,
        req: ChatRequest,
        on_fragment: FragmentCallback,
        cancel: Optional[threading.Event] = None,
    ) -> ChatResult:
        ...

    def list_models(self) -> List[str]:
        ...
