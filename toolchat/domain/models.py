"""统一的对话与结果数据模型。

本模块定义了 ChatSession 与 CompletionClient 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant/tool）。
- ChatRequest: 发给 OpenAI 兼容接口的完整请求。
- ChatResult / ChatStreamChunk: 从接口解析后的统一响应结果（非流式 / 流式）。
- StreamFragment: 流式解码后交给调用方回调的增量片段（思考 / 正文）。
- AgenticResponse: 一轮 send_message 的最终结果。

Provider 适配层负责在 HTTP JSON 与这些模型之间做转换；
历史记录的持久化也只依赖 messages_to_payload / messages_from_payload。
"""

import json
from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List, Iterable, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from toolchat.tools.definitions import ToolCall, ToolDef


# 消息角色（与 OpenAI 协议的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]

# 达到单轮迭代上限时使用的合成 finish_reason
FINISH_MAX_ITERATIONS = "max_iterations"


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色。
    - content: 纯文本内容。
    - meta: 附加元数据，不发给服务端，只用于日志与展示。
    - tool_calls: role 为 "assistant" 且模型触发工具调用时的调用列表（保持顺序）。
    - tool_call_id: role 为 "tool" 时，对应上一条 assistant 消息中的某个调用 id。
    - reasoning: 流式模式下累积的思考内容，仅用于展示，不回传给模型。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)
    tool_calls: Optional[List["ToolCall"]] = None
    tool_call_id: Optional[str] = None
    reasoning: Optional[str] = None


@dataclass
class ChatRequest:
    """一次完整的 chat/completions 请求。"""

    model: str
    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    # 工具定义列表：由 ToolRegistry 提供，序列化为 function tool schema
    tools: Optional[List["ToolDef"]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"


@dataclass
class ChatUsage:
    """服务端返回的 token 统计信息。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def merge(self, other: Optional["ChatUsage"]) -> "ChatUsage":
        if other is None:
            return ChatUsage(self.prompt_tokens, self.completion_tokens, self.total_tokens)
        return ChatUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, raw: Optional[Dict[str, Any]]) -> Optional["ChatUsage"]:
        if not raw:
            return None
        return cls(
            prompt_tokens=int(raw.get("prompt_tokens") or 0),
            completion_tokens=int(raw.get("completion_tokens") or 0),
            total_tokens=int(raw.get("total_tokens") or 0),
        )


@dataclass
class ChatChoice:
    """单个候选回答（目前只使用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用（或已组装完毕的流式调用）的结果。"""

    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None
    # 原始 delta.tool_calls，按 index 分片到达，由客户端负责拼装
    tool_call_deltas: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ChatStreamChunk:
    """流式对话的一帧增量，结构与 ChatResult 类似。"""

    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class StreamFragment:
    """交给调用方回调的一段增量文本。

    kind 为 "thinking" 时表示模型的中间推理，为 "content" 时表示正文；
    两者永远不会合并到同一个片段里。
    """

    kind: Literal["thinking", "content"]
    text: str


@dataclass
class AgenticResponse:
    """一轮 send_message 的结果。"""

    content: str
    used_tools: bool
    finish_reason: Optional[str]
    usage: ChatUsage = field(default_factory=ChatUsage)
    iterations: int = 0

    @property
    def hit_iteration_cap(self) -> bool:
        return self.finish_reason == FINISH_MAX_ITERATIONS

    def format_response(self) -> str:
        """拼接供终端展示的文本。"""

        parts = [self.content]
        if self.used_tools:
            parts.append("[Tools were used to generate this response]")
        if self.hit_iteration_cap:
            parts.append(f"[Stopped after {self.iterations} model calls: max iterations reached]")
        return "\n\n".join(parts)


def message_to_payload(message: ChatMessage) -> Dict[str, Any]:
    """将 ChatMessage 转成 OpenAI 协议的 message JSON。"""

    payload: Dict[str, Any] = {"role": message.role, "content": message.content or ""}
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def messages_to_payload(messages: Iterable[ChatMessage]) -> List[Dict[str, Any]]:
    return [message_to_payload(m) for m in messages]


def messages_from_payload(items: Iterable[Dict[str, Any]]) -> List[ChatMessage]:
    """把 messages_to_payload 的输出还原为 ChatMessage 列表（用于加载历史）。"""

    from toolchat.tools.definitions import ToolCall

    messages: List[ChatMessage] = []
    for item in items:
        calls = []
        for idx, raw_call in enumerate(item.get("tool_calls") or []):
            func = raw_call.get("function") or {}
            arguments = func.get("arguments")
            calls.append(
                ToolCall(
                    id=raw_call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or "",
                    arguments=arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
                )
            )
        messages.append(
            ChatMessage(
                role=item.get("role") or "user",
                content=item.get("content") or "",
                tool_calls=calls or None,
                tool_call_id=item.get("tool_call_id"),
            )
        )
    return messages
