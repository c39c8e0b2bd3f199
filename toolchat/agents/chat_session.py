"""对话会话：单个会话的多轮工具调用循环。

一次 send_message 即一"轮"（turn）：

1. 追加 user 消息并按 history_limit 裁剪历史。
2. 最多调用模型 max_iterations 次；每次把返回的 assistant 消息追加到历史。
3. 若带有工具调用，按收到的顺序逐个经 ToolRegistry 执行，每个调用追加一条
   tool 消息（tool_call_id 与调用 id 一致），然后继续下一次模型调用。
4. 没有工具调用时返回该 assistant 内容；达到上限时返回最近一条 assistant
   内容，并以 finish_reason="max_iterations" 标记，而不是报错。

传输层错误（NetworkError / ApiError / RateLimitError）直接中止本轮，不做重试；
取消信号在每次模型调用前检查，并传递给客户端与每个工具。
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from toolchat.domain.exceptions import ApiError, OperationCancelled
from toolchat.domain.models import (
    FINISH_MAX_ITERATIONS,
    AgenticResponse,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatUsage,
)
from toolchat.infrastructure.logging.logger import logger
from toolchat.providers.base import CompletionClient, FragmentCallback
from toolchat.tools.definitions import ToolCall
from toolchat.tools.registry import ToolRegistry

DEFAULT_MODEL = "openai/gpt-oss-20b"
MIN_TEMPERATURE, MAX_TEMPERATURE = 0.0, 1.0
MIN_MAX_TOKENS, MAX_MAX_TOKENS = 1, 8192


def clamp_temperature(value: float) -> float:
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, float(value)))


def clamp_max_tokens(value: int) -> int:
    return max(MIN_MAX_TOKENS, min(MAX_MAX_TOKENS, int(value)))


@dataclass
class SessionConfig:
    model: str = DEFAULT_MODEL
    temperature: float = 0.7
    max_tokens: int = 2048
    history_limit: int = 50  # 历史消息条数上限（含 system）
    max_iterations: int = 10  # 单轮最多调用模型的次数

    def __post_init__(self) -> None:
        self.model = self.model or DEFAULT_MODEL
        self.temperature = clamp_temperature(self.temperature)
        self.max_tokens = clamp_max_tokens(self.max_tokens)
        self.history_limit = max(2, int(self.history_limit))
        self.max_iterations = max(1, int(self.max_iterations))

    @classmethod
    def from_settings(cls, cfg) -> "SessionConfig":
        return cls(
            model=cfg.default_model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            history_limit=cfg.history_limit,
            max_iterations=cfg.max_iterations,
        )


class ChatSession:
    """一个会话对应一段对话历史；同一时间只允许一轮在进行。"""

    def __init__(
        self,
        client: CompletionClient,
        registry: ToolRegistry,
        config: Optional[SessionConfig] = None,
        system_prompt: Optional[str] = None,
    ):
        self._client = client
        self._registry = registry
        self._config = config or SessionConfig()
        self._history: List[ChatMessage] = []
        # 所有会话状态都在这把锁下读写；一轮对话全程持有
        self._lock = threading.Lock()
        if system_prompt:
            self._history.append(ChatMessage(role="system", content=system_prompt))

    # ---- 对话 ----

    def send_message(self, text: str, cancel: Optional[threading.Event] = None) -> AgenticResponse:
        """阻塞模式执行一轮对话。"""

        return self._run_turn(text, lambda req: self._client.chat(req), cancel, stream=False)

    def send_message_stream(
        self,
        text: str,
        on_fragment: FragmentCallback,
        cancel: Optional[threading.Event] = None,
    ) -> AgenticResponse:
        """流式模式执行一轮对话。

        每次模型调用都走流式接口，思考与正文片段到达时即回调 on_fragment；
        工具调用在流结束后由客户端组装完整，再按顺序执行。
        """

        return self._run_turn(
            text,
            lambda req: self._client.complete_stream(req, on_fragment, cancel),
            cancel,
            stream=True,
        )

    def _run_turn(
        self,
        text: str,
        call_model: Callable[[ChatRequest], ChatResult],
        cancel: Optional[threading.Event],
        stream: bool,
    ) -> AgenticResponse:
        with self._lock:
            start_time = time.time()
            log_ctx: Dict[str, Any] = {
                "trace_id": f"tr-{uuid4().hex}",
                "model": self._config.model,
                "stream": stream,
            }
            self._history.append(ChatMessage(role="user", content=text))
            self._trim_history(log_ctx)
            self._log(logging.INFO, "Turn started", log_ctx, history_len=len(self._history), content=text)

            usage = ChatUsage()
            used_tools = False
            last_content = ""
            max_iterations = self._config.max_iterations

            for iteration in range(1, max_iterations + 1):
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("turn cancelled", trace_id=log_ctx["trace_id"])

                req = self._build_request()
                self._log(
                    logging.INFO,
                    "Calling model",
                    log_ctx,
                    iteration=iteration,
                    max_iterations=max_iterations,
                    message_count=len(req.messages),
                )
                result = call_model(req)
                if not result.choices:
                    raise ApiError(code="EMPTY_RESPONSE", message="no response choices returned", http_status=502)

                choice = result.choices[0]
                reply = choice.message
                usage = usage.merge(result.usage)
                self._history.append(
                    ChatMessage(
                        role="assistant",
                        content=reply.content or "",
                        tool_calls=reply.tool_calls or None,
                        reasoning=reply.reasoning,
                    )
                )
                last_content = reply.content or ""

                if not reply.tool_calls:
                    self._log(
                        logging.INFO,
                        "Turn finished",
                        log_ctx,
                        iterations=iteration,
                        used_tools=used_tools,
                        finish_reason=choice.finish_reason,
                        total_tokens=usage.total_tokens,
                        elapsed_seconds=round(time.time() - start_time, 2),
                    )
                    return AgenticResponse(
                        content=last_content,
                        used_tools=used_tools,
                        finish_reason=choice.finish_reason,
                        usage=usage,
                        iterations=iteration,
                    )

                used_tools = True
                self._log(logging.INFO, "Executing tool calls", log_ctx, call_count=len(reply.tool_calls))
                for position, call in enumerate(reply.tool_calls):
                    self._log(
                        logging.INFO,
                        "Tool call received",
                        log_ctx,
                        tool_name=call.name,
                        tool_call_id=call.id,
                        tool_args=call.arguments,
                    )
                    try:
                        tool_result = self._registry.dispatch(call, cancel)
                    except OperationCancelled:
                        self._answer_cancelled_calls(reply.tool_calls[position:], log_ctx)
                        raise
                    self._history.append(
                        ChatMessage(role="tool", content=tool_result.content, tool_call_id=call.id)
                    )

            self._log(
                logging.WARNING,
                "Reached max iterations",
                log_ctx,
                max_iterations=max_iterations,
                elapsed_seconds=round(time.time() - start_time, 2),
            )
            return AgenticResponse(
                content=last_content,
                used_tools=used_tools,
                finish_reason=FINISH_MAX_ITERATIONS,
                usage=usage,
                iterations=max_iterations,
            )

    def _answer_cancelled_calls(self, calls: List[ToolCall], log_ctx: Dict[str, Any]) -> None:
        """给未执行的调用补上 tool 消息，保证每个 tool_call id 都有对应结果。"""

        for call in calls:
            self._history.append(
                ChatMessage(
                    role="tool",
                    content=f"Error executing tool {call.name}: tool execution cancelled",
                    tool_call_id=call.id,
                )
            )
        self._log(logging.WARNING, "Turn cancelled during tool calls", log_ctx, unanswered=len(calls))

    def _build_request(self) -> ChatRequest:
        tools = self._registry.definitions()
        return ChatRequest(
            model=self._config.model,
            messages=list(self._history),
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            tools=tools or None,
        )

    def _trim_history(self, log_ctx: Dict[str, Any]) -> None:
        """超过上限时保留开头的 system 消息和最近的消息。

        裁剪后若开头是 tool 消息（其 assistant 已被裁掉），一并丢弃。
        """

        limit = self._config.history_limit
        before = len(self._history)
        if before <= limit:
            return
        head: List[ChatMessage] = []
        body = self._history
        if body[0].role == "system":
            head, body = body[:1], body[1:]
        body = body[-(limit - len(head)):]
        while body and body[0].role == "tool":
            body = body[1:]
        self._history = head + body
        self._log(logging.INFO, "Trimmed history", log_ctx, limit=limit, trimmed=before - len(self._history))

    # ---- 设置 ----

    def set_temperature(self, value: float) -> float:
        with self._lock:
            self._config.temperature = clamp_temperature(value)
            return self._config.temperature

    def get_temperature(self) -> float:
        with self._lock:
            return self._config.temperature

    def set_max_tokens(self, value: int) -> int:
        with self._lock:
            self._config.max_tokens = clamp_max_tokens(value)
            return self._config.max_tokens

    def get_max_tokens(self) -> int:
        with self._lock:
            return self._config.max_tokens

    def set_model(self, model: str) -> None:
        with self._lock:
            self._config.model = model

    def get_model(self) -> str:
        with self._lock:
            return self._config.model

    def set_system_message(self, content: str) -> None:
        """替换（而不是追加）开头的 system 消息。"""

        with self._lock:
            message = ChatMessage(role="system", content=content)
            if self._history and self._history[0].role == "system":
                self._history[0] = message
            else:
                self._history.insert(0, message)

    # ---- 历史 ----

    def get_history(self) -> List[ChatMessage]:
        with self._lock:
            return list(self._history)

    def set_history(self, history: List[ChatMessage]) -> None:
        with self._lock:
            self._history = list(history)

    def clear_history(self) -> None:
        with self._lock:
            self._history = []

    # ---- 模型信息 ----

    def list_models(self) -> List[str]:
        return self._client.list_models()

    def model_info(self) -> str:
        with self._lock:
            info = {
                "name": self._config.model,
                "type": "OpenAI Compatible",
                "base_url": self._client.base_url,
                "temperature": self._config.temperature,
                "max_tokens": self._config.max_tokens,
                "tools_count": len(self._registry),
                "tools": self._registry.names,
            }
        return json.dumps(info, indent=2, ensure_ascii=False)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
