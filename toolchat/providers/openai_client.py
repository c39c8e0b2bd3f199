"""OpenAI 兼容接口（LM Studio / Ollama / vLLM 等）的客户端。

本模块负责：

1. 接收统一的 ChatRequest，转换为 chat/completions 请求 JSON。
2. 调用 HTTP 接口，把网络错误、非 2xx、响应解析失败统一转换为业务异常。
3. 将响应 JSON 解析为统一的 ChatResult / ChatMessage 结构（含工具调用）。
4. 流式模式下逐行解码 SSE 帧：空行和注释忽略，`data: [DONE]` 结束，
   单帧 JSON 损坏时跳过而不中断整个流；读取层面的 I/O 错误直接中止。

所有请求都不会自动重试，重试策略由调用方决定。
"""

import json
import threading
from typing import Any, Dict, Iterator, List, Optional

import httpx

from toolchat.domain.exceptions import ApiError, NetworkError, OperationCancelled, RateLimitError
from toolchat.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
    StreamFragment,
    message_to_payload,
)
from toolchat.infrastructure.logging.logger import logger
from toolchat.providers.base import FragmentCallback
from toolchat.tools.definitions import ToolCall

DONE_SENTINEL = "[DONE]"


class OpenAICompatibleClient:
    """OpenAI 协议客户端实现。

    - base_url: 形如 http://localhost:1234/v1，请求发往 {base_url}/chat/completions。
    - api_key: 可选；配置后以 `Authorization: Bearer` 发送。
    - timeout: 单次 HTTP 请求超时（秒）。
    """

    name = "openai-compatible"

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    @classmethod
    def from_settings(cls, cfg) -> "OpenAICompatibleClient":
        return cls(cfg.openai_base_url, api_key=cfg.openai_api_key, timeout=cfg.http_timeout)

    # ---- 非流式 ----

    def chat(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式对话调用。"""

        payload = self._build_payload(req, stream=False)
        self._log_request(req, stream=False)
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.RequestError as e:
            # 网络错误：连接被拒绝、超时等
            raise NetworkError(code="NETWORK_ERROR", message=f"send request: {e}")
        self._raise_for_status(resp.status_code, resp)
        return self._parse_response(self._decode_json(resp), req)

    # ---- 流式 ----

    def chat_stream(self, req: ChatRequest, cancel: Optional[threading.Event] = None) -> Iterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐帧 yield ChatStreamChunk。

        每处理一行之前检查 cancel；一旦触发立即停止读取并抛出 OperationCancelled。
        """

        payload = self._build_payload(req, stream=True)
        self._log_request(req, stream=True)
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(stream=True),
                ) as resp:
                    if not 200 <= resp.status_code < 300:
                        resp.read()
                        self._raise_for_status(resp.status_code, resp)
                    for line in resp.iter_lines():
                        if cancel is not None and cancel.is_set():
                            raise OperationCancelled("stream cancelled")
                        frame = self._decode_frame(line)
                        if frame is None:
                            continue
                        if frame == DONE_SENTINEL:
                            return
                        try:
                            chunk = self._parse_stream_chunk(frame, req)
                        except ApiError as e:
                            logger.warning(
                                "Skipped malformed stream frame",
                                extra={"extra": {"frame": json.dumps(frame, ensure_ascii=False)[:200], "error": e.message}},
                            )
                            continue
                        yield chunk
        except (httpx.RequestError, httpx.StreamError) as e:
            raise NetworkError(code="STREAM_READ_ERROR", message=f"error reading streaming response: {e}")

    def complete_stream(
        self,
        req: ChatRequest,
        on_fragment: FragmentCallback,
        cancel: Optional[threading.Event] = None,
    ) -> ChatResult:
        """流式调用并把每个增量片段交给 on_fragment，结束后返回组装好的结果。

        思考片段与正文片段分别回调、分别累积；工具调用按 delta.index 拼装。
        """

        content_parts: List[str] = []
        reasoning_parts: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage: Optional[ChatUsage] = None
        model = req.model

        for chunk in self.chat_stream(req, cancel):
            model = chunk.model or model
            if chunk.usage:
                usage = chunk.usage
            for choice in chunk.choices:
                if choice.index != 0:
                    continue
                delta = choice.delta
                if delta.reasoning:
                    reasoning_parts.append(delta.reasoning)
                    on_fragment(StreamFragment(kind="thinking", text=delta.reasoning))
                if delta.content:
                    content_parts.append(delta.content)
                    on_fragment(StreamFragment(kind="content", text=delta.content))
                for position, tc in enumerate(choice.tool_call_deltas):
                    self._merge_tool_call_delta(calls, position, tc)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        tool_calls = [
            ToolCall(
                id=entry["id"] or f"tool_call_{idx}",
                name=entry["name"],
                arguments=entry["arguments"],
            )
            for idx, entry in sorted(calls.items())
        ]
        message = ChatMessage(
            role="assistant",
            content="".join(content_parts),
            tool_calls=tool_calls or None,
            reasoning="".join(reasoning_parts) or None,
        )
        return ChatResult(
            model=model,
            choices=[ChatChoice(index=0, message=message, finish_reason=finish_reason)],
            usage=usage,
        )

    def list_models(self) -> List[str]:
        """GET {base_url}/models，返回服务端可用的模型 ID 列表。"""

        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.get(f"{self.base_url}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=f"send request: {e}")
        self._raise_for_status(resp.status_code, resp)
        data = self._decode_json(resp)
        models = [_as_dict(item, "model entry") for item in _as_list(data.get("data"), "data")]
        return [m["id"] for m in models if isinstance(m.get("id"), str) and m["id"]]

    # ---- 辅助方法 ----

    def _headers(self, stream: bool = False) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [message_to_payload(m) for m in req.messages],
            "temperature": req.temperature,
            "stream": stream,
        }
        if req.max_tokens:
            payload["max_tokens"] = req.max_tokens
        if req.tools:
            payload["tools"] = [tool.to_openai() for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    @staticmethod
    def _raise_for_status(status_code: int, resp: Any) -> None:
        if 200 <= status_code < 300:
            return
        body = getattr(resp, "text", "")
        if status_code == 429:
            # 限流错误交给上层决定是否重试
            raise RateLimitError(code="RATE_LIMIT", message=f"rate limited: {body}", http_status=429)
        raise ApiError(code="API_ERROR", message=f"API error ({status_code}): {body}", http_status=status_code)

    @staticmethod
    def _decode_json(resp: Any) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="DECODE_ERROR", message=f"decode response: {e}", http_status=502)
        if not isinstance(data, dict):
            raise ApiError(code="DECODE_ERROR", message="decode response: expected a JSON object", http_status=502)
        return data

    @staticmethod
    def _decode_frame(line: str) -> Optional[Any]:
        """解码一行 SSE。

        返回 None 表示该行应被忽略，返回 DONE_SENTINEL 表示流结束，
        否则返回解析后的 JSON 对象。
        """

        if not line or line.startswith(":"):
            return None
        text = line.strip()
        if not text.startswith("data:"):
            # event:/id:/retry: 等其他 SSE 字段对本协议无意义
            return None
        data = text[5:].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            return DONE_SENTINEL
        try:
            frame = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Skipped malformed stream frame", extra={"extra": {"frame": data[:200], "error": str(e)}})
            return None
        if not isinstance(frame, dict):
            logger.warning("Skipped non-object stream frame", extra={"extra": {"frame": data[:200]}})
            return None
        return frame

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult。

        结构不符合协议（choices 不是对象列表、message 不是对象等）时抛出
        ApiError(code="DECODE_ERROR")。
        """

        choices: List[ChatChoice] = []
        for i, ch in enumerate(_as_list(data.get("choices"), "choices")):
            ch = _as_dict(ch, "choice")
            choices.append(
                ChatChoice(
                    index=_as_index(ch.get("index"), i),
                    message=self._build_chat_message(_as_dict(ch.get("message"), "message")),
                    finish_reason=_as_text(ch.get("finish_reason"), "finish_reason"),
                )
            )
        return ChatResult(
            model=_as_text(data.get("model"), "model") or req.model,
            choices=choices,
            usage=_parse_usage(data.get("usage")),
            raw=data,
        )

    def _build_chat_message(self, payload: Dict[str, Any]) -> ChatMessage:
        """将单条 message 转换为 ChatMessage，兼容 tool_calls 与旧版 function_call。"""

        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(_as_list(payload.get("tool_calls"), "tool_calls")):
            call = _as_dict(call, "tool call")
            func = _as_dict(call.get("function"), "tool call function")
            tool_calls.append(
                ToolCall(
                    id=_as_text(call.get("id"), "tool call id") or f"tool_call_{idx}",
                    name=_as_text(func.get("name"), "tool name") or _as_text(call.get("name"), "tool name") or "",
                    arguments=self._raw_arguments(func.get("arguments")),
                )
            )

        function_call = _as_dict(payload.get("function_call"), "function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=_as_text(function_call.get("id"), "function_call id") or "function_call",
                    name=_as_text(function_call.get("name"), "function_call name") or "",
                    arguments=self._raw_arguments(function_call.get("arguments")),
                )
            )
        reasoning = _as_text(payload.get("reasoning"), "reasoning") or _as_text(
            payload.get("reasoning_content"), "reasoning_content"
        )
        return ChatMessage(
            role=_as_text(payload.get("role"), "role") or "assistant",
            content=_as_text(payload.get("content"), "content") or "",
            tool_calls=tool_calls or None,
            tool_call_id=_as_text(payload.get("tool_call_id"), "tool_call_id"),
            reasoning=reasoning or None,
        )

    @staticmethod
    def _raw_arguments(raw: Any) -> str:
        """arguments 保持原始文本；个别服务端直接返回对象时重新编码。"""

        if raw is None:
            return ""
        if isinstance(raw, str):
            return raw
        return json.dumps(raw, ensure_ascii=False)

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单帧增量。

        结构不符合协议时抛出 ApiError(code="DECODE_ERROR")，由 chat_stream 跳过该帧。
        """

        choices: List[ChatStreamChoice] = []
        for i, ch in enumerate(_as_list(data.get("choices"), "choices")):
            ch = _as_dict(ch, "choice")
            delta_payload = _as_dict(ch.get("delta"), "delta")
            reasoning = _as_text(delta_payload.get("reasoning"), "reasoning") or _as_text(
                delta_payload.get("reasoning_content"), "reasoning_content"
            )
            delta_msg = ChatMessage(
                role=_as_text(delta_payload.get("role"), "role") or "assistant",
                content=_as_text(delta_payload.get("content"), "content") or "",
                reasoning=reasoning or None,
            )
            tool_call_deltas = []
            for tc in _as_list(delta_payload.get("tool_calls"), "tool_calls"):
                tc = _as_dict(tc, "tool call delta")
                func = _as_dict(tc.get("function"), "tool call function")
                _as_index(tc.get("index"), 0)
                _as_text(tc.get("id"), "tool call id")
                _as_text(func.get("name"), "tool name")
                tool_call_deltas.append(tc)
            choices.append(
                ChatStreamChoice(
                    index=_as_index(ch.get("index"), i),
                    delta=delta_msg,
                    finish_reason=_as_text(ch.get("finish_reason"), "finish_reason"),
                    tool_call_deltas=tool_call_deltas,
                )
            )
        return ChatStreamChunk(
            model=_as_text(data.get("model"), "model") or req.model,
            choices=choices,
            usage=_parse_usage(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _merge_tool_call_delta(calls: Dict[int, Dict[str, str]], position: int, delta: Dict[str, Any]) -> None:
        idx = delta.get("index", position)
        entry = calls.setdefault(idx, {"id": "", "name": "", "arguments": ""})
        if delta.get("id"):
            entry["id"] = delta["id"]
        func = delta.get("function") or {}
        if func.get("name") and not entry["name"]:
            entry["name"] = func["name"]
        arguments = func.get("arguments")
        if arguments:
            entry["arguments"] += arguments if isinstance(arguments, str) else json.dumps(arguments)

    def _log_request(self, req: ChatRequest, stream: bool) -> None:
        logger.info(
            "Calling chat/completions",
            extra={
                "extra": {
                    "base_url": self.base_url,
                    "model": req.model,
                    "message_count": len(req.messages),
                    "tool_count": len(req.tools or []),
                    "stream": stream,
                }
            },
        )


def _malformed(what: str) -> ApiError:
    return ApiError(code="DECODE_ERROR", message=f"decode response: unexpected {what}", http_status=502)


def _as_dict(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _malformed(f"{what}: expected an object, got {type(value).__name__}")
    return value


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _malformed(f"{what}: expected a list, got {type(value).__name__}")
    return value


def _as_text(value: Any, what: str) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    raise _malformed(f"{what}: expected a string, got {type(value).__name__}")


def _as_index(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise _malformed(f"index: expected an integer, got {type(value).__name__}")
    return value


def _parse_usage(raw: Any) -> Optional[ChatUsage]:
    try:
        return ChatUsage.from_payload(_as_dict(raw, "usage"))
    except (TypeError, ValueError) as e:
        raise _malformed(f"usage: {e}")
