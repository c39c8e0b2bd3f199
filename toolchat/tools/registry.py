"""工具注册表与分发。

ToolRegistry 在构造时一次性登记全部工具，之后只读：
- definitions(): 提供给模型的工具 schema 列表（保持登记顺序）。
- dispatch(call): 解析并校验参数后执行工具。工具层面的任何失败
  （未知工具、参数错误、安全校验、限流、执行异常）都会变成
  is_error=True 的 ToolResult，交给模型自行调整，不会中止本轮对话。
  只有取消信号会继续向上抛出。
"""

from __future__ import annotations

import json
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pydantic

from toolchat.domain.exceptions import (
    OperationCancelled,
    ToolArgumentError,
    ToolError,
    ToolNotFoundError,
)
from toolchat.infrastructure.logging.logger import logger
from toolchat.tools.definitions import Tool, ToolCall, ToolDef, ToolResult
from toolchat.tools.filesystem import filesystem_tools
from toolchat.tools.rate_limiter import RateLimiter
from toolchat.tools.security import SecurityGuard
from toolchat.tools.websearch import WebSearchTool


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]):
        registered: "OrderedDict[str, Tool]" = OrderedDict()
        for tool in tools:
            if tool.name in registered:
                raise ValueError(f"Tool '{tool.name}' is already registered.")
            registered[tool.name] = tool
        self._tools: Mapping[str, Tool] = registered

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def definitions(self) -> List[ToolDef]:
        return [tool.definition for tool in self._tools.values()]

    def dispatch(self, call: ToolCall, cancel: Optional[threading.Event] = None) -> ToolResult:
        log_ctx = {"tool_name": call.name, "tool_call_id": call.id}
        try:
            content = self._execute(call, cancel)
        except OperationCancelled:
            raise
        except ToolError as exc:
            logger.warning("Tool call rejected", extra={"extra": {**log_ctx, "code": exc.code, "error": exc.message}})
            return self._error_result(call, exc.message)
        except Exception as exc:  # noqa: BLE001 - 需要把异常转换为工具错误
            logger.error("Tool execution failed", extra={"extra": {**log_ctx, "error": repr(exc)}})
            return self._error_result(call, str(exc) or exc.__class__.__name__)
        logger.info(
            "Tool execution finished",
            extra={"extra": {**log_ctx, "result_preview": content[:200]}},
        )
        return ToolResult(call_id=call.id, name=call.name, content=content)

    def _execute(self, call: ToolCall, cancel: Optional[threading.Event]) -> str:
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolNotFoundError(code="TOOL_NOT_FOUND", message=f"tool not found: {call.name}")
        try:
            args = tool.Arguments.model_validate(self.parse_arguments(call))
        except pydantic.ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ToolArgumentError(code="INVALID_ARGUMENTS", message=f"invalid arguments: {problems}")
        Tool.check_cancelled(cancel)
        return tool.execute(args, cancel)

    @staticmethod
    def parse_arguments(call: ToolCall) -> Dict[str, Any]:
        raw = (call.arguments or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(code="BAD_ARGUMENTS", message=f"parse tool arguments: {exc}")
        if not isinstance(data, dict):
            raise ToolArgumentError(
                code="BAD_ARGUMENTS",
                message=f"parse tool arguments: expected a JSON object, got {type(data).__name__}",
            )
        return data

    @staticmethod
    def _error_result(call: ToolCall, reason: str) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            name=call.name,
            content=f"Error executing tool {call.name}: {reason}",
            is_error=True,
        )


def default_tools(
    guard: SecurityGuard,
    limiter: RateLimiter,
    brave_api_key: Optional[str] = None,
    search_timeout: float = 10.0,
) -> List[Tool]:
    return [
        *filesystem_tools(guard),
        WebSearchTool(limiter, brave_api_key=brave_api_key, timeout=search_timeout),
    ]


def build_default_registry(
    guard: Optional[SecurityGuard] = None,
    limiter: Optional[RateLimiter] = None,
    brave_api_key: Optional[str] = None,
    search_timeout: float = 10.0,
) -> ToolRegistry:
    """文件工具 + 网页搜索。未显式传入的 guard / limiter 会新建独立实例。"""

    return ToolRegistry(
        default_tools(
            guard or SecurityGuard(),
            limiter or RateLimiter.per_minute(5),
            brave_api_key=brave_api_key,
            search_timeout=search_timeout,
        )
    )
