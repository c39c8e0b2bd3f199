"""工具数据结构定义。

这些类型描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给模型（ToolDef / ToolParam）。
- 在 ChatSession 中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
- 以类型化的方式实现具体工具（Tool：参数模型 + execute）。
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel

from toolchat.domain.exceptions import OperationCancelled


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供模型调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def parameters_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = dict(param.schema or {"type": "string"})
            if param.description:
                schema["description"] = param.description
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}

    def to_openai(self) -> Dict[str, Any]:
        """转成 OpenAI function tool 描述。"""

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。

    arguments 保留模型返回的原始 JSON 文本，由 ToolRegistry 在分发时解析校验。
    """

    id: str
    name: str
    arguments: str = "{}"


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    name: str
    content: str
    is_error: bool = False


class Tool(ABC):
    """类型化工具基类。

    子类需要提供：
    - definition: 暴露给模型的 ToolDef。
    - Arguments: pydantic 参数模型，ToolRegistry 用它校验模型给出的参数。
    - execute(args, cancel): 执行工具，成功返回文本，失败直接抛异常。
    """

    definition: ClassVar[ToolDef]
    Arguments: ClassVar[Type[BaseModel]]

    @property
    def name(self) -> str:
        return self.definition.name

    @abstractmethod
    def execute(self, args: BaseModel, cancel: Optional[threading.Event] = None) -> str:
        ...

    @staticmethod
    def check_cancelled(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("tool execution cancelled")
