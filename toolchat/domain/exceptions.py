"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在调用方做统一捕获与用户提示。

错误分三类：
- 传输错误（NetworkError / ApiError / RateLimitError）：中止本轮对话。
- 工具错误（ToolError 及其子类）：被工具注册表捕获，转成 tool 消息内容。
- 取消（OperationCancelled）：外部取消信号触发，中止本轮对话。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "API_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 tool_name、path 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、流读取中断等。"""


class ApiError(BusinessError):
    """服务端返回非 2xx 或响应体无法解析时抛出。"""


class RateLimitError(BusinessError):
    """模型服务端返回 429。核心不做重试，交给调用方决定。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class OperationCancelled(BusinessError):
    """调用方通过取消信号中止了正在进行的请求或工具调用。"""

    def __init__(self, message: str = "operation cancelled", **extra):
        super().__init__(code="CANCELLED", message=message, http_status=499, **extra)


class ToolError(BusinessError):
    """工具层错误基类，会被 ToolRegistry 转换为 tool 消息内容而不是中止对话。"""


class ToolNotFoundError(ToolError):
    """模型请求了未注册的工具。"""


class ToolArgumentError(ToolError):
    """工具参数无法解析或未通过校验。"""


class SecurityViolation(ToolError):
    """SecurityGuard 拒绝了路径或内容大小。"""


class RateLimitExceeded(ToolError):
    """本地 RateLimiter 拒绝了本次工具调用。"""
