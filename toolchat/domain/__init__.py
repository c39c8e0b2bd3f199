"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult / AgenticResponse 模型。
- exceptions: 业务异常类型定义。
"""
