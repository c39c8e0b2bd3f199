"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。

核心组件（ChatSession / 客户端 / 工具）不直接读取这里的 settings，
而是由 api.service 之类的胶水代码读取后显式注入。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("TOOLCHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 模型服务 ----
    openai_base_url: str = Field(
        default="http://localhost:1234/v1",
        description="OpenAI 兼容接口的基础 URL（LM Studio 默认端口 1234）",
    )
    openai_api_key: Optional[str] = Field(default=None, description="Bearer token，可为空")
    default_model: str = Field(default="openai/gpt-oss-20b", description="默认模型 ID")
    temperature: float = Field(default=0.3, ge=0.0, le=1.0, description="生成温度")
    max_tokens: int = Field(default=2048, ge=1, le=8192, description="单次回复最大 token 数")
    http_timeout: float = Field(default=30.0, ge=1.0, description="模型请求超时时间（秒）")

    # ---- 会话 ----
    history_limit: int = Field(default=50, ge=2, description="会话历史保留的最大消息数")
    max_iterations: int = Field(default=10, ge=1, le=50, description="单轮对话内模型调用次数上限")
    show_thinking: bool = Field(default=False, description="流式模式下是否展示思考内容")

    # ---- 工具 ----
    brave_api_key: Optional[str] = Field(default=None, description="Brave Search API 密钥")
    search_timeout: float = Field(default=10.0, ge=1.0, description="网页搜索请求超时（秒）")
    web_search_per_minute: int = Field(default=5, ge=1, description="每分钟允许的网页搜索次数")
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="文件工具可访问的根目录",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="历史记录存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("openai_api_key", "brave_api_key")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
