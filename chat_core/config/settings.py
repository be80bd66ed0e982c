"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次为：
构造参数 > 环境变量 > .env > config.yaml > secrets。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type
from uuid import uuid4

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


DEFAULT_LOG_MAX_FILE_BYTES = 10 * 1024 * 1024


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
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


class YamlConfigSource(PydanticBaseSettingsSource):
    """把 config.yaml 作为一个配置来源，只取已声明的字段。"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        data = _load_config_from_yaml()
        return {k: v for k, v in data.items() if k in self.settings_cls.model_fields}


class ChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 会话 / 模型 ----
    session_id: str = Field(default_factory=lambda: uuid4().hex, description="当前进程的会话 ID")
    model: str = Field(default="qwen3-coder-plus", description="默认使用的模型")
    auth_type: str = Field(default="api-key", description="认证方式，如 api-key、oauth-personal、qwen-oauth")

    # ---- 传输 ----
    api_key: Optional[str] = Field(default=None, description="模型 API 密钥")
    base_url: str = Field(
        default="https://dashscope.aliyuncs.com/compatible-mode/v1",
        description="OpenAI 兼容接口的基础 URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 行为日志 ----
    telemetry_enabled: bool = Field(default=True, description="是否写入行为日志")
    log_dir: str = Field(default="logs", description="日志目录")
    log_max_file_bytes: int = Field(
        default=DEFAULT_LOG_MAX_FILE_BYTES,
        ge=1024,
        description="单个行为日志文件的大小上限（字节）",
    )
    dedup_window_size: int = Field(default=100, ge=2, description="响应去重窗口容量")
    diagnostic_log_file: str = Field(default="chat_core.log", description="诊断日志文件名")

    # ---- 重试 ----
    retry_max_attempts: int = Field(default=5, ge=1, le=20, description="单次请求最大尝试次数")
    retry_initial_delay: float = Field(default=5.0, ge=0.0, description="首次退避时间（秒）")
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="退避时间上限（秒）")

    model_config = SettingsConfigDict(
        env_prefix="CHAT_CORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSource(settings_cls),
            file_secret_settings,
        )


settings = ChatSettings()
