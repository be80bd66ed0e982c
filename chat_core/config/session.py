"""Session-scoped configuration handed to ChatSession."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from chat_core.config.settings import ChatSettings


# (current_model, fallback_model, error) -> 是否接受降级；可以是同步或异步函数。
# 只有返回 False 或 None 视为拒绝，其他返回值都视为接受。
FallbackHandler = Callable[[str, str, Optional[BaseException]], Union[bool, None, Awaitable[Optional[bool]]]]


@dataclass
class SessionConfig:
    """会话级配置。

    Attributes:
        session_id: 写入每条行为日志的会话标识。
        model: 当前使用的模型，降级时会被 ChatSession 替换。
        auth_type: 认证方式，决定持续限流时的降级策略。
        telemetry_enabled: 是否记录行为日志。
        fallback_handler: 持续 429 时询问是否切换到降级模型的回调。
        fallback_mode: 是否已经切换到降级模型。
    """

    session_id: str
    model: str
    auth_type: Optional[str] = None
    telemetry_enabled: bool = True
    fallback_handler: Optional[FallbackHandler] = None
    fallback_mode: bool = False

    @classmethod
    def from_settings(cls, cfg: ChatSettings, **overrides: Any) -> "SessionConfig":
        values = {
            "session_id": cfg.session_id,
            "model": cfg.model,
            "auth_type": cfg.auth_type,
            "telemetry_enabled": cfg.telemetry_enabled,
        }
        values.update(overrides)
        return cls(**values)
