"""Chat Core 顶层包。

该包提供会话级聊天客户端与关联的行为日志记录，
包括配置加载、领域模型、重试与降级策略、请求分类、
OpenAI 兼容传输层与滚动 JSONL 行为日志。
"""

from chat_core.agents.chat_session import ChatSession, SessionState
from chat_core.api.service import SessionFactory, get_default_factory
from chat_core.config.session import SessionConfig
from chat_core.telemetry.behavior_log import BehaviorLogWriter

__all__ = [
    "BehaviorLogWriter",
    "ChatSession",
    "SessionConfig",
    "SessionFactory",
    "SessionState",
    "get_default_factory",
]
