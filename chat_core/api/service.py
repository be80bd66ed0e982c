"""对外 API 服务模块。

SessionFactory 为同一进程内的多个 ChatSession 提供共享的
BehaviorLogWriter 和 ContentGenerator，保证一个进程只写一组行为日志文件，
响应去重窗口也在所有会话之间共享。
"""

from typing import Any, Optional, Sequence

from chat_core.agents.chat_session import ChatSession
from chat_core.agents.retry import RetryOptions
from chat_core.config.session import FallbackHandler, SessionConfig
from chat_core.config.settings import ChatSettings, settings
from chat_core.domain.models import GenerateContentConfig, Turn
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers import create_content_generator
from chat_core.providers.base import ContentGenerator
from chat_core.telemetry.behavior_log import BehaviorLogWriter


class SessionFactory:
    def __init__(
        self,
        cfg: Optional[ChatSettings] = None,
        content_generator: Optional[ContentGenerator] = None,
        behavior_log: Optional[BehaviorLogWriter] = None,
    ):
        self._settings = cfg or settings
        self._content_generator = content_generator or create_content_generator(self._settings)
        self._behavior_log = behavior_log or BehaviorLogWriter.from_settings(self._settings)

    @property
    def behavior_log(self) -> BehaviorLogWriter:
        return self._behavior_log

    def create_session(
        self,
        system_instruction: Any = None,
        tools: Optional[Sequence[Any]] = None,
        history: Optional[Sequence[Turn]] = None,
        fallback_handler: Optional[FallbackHandler] = None,
        **overrides: Any,
    ) -> ChatSession:
        """创建一个新会话。

        Args:
            system_instruction: 系统指令（字符串、{"text": ...} 或 {"parts": [...]}）。
            tools: 工具声明列表。
            history: 初始历史。
            fallback_handler: 持续限流时询问是否降级的回调。
            overrides: 覆盖 SessionConfig 的字段，例如 model、auth_type。
        """
        config = SessionConfig.from_settings(
            self._settings, fallback_handler=fallback_handler, **overrides
        )
        session = ChatSession(
            config=config,
            content_generator=self._content_generator,
            behavior_log=self._behavior_log,
            generation_config=GenerateContentConfig(
                system_instruction=system_instruction, tools=list(tools or [])
            ),
            history=history,
            retry_options=RetryOptions.from_settings(self._settings),
        )
        logger.info(
            "Created chat session",
            extra={"extra": {"session_id": config.session_id, "model": config.model}},
        )
        return session

    def log_typing_start(self, prompt_id: str) -> bool:
        return self._behavior_log.log_typing_start(prompt_id)

    def log_prompt_submit(self, prompt_id: str, prompt: str) -> bool:
        return self._behavior_log.log_prompt_submit(prompt_id, prompt)

    def log_prompt_cancel(self, prompt_id: str) -> bool:
        return self._behavior_log.log_prompt_cancel(prompt_id)


_factory: Optional[SessionFactory] = None


def get_default_factory() -> SessionFactory:
    """获取默认的 SessionFactory 实例（单例）。"""
    global _factory
    if _factory is None:
        _factory = SessionFactory()
    return _factory
