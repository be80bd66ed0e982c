"""模型传输层。

该包下的模块负责：
- 定义 ContentGenerator 抽象接口 (base)。
- 维护默认模型、降级模型与认证方式 (registry)。
- 提供 OpenAI 兼容协议的具体实现 (openai_compatible)。
"""

from typing import Optional

from chat_core.config.settings import ChatSettings, settings
from chat_core.providers.base import ContentGenerator
from chat_core.providers.openai_compatible import OpenAICompatibleGenerator


def create_content_generator(cfg: Optional[ChatSettings] = None) -> ContentGenerator:
    """根据配置创建 ContentGenerator，默认使用全局 settings。"""

    return OpenAICompatibleGenerator(cfg or settings)


__all__ = ["ContentGenerator", "OpenAICompatibleGenerator", "create_content_generator"]
