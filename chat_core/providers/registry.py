"""模型与认证方式配置。

集中维护默认模型、降级模型以及各认证方式的名称，
ChatSession 的降级策略只依赖这里的常量。
"""

from dataclasses import dataclass
from typing import Mapping


class AuthType:
    """认证方式名称。"""

    LOGIN_WITH_OAUTH = "oauth-personal"  # 个人 OAuth 登录，持续限流时可降级
    QWEN_OAUTH = "qwen-oauth"  # 厂商 OAuth，令牌刷新由传输层负责
    API_KEY = "api-key"
    VERTEX_AI = "vertex-ai"


@dataclass
class ModelConfig:
    """单个模型的配置。"""

    name: str
    max_output_tokens: int
    default_temperature: float


DEFAULT_MODEL = "qwen3-coder-plus"
FALLBACK_MODEL = "qwen3-coder-flash"


MODEL_REGISTRY: Mapping[str, ModelConfig] = {
    DEFAULT_MODEL: ModelConfig(name=DEFAULT_MODEL, max_output_tokens=65536, default_temperature=0.7),
    FALLBACK_MODEL: ModelConfig(name=FALLBACK_MODEL, max_output_tokens=32768, default_temperature=0.7),
}


def get_model_config(name: str) -> ModelConfig:
    """获取模型配置；未登记的模型使用保守的默认值。"""

    cfg = MODEL_REGISTRY.get(name)
    if cfg is not None:
        return cfg
    return ModelConfig(name=name, max_output_tokens=8192, default_temperature=0.7)
