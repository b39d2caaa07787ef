"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- OpenAI 兼容协议的通用实现 (compat) 与各厂商客户端 (openai_client、glm_client)。
"""

from typing import Literal, Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ProviderClient
from chat_core.providers.glm_client import GlmClient
from chat_core.providers.openai_client import OpenAIClient


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = (name or getattr(cfg, "default_provider", "openai")).lower()
    if provider_name == "glm":
        return GlmClient(cfg)
    if provider_name == "openai":
        return OpenAIClient(cfg)
    raise KeyError(f"Unknown provider: {provider_name!r}")


DefaultProviderName = Literal["openai", "glm"]
