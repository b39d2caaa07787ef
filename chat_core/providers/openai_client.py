"""OpenAI Provider 适配器。"""

from chat_core.providers.compat import OpenAICompatibleClient
from chat_core.providers.registry import OPENAI_CONFIG


class OpenAIClient(OpenAICompatibleClient):
    """OpenAI Provider 客户端实现。"""

    name = "openai"
    config = OPENAI_CONFIG
