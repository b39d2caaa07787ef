"""GLM / BigModel Provider 适配器。

接口风格与 OpenAI 一致，均使用 chat/completions 与 embeddings 端点；
视觉模型（glm-4v 系列）同样接受 image_url data URI。
"""

from chat_core.providers.compat import OpenAICompatibleClient
from chat_core.providers.registry import GLM_CONFIG


class GlmClient(OpenAICompatibleClient):
    """GLM / BigModel Provider 客户端实现。"""

    name = "glm"
    config = GLM_CONFIG
