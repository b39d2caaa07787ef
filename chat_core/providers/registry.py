"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：代码与配置里使用的统一名称，"chat" / "vision" / "embedding"。
- provider_model：厂商实际提供的模型 ID，例如 "gpt-4o"、"glm-4.6"。

不在表中的名字原样透传给厂商，因此 ``/gptcli set model`` 可以直接填写厂商模型 ID。
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: Optional[int] = None
    default_temperature: Optional[float] = None


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve_model(self, name: str) -> str:
        model_cfg = self.model_config(name)
        return model_cfg.provider_model if model_cfg else name

    def model_config(self, name: str) -> Optional[ModelConfig]:
        return self.models.get((name or "").lower())


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "chat": ModelConfig(logical_name="chat", provider_model="gpt-4o", max_tokens=3584),
        "vision": ModelConfig(logical_name="vision", provider_model="gpt-4o", max_tokens=512),
        "embedding": ModelConfig(logical_name="embedding", provider_model="text-embedding-3-small"),
    },
)

# GLM / BigModel 配置
GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    models={
        "chat": ModelConfig(logical_name="chat", provider_model="glm-4.6", max_tokens=8192, default_temperature=0.7),
        "vision": ModelConfig(logical_name="vision", provider_model="glm-4v-plus", max_tokens=1024),
        "embedding": ModelConfig(logical_name="embedding", provider_model="embedding-3"),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "glm": GLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
