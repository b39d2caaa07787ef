"""对外 API 服务模块。

平台适配器只需要调用这里的函数：按配置组装好 ConversationEngine，
然后把平台事件转交给 engine.handle_* 方法。
"""

from typing import Iterable, Optional

from chat_core.agents.engine import ConversationEngine
from chat_core.config.settings import Settings, settings
from chat_core.domain.exceptions import ConfigurationError
from chat_core.domain.platform import ChatPlatform
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.state_store import ConversationStateStore, StateDefaults
from chat_core.modules.base import ModuleContext
from chat_core.modules.infobot import InfobotModule
from chat_core.modules.pipeline import ModulePipeline, ModuleSource
from chat_core.prompts import load_prime_directive
from chat_core.providers import create_provider
from chat_core.providers.base import ProviderClient
from chat_core.retrieval.engine import ContextRetrievalEngine

BUILTIN_MODULES = (InfobotModule,)


def validate_settings(cfg: Settings) -> None:
    """启动前校验：当前 Provider 必须配置了 API 密钥。"""
    provider_name = cfg.default_provider
    api_key = cfg.api_key_for(provider_name)
    if not api_key or not api_key.strip():
        raise ConfigurationError(
            code="MISSING_API_KEY",
            message=f"Missing API key for provider '{provider_name}'.",
            provider=provider_name,
        )


def build_engine(
    platform: ChatPlatform,
    cfg: Optional[Settings] = None,
    *,
    provider: Optional[ProviderClient] = None,
    builtins: Optional[Iterable[ModuleSource]] = None,
    bot_name: str = "",
) -> ConversationEngine:
    """按配置组装引擎。

    Args:
        platform: 平台适配器（实现 ChatPlatform 协议）
        cfg: 配置（默认使用全局 settings）
        provider: 指定 Provider 实例时跳过 API 密钥校验（主要用于测试）
        builtins: 内置模块（默认只有 infobot）
        bot_name: 机器人显示名，用于问题改写

    Raises:
        ConfigurationError: 缺少当前 Provider 的 API 密钥
    """
    cfg = cfg or settings
    if provider is None:
        validate_settings(cfg)
        provider = create_provider(cfg.default_provider, cfg)

    store = ConversationStateStore(
        root=cfg.storage_root,
        defaults=StateDefaults.from_settings(cfg, load_prime_directive()),
    )
    context = ModuleContext(
        settings=cfg,
        store=store,
        provider=provider,
        platform=platform,
        bot_user_id=getattr(platform, "bot_user_id", 0) or 0,
        bot_name=bot_name,
    )
    pipeline = ModulePipeline.create(
        context,
        cfg.modules_path,
        builtins=BUILTIN_MODULES if builtins is None else builtins,
    )
    retrieval = ContextRetrievalEngine(store, provider, cfg)
    logger.info(
        "Engine built",
        extra={"extra": {"provider": provider.name, "storage_root": str(store.root),
                         "modules": [m.id for m in pipeline.modules]}},
    )
    return ConversationEngine(context, pipeline, retrieval)


async def start_engine(platform: ChatPlatform, cfg: Optional[Settings] = None, **kwargs) -> ConversationEngine:
    """组装并启动引擎（加载状态、初始化模块、注册命令）。"""
    engine = build_engine(platform, cfg, **kwargs)
    await engine.start()
    return engine
