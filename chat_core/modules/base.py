"""扩展模块契约。

一个扩展模块是 FeatureModule 的子类，通过 id 唯一标识，可以声明依赖的其他模块 id。
管道按依赖拓扑序调用各模块的事件钩子；所有钩子都有空实现，子类只覆盖关心的部分。

模块通过 ModuleContext 访问宿主能力：状态存储、Provider、平台、配置，
以及 claim_turn：模块已经完整处理了某条消息时，用它告诉引擎跳过常规回复。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from chat_core.config.settings import Settings
from chat_core.domain.models import ChatMessage
from chat_core.domain.platform import (
    ChatPlatform,
    CommandOption,
    IncomingMessage,
    InteractionEvent,
    MessageCommandEvent,
    ReactionEvent,
)
from chat_core.domain.state import ConversationState
from chat_core.infrastructure.storage.state_store import ConversationStateStore
from chat_core.providers.base import ProviderClient


@dataclass
class CommandContribution:
    """模块向 ``/gptcli`` 命令树贡献的选项。

    target_option 为 None 时挂到顶层，否则挂到同名的顶层分组（如 ``set``）下。
    """

    option: CommandOption
    target_option: Optional[str] = None

    @classmethod
    def top_level(cls, option: CommandOption) -> "CommandContribution":
        return cls(option=option)

    @classmethod
    def for_option(cls, target_option: str, option: CommandOption) -> "CommandContribution":
        return cls(option=option, target_option=target_option)


@dataclass
class ModuleContext:
    settings: Settings
    store: ConversationStateStore
    provider: ProviderClient
    platform: ChatPlatform
    bot_user_id: int = 0
    bot_name: str = ""
    shared: Dict[str, Any] = field(default_factory=dict)
    _claimed: Set[int] = field(default_factory=set)

    def claim_turn(self, message_id: int) -> None:
        """声明某条消息已被模块完整处理，引擎不再为它调用常规对话模型。"""
        self._claimed.add(message_id)

    def release_turn(self, message_id: int) -> bool:
        """引擎在处理完消息后调用，返回该消息是否曾被声明。"""
        if message_id in self._claimed:
            self._claimed.discard(message_id)
            return True
        return False

    def get_or_create_state(self, message: IncomingMessage) -> ConversationState:
        return self.store.get_or_create(
            message.channel_id,
            guild_id=message.guild_id,
            guild_name=message.guild_name,
            channel_name=message.channel_name,
            is_private=message.is_private,
        )

    def is_identity_match(self, state: ConversationState, guild_id: int, context: str) -> bool:
        return self.store.is_identity_match(state, guild_id, context)

    def save(self, channel_id: int) -> bool:
        return self.store.save(channel_id)


class FeatureModule:
    """扩展模块基类，所有钩子默认什么都不做。"""

    id: str = ""
    name: str = ""
    depends_on: Sequence[str] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    async def initialize(self, context: ModuleContext) -> None:
        return None

    async def on_ready(self, context: ModuleContext) -> None:
        return None

    async def on_message_received(self, context: ModuleContext, message: IncomingMessage) -> None:
        return None

    async def on_message_updated(self, context: ModuleContext, message: IncomingMessage) -> None:
        return None

    async def on_reaction_added(self, context: ModuleContext, reaction: ReactionEvent) -> None:
        return None

    async def on_interaction(self, context: ModuleContext, interaction: InteractionEvent) -> bool:
        """返回 True 表示该模块已处理此次交互。"""
        return False

    async def on_message_command_executed(self, context: ModuleContext, command: MessageCommandEvent) -> None:
        return None

    async def get_additional_message_context(
        self, context: ModuleContext, message: IncomingMessage, state: ConversationState
    ) -> List[ChatMessage]:
        return []

    def get_command_contributions(self, context: ModuleContext) -> List[CommandContribution]:
        return []
