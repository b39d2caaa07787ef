"""会话状态模型。

一个 ConversationState 对应平台上的一个可寻址会话（频道 / 私聊），包含：

- 身份：guild（社区）id 与名称、channel（会话）id 与名称；
- ConversationOptions：开关、静音、infobot 学习开关、相似度阈值；
- ModelParameters：模型、token 上限、历史预算、切片大小等；
- HistoryWindow：有预算的历史消息窗口；
- instructions / prime_directives：置顶的 system 消息，永不淘汰；
- module_data：扩展模块自己的不透明数据。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from chat_core.domain.history import HistoryWindow
from chat_core.domain.models import ChatMessage


ResponseMode = Literal["All", "Matches"]
EmbedMode = Literal["Explicit", "All"]

RESPONSE_MODES = ("All", "Matches")
EMBED_MODES = ("Explicit", "All")


@dataclass
class ConversationOptions:
    enabled: bool = False
    muted: bool = False
    learning_enabled: bool = True
    learning_personality_prompt: Optional[str] = None
    factoid_similarity_threshold: float = 0.80

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "muted": self.muted,
            "learning-enabled": self.learning_enabled,
            "learning-personality-prompt": self.learning_personality_prompt,
            "factoid-similarity-threshold": self.factoid_similarity_threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: "ConversationOptions") -> "ConversationOptions":
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            muted=bool(data.get("muted", defaults.muted)),
            learning_enabled=bool(data.get("learning-enabled", defaults.learning_enabled)),
            learning_personality_prompt=data.get("learning-personality-prompt")
            or defaults.learning_personality_prompt,
            factoid_similarity_threshold=float(
                data.get("factoid-similarity-threshold", defaults.factoid_similarity_threshold)
            ),
        )


@dataclass
class ModelParameters:
    model: str = "gpt-4o"
    vision_model: Optional[str] = None
    max_tokens: Optional[int] = 3584
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_chat_history_length: int = 4096
    chunk_size: int = 2048
    closest_match_limit: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "vision-model": self.vision_model,
            "max-tokens": self.max_tokens,
            "temperature": self.temperature,
            "top-p": self.top_p,
            "max-chat-history-length": self.max_chat_history_length,
            "chunk-size": self.chunk_size,
            "closest-match-limit": self.closest_match_limit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: "ModelParameters") -> "ModelParameters":
        def pick(key: str, default):
            value = data.get(key)
            return default if value is None else value

        return cls(
            model=str(pick("model", defaults.model)),
            vision_model=pick("vision-model", defaults.vision_model),
            max_tokens=pick("max-tokens", defaults.max_tokens),
            temperature=pick("temperature", defaults.temperature),
            top_p=pick("top-p", defaults.top_p),
            max_chat_history_length=int(pick("max-chat-history-length", defaults.max_chat_history_length)),
            chunk_size=int(pick("chunk-size", defaults.chunk_size)),
            closest_match_limit=int(pick("closest-match-limit", defaults.closest_match_limit)),
        )


@dataclass
class ConversationState:
    channel_id: int
    guild_id: int = 0
    guild_name: Optional[str] = None
    channel_name: Optional[str] = None
    options: ConversationOptions = field(default_factory=ConversationOptions)
    parameters: ModelParameters = field(default_factory=ModelParameters)
    history: HistoryWindow = field(default_factory=HistoryWindow)
    instructions: List[ChatMessage] = field(default_factory=list)
    prime_directives: List[ChatMessage] = field(default_factory=list)
    response_mode: ResponseMode = "All"
    embed_mode: EmbedMode = "Explicit"
    module_data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.history.max_length = self.parameters.max_chat_history_length

    # ---- 历史窗口 ----

    def add_turn(self, turn: ChatMessage) -> List[ChatMessage]:
        if self.history.max_length != self.parameters.max_chat_history_length:
            self.history.max_length = self.parameters.max_chat_history_length
        return self.history.add_turn(turn)

    def set_max_history_length(self, value: int) -> None:
        self.parameters.max_chat_history_length = int(value)
        self.history.max_length = int(value)

    def clear_messages(self) -> None:
        self.history.clear()

    # ---- 置顶指令 ----

    def add_instruction(self, content: str) -> None:
        self.instructions.append(ChatMessage(role="system", content=content))

    def remove_instruction(self, index: int) -> ChatMessage:
        return self.instructions.pop(index)

    def clear_instructions(self) -> None:
        self.instructions.clear()

    @property
    def instruction_text(self) -> str:
        return "\n".join(m.content for m in self.instructions)

    @property
    def prime_directive_text(self) -> str:
        return "\n".join(m.content for m in self.prime_directives)

    def compose_prompt(
        self,
        context: Optional[List[ChatMessage]] = None,
        live_turn: Optional[ChatMessage] = None,
    ) -> List[ChatMessage]:
        """组装发给模型的消息列表。

        顺序：Prime Directive -> Instructions -> 历史窗口 -> 本轮附加上下文 -> 当前用户消息。
        live_turn 若就是窗口中的最后一条，会被移到附加上下文之后。
        """

        messages = [
            ChatMessage(role="system", content=f"Prime Directive: {self.prime_directive_text}"),
            ChatMessage(role="system", content=f"Instructions: {self.instruction_text}"),
        ]
        turns = self.history.turns
        if live_turn is not None and turns and turns[-1] is live_turn:
            turns = turns[:-1]
        messages.extend(turns)
        messages.extend(context or [])
        if live_turn is not None:
            messages.append(live_turn)
        return messages

    # ---- 序列化 ----

    def to_dict(self) -> Dict[str, Any]:
        history = self.history.to_dict()
        return {
            "guild-id": self.guild_id,
            "guild-name": self.guild_name,
            "channel-id": self.channel_id,
            "channel-name": self.channel_name,
            "options": self.options.to_dict(),
            "state": {
                "parameters": self.parameters.to_dict(),
                "messages": history["messages"],
                "message-length": history["message-length"],
                "instructions": [m.to_dict() for m in self.instructions],
                "prime-directives": [m.to_dict() for m in self.prime_directives],
                "response-mode": self.response_mode,
                "embed-mode": self.embed_mode,
            },
            "module-data": self.module_data,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        *,
        default_parameters: ModelParameters,
        default_options: ConversationOptions,
    ) -> "ConversationState":
        if not isinstance(data, dict):
            raise ValueError("state payload must be a JSON object")
        chat = data.get("state") or {}
        parameters = ModelParameters.from_dict(chat.get("parameters") or {}, default_parameters)
        history = HistoryWindow.from_dict(chat, parameters.max_chat_history_length)
        response_mode = chat.get("response-mode")
        embed_mode = chat.get("embed-mode")
        return cls(
            channel_id=int(data.get("channel-id") or 0),
            guild_id=int(data.get("guild-id") or 0),
            guild_name=data.get("guild-name"),
            channel_name=data.get("channel-name"),
            options=ConversationOptions.from_dict(data.get("options") or {}, default_options),
            parameters=parameters,
            history=history,
            instructions=[ChatMessage.from_dict(m) for m in chat.get("instructions") or []],
            prime_directives=[ChatMessage.from_dict(m) for m in chat.get("prime-directives") or []],
            response_mode=response_mode if response_mode in RESPONSE_MODES else "All",
            embed_mode=embed_mode if embed_mode in EMBED_MODES else "Explicit",
            module_data=dict(data.get("module-data") or {}),
        )
