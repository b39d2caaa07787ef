"""聊天平台抽象。

引擎不直接依赖任何平台 SDK，只依赖这里的事件数据类和 ChatPlatform 协议。
平台适配器负责：网关连接、下载附件字节、把平台事件转换成这些数据类、
实现 ChatPlatform 的各个发送方法。
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tiff")


@dataclass
class Attachment:
    """消息附件（字节已由适配器下载好）。"""

    id: int
    filename: str
    data: bytes = b""
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        if self.content_type and self.content_type.lower().startswith("image/"):
            return True
        return Path(self.filename or "").suffix.lower() in IMAGE_EXTENSIONS


@dataclass
class IncomingMessage:
    id: int
    channel_id: int
    author_id: int
    author_name: str
    content: str = ""
    guild_id: int = 0
    guild_name: Optional[str] = None
    channel_name: Optional[str] = None
    is_private: bool = False
    author_is_bot: bool = False
    mentions_bot: bool = False
    attachments: List[Attachment] = field(default_factory=list)
    reference_message_id: Optional[int] = None

    @property
    def is_tagged(self) -> bool:
        return self.mentions_bot or self.is_private


@dataclass
class ReactionEvent:
    """用户对某条消息添加了表情。message 为被反应的消息全文。"""

    emoji: str
    user_id: int
    user_name: str
    message: IncomingMessage


@dataclass
class CommandOption:
    """斜杠命令的选项树节点。

    type 取值：``command``（命令根）/ ``subcommand`` / ``group`` / ``string`` / ``integer`` / ``boolean``。
    """

    name: str
    description: str = ""
    type: str = "subcommand"
    required: bool = False
    options: List["CommandOption"] = field(default_factory=list)
    choices: List[str] = field(default_factory=list)
    min_value: Optional[int] = None

    def find(self, name: str) -> Optional["CommandOption"]:
        for option in self.options:
            if option.name.lower() == name.lower():
                return option
        return None


@dataclass
class InteractionOption:
    """用户实际提交的命令选项（带值）。"""

    name: str
    value: Any = None
    options: List["InteractionOption"] = field(default_factory=list)

    def get(self, name: str) -> Optional["InteractionOption"]:
        for option in self.options:
            if option.name.lower() == name.lower():
                return option
        return None

    def value_of(self, name: str, default: Any = None) -> Any:
        option = self.get(name)
        return default if option is None or option.value is None else option.value

    @property
    def first(self) -> Optional["InteractionOption"]:
        return self.options[0] if self.options else None


@dataclass
class InteractionEvent:
    """斜杠命令调用，例如 ``/gptcli set max-tokens value:1024``。"""

    id: int
    command_name: str
    channel_id: int
    user_id: int
    user_name: str
    guild_id: int = 0
    guild_name: Optional[str] = None
    channel_name: Optional[str] = None
    is_private: bool = False
    options: List[InteractionOption] = field(default_factory=list)

    @property
    def first(self) -> Optional[InteractionOption]:
        return self.options[0] if self.options else None


@dataclass
class MessageCommandEvent:
    """消息上下文菜单命令（右键消息 -> 命令）。"""

    command_name: str
    user_id: int
    user_name: str
    message: IncomingMessage


@dataclass
class SentMessage:
    id: int
    channel_id: int


@dataclass
class OutgoingFile:
    """待发送的文件：来自模型输出的文本块，或已存储的图片。"""

    name: str
    data: Optional[bytes] = None
    path: Optional[str] = None
    is_image: bool = False

    @property
    def dedupe_key(self) -> str:
        if self.path:
            return f"path:{self.path}"
        content = (self.data or b"").decode("utf-8", errors="replace")
        return f"name:{self.name}:{content}"


class ChatPlatform(Protocol):
    """引擎调用的平台能力集合（由适配器实现）。"""

    bot_user_id: int

    async def send_message(
        self, channel_id: int, content: str, *, reply_to: Optional[int] = None
    ) -> SentMessage: ...

    async def send_file(
        self,
        channel_id: int,
        filename: str,
        data: bytes,
        *,
        content: Optional[str] = None,
        reply_to: Optional[int] = None,
    ) -> SentMessage: ...

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None: ...

    async def remove_reaction(
        self, channel_id: int, message_id: int, emoji: str, user_id: int
    ) -> None: ...

    async def remove_all_reactions(self, channel_id: int, message_id: int) -> None: ...

    def typing(self, channel_id: int) -> AsyncContextManager[Any]: ...

    async def register_commands(self, commands: List[CommandOption]) -> None: ...

    async def respond_ephemeral(self, interaction_id: int, content: str) -> None: ...


def option_tree_to_dict(option: CommandOption) -> Dict[str, Any]:
    """把命令树转换为可注册的 JSON 结构（适配器使用）。"""

    data: Dict[str, Any] = {
        "name": option.name,
        "description": option.description,
        "type": option.type,
    }
    if option.required:
        data["required"] = True
    if option.min_value is not None:
        data["min_value"] = option.min_value
    if option.choices:
        data["choices"] = list(option.choices)
    if option.options:
        data["options"] = [option_tree_to_dict(o) for o in option.options]
    return data
