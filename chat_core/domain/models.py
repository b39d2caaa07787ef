"""统一的对话与结果数据模型。

本模块定义了引擎与不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），可携带图片。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult / ChatStreamChunk: 从 Provider 解析后的统一响应结果。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# LLM 消息角色类型（与 OpenAI / BigModel 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ImagePart:
    """随消息发送给视觉模型的一张图片。"""

    data: bytes
    media_type: str
    detail: str = "auto"


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容；历史窗口按它的字符数计算长度。
    - meta: 附加元数据，不发给 Provider，主要用于日志。
    - images: 视觉请求中附带的图片，不会被持久化。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)
    images: List[ImagePart] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=data.get("role") or "user", content=data.get("content") or "")


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    引擎组装好提示词后生成 ChatRequest，再交给具体 ProviderClient。
    model 可以是 registry 中的逻辑名（如 "chat"、"vision"），
    也可以直接是厂商模型名（如 "gpt-4o"）。
    """

    provider: str
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。"""

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果，结构与 ChatResult 类似。

    每次流式回调由若干 choice 组成，choice.delta 代表本次增量内容。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
