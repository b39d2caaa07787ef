"""Provider 抽象接口。

引擎与检索层不直接依赖任何厂商 SDK，只依赖此协议：

- chat(req): 一次非流式对话（图片描述、视觉问答、infobot 润色）。
- chat_stream(req): 流式对话，逐步产出增量（常规回复）。
- embed(texts): 文本向量化（检索、事实匹配）。

所有方法都是异步的，底层统一使用 httpx.AsyncClient。
"""

from typing import AsyncIterator, List, Optional, Protocol, Sequence

from chat_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步产出增量。"""

        ...

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> List[List[float]]:
        ...
