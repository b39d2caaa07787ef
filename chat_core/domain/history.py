"""有字符预算的历史窗口。

窗口内的消息按时间顺序排列（最新的在最后），running length 始终等于
当前所有消息 content 长度之和。追加新消息前，只要总长度会超出预算且
窗口里还有消息，就从最早的一条开始淘汰。单条超出整个预算的消息仍会被
追加，此时它会成为窗口里唯一的一条，直到下一条消息把它挤出去。

置顶指令（instructions / prime directives）不在窗口内，永远不会被淘汰。
"""

from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from chat_core.domain.models import ChatMessage


class HistoryWindow:
    def __init__(self, max_length: int = 4096, turns: Optional[Iterable[ChatMessage]] = None):
        self._max_length = max(0, int(max_length))
        self._turns: Deque[ChatMessage] = deque()
        self._length = 0
        for turn in turns or []:
            self.add_turn(turn)

    @property
    def max_length(self) -> int:
        return self._max_length

    @max_length.setter
    def max_length(self, value: int) -> None:
        self._max_length = max(0, int(value))
        # 预算缩小后立即淘汰，至少保留最新的一条
        while len(self._turns) > 1 and self._length > self._max_length:
            self._evict_oldest()

    @property
    def length(self) -> int:
        return self._length

    @property
    def turns(self) -> List[ChatMessage]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def add_turn(self, turn: ChatMessage) -> List[ChatMessage]:
        """追加一条消息，返回因此被淘汰的消息（按淘汰顺序）。"""

        turn_length = len(turn.content or "")
        evicted: List[ChatMessage] = []
        while self._turns and self._length + turn_length > self._max_length:
            evicted.append(self._evict_oldest())

        if not self._turns:
            self._length = 0

        self._turns.append(turn)
        self._length += turn_length
        return evicted

    def clear(self) -> None:
        self._turns.clear()
        self._length = 0

    def _evict_oldest(self) -> ChatMessage:
        removed = self._turns.popleft()
        self._length -= len(removed.content or "")
        if not self._turns:
            self._length = 0
        return removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [t.to_dict() for t in self._turns],
            "message-length": self._length,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_length: int) -> "HistoryWindow":
        # 长度总是根据实际消息重新计算，不信任文件里的 message-length
        window = cls(max_length=max_length)
        for raw in data.get("messages") or []:
            if isinstance(raw, dict):
                turn = ChatMessage.from_dict(raw)
                window._turns.append(turn)
                window._length += len(turn.content)
        window.max_length = max_length
        return window
