from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest

from chat_core.config.settings import Settings
from chat_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatResult,
    ChatStreamChoice,
    ChatStreamChunk,
)
from chat_core.domain.platform import SentMessage


class FakePlatform:
    bot_user_id = 999

    def __init__(self):
        self.sent: List[dict] = []
        self.files: List[dict] = []
        self.reactions: List[tuple] = []
        self.removed_reactions: List[tuple] = []
        self.cleared: List[tuple] = []
        self.ephemeral: List[tuple] = []
        self.commands = None
        self.typing_calls = 0
        self._next_id = 5000

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def send_message(self, channel_id, content, *, reply_to=None):
        message = SentMessage(id=self._new_id(), channel_id=channel_id)
        self.sent.append({"id": message.id, "channel_id": channel_id, "content": content, "reply_to": reply_to})
        return message

    async def send_file(self, channel_id, filename, data, *, content=None, reply_to=None):
        message = SentMessage(id=self._new_id(), channel_id=channel_id)
        self.files.append({"id": message.id, "channel_id": channel_id, "filename": filename,
                           "data": data, "content": content, "reply_to": reply_to})
        return message

    async def add_reaction(self, channel_id, message_id, emoji):
        self.reactions.append((channel_id, message_id, emoji))

    async def remove_reaction(self, channel_id, message_id, emoji, user_id):
        self.removed_reactions.append((channel_id, message_id, emoji, user_id))

    async def remove_all_reactions(self, channel_id, message_id):
        self.cleared.append((channel_id, message_id))

    @asynccontextmanager
    async def typing(self, channel_id):
        self.typing_calls += 1
        yield

    async def register_commands(self, commands):
        self.commands = commands

    async def respond_ephemeral(self, interaction_id, content):
        self.ephemeral.append((interaction_id, content))


class FakeProvider:
    """向量按关键词返回；未知文本得到与所有关键词正交的向量。"""

    name = "fake"

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, reply: str = "general answer"):
        self.vectors = vectors or {}
        self.reply = reply
        self.chat_requests = []
        self.stream_requests = []
        self.embed_calls: List[List[str]] = []

    def _vector(self, text: str) -> List[float]:
        lowered = text.lower()
        for keyword, vector in self.vectors.items():
            if keyword in lowered:
                return list(vector)
        return [0.0, 0.0, 0.0, 1.0]

    async def embed(self, texts, model=None):
        self.embed_calls.append(list(texts))
        return [self._vector(t) for t in texts]

    async def chat(self, req):
        self.chat_requests.append(req)
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=[ChatChoice(index=0, message=ChatMessage(role="assistant", content=self.reply))],
        )

    async def chat_stream(self, req):
        self.stream_requests.append(req)
        for piece in (self.reply[: len(self.reply) // 2], self.reply[len(self.reply) // 2:]):
            yield ChatStreamChunk(
                provider=self.name,
                model=req.model,
                choices=[ChatStreamChoice(index=0, delta=ChatMessage(role="assistant", content=piece))],
            )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "storage_root": str(tmp_path / ".storage"),
            "modules_path": "",
            "log_dir": str(tmp_path / "logs"),
            "openai_api_key": None,
            "glm_api_key": None,
            "default_provider": "openai",
            "vision_model": "",
        }
        values.update(overrides)
        return Settings(**values)

    return _make
