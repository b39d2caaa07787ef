"""上下文检索引擎。

负责把会话里保存过的切片（文本与图片描述）变成本轮对话的附加上下文：

- retrieve: 向量化本轮消息，取相似度达标的前 N 个切片；文本切片生成上下文消息，
  图片切片只记录最佳匹配，供后续图片选择使用。
- ingest_images: 新上传的图片落盘、调用视觉模型生成描述、切片并向量化。
- save_embed: 💾 反应触发，把消息正文与附件整体存为切片。
- describe_image / answer_with_vision: 两种视觉子调用。
- refresh_descriptions: 占位描述在被选中时用视觉模型重新生成。

向量化失败不会让整轮对话失败，只是本轮没有检索上下文。
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from chat_core.config.settings import Settings, settings
from chat_core.domain.documents import Chunk
from chat_core.domain.exceptions import BusinessError, StoreError
from chat_core.domain.models import ChatMessage, ChatRequest, ImagePart
from chat_core.domain.platform import Attachment, IncomingMessage, OutgoingFile
from chat_core.domain.state import ConversationState
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.paths import normalize_file_name
from chat_core.infrastructure.storage.state_store import ConversationStateStore
from chat_core.providers.base import ProviderClient
from chat_core.retrieval.images import (
    dedupe_image_chunks,
    image_media_type,
    is_file_name_mentioned,
    placeholder_description,
    vision_context_line,
)
from chat_core.retrieval.similarity import chunk_text, rank

CONTEXT_SIMILARITY_THRESHOLD = 0.80

VISION_MAX_TOKENS = 16384
DESCRIPTION_MAX_TOKENS = 512

DESCRIBE_SYSTEM_PROMPT = (
    "You describe images for a Discord bot. Return only the description text. No markdown or code fences."
)

VISION_SYSTEM_PROMPT = (
    "You are a Discord bot with vision. Use the attached image(s) to answer. "
    "The platform will attach the image file(s) to your reply. Never claim you cannot show or attach them. "
    "Be concise. Never use triple backtick code fences unless explicitly asked."
)


def clamp_vision_max_tokens(requested: Optional[int]) -> Optional[int]:
    if requested is None:
        return None
    return min(requested, VISION_MAX_TOKENS)


def description_max_tokens(requested: Optional[int]) -> int:
    return min(clamp_vision_max_tokens(requested) or DESCRIPTION_MAX_TOKENS, DESCRIPTION_MAX_TOKENS)


def build_describe_prompt(file_name: Optional[str], content: Optional[str]) -> str:
    lines = ["Describe the image in 2-4 sentences. Mention notable objects, setting, and any visible text verbatim."]
    if file_name and file_name.strip():
        lines.append(f"File name: {file_name}")
    if content and content.strip():
        lines.append(f"User context: {content}")
    lines.append("Be concise and factual.")
    return "\n".join(lines)


def build_vision_prompt(content: Optional[str], images: Sequence[Chunk]) -> str:
    lines = ["The user is asking about one or more images. Use the attached image(s) to answer."]
    if content and content.strip():
        lines.append(f"User message: {content}")
    context = vision_context_line(images)
    if context:
        lines.append(f"Stored image context: {context}")
    lines.append("If the answer is not visible in the image(s), say so.")
    return "\n".join(lines)


def context_messages(chunks: Sequence[Chunk]) -> List[ChatMessage]:
    if not chunks:
        return []
    messages = [
        ChatMessage(role="system", content=f"Context for the next {len(chunks)} message(s). Use this to answer:")
    ]
    for chunk in chunks:
        messages.append(ChatMessage(role="system", content=f"---context---\r\n{chunk.text}\r\n--end context---"))
    return messages


def image_attachments(chunks: Sequence[Chunk]) -> List[OutgoingFile]:
    """把选中的图片切片转换成回复附件（引用已存储文件）。"""
    files = []
    for chunk in chunks:
        if not chunk.has_stored_file:
            continue
        name = chunk.source_file_name if chunk.source_file_name and chunk.source_file_name.strip() else (
            Path(chunk.stored_file_path).name or "image"
        )
        files.append(OutgoingFile(name=normalize_file_name(name), path=chunk.stored_file_path, is_image=True))
    return files


@dataclass
class RetrievalResult:
    context: List[ChatMessage] = field(default_factory=list)
    text_matches: List[Tuple[Chunk, float]] = field(default_factory=list)
    best_image: Optional[Tuple[Chunk, float]] = None
    explicit_images: List[Chunk] = field(default_factory=list)
    replied_images: List[Chunk] = field(default_factory=list)


@dataclass
class SavedEmbed:
    """💾 保存结果：一个 embed 文件及其说明文字。"""

    file_name: str
    summary: str
    chunks: List[Chunk]


class ContextRetrievalEngine:
    def __init__(
        self,
        store: ConversationStateStore,
        provider: ProviderClient,
        cfg: Settings = settings,
        threshold: float = CONTEXT_SIMILARITY_THRESHOLD,
    ):
        self._store = store
        self._provider = provider
        self._settings = cfg
        self._threshold = threshold

    # ---- 检索 ----

    async def embed_query(self, text: str) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        try:
            vectors = await self._provider.embed([text])
        except BusinessError as e:
            logger.warning(
                "Embedding request failed",
                extra={"extra": {"code": e.code, "error": e.message}},
            )
            return None
        return vectors[0] if vectors else None

    async def retrieve(self, state: ConversationState, message: IncomingMessage) -> RetrievalResult:
        result = RetrievalResult()
        chunks = self._store.channel_chunks(state.channel_id)
        if not chunks:
            return result

        query = await self.embed_query(message.content)
        if query is not None:
            matches = rank(chunks, query, self._threshold, state.parameters.closest_match_limit)
            result.text_matches = [(c, s) for c, s in matches if not c.is_image]
            image_matches = [(c, s) for c, s in matches if c.is_image and c.has_stored_file]
            if image_matches:
                result.best_image = image_matches[0]
            result.context = context_messages([c for c, _ in result.text_matches])

        result.explicit_images = [
            c for c in chunks
            if c.is_image and c.has_stored_file and is_file_name_mentioned(message.content, c.source_file_name)
        ]
        if message.reference_message_id:
            result.replied_images = [
                c for c in chunks
                if c.is_image and c.has_stored_file and c.source_message_id == message.reference_message_id
            ]
        return result

    # ---- 切片与向量 ----

    async def _embed_chunks(self, chunks: List[Chunk]) -> bool:
        if not chunks:
            return False
        try:
            vectors = await self._provider.embed([c.text for c in chunks])
        except BusinessError as e:
            logger.warning(
                "Embedding request failed",
                extra={"extra": {"code": e.code, "error": e.message, "chunks": len(chunks)}},
            )
            return False
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector
        return True

    def _text_chunks(self, state: ConversationState, text: str, message: IncomingMessage) -> List[Chunk]:
        return [
            Chunk(
                text=piece,
                source_guild_id=state.guild_id,
                source_channel_id=state.channel_id,
                source_message_id=message.id,
            )
            for piece in chunk_text(text, state.parameters.chunk_size)
        ]

    def _image_chunks(
        self,
        state: ConversationState,
        description: str,
        stored_path: str,
        file_name: Optional[str],
        message_id: int,
        attachment_id: int = 0,
    ) -> List[Chunk]:
        if not description or not description.strip():
            description = f"Image attachment {file_name or 'image'}"
        return [
            Chunk(
                text=piece,
                is_image=True,
                description=description,
                source_file_name=file_name,
                stored_file_path=stored_path,
                source_guild_id=state.guild_id,
                source_channel_id=state.channel_id,
                source_message_id=message_id,
                source_attachment_id=attachment_id,
            )
            for piece in chunk_text(description, state.parameters.chunk_size)
        ]

    def _persist(self, state: ConversationState, key: str, chunks: List[Chunk]) -> None:
        try:
            self._store.save_chunks(state, key, chunks)
        except StoreError as e:
            logger.error(e.message, extra={"extra": {"code": e.code, "channel_id": state.channel_id, "key": key}})

    # ---- 图片入库 ----

    async def ingest_images(self, state: ConversationState, message: IncomingMessage) -> List[Chunk]:
        """处理本条消息的图片附件，返回新建（或已存在）的图片切片。"""
        created: List[Chunk] = []
        channel_chunks = self._store.channel_chunks(state.channel_id)
        for attachment in message.attachments:
            key = f"{message.id}.{attachment.id}"
            existing = self._store.existing_chunk_file(state, key)
            if existing is not None:
                try:
                    reused = self._store.read_chunks(existing)
                except StoreError as e:
                    logger.error(e.message, extra={"extra": {"code": e.code, "path": str(existing)}})
                    continue
                known = {c.stored_file_path for c in channel_chunks if c.is_image}
                if reused and reused[0].stored_file_path not in known:
                    channel_chunks.extend(reused)
                created.extend(reused)
                continue

            if not attachment.is_image or not attachment.data:
                continue
            chunks = await self.ingest_image(state, message, attachment)
            channel_chunks.extend(chunks)
            created.extend(chunks)
        return created

    async def ingest_image(self, state: ConversationState, message: IncomingMessage, attachment: Attachment) -> List[Chunk]:
        key = f"{message.id}.{attachment.id}"
        try:
            stored = self._store.store_image_file(state, message.id, attachment.id, attachment.filename, attachment.data)
        except StoreError as e:
            logger.error(e.message, extra={"extra": {"code": e.code, "channel_id": state.channel_id}})
            return []

        description = await self.describe_image(
            state, message.content, attachment.filename, attachment.data, attachment.content_type
        ) or placeholder_description(attachment.filename, message.content, message.author_name)

        chunks = self._image_chunks(state, description, stored, attachment.filename, message.id, attachment.id)
        if await self._embed_chunks(chunks):
            self._persist(state, key, chunks)
        logger.info(
            "Ingested image attachment",
            extra={"extra": {"channel_id": state.channel_id, "message_id": message.id,
                             "attachment_id": attachment.id, "chunks": len(chunks)}},
        )
        return chunks

    # ---- 💾 保存 ----

    async def save_embed(self, state: ConversationState, message: IncomingMessage) -> List[SavedEmbed]:
        saved: List[SavedEmbed] = []
        channel_chunks = self._store.channel_chunks(state.channel_id)

        chunks = self._text_chunks(state, message.content, message)
        if chunks:
            if await self._embed_chunks(chunks):
                self._persist(state, str(message.id), chunks)
            channel_chunks.extend(chunks)
            saved.append(SavedEmbed(f"{message.id}.embed.json", f"Message saved as {len(chunks)} documents.", chunks))

        for attachment in message.attachments:
            if attachment.is_image:
                chunks = await self.ingest_image(state, message, attachment)
                label = f"Image {attachment.filename} saved as {len(chunks)} documents."
            else:
                text = attachment.data.decode("utf-8", errors="replace")
                chunks = self._text_chunks(state, text, message)
                for chunk in chunks:
                    chunk.source_attachment_id = attachment.id
                if chunks and await self._embed_chunks(chunks):
                    self._persist(state, f"{message.id}.{attachment.id}", chunks)
                label = f"Attachment {attachment.filename} saved as {len(chunks)} documents."
            if not chunks:
                continue
            channel_chunks.extend(chunks)
            saved.append(SavedEmbed(f"{attachment.filename}.embed.json", label, chunks))
        return saved

    # ---- 视觉子调用 ----

    def _vision_model(self, state: ConversationState) -> Optional[str]:
        return state.parameters.vision_model or self._settings.vision_model or None

    async def describe_image(
        self,
        state: ConversationState,
        content: Optional[str],
        file_name: Optional[str],
        data: bytes,
        content_type: Optional[str] = None,
    ) -> Optional[str]:
        """用视觉模型为上传的图片生成 2-4 句描述；失败返回 None，由调用方使用占位描述。"""
        if not data:
            return None
        model = self._vision_model(state)
        if not model:
            return None
        if content_type and content_type.lower().startswith("image/"):
            media_type = content_type
        else:
            media_type = image_media_type(file_name, file_name)
        if not media_type:
            return None

        req = ChatRequest(
            provider=self._provider.name,
            model=model,
            messages=[
                ChatMessage(role="system", content=DESCRIBE_SYSTEM_PROMPT),
                ChatMessage(
                    role="user",
                    content=build_describe_prompt(file_name, content),
                    images=[ImagePart(data=data, media_type=media_type)],
                ),
            ],
            temperature=0.2,
            top_p=1.0,
            max_tokens=description_max_tokens(state.parameters.max_tokens),
        )
        try:
            result = await self._provider.chat(req)
        except BusinessError as e:
            logger.warning(
                "Vision upload description failed",
                extra={"extra": {"code": e.code, "error": e.message, "file_name": file_name}},
            )
            return None
        description = (result.content or "").strip()
        return description or None

    async def answer_with_vision(
        self, state: ConversationState, content: Optional[str], images: Sequence[Chunk]
    ) -> Optional[str]:
        model = self._vision_model(state)
        if not model:
            return None

        prompt = build_vision_prompt(content, images)
        parts: List[ImagePart] = []
        skipped = 0
        total_bytes = 0
        for chunk in images:
            if not chunk.has_stored_file:
                continue
            path = self._store.resolve_stored_path(chunk.stored_file_path)
            if path is None or not path.exists():
                skipped += 1
                continue
            media_type = image_media_type(str(path), chunk.source_file_name)
            if not media_type:
                skipped += 1
                continue
            data = path.read_bytes()
            parts.append(ImagePart(data=data, media_type=media_type))
            total_bytes += len(data)
        if not parts:
            return None

        req = ChatRequest(
            provider=self._provider.name,
            model=model,
            messages=[
                ChatMessage(role="system", content=VISION_SYSTEM_PROMPT),
                ChatMessage(role="user", content=prompt, images=parts),
            ],
            temperature=state.parameters.temperature,
            top_p=state.parameters.top_p,
            max_tokens=clamp_vision_max_tokens(state.parameters.max_tokens),
        )
        start = time.time()
        logger.info(
            "Vision request",
            extra={"extra": {"model": model, "images": len(parts), "image_bytes": total_bytes,
                             "skipped": skipped, "prompt_chars": len(prompt), "max_tokens": req.max_tokens}},
        )
        try:
            result = await self._provider.chat(req)
        except BusinessError as e:
            logger.warning("Vision response failed", extra={"extra": {"code": e.code, "error": e.message}})
            return None

        answer = result.content
        logger.info(
            "Vision response",
            extra={"extra": {"content_chars": len(answer or ""), "latency_ms": int((time.time() - start) * 1000)}},
        )
        if not answer or not answer.strip():
            return answer
        if skipped:
            answer = f"{answer}\n\n(Note: {skipped} image file(s) could not be attached for analysis.)"
        return answer

    # ---- 占位描述刷新 ----

    async def refresh_descriptions(
        self, state: ConversationState, content: Optional[str], images: Sequence[Chunk]
    ) -> List[Chunk]:
        """对被选中的图片，把仍是占位文本的描述替换成视觉模型生成的描述。"""
        result: List[Chunk] = []
        seen = set()
        for chunk in images:
            if chunk is None or not chunk.is_image:
                continue
            if chunk.has_stored_file:
                key = f"path:{self._store.resolve_stored_path(chunk.stored_file_path)}".lower()
            else:
                key = f"name:{chunk.source_file_name or chunk.text}".lower()
            if key in seen:
                continue
            seen.add(key)

            if chunk.needs_vision_description and chunk.has_stored_file:
                refreshed = await self._refresh_image(state, content, chunk)
                if refreshed:
                    result.extend(refreshed)
                    continue
            result.append(chunk)
        return dedupe_image_chunks(result)

    async def _refresh_image(self, state: ConversationState, content: Optional[str], chunk: Chunk) -> List[Chunk]:
        path = self._store.resolve_stored_path(chunk.stored_file_path)
        if path is None or not path.exists():
            logger.warning("Image refresh skipped missing file", extra={"extra": {"path": str(path)}})
            return []

        file_name = chunk.source_file_name if chunk.source_file_name and chunk.source_file_name.strip() else path.name
        description = await self.describe_image(state, content, file_name, path.read_bytes())
        if not description:
            return []

        refreshed = self._image_chunks(
            state, description, chunk.stored_file_path, chunk.source_file_name,
            chunk.source_message_id, chunk.source_attachment_id,
        )
        if not await self._embed_chunks(refreshed):
            return []

        embed_path = self._store.image_embed_path(state, chunk)
        if embed_path is not None:
            try:
                self._store.write_chunks(embed_path, refreshed)
            except StoreError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(embed_path)}})

        channel_chunks = self._store.channel_chunks(state.channel_id)
        stored = (chunk.stored_file_path or "").lower()
        channel_chunks[:] = [
            c for c in channel_chunks if not (c.is_image and (c.stored_file_path or "").lower() == stored)
        ]
        channel_chunks.extend(refreshed)
        return refreshed
