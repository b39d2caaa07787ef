"""把模型输出组装成平台可发送的消息与文件。

模型可以用 ``<gptcli_file name="x.py">...</gptcli_file>`` 块返回文件；这些块会被
抽成附件，其余文本按平台单条消息上限切片。第一份文件与第一段文本一起发送，
之后依次发送剩余文本与剩余文件。
"""

import re
from pathlib import Path
from typing import AsyncIterable, Callable, List, Optional, Sequence, Tuple

from chat_core.domain.models import ChatStreamChunk
from chat_core.domain.platform import IMAGE_EXTENSIONS, ChatPlatform, OutgoingFile, SentMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.paths import normalize_file_name

FILE_BLOCK_PATTERN = re.compile(
    r'<gptcli_file\s+name="(?P<name>[^"]+)"\s*>(?P<content>.*?)</gptcli_file>',
    re.IGNORECASE | re.DOTALL,
)

CLEANUP_EMOJI = "🧹"


async def aggregate_stream(chunks: AsyncIterable[ChatStreamChunk]) -> str:
    """按顺序拼接流式增量；Provider 抛出的异常原样向上传播。"""
    parts: List[str] = []
    async for chunk in chunks:
        if not chunk.choices:
            continue
        content = chunk.choices[0].delta.content
        if content:
            parts.append(content)
    return "".join(parts)


def extract_file_payloads(text: Optional[str]) -> Tuple[str, List[OutgoingFile]]:
    if not text or not text.strip():
        return text or "", []
    files: List[OutgoingFile] = []

    def _collect(match: re.Match) -> str:
        body = (match.group("content") or "").strip()
        files.append(OutgoingFile(name=normalize_file_name(match.group("name")), data=body.encode("utf-8")))
        return ""

    cleaned = FILE_BLOCK_PATTERN.sub(_collect, text)
    return cleaned.strip(), files


def split_message_chunks(text: Optional[str], max_length: int = 2000) -> List[str]:
    """按 max_length 定长切分，拼接后等于原文。

    只含空白的文本没有可发送的内容，返回空列表。max_length 必须为正数。
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive.")
    if not text or not text.strip():
        return []
    return [text[i:i + max_length] for i in range(0, len(text), max_length)]


def replace_pseudo_mentions(text: Optional[str], username: Optional[str], user_id: int) -> Optional[str]:
    """把模型写出的 ``<@用户名>`` 换成真正的 ``<@id>`` 提及。"""
    if not text or not text.strip() or not username or not username.strip():
        return text
    pattern = rf"<@!?\s*{re.escape(username)}\s*>"
    return re.sub(pattern, f"<@{user_id}>", text, flags=re.IGNORECASE)


def build_history_text(text: Optional[str], files: Sequence[OutgoingFile]) -> str:
    out = (text or "").strip()
    if files:
        if out:
            out += "\n"
        out += f"[Attached file(s): {', '.join(f.name for f in files)}]"
    return out


def dedupe_files(files: Sequence[OutgoingFile]) -> List[OutgoingFile]:
    seen = set()
    result: List[OutgoingFile] = []
    for f in files:
        key = f.dedupe_key.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(f)
    return result


def is_image_file_name(name: Optional[str]) -> bool:
    return Path(name or "").suffix.lower() in IMAGE_EXTENSIONS


class ResponseDeliverer:
    """按平台限制发送回复。

    resolve_path: 把已存储文件的相对路径解析为磁盘路径。
    on_image_sent: 图片随回复发送后的回调（回复消息 id, 存储路径），用于 🧹 删除追踪。
    """

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        max_message_length: int = 2000,
        max_file_bytes: int = 7_500_000,
        resolve_path: Callable[[str], Optional[Path]] = lambda p: Path(p),
        on_image_sent: Optional[Callable[[int, Optional[str]], None]] = None,
    ):
        self._platform = platform
        self._max_message_length = max_message_length
        self._max_file_bytes = max_file_bytes
        self._resolve_path = resolve_path
        self._on_image_sent = on_image_sent

    async def deliver(
        self,
        channel_id: int,
        text: Optional[str],
        files: Sequence[OutgoingFile] = (),
        *,
        reply_to: Optional[int] = None,
    ) -> List[SentMessage]:
        sent: List[SentMessage] = []
        chunks = split_message_chunks(text, self._max_message_length)
        remaining = list(files)

        if remaining:
            first_file = remaining.pop(0)
            first_chunk = chunks.pop(0) if chunks else ""
            message = await self._try_send_file(channel_id, first_file, first_chunk or None, reply_to)
            if message is not None:
                sent.append(message)
            elif first_chunk.strip():
                sent.append(await self._send_text(channel_id, first_chunk, reply_to))
        elif chunks:
            sent.append(await self._send_text(channel_id, chunks.pop(0), reply_to))

        for chunk in chunks:
            sent.append(await self._send_text(channel_id, chunk, reply_to))

        for f in remaining:
            message = await self._try_send_file(channel_id, f, None, reply_to)
            if message is not None:
                sent.append(message)
        return sent

    async def _send_text(self, channel_id: int, content: str, reply_to: Optional[int]) -> SentMessage:
        return await self._platform.send_message(channel_id, content, reply_to=reply_to)

    async def _try_send_file(
        self,
        channel_id: int,
        f: OutgoingFile,
        content: Optional[str],
        reply_to: Optional[int],
    ) -> Optional[SentMessage]:
        if f.path:
            resolved = self._resolve_path(f.path)
            if resolved is None or not resolved.exists():
                await self._send_text(channel_id, f"File `{f.name}` is missing on disk.", reply_to)
                return None
            size = resolved.stat().st_size
            if size > self._max_file_bytes:
                await self._send_text(channel_id, f"File `{f.name}` is too large to attach ({size} bytes).", reply_to)
                return None
            data = resolved.read_bytes()
        else:
            data = f.data or b""
            if len(data) > self._max_file_bytes:
                await self._send_text(
                    channel_id, f"File `{f.name}` is too large to attach ({len(data)} bytes).", reply_to
                )
                return None

        try:
            message = await self._platform.send_file(channel_id, f.name, data, content=content, reply_to=reply_to)
        except Exception as e:
            logger.warning(
                "Failed to send file",
                extra={"extra": {"channel_id": channel_id, "file": f.name, "error": str(e)}},
            )
            return None
        if f.is_image or is_image_file_name(f.name):
            if self._on_image_sent is not None:
                self._on_image_sent(message.id, f.path)
            try:
                await self._platform.add_reaction(channel_id, message.id, CLEANUP_EMOJI)
            except Exception as e:
                logger.warning(
                    "Failed to add cleanup reaction",
                    extra={"extra": {"channel_id": channel_id, "message_id": message.id, "error": str(e)}},
                )
        return message
