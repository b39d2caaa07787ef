"""图片相关的启发式规则：问题识别、候选图片选择、去重、媒体类型。"""

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from chat_core.domain.documents import Chunk
from chat_core.domain.models import ChatMessage
from chat_core.infrastructure.storage.paths import single_line

IMAGE_KEYWORDS = (
    "image", "photo", "picture", "screenshot", "screen shot", "screencap", "meme", "gif",
    "png", "jpg", "jpeg", "webp", "diagram", "chart", "graph", "logo", "icon", "art",
    "drawing", "scan", "attachment", "file", "figure", "map", "poster", "thumbnail", "avatar",
)

IMAGE_QUESTION_TERMS = (
    "describe", "analyze", "analysis", "caption", "identify", "recognize", "read",
    "transcribe", "ocr", "what's in", "what is in", "what's this", "what is this",
    "what does it say", "what do you see", "what's shown", "what is shown", "what's happening",
    "what is happening", "tell me about", "summarize", "count", "how many", "color", "colours",
)

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

VISION_CONTEXT_MAX_LENGTH = 600


def is_likely_attachment_question(content: Optional[str]) -> bool:
    text = (content or "").strip().lower()
    if not text:
        return False
    return "?" in text or any(term in text for term in IMAGE_QUESTION_TERMS)


def is_likely_image_question(content: Optional[str]) -> bool:
    if not is_likely_attachment_question(content):
        return False
    text = (content or "").strip().lower()
    return any(term in text for term in IMAGE_KEYWORDS)


def is_file_name_mentioned(content: Optional[str], file_name: Optional[str]) -> bool:
    if not content or not content.strip() or not file_name or not file_name.strip():
        return False
    text = content.strip().lower()
    if file_name.lower() in text:
        return True
    stem = Path(file_name).stem
    return bool(stem.strip()) and stem.lower() in text


def image_media_type(path: Optional[str], file_name: Optional[str]) -> Optional[str]:
    suffix = Path(file_name or path or "").suffix.lower()
    return _MEDIA_TYPES.get(suffix)


def placeholder_description(file_name: Optional[str], content: Optional[str], username: Optional[str]) -> str:
    """视觉模型不可用时的占位描述。"""
    parts = [f'Image attachment "{file_name or "image"}".']
    if content and content.strip():
        parts.append(f"Message context: {single_line(content)}.")
    if username:
        parts.append(f"Uploaded by {username}.")
    return " ".join(parts)


def image_dedupe_key(chunk: Chunk) -> str:
    if chunk.has_stored_file:
        return f"path:{chunk.stored_file_path}".lower()
    if chunk.source_file_name and chunk.source_file_name.strip():
        return f"name:{chunk.source_file_name}".lower()
    return f"text:{chunk.text}".lower()


def dedupe_image_chunks(chunks: Iterable[Chunk]) -> List[Chunk]:
    """按 存储路径 -> 源文件名 -> 文本 去重，保留首个。"""
    seen = set()
    result: List[Chunk] = []
    for chunk in chunks:
        if chunk is None or not chunk.is_image:
            continue
        key = image_dedupe_key(chunk)
        if key in seen:
            continue
        seen.add(key)
        result.append(chunk)
    return result


def select_images(
    content: Optional[str],
    *,
    explicit: Sequence[Chunk] = (),
    replied: Sequence[Chunk] = (),
    new: Sequence[Chunk] = (),
    best_match: Optional[Tuple[Chunk, float]] = None,
    threshold: float = 0.80,
) -> List[Chunk]:
    """候选图片优先级：显式提到的文件名 > 被回复消息的图片 > 本条新上传 > 相似度最高的一张。"""
    if explicit:
        return dedupe_image_chunks(explicit)
    if replied:
        return dedupe_image_chunks(replied)
    if new:
        return dedupe_image_chunks(new)
    if best_match is not None:
        chunk, similarity = best_match
        if similarity >= threshold and is_likely_image_question(content):
            return dedupe_image_chunks([chunk])
    return []


def should_attach_images(explicit: Sequence[Chunk], replied: Sequence[Chunk]) -> bool:
    return bool(explicit) or bool(replied)


def should_use_vision(content: Optional[str], images: Sequence[Chunk], has_new_images: bool) -> bool:
    if not images:
        return False
    if content and content.strip():
        if is_likely_image_question(content):
            return True
        if is_likely_attachment_question(content) and any(
            is_file_name_mentioned(content, c.source_file_name) for c in images
        ):
            return True
    return has_new_images and is_likely_attachment_question(content)


def image_context_messages(images: Iterable[Chunk]) -> List[ChatMessage]:
    messages = []
    for chunk in images:
        if not chunk.is_image:
            continue
        name = chunk.source_file_name if chunk.source_file_name and chunk.source_file_name.strip() else "image"
        description = chunk.description if chunk.description and chunk.description.strip() else chunk.text
        if description and description.strip():
            messages.append(ChatMessage(role="system", content=f"Image context ({name}): {description}"))
    return messages


def vision_context_line(images: Sequence[Chunk]) -> Optional[str]:
    """取第一张带描述的图片，压成单行并截断，用作视觉提示里的已存上下文。"""
    for chunk in images:
        text = chunk.description if chunk.description and chunk.description.strip() else chunk.text
        if text and text.strip():
            context = single_line(text)
            if len(context) > VISION_CONTEXT_MAX_LENGTH:
                context = context[:VISION_CONTEXT_MAX_LENGTH] + "..."
            return context
    return None
