"""检索相关的数据结构：切片（Chunk）、事实（Factoid）及命中记录。

所有结构都以 kebab-case 键持久化为 JSON，时间统一为 UTC ISO-8601。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_vector(value: Any) -> Optional[List[float]]:
    if not value:
        return None
    return [float(x) for x in value]


@dataclass
class Chunk:
    """一段带向量的文本切片，可能关联一张已保存的图片。"""

    text: str
    embedding: Optional[List[float]] = None
    is_image: bool = False
    description: Optional[str] = None
    source_file_name: Optional[str] = None
    stored_file_path: Optional[str] = None
    source_guild_id: int = 0
    source_channel_id: int = 0
    source_message_id: int = 0
    source_attachment_id: int = 0

    @property
    def has_stored_file(self) -> bool:
        return bool(self.stored_file_path and self.stored_file_path.strip())

    @property
    def fallback_description(self) -> str:
        name = self.source_file_name if self.source_file_name and self.source_file_name.strip() else "image"
        return f'Image attachment "{name}".'

    @property
    def needs_vision_description(self) -> bool:
        """描述为空，或仍是上传时生成的占位文本。"""
        if not self.is_image:
            return False
        description = (self.description or "").strip()
        if not description:
            return True
        lowered = description.lower()
        return (
            lowered.startswith('image attachment "')
            or "message context:" in lowered
            or "uploaded by" in lowered
        )

    def ensure_description(self) -> bool:
        """text 与 description 互相补齐；都为空时使用占位描述。返回是否有改动。"""
        if not self.is_image:
            return False
        updated = False
        if not (self.description or "").strip() and self.text.strip():
            self.description = self.text
            updated = True
        if not self.text.strip() and (self.description or "").strip():
            self.text = self.description or ""
            updated = True
        if not self.text.strip():
            self.text = self.fallback_description
            self.description = self.text
            updated = True
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "embedding": self.embedding,
            "is-image": self.is_image,
            "description": self.description,
            "source-file-name": self.source_file_name,
            "stored-file-path": self.stored_file_path,
            "source-guild-id": self.source_guild_id,
            "source-channel-id": self.source_channel_id,
            "source-message-id": self.source_message_id,
            "source-attachment-id": self.source_attachment_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(
            text=data.get("text") or "",
            embedding=_as_vector(data.get("embedding")),
            is_image=bool(data.get("is-image")),
            description=data.get("description"),
            source_file_name=data.get("source-file-name"),
            stored_file_path=data.get("stored-file-path"),
            source_guild_id=_as_int(data.get("source-guild-id")),
            source_channel_id=_as_int(data.get("source-channel-id")),
            source_message_id=_as_int(data.get("source-message-id")),
            source_attachment_id=_as_int(data.get("source-attachment-id")),
        )


@dataclass
class Factoid:
    """infobot 学到的一条 “术语 -> 事实”，带来源信息。"""

    term: str
    text: str
    embedding: Optional[List[float]] = None
    source_guild_id: int = 0
    source_channel_id: int = 0
    source_message_id: int = 0
    source_user_id: int = 0
    source_username: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "text": self.text,
            "embedding": self.embedding,
            "source-guild-id": self.source_guild_id,
            "source-channel-id": self.source_channel_id,
            "source-message-id": self.source_message_id,
            "source-user-id": self.source_user_id,
            "source-username": self.source_username,
            "created": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Factoid":
        return cls(
            term=data.get("term") or "",
            text=data.get("text") or "",
            embedding=_as_vector(data.get("embedding")),
            source_guild_id=_as_int(data.get("source-guild-id")),
            source_channel_id=_as_int(data.get("source-channel-id")),
            source_message_id=_as_int(data.get("source-message-id")),
            source_user_id=_as_int(data.get("source-user-id")),
            source_username=data.get("source-username"),
            created_at=parse_ts(data.get("created")) or utcnow(),
        )


@dataclass
class FactoidMatch:
    """一次事实命中的记录。"""

    term: str
    query: str
    query_message_id: int = 0
    response_message_id: int = 0
    user_id: int = 0
    matched_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "query": self.query,
            "query-message-id": self.query_message_id,
            "response-message-id": self.response_message_id,
            "user-id": self.user_id,
            "matched-at": format_ts(self.matched_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FactoidMatch":
        return cls(
            term=data.get("term") or "",
            query=data.get("query") or "",
            query_message_id=_as_int(data.get("query-message-id")),
            response_message_id=_as_int(data.get("response-message-id")),
            user_id=_as_int(data.get("user-id")),
            matched_at=parse_ts(data.get("matched-at")) or utcnow(),
        )


@dataclass
class FactoidMatchStats:
    """按规范化术语聚合的命中统计（键统一小写）。"""

    total: int = 0
    term_counts: Dict[str, int] = field(default_factory=dict)
    term_display_names: Dict[str, str] = field(default_factory=dict)
    last_response_message_ids: Dict[str, int] = field(default_factory=dict)
    last_user_ids: Dict[str, int] = field(default_factory=dict)

    def record(self, key: str, display: str, response_message_id: int, user_id: int) -> None:
        key = key.lower()
        self.total += 1
        self.term_counts[key] = self.term_counts.get(key, 0) + 1
        self.term_display_names[key] = display
        if response_message_id:
            self.last_response_message_ids[key] = response_message_id
        if user_id:
            self.last_user_ids[key] = user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "term-counts": dict(self.term_counts),
            "term-display-names": dict(self.term_display_names),
            "last-response-message-ids": dict(self.last_response_message_ids),
            "last-user-ids": dict(self.last_user_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FactoidMatchStats":
        def lowered(raw: Any, cast) -> Dict[str, Any]:
            if not isinstance(raw, dict):
                return {}
            return {str(k).lower(): cast(v) for k, v in raw.items()}

        return cls(
            total=_as_int(data.get("total")),
            term_counts=lowered(data.get("term-counts"), _as_int),
            term_display_names=lowered(data.get("term-display-names"), str),
            last_response_message_ids=lowered(data.get("last-response-message-ids"), _as_int),
            last_user_ids=lowered(data.get("last-user-ids"), _as_int),
        )
