"""基于 JSON 文件的会话状态存储，带社区身份校验。

每个会话的状态、切片（embeds）与模块文件都写在该会话自己的目录下，
文件名携带写入时的社区 id 令牌。加载时三方交叉校验：

1. 文件名令牌 vs 目录推导出的社区 id；
2. 两者 vs 进程内已登记的（会话 -> 社区）映射；
3. 状态文件内嵌的社区 id vs 校验后的社区 id。

任何一方冲突都拒绝该文件，绝不合并；首个通过校验的文件登记映射，
此后整个进程生命周期内该会话不会再绑定到其他社区。
"""

import json
import os
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from uuid import uuid4

from chat_core.config.settings import Settings, settings
from chat_core.domain.documents import Chunk
from chat_core.domain.exceptions import BusinessError, StoreError
from chat_core.domain.models import ChatMessage
from chat_core.domain.platform import IncomingMessage
from chat_core.domain.state import ConversationOptions, ConversationState, ModelParameters
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage import paths

# 最多追踪的带图回复数，超出时丢弃最早的记录
MAX_TRACKED_IMAGE_RESPONSES = 1000


@dataclass
class StateDefaults:
    """新会话的默认值。"""

    parameters: ModelParameters
    options: ConversationOptions
    prime_directive: str = ""

    @classmethod
    def from_settings(cls, cfg: Settings, prime_directive: str = "") -> "StateDefaults":
        return cls(
            parameters=ModelParameters(
                model=cfg.default_model,
                vision_model=cfg.vision_model,
                max_tokens=cfg.max_tokens,
                temperature=cfg.temperature,
                top_p=cfg.top_p,
                max_chat_history_length=cfg.max_chat_history_length,
                chunk_size=cfg.chunk_size,
                closest_match_limit=cfg.closest_match_limit,
            ),
            options=ConversationOptions(
                learning_personality_prompt=cfg.learning_personality_prompt,
                factoid_similarity_threshold=cfg.factoid_similarity_threshold,
            ),
            prime_directive=prime_directive,
        )


@dataclass
class Artifact:
    """通过身份校验、已解析的模块文件。"""

    channel_id: int
    path: Path
    has_token: bool
    guild_id: int
    path_guild_id: Optional[int]
    payload: Any


class ConversationStateStore:
    def __init__(self, root: str | Path | None = None, defaults: Optional[StateDefaults] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._channels_root = self._root / "channels"
        self._defaults = defaults or StateDefaults.from_settings(settings)
        self.states: Dict[int, ConversationState] = {}
        self.chunks: Dict[int, List[Chunk]] = {}
        # 会话 id -> 社区 id，进程内首次解析成功后固定
        self._registry: Dict[int, int] = {}
        # 机器人回复消息 id -> 随回复发送的已存储图片路径
        self._image_responses: "OrderedDict[int, Set[str]]" = OrderedDict()
        # 会话 id -> 最近一次加载或写入的状态文件
        self._state_paths: Dict[int, Path] = {}

    @property
    def root(self) -> Path:
        return self._root

    @property
    def defaults(self) -> StateDefaults:
        return self._defaults

    # ---- 内存状态 ----

    def new_state(self, channel_id: int) -> ConversationState:
        d = self._defaults
        state = ConversationState(
            channel_id=channel_id,
            options=ConversationOptions(**vars(d.options)),
            parameters=ModelParameters(**vars(d.parameters)),
        )
        self.reset_prime_directives(state)
        return state

    def reset_prime_directives(self, state: ConversationState) -> bool:
        """prime directive 与当前默认值不一致时重置，返回是否发生了重置。"""
        expected = self._defaults.prime_directive
        current = state.prime_directives
        if len(current) == 1 and current[0].content == expected:
            return False
        state.prime_directives = [ChatMessage(role="system", content=expected)]
        return True

    def get(self, channel_id: int) -> Optional[ConversationState]:
        return self.states.get(channel_id)

    def get_or_create(
        self,
        channel_id: int,
        *,
        guild_id: int = 0,
        guild_name: Optional[str] = None,
        channel_name: Optional[str] = None,
        is_private: bool = False,
    ) -> ConversationState:
        state = self.states.get(channel_id)
        if state is not None:
            return state
        state = self.new_state(channel_id)
        state.guild_id = guild_id
        if is_private:
            state.guild_name = guild_name or "dm"
            state.channel_name = channel_name or "dm"
            state.options.enabled = True
        else:
            state.guild_name = guild_name
            state.channel_name = channel_name
        return self.states.setdefault(channel_id, state)

    def ensure_metadata(
        self,
        state: ConversationState,
        guild_id: int,
        guild_name: Optional[str],
        channel_name: Optional[str],
    ) -> None:
        """用平台上的最新名称刷新显示名（社区 id 只在未绑定时写入）。"""
        if state.guild_id == 0 and guild_id:
            state.guild_id = guild_id
        if guild_name:
            state.guild_name = guild_name
        if channel_name:
            state.channel_name = channel_name

    # ---- 身份校验 ----

    def registered_community(self, channel_id: int) -> Optional[int]:
        return self._registry.get(channel_id)

    def is_identity_match(self, state: ConversationState, guild_id: int, context: str) -> bool:
        if state.guild_id == 0 and guild_id != 0:
            state.guild_id = guild_id

        if state.guild_id != guild_id:
            logger.warning(
                "Guild mismatch for channel",
                extra={"extra": {"channel_id": state.channel_id, "context": context,
                                 "state_guild_id": state.guild_id, "actual_guild_id": guild_id}},
            )
            return False

        expected = self._registry.get(state.channel_id)
        if expected is not None and expected != guild_id:
            logger.warning(
                "Guild mismatch for channel",
                extra={"extra": {"channel_id": state.channel_id, "context": context,
                                 "expected_guild_id": expected, "actual_guild_id": guild_id}},
            )
            return False

        self._registry.setdefault(state.channel_id, guild_id)
        return True

    def validate_artifact(
        self, channel_id: int, path: Path, *, is_embed: bool = False, label: str = "state"
    ) -> Tuple[bool, int]:
        """校验文件名令牌与目录社区 id，并与登记表比对。返回 (是否加载, 社区 id)。"""
        token = paths.guild_token_from_file_name(path)
        path_guild = paths.guild_id_from_embed_path(path) if is_embed else paths.guild_id_from_channel_path(path)

        if token is not None and path_guild is not None and token != path_guild:
            logger.warning(
                f"Skipping {label}: token guild does not match path guild",
                extra={"extra": {"channel_id": channel_id, "token_guild_id": token,
                                 "path_guild_id": path_guild, "path": str(path)}},
            )
            return False, 0

        guild_id = token if token is not None else (path_guild if path_guild is not None else 0)
        if token is not None or path_guild is not None:
            existing = self._registry.get(channel_id)
            if existing is None:
                self._registry[channel_id] = guild_id
            elif existing != guild_id:
                logger.warning(
                    f"Skipping {label}: guild mismatch",
                    extra={"extra": {"channel_id": channel_id, "expected_guild_id": existing,
                                     "found_guild_id": guild_id, "path": str(path)}},
                )
                return False, guild_id
        return True, guild_id

    # ---- 文件读写 ----

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), path=str(path))

    def _write_json(self, path: Path, payload: Any) -> None:
        path = Path(path)
        tmp_path = path.parent / f"{path.name}.{uuid4().hex}.tmp"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), path=str(path))

    def adopt_legacy_json(
        self,
        path: Path,
        suffix: str,
        guild_id: int,
        extension: str,
        payload: Any,
        *,
        overwrite_existing: bool = False,
        delete_legacy: bool = False,
    ) -> bool:
        """把文件以令牌文件名重写。已存在的令牌文件默认不会被覆盖。"""
        path = Path(path)
        base_name = paths.base_name_from_file_name(path, suffix)
        if base_name is None:
            return False
        token_path = path.parent / paths.tokenized_file_name(base_name, guild_id, extension)
        if not overwrite_existing and token_path.exists():
            return False
        self._write_json(token_path, payload)
        if delete_legacy and token_path.resolve() != path.resolve():
            try:
                path.unlink()
            except OSError as e:
                logger.warning(
                    "Failed to delete legacy file",
                    extra={"extra": {"path": str(path), "error": str(e)}},
                )
        return True

    def _scan(self, pattern: str) -> List[Path]:
        self._channels_root.mkdir(parents=True, exist_ok=True)
        return sorted(p for p in self._channels_root.rglob(pattern) if p.is_file())

    # ---- 会话状态 ----

    def channel_directory(self, state: ConversationState) -> Path:
        return paths.channel_directory(
            self._root, state.guild_id, state.guild_name, state.channel_id, state.channel_name
        )

    def state_file_path(self, state: ConversationState) -> Path:
        name = paths.channel_file_name(state.channel_id, state.channel_name)
        return self.channel_directory(state) / paths.tokenized_file_name(name, state.guild_id, "state.json")

    def load(self) -> int:
        """扫描所有 ``*.state.json``，返回成功加载的会话数。"""
        files = self._scan("*.state.json")
        channels_with_token: Set[int] = set()
        for file in files:
            channel_id = paths.channel_id_from_state_path(file)
            if channel_id is not None and paths.guild_token_from_file_name(file) is not None:
                channels_with_token.add(channel_id)

        loaded = 0
        loaded_mtimes: Dict[int, float] = {}
        for file in files:
            channel_id = paths.channel_id_from_state_path(file)
            if channel_id is None:
                continue
            has_token = paths.guild_token_from_file_name(file) is not None
            if not has_token and channel_id in channels_with_token:
                continue

            should_load, guild_id = self.validate_artifact(channel_id, file, label="state")
            if not should_load:
                continue

            try:
                state = ConversationState.from_dict(
                    self._read_json(file),
                    default_parameters=self._defaults.parameters,
                    default_options=self._defaults.options,
                )
            except BusinessError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(file)}})
                continue
            except (TypeError, ValueError) as e:
                logger.error(
                    "Invalid state file",
                    extra={"extra": {"code": "STORE_READ_ERROR", "path": str(file), "error": str(e)}},
                )
                continue

            if guild_id and state.guild_id and state.guild_id != guild_id:
                logger.warning(
                    "Skipping state: guild mismatch",
                    extra={"extra": {"channel_id": channel_id, "state_guild_id": state.guild_id,
                                     "token_guild_id": guild_id}},
                )
                continue
            if guild_id and not state.guild_id:
                state.guild_id = guild_id

            # 会话改名后旧目录里可能留有过期状态，只保留最新写入的那份
            mtime = self._mtime(file)
            if channel_id in loaded_mtimes:
                if mtime < loaded_mtimes[channel_id]:
                    logger.warning(
                        "Skipping older state file",
                        extra={"extra": {"channel_id": channel_id, "path": str(file),
                                         "kept_path": str(self._state_paths.get(channel_id))}},
                    )
                    continue
            else:
                loaded += 1
            loaded_mtimes[channel_id] = mtime

            state.channel_id = channel_id
            self.reset_prime_directives(state)
            self.states[channel_id] = state
            self._state_paths[channel_id] = file
            logger.info("Loaded state", extra={"extra": {"channel_id": channel_id, "guild_id": state.guild_id}})

            if not has_token:
                resolved = state.guild_id or paths.guild_id_from_channel_path(file) or 0
                try:
                    self.adopt_legacy_json(
                        file, ".state.json", resolved, "state.json", state.to_dict(), delete_legacy=True
                    )
                except StoreError as e:
                    logger.error(e.message, extra={"extra": {"code": e.code, "path": str(file)}})
        return loaded

    def save(self, channel_id: int) -> bool:
        """写入单个会话状态；失败只记录日志，不向调用方抛出。"""
        state = self.states.get(channel_id)
        if state is None:
            return False
        if state.guild_id == 0 and self._registry.get(channel_id):
            state.guild_id = self._registry[channel_id]
        path = self.state_file_path(state)
        try:
            self._write_json(path, state.to_dict())
        except StoreError as e:
            logger.error(e.message, extra={"extra": {"code": e.code, "channel_id": channel_id, "path": str(path)}})
            return False
        self._forget_previous_state_file(channel_id, path)
        return True

    def _forget_previous_state_file(self, channel_id: int, path: Path) -> None:
        previous = self._state_paths.get(channel_id)
        self._state_paths[channel_id] = path
        if previous is None or previous == path:
            return
        try:
            previous.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                "Failed to delete previous state file",
                extra={"extra": {"channel_id": channel_id, "path": str(previous), "error": str(e)}},
            )

    @staticmethod
    def _mtime(path: Path) -> float:
        try:
            return path.stat().st_mtime
        except OSError:
            return 0.0

    def save_all(self) -> int:
        return sum(1 for channel_id in list(self.states) if self.save(channel_id))

    # ---- 切片（embeds）----

    def embed_directory(self, state: ConversationState) -> Path:
        return self.channel_directory(state) / "embeds"

    def chunk_file_path(self, state: ConversationState, key: str) -> Path:
        return self.embed_directory(state) / paths.tokenized_file_name(key, state.guild_id, "embed.json")

    def existing_chunk_file(self, state: ConversationState, key: str) -> Optional[Path]:
        token_path = self.chunk_file_path(state, key)
        if token_path.exists():
            return token_path
        legacy = self.embed_directory(state) / f"{key}.embed.json"
        return legacy if legacy.exists() else None

    def read_chunks(self, path: Path) -> List[Chunk]:
        data = self._read_json(path)
        if not isinstance(data, list):
            return []
        return [Chunk.from_dict(item) for item in data if isinstance(item, dict)]

    def write_chunks(self, path: Path, chunks: List[Chunk]) -> Path:
        self._write_json(path, [c.to_dict() for c in chunks])
        return Path(path)

    def save_chunks(self, state: ConversationState, key: str, chunks: List[Chunk]) -> Path:
        return self.write_chunks(self.chunk_file_path(state, key), chunks)

    def store_image_file(
        self, state: ConversationState, message_id: int, attachment_id: int, filename: str, data: bytes
    ) -> str:
        """保存附件字节，返回相对存储根目录的路径。"""
        files_dir = self.embed_directory(state) / "files"
        path = files_dir / f"{message_id}.{attachment_id}.{paths.normalize_file_name(filename)}"
        try:
            files_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), path=str(path))
        return path.relative_to(self._root).as_posix()

    def resolve_stored_path(self, stored: Optional[str]) -> Optional[Path]:
        if not stored or not stored.strip():
            return None
        candidate = Path(stored)
        return candidate if candidate.is_absolute() else self._root / candidate

    def image_embed_path(self, state: ConversationState, chunk: Chunk) -> Optional[Path]:
        """图片切片对应的 embed 文件：``{msg}.{att}`` 取自存储文件名前两段。"""
        stored = self.resolve_stored_path(chunk.stored_file_path)
        if stored is None:
            return None
        parts = [p for p in stored.name.split(".") if p]
        if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
            return None
        key = f"{parts[0]}.{parts[1]}"
        existing = self.existing_chunk_file(state, key)
        if existing is not None:
            return existing
        return self.chunk_file_path(state, key)

    def load_chunks(self) -> int:
        """扫描所有 ``*.embed.json``，返回加载的切片数。"""
        files = self._scan("*.embed.json")
        keys_with_token: Set[str] = set()
        for file in files:
            key = paths.embed_key_from_file_name(file)
            if key and paths.guild_token_from_file_name(file) is not None:
                keys_with_token.add(key.lower())

        total = 0
        for file in files:
            channel_id = paths.channel_id_from_embed_path(file)
            key = paths.embed_key_from_file_name(file)
            if channel_id is None or not key:
                continue
            token = paths.guild_token_from_file_name(file)
            has_token = token is not None
            if not has_token and key.lower() in keys_with_token:
                continue

            should_load, guild_id = self.validate_artifact(channel_id, file, is_embed=True, label="embeddings")
            if not should_load:
                continue
            path_guild = paths.guild_id_from_embed_path(file)
            resolved = guild_id or (token if has_token else path_guild) or 0

            try:
                chunks = self.read_chunks(file)
            except StoreError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(file)}})
                continue
            except (TypeError, ValueError) as e:
                logger.error(
                    "Invalid embed file",
                    extra={"extra": {"code": "STORE_READ_ERROR", "path": str(file), "error": str(e)}},
                )
                continue
            if not chunks:
                continue

            updated = False
            for chunk in chunks:
                if chunk.ensure_description():
                    updated = True
            self.chunks.setdefault(channel_id, []).extend(chunks)
            total += len(chunks)

            payload = [c.to_dict() for c in chunks]
            try:
                if not has_token and path_guild is not None:
                    self.adopt_legacy_json(file, ".embed.json", resolved, "embed.json", payload, delete_legacy=True)
                elif updated and has_token:
                    self._write_json(file, payload)
            except StoreError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(file)}})
        return total

    def channel_chunks(self, channel_id: int) -> List[Chunk]:
        return self.chunks.setdefault(channel_id, [])

    # ---- 图片回复追踪与删除 ----

    def track_image_response(self, response_message_id: int, stored_path: Optional[str]) -> None:
        resolved = self.resolve_stored_path(stored_path)
        if resolved is None:
            return
        self._image_responses.setdefault(response_message_id, set()).add(str(resolved))
        self._image_responses.move_to_end(response_message_id)
        while len(self._image_responses) > MAX_TRACKED_IMAGE_RESPONSES:
            self._image_responses.popitem(last=False)

    def delete_image_chunks(self, state: ConversationState, message: IncomingMessage) -> Tuple[int, int]:
        """删除某条消息关联的图片切片及文件，返回 (embed 文件数, 存储文件数)。"""
        channel_chunks = self.channel_chunks(state.channel_id)
        embed_dir = self.embed_directory(state)
        files_dir = embed_dir / "files"
        embed_files: Set[Path] = set()
        stored_files: Set[Path] = set()
        to_remove: List[Chunk] = []

        for stored in self._image_responses.pop(message.id, set()):
            stored_files.add(Path(stored))
            to_remove.extend(
                c for c in channel_chunks
                if c.is_image and c.has_stored_file and str(self.resolve_stored_path(c.stored_file_path)) == stored
            )

        image_attachments = [a for a in message.attachments if a.is_image]
        if message.attachments:
            for attachment in image_attachments:
                base_name = f"{message.id}.{attachment.id}"
                if state.guild_id:
                    embed_files.add(embed_dir / paths.tokenized_file_name(base_name, state.guild_id, "embed.json"))
                embed_files.add(embed_dir / f"{base_name}.embed.json")
                if files_dir.exists():
                    stored_files.update(files_dir.glob(f"{base_name}.*"))
                to_remove.extend(
                    c for c in channel_chunks
                    if c.is_image and (
                        c.source_message_id == message.id
                        or (c.source_file_name or "").lower() == attachment.filename.lower()
                        or Path(c.stored_file_path or "").name.lower().startswith(base_name.lower() + ".")
                    )
                )
        elif message.reference_message_id:
            to_remove.extend(
                c for c in channel_chunks if c.is_image and c.source_message_id == message.reference_message_id
            )

        for chunk in to_remove:
            if not chunk.has_stored_file:
                continue
            stored_files.add(self.resolve_stored_path(chunk.stored_file_path))
            embed_path = self.image_embed_path(state, chunk)
            if embed_path is not None:
                embed_files.add(embed_path)

        for path in list(embed_files) + list(stored_files):
            if not path.exists():
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to delete file", extra={"extra": {"path": str(path), "error": str(e)}})

        if to_remove:
            removed_paths = {str(self.resolve_stored_path(c.stored_file_path)) for c in to_remove if c.has_stored_file}
            channel_chunks[:] = [
                c for c in channel_chunks
                if not (c.is_image and (
                    str(self.resolve_stored_path(c.stored_file_path)) in removed_paths
                    or c.source_message_id == message.id
                ))
            ]
        return len(embed_files), len(stored_files)

    # ---- 模块文件 ----

    def module_json_path(self, state: ConversationState, base_name: str) -> Path:
        return self.channel_directory(state) / paths.tokenized_file_name(base_name, state.guild_id, "json")

    def write_module_json(self, state: ConversationState, base_name: str, payload: Any) -> Path:
        path = self.module_json_path(state, base_name)
        self._write_json(path, payload)
        return path

    def iter_module_artifacts(
        self, base_name: str, label: str, exclude_prefix: Optional[str] = None
    ) -> Iterator[Artifact]:
        """遍历 ``{base_name}*.json`` 模块文件，只产出通过身份校验且可解析的文件。"""
        files = [
            f for f in self._scan(f"{base_name}*.json")
            if not (exclude_prefix and f.name.lower().startswith(exclude_prefix.lower()))
        ]
        channels_with_token: Set[int] = set()
        for file in files:
            channel_id = paths.channel_id_from_state_path(file)
            if channel_id is not None and paths.guild_token_from_file_name(file) is not None:
                channels_with_token.add(channel_id)

        for file in files:
            channel_id = paths.channel_id_from_state_path(file)
            if channel_id is None:
                continue
            token = paths.guild_token_from_file_name(file)
            if token is None and channel_id in channels_with_token:
                continue
            should_load, guild_id = self.validate_artifact(channel_id, file, label=label)
            if not should_load:
                continue
            try:
                payload = self._read_json(file)
            except StoreError as e:
                logger.error(e.message, extra={"extra": {"code": e.code, "path": str(file)}})
                continue
            path_guild = paths.guild_id_from_channel_path(file)
            resolved = guild_id or (token if token is not None else path_guild) or 0
            yield Artifact(
                channel_id=channel_id,
                path=file,
                has_token=token is not None,
                guild_id=resolved,
                path_guild_id=path_guild,
                payload=payload,
            )
