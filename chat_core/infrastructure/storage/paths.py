"""存储路径与社区令牌（community token）文件名工具。

目录布局::

    {root}/channels/{社区名}_{gid}/{会话名}_{cid}/
        {会话名}_{cid}.{gid}.token.state.json
        facts.{gid}.token.json
        embeds/{key}.{gid}.token.embed.json
        embeds/files/{msg}.{att}.{文件名}

文件名里的 ``.{gid}.token.`` 段记录了写入时所属的社区，加载时用来和目录
推导出的社区 id 交叉校验。没有该段的文件是旧格式（legacy）。
"""

from pathlib import Path
from typing import Optional

# Windows 与 POSIX 文件名中的非法字符并集
_INVALID_FILE_NAME_CHARS = set('<>:"/\\|?*') | {chr(i) for i in range(32)}
_MAX_FILE_NAME_LENGTH = 120


def sanitize_name(name: Optional[str]) -> str:
    """把显示名转换成目录名：保留字母数字、``-``、``_``，空白或非法字符折叠为单个 ``-``。"""

    if not name or not name.strip():
        return "unknown"
    out = []
    last_was_dash = False
    for ch in name:
        if ch.isalnum() or ch in "-_":
            out.append(ch)
            last_was_dash = False
        elif ch.isspace() or ch in _INVALID_FILE_NAME_CHARS:
            if not last_was_dash:
                out.append("-")
                last_was_dash = True
    sanitized = "".join(out).strip("-")
    return sanitized or "unknown"


def normalize_file_name(name: Optional[str]) -> str:
    """附件 / 模型输出文件的安全文件名。"""

    if not name or not name.strip():
        return "response.txt"
    candidate = name.strip().replace("\\", "/")
    candidate = candidate.rsplit("/", 1)[-1].strip()
    if not candidate:
        return "response.txt"
    candidate = "".join("-" if ch in _INVALID_FILE_NAME_CHARS else ch for ch in candidate)
    if "." not in candidate:
        candidate += ".txt"
    if len(candidate) > _MAX_FILE_NAME_LENGTH:
        candidate = candidate[:_MAX_FILE_NAME_LENGTH]
    return candidate


def parse_id_from_name(name: str) -> Optional[int]:
    """``general_123`` -> 123；没有下划线时尝试把整个名字当作 id。"""

    if not name or not name.strip():
        return None
    index = name.rfind("_")
    if 0 <= index < len(name) - 1:
        tail = name[index + 1:]
        if tail.isdigit():
            return int(tail)
    return int(name) if name.isdigit() else None


def tokenized_file_name(base_name: str, guild_id: int, extension: str) -> str:
    return f"{base_name}.{guild_id}.token.{extension}"


def guild_token_from_file_name(path: Path) -> Optional[int]:
    parts = [p for p in Path(path).name.split(".") if p]
    for i in range(1, len(parts)):
        if parts[i].lower() == "token" and parts[i - 1].isdigit():
            return int(parts[i - 1])
    return None


def strip_guild_token(core: str) -> Optional[str]:
    """``1.2.token`` -> ``1``；末尾不是 ``{数字}.token`` 时返回 None。"""

    parts = [p for p in (core or "").split(".") if p]
    if len(parts) < 2 or parts[-1].lower() != "token" or not parts[-2].isdigit():
        return None
    return ".".join(parts[:-2])


def base_name_from_file_name(path: Path, suffix: str) -> Optional[str]:
    name = Path(path).name
    if not name.lower().endswith(suffix.lower()):
        return None
    core = name[: -len(suffix)]
    stripped = strip_guild_token(core)
    if stripped is not None:
        core = stripped
    return core or None


def embed_key_from_file_name(path: Path) -> Optional[str]:
    return base_name_from_file_name(path, ".embed.json")


def channel_id_from_state_path(path: Path) -> Optional[int]:
    return parse_id_from_name(Path(path).parent.name)


def guild_id_from_channel_path(path: Path) -> Optional[int]:
    return parse_id_from_name(Path(path).parent.parent.name)


def channel_id_from_embed_path(path: Path) -> Optional[int]:
    return parse_id_from_name(Path(path).parent.parent.name)


def guild_id_from_embed_path(path: Path) -> Optional[int]:
    return parse_id_from_name(Path(path).parent.parent.parent.name)


def channel_directory(
    root: Path,
    guild_id: int,
    guild_name: Optional[str],
    channel_id: int,
    channel_name: Optional[str],
) -> Path:
    guild_folder = f"{sanitize_name(guild_name or 'guild')}_{guild_id}"
    channel_folder = f"{sanitize_name(channel_name or 'channel')}_{channel_id}"
    return Path(root) / "channels" / guild_folder / channel_folder


def channel_file_name(channel_id: int, channel_name: Optional[str]) -> str:
    return f"{sanitize_name(channel_name or 'channel')}_{channel_id}"


def permalink(guild_id: int, channel_id: int, message_id: int) -> Optional[str]:
    if not guild_id or not channel_id or not message_id:
        return None
    return f"https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"


def single_line(text: Optional[str]) -> str:
    return (text or "").replace("\r", " ").replace("\n", " ").strip()
