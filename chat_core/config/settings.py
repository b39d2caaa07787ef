"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级从高到低：
初始化参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、glm",
    )
    default_model: str = Field(
        default="gpt-4o",
        description="新会话默认使用的对话模型，可以是逻辑名或厂商模型名",
    )
    vision_model: str = Field(default="vision", description="图片理解使用的模型")
    embedding_model: str = Field(default="embedding", description="向量化使用的模型")

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    # GLM / BigModel
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 存储与扩展模块 ----
    storage_root: str = Field(default=".storage", description="会话状态存储根目录")
    modules_path: str = Field(default="modules", description="扩展模块目录（启动时扫描一次）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话默认参数 ----
    max_tokens: int = Field(default=3584, ge=50, description="单次回复最大 token 数")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="生成温度")
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0, description="top_p 采样")
    max_chat_history_length: int = Field(
        default=4096,
        ge=100,
        description="历史窗口字符预算，超出后从最早的消息开始淘汰",
    )
    chunk_size: int = Field(default=2048, ge=16, description="文本切片大小（字符）")
    closest_match_limit: int = Field(default=3, ge=1, description="检索返回的最大匹配数")
    factoid_similarity_threshold: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        description="相似度阈值，低于该值的切片/事实不会进入上下文",
    )
    learning_personality_prompt: Optional[str] = Field(
        default=None,
        description="infobot 回答时附加的人设提示词",
    )
    infobot_llm_phrasing: bool = Field(
        default=False,
        description="命中事实时是否调用模型润色回复（关闭时直接返回固定格式回复）",
    )

    # ---- 平台限制 ----
    max_message_length: int = Field(default=2000, ge=1, description="单条消息最大字符数")
    max_file_bytes: int = Field(default=7_500_000, ge=1, description="单个附件最大字节数")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "glm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("default_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        name = (v or "").strip().lower()
        if name not in {"openai", "glm"}:
            raise ValueError(f"Unknown provider: {v!r}")
        return name

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def api_key_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_api_key", None)


settings = Settings()
