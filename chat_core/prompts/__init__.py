"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 prime directive 文本，
作为每个会话置顶的第一条 system 消息。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_prime_directive(locale: str = "en") -> str:
    """加载 prime directive 文本（去掉首尾空白）。"""

    fname = PROMPTS_DIR / locale / "prime_directive.md"
    return fname.read_text(encoding="utf-8").strip()
