"""Chat Core 顶层包。

群聊机器人的会话上下文引擎：有预算的会话状态与身份校验、
基于向量的检索与图片选择、可插拔的扩展模块管道（内置 infobot），
以及把模型输出组装成平台消息与附件的回复层。
"""

from chat_core.api.service import build_engine, start_engine

__all__ = ["build_engine", "start_engine"]
