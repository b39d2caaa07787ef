"""领域层模型与协议。

包含：
- models: 与 Provider 交互的 ChatMessage / ChatRequest / ChatResult 模型。
- state: 会话状态、选项与模型参数。
- history: 有字符预算的历史窗口。
- documents: 检索用的切片、事实（factoid）及其命中统计。
- platform: 聊天平台事件与发送接口协议。
- exceptions: 业务异常类型定义。
"""
