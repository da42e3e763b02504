"""领域层模型与协议。

包含：
- models: ChatMessage / ChatSession / ChatRequest 模型及标题、问候语等常量。
- session: SessionStore 异步存储协议。
- exceptions: 业务异常类型定义。
"""
