"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatCompletionRequest / StreamChunk 等模型。
- analysis: 分析类型及其结果 schema。
- capabilities: 模型能力定义。
- exceptions: 业务异常类型定义。
"""
