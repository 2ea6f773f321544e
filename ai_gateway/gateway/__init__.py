"""请求调度层。

包含：
- cancellation: 请求级取消标记与带截止时间的调用。
- router: provider/模型解析、能力校验与 fallback。
- multiplexer: 带背压的流式投递。
- analysis: 结构化分析管线。
"""
