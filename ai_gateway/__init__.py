"""AI Gateway 顶层包。

该包接收聊天与分析请求，将其路由到 Kimi / GLM / Claude 等上游 Provider，
把各家不同的请求与响应格式归一化为统一模型，并以带背压、可取消的方式
把增量 token 流式交付给调用方。
"""

from ai_gateway.api.service import AIService, get_default_service
from ai_gateway.domain.analysis import AIAnalysisType
from ai_gateway.domain.models import (
    AIAnalysisRequest,
    AIAnalysisResponse,
    AIProvider,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ChatParameters,
    ChatRole,
    StreamChunk,
)

__all__ = [
    "AIService",
    "get_default_service",
    "AIAnalysisType",
    "AIAnalysisRequest",
    "AIAnalysisResponse",
    "AIProvider",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "ChatMessage",
    "ChatParameters",
    "ChatRole",
    "StreamChunk",
]
