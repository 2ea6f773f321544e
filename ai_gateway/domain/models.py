"""统一的对话、流式增量与分析数据模型。

本模块定义了 Gateway 内部在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant），创建后不可变。
- ChatCompletionRequest: 调用方提交给 Gateway 的完整聊天请求。
- ChatCompletionResponse: 非流式请求的唯一结果。
- StreamChunk: 流式请求的单个增量，按 index 严格排序。
- AIAnalysisRequest / AIAnalysisResponse: 结构化分析请求与结果（见 analysis 模块）。

所有 Provider 适配器（如 KimiClient、ClaudeClient）都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ai_gateway.domain.analysis import AIAnalysisType
    from ai_gateway.domain.exceptions import BusinessError


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AIProvider(str, Enum):
    """上游厂商（封闭集合）。"""

    KIMI = "kimi"
    GLM = "glm"
    CLAUDE = "claude"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    ERROR = "error"


# 厂商 finish_reason -> 统一 FinishReason，未列出的一律视为 error
_FINISH_REASON_MAP = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_calls": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
}


def normalize_finish_reason(raw: Optional[str]) -> FinishReason:
    if raw is None:
        return FinishReason.STOP
    return _FINISH_REASON_MAP.get(raw, FinishReason.ERROR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    frozen=True：消息一旦加入会话就不可修改，会话顺序即列表顺序。
    """

    role: ChatRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ChatParameters:
    """生成参数；为 None 的字段由 registry 中的模型默认值补齐。"""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None


@dataclass
class ChatCompletionRequest:
    """一次完整的聊天请求。

    - model: 具体模型 ID（如 "glm-4.6"）或逻辑模型族名（如 "ide-chat"）。
    - provider: 可选；省略时由 Router 按默认策略解析。
    - stream: 是否以流式方式返回。
    """

    messages: List[ChatMessage]
    model: str
    provider: Optional[AIProvider] = None
    stream: bool = False
    parameters: ChatParameters = field(default_factory=ChatParameters)


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class ChatCompletionResponse:
    """非流式调用的最终结果，每个请求恰好产生一次。"""

    request_id: str
    message: ChatMessage
    model: str
    provider: AIProvider
    finish_reason: FinishReason
    usage: ChatUsage = field(default_factory=ChatUsage)
    raw: Optional[dict] = None


@dataclass
class StreamChunk:
    """流式对话的单个增量。

    - index: 同一请求内从 0 开始连续递增。
    - done: True 表示终止块，之后不会再有任何投递。
    - error: 终止错误标记；设置了 error 的块同样是最后一块，且 done 恒为 False。
    """

    delta: str
    index: int
    done: bool = False
    finish_reason: Optional[FinishReason] = None
    usage: Optional[ChatUsage] = None
    error: Optional["BusinessError"] = None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None


@dataclass
class AIAnalysisRequest:
    """结构化分析请求，结果一次性返回，从不流式。"""

    type: "AIAnalysisType"
    subject: Any
    model: str
    provider: Optional[AIProvider] = None
    parameters: ChatParameters = field(default_factory=ChatParameters)


@dataclass
class AIAnalysisResponse:
    """分析结果；result 的具体类型由 type 决定（见 ANALYSIS_RESULT_TYPES）。"""

    request_id: str
    type: "AIAnalysisType"
    result: Any
    model: str
    provider: AIProvider
    usage: ChatUsage = field(default_factory=ChatUsage)
    execution_time_ms: float = 0.0
    meta: Dict[str, Any] = field(default_factory=dict)
