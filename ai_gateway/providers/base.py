"""Provider 抽象接口。

上层 Router / Multiplexer 不直接依赖具体厂商的 HTTP 细节，而是依赖以下按能力拆分的协议：

- ChatProvider.complete(call): 非流式对话，返回统一的 ChatCompletionResponse。
- StreamingProvider.stream(call): 流式对话，产出 index 从 0 连续递增、以 done 块结尾的 StreamChunk。
- AnalysisProvider.analyze(call): 结构化分析，返回完整的 AIAnalysisResponse。

每个厂商实现一个 Client（如 KimiClient），按需满足其中若干协议；
适配器之间不共享状态，单次调用的临时状态只存在于该次调用内部。
"""

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, List, Protocol, runtime_checkable

from pydantic import ValidationError as SchemaValidationError

from ai_gateway.domain.analysis import ANALYSIS_RESULT_TYPES, AIAnalysisType
from ai_gateway.domain.exceptions import MalformedResponseError
from ai_gateway.domain.models import (
    AIAnalysisResponse,
    ChatCompletionResponse,
    ChatMessage,
    ChatParameters,
    StreamChunk,
)
from ai_gateway.prompts import build_analysis_messages
from ai_gateway.providers.registry import ModelSpec


@dataclass
class ProviderCall:
    """Router 解析完成后交给适配器的单次调用。"""

    request_id: str
    model: ModelSpec
    messages: List[ChatMessage]
    parameters: ChatParameters = field(default_factory=ChatParameters)

    def resolved_temperature(self) -> float:
        t = self.parameters.temperature
        return self.model.default_temperature if t is None else t

    def resolved_max_tokens(self) -> int:
        requested = self.parameters.max_tokens
        if requested is None:
            return self.model.max_tokens
        return min(requested, self.model.max_tokens)


@dataclass
class AnalysisCall(ProviderCall):
    analysis_type: AIAnalysisType = AIAnalysisType.SUMMARIZATION
    subject: Any = None


@runtime_checkable
class ChatProvider(Protocol):
    name: str

    def complete(self, call: ProviderCall) -> ChatCompletionResponse:
        ...


@runtime_checkable
class StreamingProvider(Protocol):
    name: str

    def stream(self, call: ProviderCall) -> Iterator[StreamChunk]:
        """执行一次流式对话调用，逐步产出增量；惰性执行，首次 next() 才发起请求。"""

        ...


@runtime_checkable
class AnalysisProvider(Protocol):
    name: str

    def analyze(self, call: AnalysisCall) -> AIAnalysisResponse:
        ...


def analyze_with_chat(provider: ChatProvider, call: AnalysisCall) -> AIAnalysisResponse:
    """借助 complete() 完成一次结构化分析。

    1. 按分析类型拼接只允许输出 JSON 的提示词。
    2. 调用一次非流式对话。
    3. 解析并用 pydantic 模型校验结果，失败视为厂商响应格式错误。
    """

    started = time.perf_counter()
    temperature = call.parameters.temperature
    resp = provider.complete(ProviderCall(
        request_id=call.request_id,
        model=call.model,
        messages=build_analysis_messages(call.analysis_type, call.subject),
        parameters=replace(call.parameters, temperature=0.1 if temperature is None else temperature),
    ))
    result = parse_analysis_result(call.analysis_type, resp.message.content, provider.name)
    return AIAnalysisResponse(
        request_id=call.request_id,
        type=call.analysis_type,
        result=result,
        model=call.model.name,
        provider=call.model.provider,
        usage=resp.usage,
        execution_time_ms=(time.perf_counter() - started) * 1000,
    )


def parse_analysis_result(analysis_type: AIAnalysisType, text: str, provider: str):
    """从模型输出中提取 JSON 对象并按类型校验。

    模型偶尔会把 JSON 包在 ```json 代码块或前后说明文字里，这里只截取最外层的 {...}。
    """

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise MalformedResponseError(
            code="MALFORMED_ANALYSIS",
            message="Analysis output contains no JSON object",
            provider=provider,
        )
    try:
        data = json.loads(text[start:end + 1])
        return ANALYSIS_RESULT_TYPES[analysis_type].model_validate(data)
    except (json.JSONDecodeError, SchemaValidationError) as e:
        raise MalformedResponseError(
            code="MALFORMED_ANALYSIS",
            message=f"Invalid {analysis_type.value} result: {e}",
            provider=provider,
        ) from e
