"""Kimi Provider 适配器。

本模块负责：

1. 接收 Router 解析好的 ProviderCall。
2. 将其转换为 Moonshot/Kimi 的 HTTP API 请求格式（OpenAI 兼容的 chat/completions）。
3. 调用 HTTP 接口，并把网络/API 异常翻译为统一异常体系。
4. 将响应 JSON 或 SSE 流解析为 ChatCompletionResponse / StreamChunk。
"""

from typing import Any, Dict, Iterator

import httpx

from ai_gateway.domain.exceptions import MalformedResponseError
from ai_gateway.domain.models import (
    AIAnalysisResponse,
    AIProvider,
    ChatCompletionResponse,
    ChatMessage,
    ChatRole,
    StreamChunk,
    normalize_finish_reason,
)
from ai_gateway.providers.base import AnalysisCall, ProviderCall, analyze_with_chat
from ai_gateway.providers.common import (
    iter_sse_json,
    normalize_openai_stream,
    raise_for_status,
    raise_for_stream_status,
    read_json,
    require_api_key,
    translate_transport_error,
    usage_from_openai,
)
from ai_gateway.providers.registry import KIMI_CONFIG


class KimiClient:
    """Kimi 提供方客户端实现，支持 chat / streaming_chat / analysis。"""

    name = AIProvider.KIMI.value

    def __init__(self, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = settings

    def complete(self, call: ProviderCall) -> ChatCompletionResponse:
        """执行一次非流式对话调用。"""

        api_key = require_api_key(getattr(self._settings, "kimi_api_key", None), self.name, "KIMI_API_KEY")
        payload = self._build_payload(call, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._url(), json=payload, headers=self._headers(api_key))
        except httpx.HTTPError as e:
            raise translate_transport_error(e, self.name) from e
        raise_for_status(resp, self.name)
        return self._parse_response(read_json(resp, self.name), call)

    def stream(self, call: ProviderCall) -> Iterator[StreamChunk]:
        """执行一次流式对话调用，逐步 yield StreamChunk。"""

        api_key = require_api_key(getattr(self._settings, "kimi_api_key", None), self.name, "KIMI_API_KEY")
        payload = self._build_payload(call, stream=True)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream("POST", self._url(), json=payload, headers=self._headers(api_key)) as resp:
                    raise_for_stream_status(resp, self.name)
                    yield from normalize_openai_stream(iter_sse_json(resp.iter_lines(), self.name), self.name)
        except httpx.HTTPError as e:
            raise translate_transport_error(e, self.name) from e

    def analyze(self, call: AnalysisCall) -> AIAnalysisResponse:
        return analyze_with_chat(self, call)

    def _url(self) -> str:
        base = getattr(self._settings, "kimi_base_url", None) or KIMI_CONFIG.base_url
        return f"{base.rstrip('/')}/chat/completions"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, call: ProviderCall, stream: bool) -> Dict[str, Any]:
        """将 ProviderCall 转成 Kimi 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": call.model.provider_model,
            "messages": [self._message_to_payload(m) for m in call.messages],
            "temperature": call.resolved_temperature(),
            "max_tokens": call.resolved_max_tokens(),
            "stream": stream,
        }
        if call.parameters.top_p is not None:
            payload["top_p"] = call.parameters.top_p
        if call.parameters.stop:
            payload["stop"] = list(call.parameters.stop)
        if stream:
            # 让最后一个 chunk 带上 usage
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_response(self, data: dict, call: ProviderCall) -> ChatCompletionResponse:
        """将 Kimi 的原始响应 JSON 解析为统一的 ChatCompletionResponse。"""

        choices = data.get("choices") or []
        if not choices:
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Kimi response has no choices", provider=self.name)
        first = choices[0]
        msg = first.get("message") or {}
        return ChatCompletionResponse(
            request_id=call.request_id,
            message=ChatMessage(role=ChatRole.ASSISTANT, content=msg.get("content") or ""),
            model=call.model.name,
            provider=AIProvider.KIMI,
            finish_reason=normalize_finish_reason(first.get("finish_reason")),
            usage=usage_from_openai(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": ChatRole(message.role).value, "content": message.content}
