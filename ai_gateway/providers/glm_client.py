"""GLM / BigModel Provider 适配器。

接口风格与 OpenAI/Kimi 类似，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

与 Kimi 的差异：
- 请求体带 request_id（使用 Gateway 生成的请求 ID，便于和厂商日志对账）。
- temperature 取值为 (0, 1]，需要确定性输出时改用 do_sample=False。
- 触发内容审核时 finish_reason 为 "sensitive"，统一映射为 error。
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
from ai_gateway.providers.registry import GLM_CONFIG


class GlmClient:
    """GLM / BigModel Provider 客户端实现。"""

    name = AIProvider.GLM.value

    def __init__(self, settings):
        self._settings = settings

    # ---- 非流式 ----

    def complete(self, call: ProviderCall) -> ChatCompletionResponse:
        api_key = require_api_key(getattr(self._settings, "glm_api_key", None), self.name, "GLM_API_KEY")
        payload = self._build_payload(call, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._url(), json=payload, headers=self._headers(api_key))
        except httpx.HTTPError as e:
            raise translate_transport_error(e, self.name) from e
        raise_for_status(resp, self.name)
        return self._parse_response(read_json(resp, self.name), call)

    # ---- 流式 ----

    def stream(self, call: ProviderCall) -> Iterator[StreamChunk]:
        api_key = require_api_key(getattr(self._settings, "glm_api_key", None), self.name, "GLM_API_KEY")
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

    # ---- 辅助方法 ----

    def _url(self) -> str:
        base = getattr(self._settings, "glm_base_url", None) or GLM_CONFIG.base_url
        return f"{base.rstrip('/')}/chat/completions"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, call: ProviderCall, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": call.model.provider_model,
            "messages": [{"role": ChatRole(m.role).value, "content": m.content} for m in call.messages],
            "max_tokens": call.resolved_max_tokens(),
            "stream": stream,
            "request_id": call.request_id,
        }
        temperature = call.resolved_temperature()
        if temperature <= 0:
            payload["do_sample"] = False
        else:
            payload["temperature"] = min(temperature, 1.0)
        top_p = call.parameters.top_p
        if top_p is not None:
            # GLM 要求 top_p 位于开区间 (0, 1)
            payload["top_p"] = min(max(top_p, 0.01), 0.99)
        if call.parameters.stop:
            payload["stop"] = list(call.parameters.stop)
        return payload

    def _parse_response(self, data: dict, call: ProviderCall) -> ChatCompletionResponse:
        choices = data.get("choices") or []
        if not choices:
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="GLM response has no choices", provider=self.name)
        first = choices[0]
        msg = first.get("message") or {}
        return ChatCompletionResponse(
            request_id=call.request_id,
            message=ChatMessage(role=ChatRole.ASSISTANT, content=msg.get("content") or ""),
            model=call.model.name,
            provider=AIProvider.GLM,
            finish_reason=normalize_finish_reason(first.get("finish_reason")),
            usage=usage_from_openai(data.get("usage")),
            raw=data,
        )
