"""Anthropic Claude Provider 适配器。

Claude 的 Messages API 与 OpenAI 风格差异较大，本适配器负责抹平：

- URL: {base_url}/messages，认证头为 x-api-key + anthropic-version。
- system 消息不在 messages 中，而是顶层 system 字段。
- messages 必须以 user 开头且 user/assistant 交替，相邻同角色消息需要合并。
- 响应 content 是 block 列表，只取 type == "text" 的部分。
- 流式返回按事件类型区分：message_start / content_block_delta /
  message_delta / message_stop / error，ping 等其他事件忽略。
"""

from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx

from ai_gateway.domain.exceptions import (
    ApiError,
    MalformedResponseError,
    ProviderError,
    RateLimitError,
    ServerError,
    StreamTruncatedError,
    ValidationError,
)
from ai_gateway.domain.models import (
    AIAnalysisResponse,
    AIProvider,
    ChatCompletionResponse,
    ChatMessage,
    ChatRole,
    ChatUsage,
    FinishReason,
    StreamChunk,
    normalize_finish_reason,
)
from ai_gateway.providers.base import AnalysisCall, ProviderCall, analyze_with_chat
from ai_gateway.providers.common import (
    iter_sse_json,
    raise_for_status,
    raise_for_stream_status,
    read_json,
    require_api_key,
    translate_transport_error,
)
from ai_gateway.providers.registry import CLAUDE_CONFIG


class ClaudeClient:
    """Claude 客户端实现，支持 chat / streaming_chat / analysis。"""

    name = AIProvider.CLAUDE.value

    def __init__(self, settings):
        self._settings = settings

    def complete(self, call: ProviderCall) -> ChatCompletionResponse:
        api_key = require_api_key(getattr(self._settings, "claude_api_key", None), self.name, "CLAUDE_API_KEY")
        payload = self._build_payload(call, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._url(), json=payload, headers=self._headers(api_key))
        except httpx.HTTPError as e:
            raise translate_transport_error(e, self.name) from e
        raise_for_status(resp, self.name)
        return self._parse_response(read_json(resp, self.name), call)

    def stream(self, call: ProviderCall) -> Iterator[StreamChunk]:
        api_key = require_api_key(getattr(self._settings, "claude_api_key", None), self.name, "CLAUDE_API_KEY")
        payload = self._build_payload(call, stream=True)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream("POST", self._url(), json=payload, headers=self._headers(api_key)) as resp:
                    raise_for_stream_status(resp, self.name)
                    yield from self._normalize_events(iter_sse_json(resp.iter_lines(), self.name))
        except httpx.HTTPError as e:
            raise translate_transport_error(e, self.name) from e

    def analyze(self, call: AnalysisCall) -> AIAnalysisResponse:
        return analyze_with_chat(self, call)

    # ---- 请求构造 ----

    def _url(self) -> str:
        base = getattr(self._settings, "claude_base_url", None) or CLAUDE_CONFIG.base_url
        return f"{base.rstrip('/')}/messages"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": getattr(self._settings, "claude_api_version", "2023-06-01"),
            "Content-Type": "application/json",
        }

    def _build_payload(self, call: ProviderCall, stream: bool) -> Dict[str, Any]:
        system_parts = [m.content for m in call.messages if ChatRole(m.role) == ChatRole.SYSTEM]
        turns = self._merge_turns(m for m in call.messages if ChatRole(m.role) != ChatRole.SYSTEM)
        if not turns:
            raise ValidationError(code="INVALID_MESSAGES", message="Claude requires at least one user message")
        if turns[0]["role"] != ChatRole.USER.value:
            turns.insert(0, {"role": ChatRole.USER.value, "content": "(continue)"})
        payload: Dict[str, Any] = {
            "model": call.model.provider_model,
            "messages": turns,
            "max_tokens": call.resolved_max_tokens(),
            "temperature": min(call.resolved_temperature(), 1.0),
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if call.parameters.top_p is not None:
            payload["top_p"] = call.parameters.top_p
        if call.parameters.stop:
            payload["stop_sequences"] = list(call.parameters.stop)
        return payload

    @staticmethod
    def _merge_turns(messages: Iterable[ChatMessage]) -> List[Dict[str, str]]:
        turns: List[Dict[str, str]] = []
        for m in messages:
            role = ChatRole(m.role).value
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"] += "\n\n" + m.content
            else:
                turns.append({"role": role, "content": m.content})
        return turns

    # ---- 响应解析 ----

    def _parse_response(self, data: dict, call: ProviderCall) -> ChatCompletionResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Claude response has no content", provider=self.name)
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = data.get("usage") or {}
        return ChatCompletionResponse(
            request_id=call.request_id,
            message=ChatMessage(role=ChatRole.ASSISTANT, content=text),
            model=call.model.name,
            provider=AIProvider.CLAUDE,
            finish_reason=normalize_finish_reason(data.get("stop_reason")),
            usage=ChatUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            raw=data,
        )

    def _normalize_events(self, events: Iterable[Optional[Dict[str, Any]]]) -> Iterator[StreamChunk]:
        """把 Claude 的事件流转成 StreamChunk；usage 分散在 message_start 与 message_delta 中。"""

        index = 0
        prompt_tokens = 0
        completion_tokens = 0
        finish_reason: Optional[FinishReason] = None
        for event in events:
            if event is None:
                continue
            event_type = event.get("type", "")
            if event_type == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                prompt_tokens = usage.get("input_tokens", 0)
            elif event_type == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamChunk(delta=delta["text"], index=index)
                    index += 1
            elif event_type == "message_delta":
                stop_reason = (event.get("delta") or {}).get("stop_reason")
                if stop_reason:
                    finish_reason = normalize_finish_reason(stop_reason)
                completion_tokens = (event.get("usage") or {}).get("output_tokens", completion_tokens)
            elif event_type == "message_stop":
                yield StreamChunk(
                    delta="",
                    index=index,
                    done=True,
                    finish_reason=finish_reason or FinishReason.STOP,
                    usage=ChatUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
                )
                return
            elif event_type == "error":
                raise self._stream_error(event.get("error") or {})
        raise StreamTruncatedError(
            code="STREAM_TRUNCATED",
            message="claude stream closed before message_stop",
            provider=self.name,
        )

    def _stream_error(self, err: Dict[str, Any]) -> ProviderError:
        err_type = err.get("type", "")
        message = err.get("message") or err_type or "stream error"
        if err_type == "rate_limit_error":
            return RateLimitError(message=message, provider=self.name)
        if err_type in ("overloaded_error", "api_error"):
            return ServerError(code="SERVER_ERROR", message=message, provider=self.name)
        return ApiError(code="API_ERROR", message=message, provider=self.name)
