"""各适配器共用的 HTTP / SSE 辅助函数。

这里是厂商错误进入统一异常体系的唯一入口：
- httpx 传输层异常 -> NetworkError / ProviderTimeout（可 fallback）
- HTTP 429 -> RateLimitError，5xx -> ServerError（可 fallback）
- HTTP 401/403 -> AuthError，其余 4xx -> ApiError（不 fallback）

另外提供 OpenAI 兼容流（Kimi、GLM 共用）到 StreamChunk 的归一化。
"""

import json
from typing import Any, Dict, Iterable, Iterator, Optional

import httpx

from ai_gateway.domain.exceptions import (
    ApiError,
    AuthError,
    MalformedResponseError,
    NetworkError,
    ProviderError,
    ProviderTimeout,
    RateLimitError,
    ServerError,
    StreamTruncatedError,
)
from ai_gateway.domain.models import ChatUsage, FinishReason, StreamChunk, normalize_finish_reason
from ai_gateway.infrastructure.logging.logger import logger


def require_api_key(key: Optional[str], provider: str, env_name: str) -> str:
    if not key:
        # 缺少凭据属于鉴权失败，换 provider 重试也不会自愈
        raise AuthError(code="MISSING_API_KEY", message=f"{env_name} not set", provider=provider)
    return key


def translate_transport_error(exc: httpx.HTTPError, provider: str) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout(message=f"{provider} timed out: {exc}", provider=provider)
    return NetworkError(code="NETWORK_ERROR", message=str(exc) or type(exc).__name__, provider=provider)


def _retry_after(resp: Any) -> Optional[float]:
    headers = getattr(resp, "headers", None) or {}
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def raise_for_status(resp: Any, provider: str) -> None:
    """按状态码把厂商错误翻译为统一异常；2xx 直接返回。"""

    status = resp.status_code
    if status < 400:
        return
    body = (resp.text or "")[:500]
    if status == 429:
        raise RateLimitError(message=f"{provider} rate limit", retry_after=_retry_after(resp), provider=provider)
    if status in (401, 403):
        raise AuthError(code="AUTH_FAILED", message=body or "unauthorized", http_status=status, provider=provider)
    if status >= 500:
        raise ServerError(code="SERVER_ERROR", message=body or "server error", http_status=status, provider=provider)
    raise ApiError(code="API_ERROR", message=body, http_status=status, provider=provider)


def raise_for_stream_status(resp: Any, provider: str) -> None:
    if resp.status_code >= 400:
        # 流式响应的 body 需要先读出来才能访问 .text
        resp.read()
    raise_for_status(resp, provider)


def read_json(resp: Any, provider: str) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponseError(code="MALFORMED_RESPONSE", message=f"Invalid JSON: {e}", provider=provider) from e
    if not isinstance(data, dict):
        raise MalformedResponseError(code="MALFORMED_RESPONSE", message="Response is not an object", provider=provider)
    return data


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """从 SSE 行流中取出 data 字段；event/id/注释行被忽略。"""

    for line in lines:
        if not line:
            continue
        if line.startswith(":") or line.startswith("event:") or line.startswith("id:"):
            continue
        data_str = line[5:].strip() if line.startswith("data:") else line.strip()
        if data_str:
            yield data_str


def iter_sse_json(lines: Iterable[str], provider: str) -> Iterator[Optional[Dict[str, Any]]]:
    """逐条解析 SSE data 为 JSON；遇到 [DONE] 产出 None。"""

    for data_str in iter_sse_data(lines):
        if data_str == "[DONE]":
            yield None
            continue
        try:
            yield json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug("sse.skip_invalid", extra={"extra": {"provider": provider, "data": data_str[:200]}})
            continue


def usage_from_openai(raw: Optional[Dict[str, Any]]) -> ChatUsage:
    raw = raw or {}
    return ChatUsage(
        prompt_tokens=raw.get("prompt_tokens", 0),
        completion_tokens=raw.get("completion_tokens", 0),
    )


def normalize_openai_stream(events: Iterable[Optional[Dict[str, Any]]], provider: str) -> Iterator[StreamChunk]:
    """把 OpenAI 兼容的 chat.completion.chunk 序列归一化为 StreamChunk。

    - 只为非空 content 增量产出块，index 从 0 连续递增。
    - 收到 [DONE]（或流结束前已见到 finish_reason）时产出唯一的 done 块。
    - 既没有 [DONE] 也没有 finish_reason 就断流，视为 StreamTruncatedError。
    """

    index = 0
    finish_reason: Optional[FinishReason] = None
    usage: Optional[ChatUsage] = None
    for event in events:
        if event is None:
            break
        if "error" in event:
            err = event.get("error") or {}
            raise ApiError(code="API_ERROR", message=str(err.get("message") or err), provider=provider)
        if event.get("usage"):
            usage = usage_from_openai(event["usage"])
        for choice in event.get("choices") or []:
            delta = (choice.get("delta") or {}).get("content")
            if delta:
                yield StreamChunk(delta=delta, index=index)
                index += 1
            if choice.get("finish_reason"):
                finish_reason = normalize_finish_reason(choice["finish_reason"])
    else:
        if finish_reason is None:
            raise StreamTruncatedError(
                code="STREAM_TRUNCATED",
                message=f"{provider} stream closed before completion",
                provider=provider,
            )
    yield StreamChunk(
        delta="",
        index=index,
        done=True,
        finish_reason=finish_reason or FinishReason.STOP,
        usage=usage,
    )
