"""对外 API 服务模块（Gateway Facade）。

AIService 是 UI / hook 层调用 AI 能力的唯一入口：

- send_chat_completion: 非流式对话，返回一个 ChatCompletionResponse 或抛出一个错误。
- stream_chat_completion: 流式对话，返回惰性、不可重启的 StreamChunk 序列。
- run_analysis: 结构化分析，返回完整的 AIAnalysisResponse。
- cancel: 按 request_id 取消进行中的请求。

所有输入校验都在发起任何网络调用之前完成。每个请求分配唯一的 request_id，
用于取消寻址以及日志关联；请求结束（完成、失败或取消）后立即释放其状态。
"""

import threading
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from ai_gateway.config.settings import settings
from ai_gateway.domain.analysis import SAMPLE_SUBJECTS, AIAnalysisType
from ai_gateway.domain.capabilities import CHAT, STREAMING_CHAT
from ai_gateway.domain.exceptions import BusinessError, ValidationError
from ai_gateway.domain.models import (
    AIAnalysisRequest,
    AIAnalysisResponse,
    AIProvider,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ChatRole,
)
from ai_gateway.gateway.analysis import AnalysisPipeline
from ai_gateway.gateway.cancellation import CancelToken
from ai_gateway.gateway.multiplexer import StreamMultiplexer
from ai_gateway.gateway.router import CompletionRouter, ResolvedTarget
from ai_gateway.infrastructure.logging.logger import logger
from ai_gateway.providers import create_all_providers
from ai_gateway.providers.base import ProviderCall
from ai_gateway.providers.registry import CapabilityRegistry


class AIService:
    def __init__(
        self,
        adapters: Optional[Mapping[AIProvider, object]] = None,
        registry: Optional[CapabilityRegistry] = None,
        cfg=None,
        executor=None,
    ):
        self._settings = cfg or settings
        if adapters is None:
            adapters = create_all_providers(self._settings)
        self._router = CompletionRouter(adapters, registry=registry, cfg=self._settings, executor=executor)
        self._analysis = AnalysisPipeline(self._router, cfg=self._settings)
        self._inflight: Dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    # ---- 对话 ----

    def send_chat_completion(
        self,
        request: ChatCompletionRequest,
        request_id: Optional[str] = None,
    ) -> ChatCompletionResponse:
        """执行一次非流式对话。

        Raises:
            ValidationError / CapabilityMismatch: 调度前拒绝，不产生网络调用。
            ProviderTransientError: 主 provider 与 fallback 均失败（或没有 fallback）。
            ProviderFatalError: 鉴权失败、响应格式错误等。
            RequestCancelled: 请求被 cancel(request_id) 取消。
        """

        _validate_chat_request(request)
        target = self._router.resolve(request.model, request.provider, CHAT)
        token = self._register(request_id)
        self._log_start("gateway.chat.start", token, target, request)

        def invoke(t: ResolvedTarget) -> ChatCompletionResponse:
            return t.adapter.complete(ProviderCall(
                request_id=token.request_id,
                model=t.model,
                messages=list(request.messages),
                parameters=request.parameters,
            ))

        try:
            resp = self._router.call(target, CHAT, invoke, token)
        except BusinessError as e:
            logger.error(f"Chat failed: {e}", extra={"extra": {
                "request_id": token.request_id,
                "code": e.code,
                "error": str(e),
            }})
            raise
        finally:
            self._release(token)
        logger.info("gateway.chat.end", extra={"extra": {
            "request_id": token.request_id,
            "provider": resp.provider.value,
            "model": resp.model,
            "finish_reason": resp.finish_reason.value,
            "total_tokens": resp.usage.total_tokens,
        }})
        return resp

    def stream_chat_completion(
        self,
        request: ChatCompletionRequest,
        request_id: Optional[str] = None,
    ) -> StreamMultiplexer:
        """发起一次流式对话；返回值可直接迭代，也可作为上下文管理器使用。

        校验错误在这里同步抛出；上游错误则以终止错误标记块的形式出现在序列末尾。
        """

        _validate_chat_request(request)
        target = self._router.resolve(request.model, request.provider, STREAMING_CHAT)
        token = self._register(request_id)
        self._log_start("gateway.stream.start", token, target, request)

        def open_stream(t: ResolvedTarget):
            return t.adapter.stream(ProviderCall(
                request_id=token.request_id,
                model=t.model,
                messages=list(request.messages),
                parameters=request.parameters,
            ))

        def on_close(status: str, delivered: int) -> None:
            self._release(token)
            logger.info("gateway.stream.end", extra={"extra": {
                "request_id": token.request_id,
                "status": status,
                "delivered": delivered,
            }})

        source = self._router.stream(target, open_stream, token)
        return StreamMultiplexer(
            source,
            token,
            poll_interval=self._settings.cancel_poll_interval,
            on_close=on_close,
        )

    def chat(self, request: ChatCompletionRequest, request_id: Optional[str] = None):
        """按 request.stream 分发到流式或非流式接口。"""

        if request.stream:
            return self.stream_chat_completion(request, request_id)
        return self.send_chat_completion(request, request_id)

    # ---- 分析 ----

    def run_analysis(self, request: AIAnalysisRequest, request_id: Optional[str] = None) -> AIAnalysisResponse:
        target = self._analysis.resolve(request)
        token = self._register(request_id)
        try:
            return self._analysis.run(request, token, target=target)
        except BusinessError as e:
            logger.error(f"Analysis failed: {e}", extra={"extra": {
                "request_id": token.request_id,
                "type": getattr(request.type, "value", request.type),
                "code": e.code,
            }})
            raise
        finally:
            self._release(token)

    def self_test(self, model: str, provider: Optional[AIProvider] = None) -> Dict[str, bool]:
        """用最小样例依次运行模型支持的每种分析，返回 {类型: 是否成功}。"""

        spec = self._router.resolve_model(model, provider)
        results: Dict[str, bool] = {}
        for analysis_type in AIAnalysisType:
            if not any(c.analysis_type == analysis_type for c in spec.capabilities):
                continue
            request = AIAnalysisRequest(
                type=analysis_type,
                subject=SAMPLE_SUBJECTS[analysis_type],
                model=spec.name,
                provider=spec.provider,
            )
            try:
                self.run_analysis(request)
                results[analysis_type.value] = True
            except BusinessError:
                results[analysis_type.value] = False
        return results

    # ---- 取消与状态 ----

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            token = self._inflight.get(request_id)
        if token is None:
            return False
        cancelled = token.cancel()
        if cancelled:
            logger.info("gateway.cancel", extra={"extra": {"request_id": request_id}})
        return cancelled

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._inflight)

    def list_models(self) -> List[Dict[str, Any]]:
        return [
            {
                "model": spec.name,
                "provider": spec.provider.value,
                "family": spec.family,
                "max_tokens": spec.max_tokens,
                "capabilities": sorted(str(c) for c in spec.capabilities),
            }
            for spec in self._router.registry.models()
        ]

    def close(self) -> None:
        self._router.shutdown()

    def __enter__(self) -> "AIService":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    # ---- 内部 ----

    def _register(self, request_id: Optional[str]) -> CancelToken:
        token = CancelToken(request_id or uuid4().hex)
        with self._lock:
            if token.request_id in self._inflight:
                raise ValidationError(
                    code="DUPLICATE_REQUEST_ID",
                    message=f"Request {token.request_id} is already in flight",
                )
            self._inflight[token.request_id] = token
        return token

    def _release(self, token: CancelToken) -> None:
        with self._lock:
            if self._inflight.get(token.request_id) is token:
                del self._inflight[token.request_id]

    @staticmethod
    def _log_start(event: str, token: CancelToken, target: ResolvedTarget, request: ChatCompletionRequest) -> None:
        logger.info(event, extra={"extra": {
            "request_id": token.request_id,
            "provider": target.provider.value,
            "model": target.model.name,
            "messages": len(request.messages),
        }})


def _validate_chat_request(request: ChatCompletionRequest) -> None:
    if not request.messages:
        raise ValidationError(code="EMPTY_MESSAGES", message="messages must not be empty")
    for i, m in enumerate(request.messages):
        if not isinstance(m, ChatMessage):
            raise ValidationError(code="INVALID_MESSAGE", message=f"messages[{i}] is not a ChatMessage")
        try:
            ChatRole(m.role)
        except ValueError:
            raise ValidationError(code="INVALID_ROLE", message=f"messages[{i}] has invalid role {m.role!r}") from None
        if not isinstance(m.content, str):
            raise ValidationError(code="INVALID_MESSAGE", message=f"messages[{i}].content must be a string")
    if not request.model:
        raise ValidationError(code="MISSING_MODEL", message="model is required")
    params = request.parameters
    if params.temperature is not None and not 0 <= params.temperature <= 2:
        raise ValidationError(code="INVALID_PARAMETER", message="temperature must be within [0, 2]")
    if params.max_tokens is not None and params.max_tokens <= 0:
        raise ValidationError(code="INVALID_PARAMETER", message="max_tokens must be positive")
    if params.top_p is not None and not 0 < params.top_p <= 1:
        raise ValidationError(code="INVALID_PARAMETER", message="top_p must be within (0, 1]")


_service: Optional[AIService] = None


def get_default_service() -> AIService:
    """获取默认的 AIService 实例（单例）。"""
    global _service
    if _service is None:
        _service = AIService()
    return _service
