"""Completion Router：选择 provider/模型，校验能力，并负责唯一一次 fallback。

解析规则：
- 请求指定了 provider：按 (provider, 模型或模型族) 在 registry 中查找，未注册抛 UnknownModel。
- 未指定 provider：具体模型归属唯一 provider；模型族先查 family_defaults，
  族内只有一个成员时直接选它，否则抛 UnresolvableProvider。

fallback 规则：
- 只针对 ProviderTransientError（包括超过 request_timeout 的 ProviderTimeout），
  且每个请求最多切换一次到 fallback_providers 中配置的
  provider（同一模型族的成员，并且同样具备所需能力）。
- 流式请求只有在尚未产出任何增量时才允许切换；一旦产出过增量，错误原样上抛，
  由 Multiplexer 转换为 StreamInterrupted，避免重复投递已经发出的 token。
"""

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator, List, Mapping, Optional, TypeVar

from ai_gateway.config.settings import settings
from ai_gateway.domain.capabilities import STREAMING_CHAT, AICapability, CHAT
from ai_gateway.domain.exceptions import (
    CapabilityMismatch,
    ProviderTransientError,
    UnresolvableProvider,
    UnsupportedAnalysisType,
    ValidationError,
)
from ai_gateway.domain.models import AIProvider, ChatCompletionRequest, StreamChunk
from ai_gateway.gateway.cancellation import CancelToken, call_with_deadline
from ai_gateway.infrastructure.logging.logger import logger
from ai_gateway.providers.registry import DEFAULT_REGISTRY, CapabilityRegistry, ModelSpec

T = TypeVar("T")

# 能力 -> 适配器需要实现的方法
_REQUIRED_METHOD = {"chat": "complete", "streaming_chat": "stream", "analysis": "analyze"}

_EXHAUSTED = object()


def _close_source(source) -> None:
    close = getattr(source, "close", None)
    if close is not None:
        close()


@dataclass(frozen=True)
class ResolvedTarget:
    provider: AIProvider
    model: ModelSpec
    adapter: object


class CompletionRouter:
    def __init__(
        self,
        adapters: Mapping[AIProvider, object],
        registry: Optional[CapabilityRegistry] = None,
        cfg=None,
        executor: Optional[Executor] = None,
    ):
        self._adapters = dict(adapters)
        self._registry = registry or DEFAULT_REGISTRY
        self._settings = cfg or settings
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self._settings.max_workers,
            thread_name_prefix="gateway",
        )

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    # ---- 解析 ----

    def route(self, request: ChatCompletionRequest) -> ResolvedTarget:
        capability = STREAMING_CHAT if request.stream else CHAT
        return self.resolve(request.model, request.provider, capability)

    def resolve(self, model: str, provider: Optional[AIProvider], capability: AICapability) -> ResolvedTarget:
        spec = self.resolve_model(model, provider)
        self._check_capability(spec, capability)
        return self._target(spec, capability)

    def resolve_model(self, model: str, provider: Optional[AIProvider] = None) -> ModelSpec:
        if provider is not None:
            return self._registry.model_for(provider, model)
        return self._default_model(model)

    def _default_model(self, model: str) -> ModelSpec:
        if not self._registry.is_family(model):
            return self._registry.get_model(model)
        members = self._registry.family_members(model)
        default = self._settings.family_defaults.get(model)
        if default is not None:
            try:
                spec = members.get(AIProvider(default))
            except ValueError:
                spec = None
            if spec is None:
                raise UnresolvableProvider(model)
            return spec
        if len(members) == 1:
            return next(iter(members.values()))
        raise UnresolvableProvider(model)

    @staticmethod
    def _check_capability(spec: ModelSpec, capability: AICapability) -> None:
        if capability in spec.capabilities:
            return
        if capability.analysis_type is not None:
            raise UnsupportedAnalysisType(capability.analysis_type.value, spec.name)
        raise CapabilityMismatch(
            message=f"Model {spec.name!r} does not support {capability}",
            model=spec.name,
            capability=str(capability),
        )

    def _target(self, spec: ModelSpec, capability: AICapability) -> ResolvedTarget:
        adapter = self._adapters.get(spec.provider)
        if adapter is None:
            raise ValidationError(
                code="PROVIDER_NOT_CONFIGURED",
                message=f"No adapter configured for provider {spec.provider.value!r}",
                provider=spec.provider.value,
            )
        if not callable(getattr(adapter, _REQUIRED_METHOD[capability.kind], None)):
            raise CapabilityMismatch(
                message=f"Adapter for {spec.provider.value!r} does not implement {capability}",
                provider=spec.provider.value,
                capability=str(capability),
            )
        return ResolvedTarget(provider=spec.provider, model=spec, adapter=adapter)

    def fallback_for(self, target: ResolvedTarget, capability: AICapability) -> Optional[ResolvedTarget]:
        name = self._settings.fallback_providers.get(target.provider.value)
        if not name:
            return None
        try:
            provider = AIProvider(name)
        except ValueError:
            return None
        if provider == target.provider:
            return None
        spec = self._registry.family_members(target.model.family).get(provider)
        if spec is None or capability not in spec.capabilities or provider not in self._adapters:
            return None
        return self._target(spec, capability)

    def attempts(self, primary: ResolvedTarget, capability: AICapability) -> List[ResolvedTarget]:
        fallback = self.fallback_for(primary, capability)
        return [primary] if fallback is None else [primary, fallback]

    # ---- 执行 ----

    def call(
        self,
        primary: ResolvedTarget,
        capability: AICapability,
        invoke: Callable[[ResolvedTarget], T],
        token: CancelToken,
    ) -> T:
        """非流式执行：每次尝试都带截止时间，瞬时失败时最多切换一次。"""

        targets = self.attempts(primary, capability)
        for attempt, target in enumerate(targets):
            try:
                return call_with_deadline(
                    self._executor,
                    lambda t=target: invoke(t),
                    token=token,
                    timeout=self._settings.request_timeout,
                    poll_interval=self._settings.cancel_poll_interval,
                    provider=target.provider.value,
                )
            except ProviderTransientError as e:
                if attempt + 1 >= len(targets):
                    raise
                self._log_fallback(token.request_id, target, targets[attempt + 1], e)
        raise AssertionError("unreachable")

    def stream(
        self,
        primary: ResolvedTarget,
        open_stream: Callable[[ResolvedTarget], Iterator[StreamChunk]],
        token: CancelToken,
    ) -> Iterator[StreamChunk]:
        """流式执行：只有在尚未产出增量时才允许 fallback。

        首块受 request_timeout 约束（超时抛 ProviderTimeout，可 fallback）；首块之后不再限时。
        """

        targets = self.attempts(primary, STREAMING_CHAT)
        for attempt, target in enumerate(targets):
            emitted = False
            abandoned = []
            source = iter(open_stream(target))

            def on_abandon(future, source=source, abandoned=abandoned):
                abandoned.append(future)
                # 工作线程可能仍在 next(source) 中，等它返回后再关闭
                future.add_done_callback(lambda _: _close_source(source))

            try:
                first = call_with_deadline(
                    self._executor,
                    lambda source=source: next(source, _EXHAUSTED),
                    token=token,
                    timeout=self._settings.request_timeout,
                    poll_interval=self._settings.cancel_poll_interval,
                    provider=target.provider.value,
                    on_abandon=on_abandon,
                )
                if first is _EXHAUSTED:
                    return
                emitted = True
                yield first
                for chunk in source:
                    yield chunk
                return
            except ProviderTransientError as e:
                if emitted or attempt + 1 >= len(targets):
                    raise
                self._log_fallback(token.request_id, target, targets[attempt + 1], e)
            finally:
                if not abandoned:
                    _close_source(source)

    @staticmethod
    def _log_fallback(request_id: str, failed: ResolvedTarget, fallback: ResolvedTarget, error: Exception) -> None:
        logger.warning("router.fallback", extra={"extra": {
            "request_id": request_id,
            "from_provider": failed.provider.value,
            "from_model": failed.model.name,
            "to_provider": fallback.provider.value,
            "to_model": fallback.model.name,
            "error": str(error),
        }})

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
