"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

分类：
- ValidationError / CapabilityMismatch / FeatureDisabled：调度前拒绝，从不重试。
- ProviderTransientError：超时、限流、5xx 等，允许一次 fallback。
- ProviderFatalError：鉴权失败、响应格式错误等，立即抛出。
- StreamInterrupted：流式输出中途失败，作为终止错误标记交给消费者。
- RequestCancelled：调用方按 request_id 取消了非流式请求。

厂商特有的错误结构只允许出现在适配器内部，越过适配器边界前必须转换为上述类型。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "UNKNOWN_MODEL"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 request_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        payload.update({k: v for k, v in self.extra.items() if v is not None})
        return payload


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class UnknownModel(ValidationError):
    """(provider, model) 组合未在 registry 中注册。"""

    def __init__(self, model: str, provider: Optional[str] = None):
        where = f" for provider {provider!r}" if provider else ""
        super().__init__(
            code="UNKNOWN_MODEL",
            message=f"Unknown model {model!r}{where}",
            model=model,
            provider=provider,
        )


class UnresolvableProvider(ValidationError):
    """未指定 provider，且该模型族没有配置默认 provider。"""

    def __init__(self, model: str):
        super().__init__(
            code="UNRESOLVABLE_PROVIDER",
            message=f"No default provider configured for {model!r}",
            model=model,
        )


class CapabilityMismatch(BusinessError):
    """解析出的模型不支持所请求的能力。"""

    def __init__(self, code: str = "CAPABILITY_MISMATCH", message: str = "", http_status: int = 422, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class UnsupportedAnalysisType(CapabilityMismatch):
    def __init__(self, analysis_type: str, model: str):
        super().__init__(
            code="UNSUPPORTED_ANALYSIS_TYPE",
            message=f"Model {model!r} does not support analysis {analysis_type!r}",
            analysis_type=analysis_type,
            model=model,
        )


class FeatureDisabled(BusinessError):
    """功能开关关闭（例如某种分析类型被配置禁用）。"""

    def __init__(self, feature: str):
        super().__init__(
            code="FEATURE_DISABLED",
            message=f"Feature {feature!r} is disabled",
            http_status=403,
            feature=feature,
        )


class ProviderError(BusinessError):
    """上游 Provider 调用失败的基类，extra 中带 provider 名称。"""

    transient = False

    @property
    def provider(self) -> Optional[str]:
        return self.extra.get("provider")


class ProviderTransientError(ProviderError):
    """可恢复的上游错误，Router 允许一次 fallback。"""

    transient = True

    def __init__(self, code: str, message: str, http_status: int = 503, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class NetworkError(ProviderTransientError):
    """网络层错误，例如连接失败、DNS 失败等。"""


class ProviderTimeout(ProviderTransientError):
    def __init__(self, code: str = "PROVIDER_TIMEOUT", message: str = "Provider call timed out", **extra):
        super().__init__(code=code, message=message, http_status=504, **extra)


class RateLimitError(ProviderTransientError):
    """Provider 限流错误。"""

    def __init__(self, code: str = "RATE_LIMIT", message: str = "Rate limited", retry_after: Optional[float] = None, **extra):
        super().__init__(code=code, message=message, http_status=429, retry_after=retry_after, **extra)

    @property
    def retry_after(self) -> Optional[float]:
        return self.extra.get("retry_after")


class ServerError(ProviderTransientError):
    """Provider 返回 5xx。"""


class StreamTruncatedError(ProviderTransientError):
    """流在收到终止事件之前被关闭。"""


class ProviderFatalError(ProviderError):
    """不可恢复的上游错误，不做 fallback。"""

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class AuthError(ProviderFatalError):
    """API Key 缺失或被拒绝。"""


class ApiError(ProviderFatalError):
    """第三方 API 返回非 2xx/429/5xx 错误时抛出。"""


class MalformedResponseError(ProviderFatalError):
    """厂商返回的内容无法解析为统一模型。"""


class StreamInterrupted(BusinessError):
    """流式输出已投递过增量后失败；替代 done 作为最后一次投递。"""

    def __init__(self, cause: BusinessError, delivered: int):
        super().__init__(
            code="STREAM_INTERRUPTED",
            message=f"Stream interrupted after {delivered} chunk(s): {cause.message}",
            http_status=502,
            cause_code=cause.code,
            delivered=delivered,
        )
        self.cause = cause
        self.__cause__ = cause


class RequestCancelled(BusinessError):
    def __init__(self, request_id: str):
        super().__init__(
            code="REQUEST_CANCELLED",
            message=f"Request {request_id} was cancelled",
            http_status=499,
            request_id=request_id,
        )
