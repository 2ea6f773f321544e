"""Analysis Pipeline：结构化分析的非流式路径。

与聊天路径共用 Router 的解析、截止时间与 fallback，但：
- 在调用任何适配器之前校验 analysis:<type> 能力，不支持则抛 UnsupportedAnalysisType；
- 结果要么是完整的、通过 schema 校验的对象，要么是一个错误，不存在部分结果。
"""

from typing import Optional

from ai_gateway.config.settings import settings
from ai_gateway.domain.analysis import AIAnalysisType
from ai_gateway.domain.capabilities import AICapability
from ai_gateway.domain.exceptions import FeatureDisabled, ValidationError
from ai_gateway.domain.models import AIAnalysisRequest, AIAnalysisResponse
from ai_gateway.gateway.cancellation import CancelToken
from ai_gateway.gateway.router import CompletionRouter, ResolvedTarget
from ai_gateway.infrastructure.logging.logger import logger
from ai_gateway.providers.base import AnalysisCall


class AnalysisPipeline:
    def __init__(self, router: CompletionRouter, cfg=None):
        self._router = router
        self._settings = cfg or settings

    def validate(self, request: AIAnalysisRequest) -> AIAnalysisType:
        try:
            analysis_type = AIAnalysisType(request.type)
        except ValueError:
            raise ValidationError(
                code="INVALID_ANALYSIS_TYPE",
                message=f"Unknown analysis type {request.type!r}",
            ) from None
        if request.subject is None or request.subject == "" or request.subject == {}:
            raise ValidationError(code="EMPTY_SUBJECT", message="Analysis subject must not be empty")
        if not request.model:
            raise ValidationError(code="MISSING_MODEL", message="model is required")
        if analysis_type.value in self._settings.disabled_analysis_types:
            raise FeatureDisabled(f"analysis:{analysis_type.value}")
        return analysis_type

    def resolve(self, request: AIAnalysisRequest) -> ResolvedTarget:
        analysis_type = self.validate(request)
        return self._router.resolve(request.model, request.provider, AICapability.analysis(analysis_type))

    def run(
        self,
        request: AIAnalysisRequest,
        token: CancelToken,
        target: Optional[ResolvedTarget] = None,
    ) -> AIAnalysisResponse:
        analysis_type = self.validate(request)
        capability = AICapability.analysis(analysis_type)
        primary = target or self._router.resolve(request.model, request.provider, capability)

        def invoke(t: ResolvedTarget) -> AIAnalysisResponse:
            return t.adapter.analyze(AnalysisCall(
                request_id=token.request_id,
                model=t.model,
                messages=[],
                parameters=request.parameters,
                analysis_type=analysis_type,
                subject=request.subject,
            ))

        logger.info("analysis.start", extra={"extra": {
            "request_id": token.request_id,
            "type": analysis_type.value,
            "provider": primary.provider.value,
            "model": primary.model.name,
        }})
        resp = self._router.call(primary, capability, invoke, token)
        logger.info("analysis.end", extra={"extra": {
            "request_id": token.request_id,
            "type": analysis_type.value,
            "provider": resp.provider.value,
            "execution_time_ms": round(resp.execution_time_ms, 1),
            "total_tokens": resp.usage.total_tokens,
        }})
        return resp
