"""模型能力（AICapability）定义。

能力是模型的静态元数据：chat、streaming_chat 或某一种 analysis:<type>。
"""

from dataclasses import dataclass
from typing import Optional

from ai_gateway.domain.analysis import AIAnalysisType


@dataclass(frozen=True)
class AICapability:
    kind: str
    analysis_type: Optional[AIAnalysisType] = None

    @classmethod
    def analysis(cls, analysis_type: AIAnalysisType) -> "AICapability":
        return cls("analysis", AIAnalysisType(analysis_type))

    def __str__(self) -> str:
        if self.analysis_type is not None:
            return f"analysis:{self.analysis_type.value}"
        return self.kind


CHAT = AICapability("chat")
STREAMING_CHAT = AICapability("streaming_chat")
ALL_ANALYSIS = frozenset(AICapability.analysis(t) for t in AIAnalysisType)
