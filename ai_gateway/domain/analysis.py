"""结构化分析类型与结果 schema。

每个 AIAnalysisType 固定一种 result 结构，由 pydantic 模型描述：
Provider 返回的 JSON 必须能通过对应模型的校验，否则视为厂商响应格式错误。
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Type

from pydantic import BaseModel, ConfigDict, Field


class AIAnalysisType(str, Enum):
    LEAD_SCORING = "lead_scoring"
    SUMMARIZATION = "summarization"
    BUSINESS_INSIGHTS = "business_insights"
    TASK_ASSIGNMENT = "task_assignment"
    EMAIL_GENERATION = "email_generation"
    CANDIDATE_SCORING = "candidate_scoring"
    FINANCIAL_PREDICTION = "financial_prediction"


class _AnalysisResult(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class LeadScoringResult(_AnalysisResult):
    score: int = Field(ge=0, le=100)
    grade: str
    reasons: List[str] = Field(default_factory=list)
    next_action: str = ""


class SummarizationResult(_AnalysisResult):
    summary: str
    key_points: List[str] = Field(default_factory=list)


class BusinessInsightsResult(_AnalysisResult):
    insights: List[str] = Field(default_factory=list)
    predictions: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class TaskAssignmentResult(_AnalysisResult):
    assignee_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class EmailGenerationResult(_AnalysisResult):
    subject: str
    body: str


class CandidateScoringResult(_AnalysisResult):
    score: int = Field(ge=0, le=100)
    strengths: List[str] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    recommendation: str = ""


class PeriodForecast(_AnalysisResult):
    period: str
    revenue: float
    expenses: float = 0.0


class FinancialPredictionResult(_AnalysisResult):
    predictions: List[PeriodForecast] = Field(default_factory=list)
    scenarios: List[str] = Field(default_factory=list)


ANALYSIS_RESULT_TYPES: Mapping[AIAnalysisType, Type[_AnalysisResult]] = {
    AIAnalysisType.LEAD_SCORING: LeadScoringResult,
    AIAnalysisType.SUMMARIZATION: SummarizationResult,
    AIAnalysisType.BUSINESS_INSIGHTS: BusinessInsightsResult,
    AIAnalysisType.TASK_ASSIGNMENT: TaskAssignmentResult,
    AIAnalysisType.EMAIL_GENERATION: EmailGenerationResult,
    AIAnalysisType.CANDIDATE_SCORING: CandidateScoringResult,
    AIAnalysisType.FINANCIAL_PREDICTION: FinancialPredictionResult,
}


# self_test 使用的最小样例输入
SAMPLE_SUBJECTS: Mapping[AIAnalysisType, Dict[str, Any]] = {
    AIAnalysisType.LEAD_SCORING: {"company": "Test", "contact": "test@test.com", "source": "website"},
    AIAnalysisType.SUMMARIZATION: {"text": "Test document."},
    AIAnalysisType.BUSINESS_INSIGHTS: {"companyId": "test", "period": "monthly", "metrics": []},
    AIAnalysisType.TASK_ASSIGNMENT: {"title": "Test", "description": "Test", "priority": "medium"},
    AIAnalysisType.EMAIL_GENERATION: {"type": "welcome", "recipient": {"name": "Test"}},
    AIAnalysisType.CANDIDATE_SCORING: {"candidateCV": "Test CV", "positionId": "test"},
    AIAnalysisType.FINANCIAL_PREDICTION: {"companyId": "test", "forecastPeriod": 3},
}


def result_schema(analysis_type: AIAnalysisType) -> Dict[str, Any]:
    """返回该分析类型结果的 JSON Schema，用于拼接提示词。"""

    return ANALYSIS_RESULT_TYPES[analysis_type].model_json_schema()
