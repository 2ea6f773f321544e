"""分析类系统提示词。

每种 AIAnalysisType 对应一段任务说明，统一要求模型只输出符合结果 JSON Schema 的对象，
由 providers.base.parse_analysis_result 负责解析与校验。
"""

import json
from typing import Any, List

from ai_gateway.domain.analysis import AIAnalysisType, result_schema
from ai_gateway.domain.models import ChatMessage, ChatRole

TASK_PROMPTS = {
    AIAnalysisType.LEAD_SCORING: "Score the sales lead from 0 to 100 and assign a letter grade (A-D).",
    AIAnalysisType.SUMMARIZATION: "Summarize the input and list its key points.",
    AIAnalysisType.BUSINESS_INSIGHTS: "Analyze the business metrics and give insights, predictions and recommendations.",
    AIAnalysisType.TASK_ASSIGNMENT: "Pick the best assignee for the task and explain the choice.",
    AIAnalysisType.EMAIL_GENERATION: "Write the requested email with a subject line and a body.",
    AIAnalysisType.CANDIDATE_SCORING: "Score the candidate from 0 to 100 against the position.",
    AIAnalysisType.FINANCIAL_PREDICTION: "Forecast revenue and expenses for each upcoming period.",
}

SYSTEM_TEMPLATE = """You are an analysis engine. {task}
Reply with a single JSON object and nothing else. The object must match this JSON Schema:
{schema}"""


def build_analysis_messages(analysis_type: AIAnalysisType, subject: Any) -> List[ChatMessage]:
    """构造分析请求的 system + user 消息。"""

    system = SYSTEM_TEMPLATE.format(
        task=TASK_PROMPTS[analysis_type],
        schema=json.dumps(result_schema(analysis_type), ensure_ascii=False),
    )
    if isinstance(subject, str):
        body = subject
    else:
        body = json.dumps(subject, ensure_ascii=False, default=str)
    return [
        ChatMessage(role=ChatRole.SYSTEM, content=system),
        ChatMessage(role=ChatRole.USER, content=body),
    ]
