import json
import time

import pytest

from ai_gateway.domain.models import (
    AIProvider,
    ChatCompletionResponse,
    ChatMessage,
    ChatRole,
    ChatUsage,
    FinishReason,
    StreamChunk,
)
from ai_gateway.providers.base import analyze_with_chat


class GatewaySettingsStub:
    def __init__(self, **overrides):
        self.family_defaults = {"ide-chat": "glm", "fast-chat": "glm"}
        self.fallback_providers = {"glm": "kimi", "kimi": "glm", "claude": "kimi"}
        self.disabled_analysis_types = []
        self.request_timeout = 2.0
        self.cancel_poll_interval = 0.01
        self.max_workers = 4
        self.http_timeout = 1.0
        self.kimi_api_key = "kimi-test-key"
        self.kimi_base_url = "https://api.moonshot.cn/v1"
        self.glm_api_key = "glm-test-key"
        self.glm_base_url = "https://open.bigmodel.cn/api/paas/v4"
        self.claude_api_key = "claude-test-key"
        self.claude_base_url = "https://api.anthropic.com/v1"
        self.claude_api_version = "2023-06-01"
        for k, v in overrides.items():
            setattr(self, k, v)


class FakeAdapter:
    """不走网络的 Provider 适配器，记录每次调用。"""

    def __init__(
        self,
        name,
        reply="ok",
        chunks=("a", "b"),
        complete_error=None,
        stream_error=None,
        fail_at=0,
        delay=0.0,
        stream_delay=0.0,
    ):
        self.name = name
        self.reply = reply
        self.chunks = list(chunks)
        self.complete_error = complete_error
        self.stream_error = stream_error
        self.fail_at = fail_at
        self.delay = delay
        self.stream_delay = stream_delay
        self.calls = []
        self.pulled = 0
        self.closed = False

    def complete(self, call):
        self.calls.append(("complete", call))
        if self.delay:
            time.sleep(self.delay)
        if self.complete_error is not None:
            raise self.complete_error
        return ChatCompletionResponse(
            request_id=call.request_id,
            message=ChatMessage(role=ChatRole.ASSISTANT, content=self.reply),
            model=call.model.name,
            provider=AIProvider(self.name),
            finish_reason=FinishReason.STOP,
            usage=ChatUsage(prompt_tokens=3, completion_tokens=2),
        )

    def stream(self, call):
        self.calls.append(("stream", call))
        return self._generate()

    def _generate(self):
        try:
            if self.stream_delay:
                time.sleep(self.stream_delay)
            for i, text in enumerate(self.chunks):
                if self.stream_error is not None and i == self.fail_at:
                    raise self.stream_error
                self.pulled += 1
                yield StreamChunk(delta=text, index=i)
            if self.stream_error is not None and self.fail_at >= len(self.chunks):
                raise self.stream_error
            yield StreamChunk(delta="", index=len(self.chunks), done=True, finish_reason=FinishReason.STOP)
        finally:
            self.closed = True

    def analyze(self, call):
        return analyze_with_chat(self, call)


def chat_messages(text="hi"):
    return [ChatMessage(role=ChatRole.USER, content=text)]


@pytest.fixture
def gateway_settings():
    return GatewaySettingsStub()


@pytest.fixture
def fake_adapters():
    return {
        AIProvider.GLM: FakeAdapter("glm", reply="from glm"),
        AIProvider.KIMI: FakeAdapter("kimi", reply="from kimi"),
        AIProvider.CLAUDE: FakeAdapter("claude", reply="from claude"),
    }


LEAD_JSON = json.dumps({"score": 82, "grade": "A", "reasons": ["budget confirmed"], "next_action": "call"})
