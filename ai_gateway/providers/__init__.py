"""LLM Provider 集成层。

该包下的模块负责：
- 定义按能力拆分的 Provider 协议 (base)。
- 维护 Provider、模型与能力配置 (registry)。
- 提供各厂商的具体实现 (kimi_client、glm_client、claude_client)。
"""

from typing import Dict, Optional, Union

from ai_gateway.config.settings import settings
from ai_gateway.domain.models import AIProvider
from ai_gateway.providers.claude_client import ClaudeClient
from ai_gateway.providers.glm_client import GlmClient
from ai_gateway.providers.kimi_client import KimiClient

_CLIENTS = {
    AIProvider.KIMI: KimiClient,
    AIProvider.GLM: GlmClient,
    AIProvider.CLAUDE: ClaudeClient,
}


def create_provider(name: Optional[Union[AIProvider, str]] = None, cfg=None):
    """根据名称创建 Provider 适配器实例，默认取 family_defaults 中 ide-chat 对应的 provider。"""

    cfg = cfg or settings
    provider_name = name or cfg.family_defaults.get("ide-chat", AIProvider.GLM.value)
    provider = AIProvider(getattr(provider_name, "value", provider_name).lower())
    return _CLIENTS[provider](cfg)


def create_all_providers(cfg=None) -> Dict[AIProvider, object]:
    return {p: create_provider(p, cfg) for p in AIProvider}
