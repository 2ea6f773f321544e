"""Provider、模型与能力配置（Capability Registry）。

本模块将“逻辑模型族”与“具体模型”解耦：

- 具体模型（name）：Gateway 对外暴露的模型 ID，例如 "glm-4.6"，与唯一一个 Provider 绑定。
- provider_model：厂商 API 实际接收的模型 ID，例如 "kimi-k2-turbo-preview"。
- 模型族（family）：一组跨 Provider 等价的模型，例如 "ide-chat"，用于默认路由与 fallback。

registry 在进程启动时构建一次，之后只读：内部映射全部包装为 MappingProxyType，
可被任意数量的线程并发读取而无需加锁。
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Iterable, List, Mapping, Union

from ai_gateway.domain.capabilities import ALL_ANALYSIS, CHAT, STREAMING_CHAT, AICapability
from ai_gateway.domain.analysis import AIAnalysisType
from ai_gateway.domain.exceptions import UnknownModel
from ai_gateway.domain.models import AIProvider


@dataclass(frozen=True)
class ModelSpec:
    """单个具体模型的配置。"""

    name: str
    provider: AIProvider
    provider_model: str
    family: str
    max_tokens: int
    default_temperature: float
    capabilities: FrozenSet[AICapability] = frozenset()


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: AIProvider
    base_url: str
    models: Mapping[str, ModelSpec] = field(default_factory=dict)


def _provider_config(name: AIProvider, base_url: str, models: Iterable[ModelSpec]) -> ProviderConfig:
    return ProviderConfig(name=name, base_url=base_url, models=MappingProxyType({m.name: m for m in models}))


def _analysis(*types: AIAnalysisType) -> FrozenSet[AICapability]:
    return frozenset(AICapability.analysis(t) for t in types)


_LIGHT_ANALYSIS = _analysis(AIAnalysisType.SUMMARIZATION, AIAnalysisType.EMAIL_GENERATION)


# Kimi 配置
KIMI_CONFIG = _provider_config(
    AIProvider.KIMI,
    "https://api.moonshot.cn/v1",
    [
        ModelSpec(
            name="kimi-k2-turbo-preview",
            provider=AIProvider.KIMI,
            provider_model="kimi-k2-turbo-preview",
            family="ide-chat",
            max_tokens=8192,
            default_temperature=0.7,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | ALL_ANALYSIS,
        ),
        ModelSpec(
            name="moonshot-v1-8k",
            provider=AIProvider.KIMI,
            provider_model="moonshot-v1-8k",
            family="fast-chat",
            max_tokens=4096,
            default_temperature=0.3,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | _LIGHT_ANALYSIS,
        ),
        # 长上下文批量模型，不开放流式
        ModelSpec(
            name="moonshot-v1-128k",
            provider=AIProvider.KIMI,
            provider_model="moonshot-v1-128k",
            family="long-context",
            max_tokens=8192,
            default_temperature=0.3,
            capabilities=frozenset({CHAT}) | _analysis(AIAnalysisType.SUMMARIZATION),
        ),
    ],
)

# GLM / BigModel 配置（默认使用 glm-4.6 作为 ide-chat 模型族的成员）
GLM_CONFIG = _provider_config(
    AIProvider.GLM,
    "https://open.bigmodel.cn/api/paas/v4",
    [
        ModelSpec(
            name="glm-4.6",
            provider=AIProvider.GLM,
            provider_model="glm-4.6",
            family="ide-chat",
            max_tokens=8192,
            default_temperature=0.7,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | ALL_ANALYSIS,
        ),
        ModelSpec(
            name="glm-4-flash",
            provider=AIProvider.GLM,
            provider_model="glm-4-flash",
            family="fast-chat",
            max_tokens=4096,
            default_temperature=0.3,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | _LIGHT_ANALYSIS,
        ),
    ],
)

# Anthropic Claude 配置
CLAUDE_CONFIG = _provider_config(
    AIProvider.CLAUDE,
    "https://api.anthropic.com/v1",
    [
        ModelSpec(
            name="claude-sonnet-4",
            provider=AIProvider.CLAUDE,
            provider_model="claude-sonnet-4-20250514",
            family="ide-chat",
            max_tokens=8192,
            default_temperature=0.7,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | ALL_ANALYSIS,
        ),
        ModelSpec(
            name="claude-3-5-haiku",
            provider=AIProvider.CLAUDE,
            provider_model="claude-3-5-haiku-20241022",
            family="fast-chat",
            max_tokens=4096,
            default_temperature=0.3,
            capabilities=frozenset({CHAT, STREAMING_CHAT}) | _LIGHT_ANALYSIS,
        ),
    ],
)


class CapabilityRegistry:
    """只读的 (provider, model) -> 能力集合 查找表。"""

    def __init__(self, providers: Iterable[ProviderConfig]):
        provider_map = {}
        models = {}
        families: dict = {}
        for cfg in providers:
            provider_map[cfg.name] = cfg
            for spec in cfg.models.values():
                if spec.provider != cfg.name:
                    raise ValueError(f"Model {spec.name!r} registered under wrong provider {cfg.name.value!r}")
                if spec.name in models:
                    raise ValueError(f"Duplicate model name: {spec.name!r}")
                members = families.setdefault(spec.family, {})
                if spec.provider in members:
                    raise ValueError(f"Family {spec.family!r} has two models on {spec.provider.value!r}")
                models[spec.name] = spec
                members[spec.provider] = spec
        clash = set(models) & set(families)
        if clash:
            raise ValueError(f"Family names clash with model names: {sorted(clash)}")
        self._providers = MappingProxyType(provider_map)
        self._models = MappingProxyType(models)
        self._families = MappingProxyType({k: MappingProxyType(v) for k, v in families.items()})

    # ---- 查询 ----

    def is_family(self, name: str) -> bool:
        return name in self._families

    def is_known(self, name: str) -> bool:
        return name in self._models or name in self._families

    def get_model(self, name: str) -> ModelSpec:
        try:
            return self._models[name]
        except KeyError:
            raise UnknownModel(name) from None

    def family_members(self, family: str) -> Mapping[AIProvider, ModelSpec]:
        try:
            return self._families[family]
        except KeyError:
            raise UnknownModel(family) from None

    def model_for(self, provider: Union[AIProvider, str], model: str) -> ModelSpec:
        """按 (provider, 模型或模型族) 查找具体模型，未注册时抛 UnknownModel。"""

        provider_name = getattr(provider, "value", provider)
        try:
            provider = AIProvider(provider_name)
        except ValueError:
            raise UnknownModel(model, provider_name) from None
        if model in self._families:
            spec = self._families[model].get(provider)
        else:
            spec = self._models.get(model)
        if spec is None or spec.provider != provider:
            raise UnknownModel(model, provider.value)
        return spec

    def capabilities_of(self, provider: Union[AIProvider, str], model: str) -> FrozenSet[AICapability]:
        return self.model_for(provider, model).capabilities

    def supports(self, provider: Union[AIProvider, str], model: str, capability: AICapability) -> bool:
        return capability in self.capabilities_of(provider, model)

    def provider_config(self, provider: AIProvider) -> ProviderConfig:
        return self._providers[provider]

    def models(self) -> List[ModelSpec]:
        return list(self._models.values())


DEFAULT_REGISTRY = CapabilityRegistry([KIMI_CONFIG, GLM_CONFIG, CLAUDE_CONFIG])
