import pytest

from ai_gateway.domain.models import AIProvider
from ai_gateway.providers import create_all_providers, create_provider
from ai_gateway.providers.base import AnalysisProvider, ChatProvider, StreamingProvider
from ai_gateway.providers.claude_client import ClaudeClient
from ai_gateway.providers.glm_client import GlmClient
from ai_gateway.providers.kimi_client import KimiClient


class DummySettings:
    family_defaults = {"ide-chat": "glm"}
    glm_api_key = "g"
    kimi_api_key = "k"
    claude_api_key = None
    http_timeout = 1.0


def test_create_provider_default(monkeypatch):
    monkeypatch.setattr("ai_gateway.providers.settings", DummySettings())
    provider = create_provider()
    assert isinstance(provider, GlmClient)


def test_create_provider_explicit():
    assert isinstance(create_provider("KIMI", DummySettings()), KimiClient)
    assert isinstance(create_provider(AIProvider.CLAUDE, DummySettings()), ClaudeClient)


@pytest.mark.parametrize("client_cls", [KimiClient, GlmClient, ClaudeClient])
def test_clients_require_settings(client_cls):
    with pytest.raises(TypeError):
        client_cls()
    cfg = DummySettings()
    assert client_cls(cfg)._settings is cfg


def test_all_clients_satisfy_capability_protocols():
    clients = create_all_providers(DummySettings())
    assert set(clients) == set(AIProvider)
    for client in clients.values():
        assert isinstance(client, ChatProvider)
        assert isinstance(client, StreamingProvider)
        assert isinstance(client, AnalysisProvider)
