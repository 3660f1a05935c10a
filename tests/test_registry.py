import pytest

from forgeline.config_loader import ProvidersConfig
from forgeline.errors import ProviderInstallationError
from forgeline.providers.registry import ProviderRegistry, strip_provider_prefix, validate_bare_model_id


@pytest.fixture
def registry():
    return ProviderRegistry.from_config(ProvidersConfig())


@pytest.mark.parametrize("model, provider, bare", [
    ("codex-gpt-5", "codex", "gpt-5"),
    ("cursor-auto", "cursor", "auto"),
    ("litellm-openai/gpt-4.1", "litellm", "openai/gpt-4.1"),
    ("gpt-5.2-codex", "codex", "gpt-5.2-codex"),
    ("o3", "codex", "o3"),
    ("openai/gpt-4.1", "litellm", "openai/gpt-4.1"),
    ("composer-1", "cursor", "composer-1"),
    ("claude-sonnet-4-5-20250929", "claude", "claude-sonnet-4-5-20250929"),
    ("sonnet", "claude", "sonnet"),
    ("something-unknown", "claude", "something-unknown"),
])
def test_model_resolves_to_one_provider(registry, model, provider, bare):
    resolved, bare_id = registry.resolve(model)
    assert resolved.name == provider
    assert bare_id == bare
    assert validate_bare_model_id(bare_id)


def test_prefix_is_stripped_once():
    assert strip_provider_prefix("codex-gpt-5") == "gpt-5"
    assert strip_provider_prefix("claude-opus") == "claude-opus"
    assert not validate_bare_model_id("cursor-auto")


def test_unknown_default_provider_is_an_error():
    registry = ProviderRegistry(default_provider="missing")
    with pytest.raises(ProviderInstallationError):
        registry.resolve("anything")


def test_models_are_listed_per_provider(registry):
    models = registry.all_models()
    assert set(models) == {"litellm", "codex", "cursor", "claude"}
    assert all(m.id.startswith("cursor-") for m in models["cursor"])
    assert any(m.default for m in models["claude"])
