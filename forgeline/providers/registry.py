"""
FORGELINE Provider Registry

One resolver table maps a model id to exactly one provider:
  1. explicit prefix   (codex-, cursor-, litellm-)
  2. pattern chain     litellm -> codex -> cursor -> claude
  3. configured default provider

The prefix is stripped before the id reaches ExecuteOptions.model.
"""

from __future__ import annotations

import re
from typing import Callable

from loguru import logger

from forgeline.config_loader import ProvidersConfig
from forgeline.errors import ProviderInstallationError
from forgeline.providers import BaseProvider, ModelDefinition
from forgeline.providers.claude import CLAUDE_ALIASES, ClaudeProvider
from forgeline.providers.codex import CodexProvider
from forgeline.providers.cursor import CursorProvider
from forgeline.providers.litellm_provider import LiteLLMProvider


PROVIDER_PREFIXES: dict[str, str] = {
    "codex": "codex-",
    "cursor": "cursor-",
    "litellm": "litellm-",
}

_CODEX_PATTERN = re.compile(r"^(gpt-|o\d)")


def strip_provider_prefix(model: str) -> str:
    for prefix in PROVIDER_PREFIXES.values():
        if model.startswith(prefix):
            return model[len(prefix):]
    return model


def validate_bare_model_id(model: str) -> bool:
    """True if no provider prefix survived resolution."""
    return not any(model.startswith(p) for p in PROVIDER_PREFIXES.values())


class ProviderRegistry:
    """Resolves model ids to provider instances."""

    def __init__(self, default_provider: str = "claude"):
        self.default_provider = default_provider
        self._providers: dict[str, BaseProvider] = {}
        self._chain: list[tuple[str, Callable[[str], bool]]] = []

    @classmethod
    def from_config(cls, config: ProvidersConfig) -> "ProviderRegistry":
        registry = cls(default_provider=config.default_provider)
        litellm = LiteLLMProvider(config)
        codex = CodexProvider(config)
        cursor = CursorProvider(config)
        claude = ClaudeProvider(config)

        registry.register(litellm, lambda m: "/" in m)
        registry.register(codex, lambda m: bool(_CODEX_PATTERN.match(m)))
        registry.register(cursor, cursor.owns_model)
        registry.register(claude, lambda m: m.startswith("claude-") or m in CLAUDE_ALIASES)
        return registry

    def register(self, provider: BaseProvider, matcher: Callable[[str], bool] | None = None) -> None:
        self._providers[provider.name] = provider
        if matcher is not None:
            self._chain.append((provider.name, matcher))

    def get(self, name: str) -> BaseProvider:
        if name not in self._providers:
            raise ProviderInstallationError(f"No provider registered as '{name}'")
        return self._providers[name]

    @property
    def providers(self) -> dict[str, BaseProvider]:
        return dict(self._providers)

    def provider_name_for(self, model: str) -> str:
        for name, prefix in PROVIDER_PREFIXES.items():
            if model.startswith(prefix) and name in self._providers:
                return name
        for name, matches in self._chain:
            if matches(model):
                return name
        return self.default_provider

    def resolve(self, model: str) -> tuple[BaseProvider, str]:
        """Return (provider, bare model id)."""
        name = self.provider_name_for(model)
        provider = self.get(name)
        bare = strip_provider_prefix(model)
        assert validate_bare_model_id(bare), f"provider prefix leaked into model id: {bare}"
        logger.debug(f"[PROVIDER] {model} -> {name} ({bare})")
        return provider, bare

    def all_models(self) -> dict[str, list[ModelDefinition]]:
        return {name: p.get_available_models() for name, p in self._providers.items()}
