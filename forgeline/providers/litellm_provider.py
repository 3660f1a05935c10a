"""
LiteLLM backend — plain HTTP chat streaming for any `vendor/model` id.

No tools and no session resumption: the agent can only answer, so
this backend is mostly useful for planning and for cheap dry runs.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

import litellm
from loguru import logger

from forgeline.config_loader import ProvidersConfig, validate_api_keys
from forgeline.providers import (
    AssistantMessage,
    BaseProvider,
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
)


LITELLM_MODELS = [
    ModelDefinition(
        id="anthropic/claude-sonnet-4-5-20250929", name="Claude Sonnet 4.5 (API)",
        model_string="anthropic/claude-sonnet-4-5-20250929", provider="anthropic",
        description="Anthropic API via LiteLLM", context_window=200_000,
        max_output_tokens=16_000, supports_tools=False, tier="standard", default=True,
    ),
    ModelDefinition(
        id="openai/gpt-4.1", name="GPT-4.1 (API)", model_string="openai/gpt-4.1",
        provider="openai", description="OpenAI API via LiteLLM", context_window=1_000_000,
        max_output_tokens=32_000, supports_tools=False, tier="standard",
    ),
    ModelDefinition(
        id="gemini/gemini-2.5-pro", name="Gemini 2.5 Pro (API)", model_string="gemini/gemini-2.5-pro",
        provider="google", description="Google Gemini via LiteLLM", context_window=1_000_000,
        max_output_tokens=32_000, supports_tools=False, tier="premium",
    ),
]


def _to_openai_part(part: dict[str, Any]) -> dict[str, Any] | None:
    if part.get("type") == "text":
        return {"type": "text", "text": part.get("text", "")}
    source = part.get("source") or {}
    if part.get("type") == "image" and source.get("type") == "base64":
        url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
        return {"type": "image_url", "image_url": {"url": url}}
    return None


def build_messages(options: ExecuteOptions) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if options.system_prompt:
        messages.append({"role": "system", "content": options.system_prompt})
    for msg in options.conversation_history:
        content = msg.content
        if isinstance(content, list):
            content = [p for p in (_to_openai_part(c) for c in content) if p]
        messages.append({"role": msg.role, "content": content})
    if isinstance(options.prompt, str):
        messages.append({"role": "user", "content": options.prompt})
    else:
        parts = [p for p in (_to_openai_part(c) for c in options.prompt) if p]
        messages.append({"role": "user", "content": parts})
    return messages


class LiteLLMProvider(BaseProvider):
    name = "litellm"
    features = frozenset({"text", "streaming", "vision"})

    def __init__(self, config: ProvidersConfig | None = None):
        super().__init__(config)
        litellm.suppress_debug_info = True

    def owns_model(self, model: str) -> bool:
        return "/" in model

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        logger.info(f"[PROVIDER] litellm model={options.model}")
        response = await litellm.acompletion(
            model=options.model,
            messages=build_messages(options),
            stream=True,
        )

        parts: list[str] = []
        async for chunk in response:
            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta else None
            if text:
                parts.append(text)
                yield AssistantMessage(content=[ContentBlock(type="text", text=text)])

        yield ResultMessage(subtype="success", result="".join(parts))

    async def detect_installation(self) -> InstallationStatus:
        keys = validate_api_keys()
        has_key = any(keys.values())
        return InstallationStatus(
            installed=True,
            version=getattr(litellm, "__version__", None),
            method="http",
            has_api_key=has_key,
            authenticated=has_key,
            error=None if has_key else "No provider API key found in the environment",
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return list(LITELLM_MODELS)
