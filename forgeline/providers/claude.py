"""
Claude backend — drives the `claude` CLI in print mode with
stream-json output and normalizes its events.
"""

from __future__ import annotations

import json
import os
import shutil
from typing import Any, AsyncIterator

from loguru import logger

from forgeline.providers import (
    AssistantMessage,
    BaseProvider,
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    SystemMessage,
)
from forgeline.providers.transport import probe_version, spawn_jsonl


CLAUDE_MODELS = [
    ModelDefinition(
        id="claude-opus-4-5-20251101", name="Claude Opus 4.5",
        model_string="claude-opus-4-5-20251101", provider="anthropic",
        description="Most capable Claude model",
        context_window=200_000, max_output_tokens=16_000,
        supports_vision=True, tier="premium", default=True,
    ),
    ModelDefinition(
        id="claude-sonnet-4-5-20250929", name="Claude Sonnet 4.5",
        model_string="claude-sonnet-4-5-20250929", provider="anthropic",
        description="Balanced performance and cost",
        context_window=200_000, max_output_tokens=16_000,
        supports_vision=True, tier="standard",
    ),
    ModelDefinition(
        id="claude-sonnet-4-20250514", name="Claude Sonnet 4",
        model_string="claude-sonnet-4-20250514", provider="anthropic",
        description="Previous-generation balanced model",
        context_window=200_000, max_output_tokens=16_000,
        supports_vision=True, tier="standard",
    ),
    ModelDefinition(
        id="claude-haiku-4-5-20251001", name="Claude Haiku 4.5",
        model_string="claude-haiku-4-5-20251001", provider="anthropic",
        description="Fastest Claude model",
        context_window=200_000, max_output_tokens=8_000,
        supports_vision=True, tier="basic",
    ),
]

CLAUDE_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
    "claude-haiku": "claude-haiku-4-5-20251001",
    "claude-sonnet": "claude-sonnet-4-5-20250929",
    "claude-opus": "claude-opus-4-5-20251101",
}


def resolve_model_string(model: str) -> str:
    return CLAUDE_ALIASES.get(model, model)


class ClaudeProvider(BaseProvider):
    name = "claude"
    features = frozenset({"tools", "text", "vision", "thinking", "streaming", "resume"})

    @property
    def cli(self) -> str:
        return self.config.claude_cli

    def owns_model(self, model: str) -> bool:
        return model.startswith("claude-") or model in CLAUDE_ALIASES

    def build_command(self, options: ExecuteOptions) -> tuple[list[str], str | None]:
        """Return (argv, stdin payload)."""
        cmd = [
            self.cli, "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--model", resolve_model_string(options.model),
            "--max-turns", str(options.max_turns),
            "--permission-mode", "acceptEdits",
        ]
        if options.allowed_tools is not None:
            cmd += ["--allowedTools", ",".join(options.allowed_tools)]
        if options.system_prompt:
            cmd += ["--append-system-prompt", options.system_prompt]
        if options.session_id:
            cmd += ["--resume", options.session_id]
        if options.sandbox and options.sandbox.enabled:
            settings = {"sandbox": {
                "enabled": True,
                "autoAllowBashIfSandboxed": options.sandbox.auto_allow_bash,
            }}
            cmd += ["--settings", json.dumps(settings)]

        if isinstance(options.prompt, list):
            # Multi-part prompts (images) go in as one stream-json user turn.
            cmd += ["--input-format", "stream-json"]
            turn = {
                "type": "user",
                "message": {"role": "user", "content": options.prompt},
                "parent_tool_use_id": None,
                "session_id": options.session_id or "",
            }
            return cmd, json.dumps(turn) + "\n"

        cmd.append(self.build_prompt(options))
        return cmd, None

    @staticmethod
    def normalize(event: dict[str, Any]) -> ProviderMessage | None:
        kind = event.get("type")
        session_id = event.get("session_id")

        if kind == "system":
            data = {k: v for k, v in event.items() if k not in ("type", "subtype", "session_id")}
            return SystemMessage(subtype=event.get("subtype", "init"), session_id=session_id, data=data)

        if kind == "assistant":
            content = (event.get("message") or {}).get("content") or []
            blocks = [ContentBlock.model_validate(c) for c in content if c.get("type") in
                      ("text", "tool_use", "tool_result", "thinking")]
            return AssistantMessage(content=blocks, session_id=session_id)

        if kind == "result":
            failed = event.get("is_error") or str(event.get("subtype", "")).startswith("error")
            text = event.get("result") or ("" if not failed else str(event.get("subtype")))
            return ResultMessage(
                subtype="error" if failed else "success",
                result=text,
                session_id=session_id,
            )

        # "user" events carry tool results echoed back to the model.
        return None

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        cmd, stdin_data = self.build_command(options)
        logger.info(f"[PROVIDER] claude model={cmd[cmd.index('--model') + 1]} cwd={options.cwd}")

        async for event in spawn_jsonl(cmd, options.cwd, options.token, stdin_data=stdin_data):
            message = self.normalize(event)
            if message is not None:
                yield message

    async def detect_installation(self) -> InstallationStatus:
        path = shutil.which(self.cli)
        has_key = bool(os.environ.get("ANTHROPIC_API_KEY"))
        if not path:
            return InstallationStatus(
                installed=False, method="cli", has_api_key=has_key,
                error=f"{self.cli} not found on PATH",
            )

        version = await probe_version(path)
        credentials = os.path.expanduser("~/.claude/.credentials.json")
        return InstallationStatus(
            installed=True, path=path, version=version, method="cli",
            has_api_key=has_key,
            authenticated=has_key or os.path.exists(credentials),
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return list(CLAUDE_MODELS)
