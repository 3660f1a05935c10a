"""
Codex backend — `codex exec --json`.

Codex has no per-tool allow-list, so the tool set is mapped onto its
sandbox levels: read-only tools get a read-only sandbox.
"""

from __future__ import annotations

import os
import shutil
from typing import Any, AsyncIterator

from loguru import logger

from forgeline.providers import (
    AssistantMessage,
    BaseProvider,
    ContentBlock,
    ErrorMessage,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    ResultMessage,
    SystemMessage,
)
from forgeline.providers.transport import probe_version, spawn_jsonl


CODEX_MODELS = [
    ModelDefinition(
        id="gpt-5.2-codex", name="GPT-5.2-Codex", model_string="gpt-5.2-codex",
        provider="openai",
        description="Most advanced agentic coding model for complex software engineering.",
        context_window=200_000, max_output_tokens=32_000,
        supports_vision=True, tier="premium", default=True,
    ),
    ModelDefinition(
        id="gpt-5-codex", name="GPT-5-Codex", model_string="gpt-5-codex",
        provider="openai",
        description="Purpose-built for Codex CLI with versatile tool use.",
        context_window=200_000, max_output_tokens=32_000,
        supports_vision=True, tier="standard",
    ),
    ModelDefinition(
        id="gpt-5-codex-mini", name="GPT-5-Codex-Mini", model_string="gpt-5-codex-mini",
        provider="openai",
        description="Faster workflows for low-latency code Q&A and editing.",
        context_window=128_000, max_output_tokens=16_000,
        supports_vision=False, tier="basic",
    ),
    ModelDefinition(
        id="gpt-5", name="GPT-5", model_string="gpt-5",
        provider="openai",
        description="GPT-5 base flagship model.",
        context_window=200_000, max_output_tokens=32_000,
        supports_vision=True, tier="standard",
    ),
]

_WRITE_TOOLS = {"Write", "Edit", "Bash", "MultiEdit", "NotebookEdit"}


def sandbox_mode(options: ExecuteOptions) -> str:
    if options.allowed_tools is not None and not _WRITE_TOOLS & set(options.allowed_tools):
        return "read-only"
    if options.sandbox and options.sandbox.enabled:
        return "workspace-write"
    return "danger-full-access"


class CodexProvider(BaseProvider):
    name = "codex"
    features = frozenset({"tools", "text", "vision", "thinking", "streaming", "resume"})

    @property
    def cli(self) -> str:
        return self.config.codex_cli

    def build_command(self, options: ExecuteOptions) -> list[str]:
        cmd = [self.cli, "exec"]
        if options.session_id:
            cmd += ["resume", options.session_id]
        cmd += [
            "--json",
            "--model", options.model,
            "--sandbox", sandbox_mode(options),
            "--skip-git-repo-check",
            "--cd", options.cwd,
        ]
        prompt = self.build_prompt(options)
        if options.system_prompt:
            prompt = f"{options.system_prompt}\n\n{prompt}"
        cmd.append(prompt)
        return cmd

    @staticmethod
    def normalize(event: dict[str, Any], state: dict[str, Any]) -> ProviderMessage | None:
        kind = event.get("type")

        if kind == "thread.started":
            state["session_id"] = event.get("thread_id")
            return SystemMessage(subtype="init", session_id=state["session_id"])

        if kind == "item.completed":
            item = event.get("item") or {}
            item_type = item.get("type")
            if item_type == "agent_message":
                state["last_text"] = item.get("text", "")
                block = ContentBlock(type="text", text=state["last_text"])
            elif item_type == "reasoning":
                block = ContentBlock(type="thinking", thinking=item.get("text", ""))
            elif item_type == "command_execution":
                block = ContentBlock(
                    type="tool_use", name="Bash", tool_use_id=item.get("id"),
                    input={"command": item.get("command")},
                )
            elif item_type == "file_change":
                block = ContentBlock(
                    type="tool_use", name="Edit", tool_use_id=item.get("id"),
                    input={"changes": item.get("changes")},
                )
            else:
                return None
            return AssistantMessage(content=[block], session_id=state.get("session_id"))

        if kind == "turn.completed":
            return ResultMessage(
                subtype="success",
                result=state.get("last_text", ""),
                session_id=state.get("session_id"),
            )

        if kind in ("turn.failed", "error"):
            error = event.get("error")
            text = (error or {}).get("message") if isinstance(error, dict) else event.get("message")
            return ErrorMessage(
                error=text or "Codex run failed",
                raw=str(event),
                session_id=state.get("session_id"),
            )

        return None

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        cmd = self.build_command(options)
        logger.info(f"[PROVIDER] codex model={options.model} cwd={options.cwd}")

        state: dict[str, Any] = {"session_id": options.session_id}
        async for event in spawn_jsonl(cmd, options.cwd, options.token):
            message = self.normalize(event, state)
            if message is not None:
                yield message

    async def detect_installation(self) -> InstallationStatus:
        path = shutil.which(self.cli)
        has_key = bool(os.environ.get("OPENAI_API_KEY"))
        if not path:
            return InstallationStatus(
                installed=False, method="cli", has_api_key=has_key,
                error=f"{self.cli} not found on PATH",
            )
        auth_file = os.path.expanduser("~/.codex/auth.json")
        return InstallationStatus(
            installed=True, path=path, version=await probe_version(path), method="cli",
            has_api_key=has_key,
            authenticated=has_key or os.path.exists(auth_file),
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return list(CODEX_MODELS)
