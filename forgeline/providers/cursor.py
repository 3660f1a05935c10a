"""
Cursor backend — `cursor-agent -p --output-format stream-json`.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
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


# bare id -> (label, description, tier)
CURSOR_MODEL_MAP = {
    "auto": ("Auto", "Cursor picks the model per request", "basic"),
    "sonnet-4.5": ("Claude Sonnet 4.5", "Anthropic Sonnet via Cursor", "premium"),
    "opus-4.5": ("Claude Opus 4.5", "Anthropic Opus via Cursor", "premium"),
    "gpt-5": ("GPT-5", "OpenAI GPT-5 via Cursor", "premium"),
    "composer-1": ("Composer 1", "Cursor's own agentic coding model", "basic"),
    "grok": ("Grok", "xAI Grok via Cursor", "basic"),
}

_SEARCH_PATHS = [
    Path.home() / ".local/bin/cursor-agent",
    Path("/usr/local/bin/cursor-agent"),
]
_VERSIONS_DIR = Path.home() / ".local/share/cursor-agent/versions"


def find_cli(name: str) -> str | None:
    """PATH first, then the install script's usual locations, newest version last."""
    found = shutil.which(name)
    if found:
        return found
    for candidate in _SEARCH_PATHS:
        if candidate.exists():
            return str(candidate)
    if _VERSIONS_DIR.is_dir():
        for version in sorted((v for v in _VERSIONS_DIR.iterdir() if not v.name.startswith(".")), reverse=True):
            binary = version / "cursor-agent"
            if binary.exists():
                return str(binary)
    return None


def _tool_call(call: dict[str, Any]) -> tuple[str, Any] | None:
    if "readToolCall" in call:
        return "Read", {"file_path": call["readToolCall"].get("args", {}).get("path")}
    if "writeToolCall" in call:
        args = call["writeToolCall"].get("args", {})
        return "Write", {"file_path": args.get("path"), "content": args.get("fileText")}
    if "function" in call:
        fn = call["function"]
        try:
            arguments = json.loads(fn.get("arguments") or "{}")
        except json.JSONDecodeError:
            arguments = {"raw": fn.get("arguments")}
        return fn.get("name", "tool"), arguments
    return None


class CursorProvider(BaseProvider):
    name = "cursor"
    features = frozenset({"tools", "text", "streaming", "resume"})

    @property
    def cli(self) -> str:
        return find_cli(self.config.cursor_cli) or self.config.cursor_cli

    def build_command(self, options: ExecuteOptions) -> list[str]:
        cmd = [
            self.cli, "-p", "--force",
            "--output-format", "stream-json",
            "--stream-partial-output",
        ]
        if options.model and options.model != "auto":
            cmd += ["--model", options.model]
        if options.session_id:
            cmd += ["--resume", options.session_id]
        prompt = self.build_prompt(options)
        if options.system_prompt:
            prompt = f"{options.system_prompt}\n\n{prompt}"
        cmd.append(prompt)
        return cmd

    @staticmethod
    def normalize(event: dict[str, Any]) -> ProviderMessage | None:
        kind = event.get("type")
        session_id = event.get("session_id")

        if kind == "system":
            return SystemMessage(subtype=event.get("subtype", "init"), session_id=session_id)

        if kind == "assistant":
            content = (event.get("message") or {}).get("content") or []
            blocks = [ContentBlock(type="text", text=c.get("text")) for c in content]
            return AssistantMessage(content=blocks, session_id=session_id)

        if kind == "tool_call":
            call = event.get("tool_call") or {}
            parsed = _tool_call(call)
            if parsed is None:
                return None
            tool_name, tool_input = parsed
            if event.get("subtype") == "started":
                block = ContentBlock(type="tool_use", name=tool_name, tool_use_id=event.get("call_id"), input=tool_input)
            elif event.get("subtype") == "completed":
                success = (call.get("readToolCall") or call.get("writeToolCall") or {}).get("result", {}).get("success") or {}
                if "content" in success:
                    result = success["content"]
                elif "linesCreated" in success:
                    result = f"Wrote {success['linesCreated']} lines to {success.get('path')}"
                else:
                    result = ""
                block = ContentBlock(type="tool_result", tool_use_id=event.get("call_id"), content=result)
            else:
                return None
            return AssistantMessage(content=[block], session_id=session_id)

        if kind == "result":
            if event.get("is_error"):
                return ErrorMessage(
                    error=event.get("error") or event.get("result") or "Unknown error",
                    raw=json.dumps(event),
                    session_id=session_id,
                )
            return ResultMessage(subtype="success", result=event.get("result", ""), session_id=session_id)

        return None

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        cmd = self.build_command(options)
        logger.info(f"[PROVIDER] cursor model={options.model} cwd={options.cwd}")

        session_id = options.session_id
        async for event in spawn_jsonl(cmd, options.cwd, options.token):
            if event.get("type") == "system" and event.get("subtype") == "init":
                session_id = event.get("session_id") or session_id
            message = self.normalize(event)
            if message is None:
                continue
            if not message.session_id and session_id:
                message.session_id = session_id
            yield message

    async def detect_installation(self) -> InstallationStatus:
        path = find_cli(self.config.cursor_cli)
        has_key = bool(os.environ.get("CURSOR_API_KEY"))
        if not path:
            return InstallationStatus(
                installed=False, method="cli", has_api_key=has_key,
                error=f"{self.config.cursor_cli} not found",
            )
        credentials = [
            Path.home() / ".cursor" / "credentials.json",
            Path.home() / ".config" / "cursor" / "credentials.json",
        ]
        return InstallationStatus(
            installed=True, path=path, version=await probe_version(path), method="cli",
            has_api_key=has_key,
            authenticated=has_key or any(p.exists() for p in credentials),
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=f"cursor-{model_id}", name=label, model_string=model_id,
                provider="cursor", description=description, tier=tier,
                supports_vision=False,
            )
            for model_id, (label, description, tier) in CURSOR_MODEL_MAP.items()
        ]
