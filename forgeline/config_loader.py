"""
Configuration loader for FORGELINE.
Merges defaults with per-repo .forgeline/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class SchedulerConfig(BaseModel):
    max_concurrency: int = Field(default=3, ge=0)
    stop_grace_seconds: float = Field(default=5.0, ge=0)
    failure_threshold: int = Field(default=3, ge=1)
    failure_window_seconds: float = Field(default=60.0, gt=0)
    pause_on_quota: bool = True


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = 1.0
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 30.0


class SandboxConfig(BaseModel):
    enabled: bool = False
    auto_allow_bash: bool = False


class ProvidersConfig(BaseModel):
    default_model: str = "claude-sonnet"
    default_provider: str = "claude"
    max_turns: int = 50
    plan_max_turns: int = 20
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]
    )
    plan_tools: list[str] = Field(default_factory=lambda: ["Read", "Glob", "Grep"])
    stream_idle_seconds: float = 120.0
    claude_cli: str = "claude"
    codex_cli: str = "codex"
    cursor_cli: str = "cursor-agent"
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)


class WorkspaceConfig(BaseModel):
    worktree_dir: str = ".forgeline/worktrees"
    features_dir: str = ".forgeline/features"
    log_dir: str = ".forgeline/logs"
    branch_prefix: str = "forgeline/"
    base_branch: str | None = None
    auto_merge: bool = True


class VerificationConfig(BaseModel):
    test_command: str | None = None
    timeout_seconds: float = 600.0


class ForgelineConfig(BaseModel):
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "FORGELINE_MAX_CONCURRENCY": ("scheduler", "max_concurrency", int),
    "FORGELINE_DEFAULT_MODEL": ("providers", "default_model", str),
    "FORGELINE_TEST_COMMAND": ("verification", "test_command", str),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(var)
        if raw is None or raw == "":
            continue
        overrides.setdefault(section, {})[key] = cast(raw)
    return overrides


def load_config(repo_path: Path | None = None) -> ForgelineConfig:
    """
    Load config by merging:
      1. Built-in defaults (forgeline/config.yaml)
      2. Repo-level overrides (<repo>/.forgeline/config.yaml)
      3. Environment variable overrides (FORGELINE_*)
    """
    base: dict[str, Any] = {}
    if _DEFAULT_CONFIG_PATH.exists():
        with open(_DEFAULT_CONFIG_PATH, "r") as f:
            base = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".forgeline" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    base = _deep_merge(base, _env_overrides())
    return ForgelineConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which provider credentials are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "CURSOR_API_KEY":    bool(os.environ.get("CURSOR_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
