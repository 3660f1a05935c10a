"""Shared fixtures: a scripted agent backend and an in-memory worktree manager."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from forgeline.config_loader import ForgelineConfig
from forgeline.event_bus import EventBus, FeatureEvent
from forgeline.features import FeatureStore
from forgeline.prompts import PLAN_MARKER
from forgeline.providers import (
    AssistantMessage,
    BaseProvider,
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ResultMessage,
    SystemMessage,
    prompt_text,
)
from forgeline.providers.registry import ProviderRegistry
from forgeline.scheduler import RunnerPool
from forgeline.workspace import WorktreeRecord


PLAN_TEXT = "1. Add the flag\n2. Cover it with a test"


def default_script(options: ExecuteOptions) -> list[Any]:
    if PLAN_MARKER in prompt_text(options.prompt):
        text = f"{PLAN_TEXT}\n{PLAN_MARKER}"
        return [
            SystemMessage(session_id="sess-plan"),
            AssistantMessage(content=[ContentBlock(text=text)]),
            ResultMessage(result=text),
        ]
    return [
        SystemMessage(session_id="sess-impl"),
        AssistantMessage(content=[ContentBlock(text="Editing files")]),
        AssistantMessage(content=[ContentBlock(type="tool_use", name="Edit", input={"file_path": "a.py"})]),
        ResultMessage(result="Added the flag."),
    ]


class ScriptedProvider(BaseProvider):
    """
    Plays back a script per call. Items that are exceptions are raised
    at that point in the stream. Set `gate` to hold every stream open
    after its first message until the gate is released.
    """

    name = "scripted"

    def __init__(self, script: Callable[[ExecuteOptions], Iterable[Any]] = default_script):
        super().__init__()
        self.script = script
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.calls: list[ExecuteOptions] = []
        self.active = 0
        self.peak = 0
        self.closed = 0

    async def execute_query(self, options: ExecuteOptions):
        self.calls.append(options)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            for i, item in enumerate(self.script(options)):
                if self.delay:
                    await asyncio.sleep(self.delay)
                if isinstance(item, BaseException):
                    raise item
                yield item
                if i == 0 and self.gate is not None:
                    await self.gate.wait()
        finally:
            self.active -= 1
            self.closed += 1

    async def detect_installation(self) -> InstallationStatus:
        return InstallationStatus(installed=True, method="sdk", authenticated=True)

    def get_available_models(self) -> list[ModelDefinition]:
        return [ModelDefinition(id="scripted", name="Scripted", model_string="scripted", provider="test")]


class FakeWorktreeManager:
    """Same surface as WorktreeManager, backed by plain directories."""

    def __init__(self, root: Path):
        self.root = root
        self.created: list[str] = []
        self.destroyed: list[tuple[str, str | None]] = []
        self.commits: list[str] = []
        self.merged: list[str] = []
        self.fail_create: Exception | None = None
        # worktree path -> number of uncommitted files
        self.dirty: dict[str, int] = {}

    async def create(self, repo_path: Path, branch_name: str) -> WorktreeRecord:
        await asyncio.sleep(0)
        if self.fail_create is not None:
            raise self.fail_create
        path = self.root / ".forgeline" / "worktrees" / branch_name.replace("/", "-")
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(str(path))
        return WorktreeRecord(path=str(path), branch=branch_name)

    async def status(self, worktree_path) -> WorktreeRecord:
        changed = self.dirty.get(str(worktree_path), 0)
        return WorktreeRecord(path=str(worktree_path), has_changes=changed > 0, changed_files_count=changed)

    async def commit(self, worktree_path, message: str) -> str | None:
        self.commits.append(str(worktree_path))
        return "c0ffee" + "0" * 34

    async def merge_back(self, repo_path: Path, branch_name: str, worktree_path) -> str:
        self.merged.append(branch_name)
        shutil.rmtree(worktree_path, ignore_errors=True)
        return "feed" + "0" * 36

    async def destroy(self, worktree_path, branch_name: str | None = None, repo_path: Path | None = None) -> None:
        self.destroyed.append((str(worktree_path), branch_name))
        shutil.rmtree(worktree_path, ignore_errors=True)

    async def list_worktrees(self, repo_path: Path) -> list[WorktreeRecord]:
        return [WorktreeRecord(path=p) for p in self.created if Path(p).exists()]


def make_config(**sections: dict[str, Any]) -> ForgelineConfig:
    base: dict[str, Any] = {
        "scheduler": {"max_concurrency": 2, "stop_grace_seconds": 0.2},
        "retry": {"max_attempts": 3, "backoff_multiplier": 0, "backoff_min_seconds": 0, "backoff_max_seconds": 0},
        "providers": {"stream_idle_seconds": 0},
    }
    for name, values in sections.items():
        base[name] = {**base.get(name, {}), **values}
    return ForgelineConfig(**base)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def worktrees(tmp_path: Path) -> FakeWorktreeManager:
    return FakeWorktreeManager(tmp_path)


@pytest.fixture
def events() -> list[FeatureEvent]:
    return []


@pytest.fixture
def bus(events: list[FeatureEvent]) -> EventBus:
    bus = EventBus()
    bus.subscribe(events.append)
    return bus


@pytest.fixture
def store(tmp_path: Path, bus: EventBus) -> FeatureStore:
    return FeatureStore(tmp_path, bus=bus)


@pytest.fixture
def make_pool(tmp_path, provider, worktrees, bus):
    def _make(**sections: dict[str, Any]) -> RunnerPool:
        registry = ProviderRegistry(default_provider="scripted")
        registry.register(provider)
        return RunnerPool(tmp_path, config=make_config(**sections), bus=bus, registry=registry, workspace=worktrees)

    return _make


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
