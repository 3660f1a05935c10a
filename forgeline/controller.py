"""
FORGELINE Controller — Feature Execution

Runs the phases of one admitted Feature:

  plan → implement → verify → finalize

It is NOT smart. It is deterministic. It decides nothing about
admission or capacity; that belongs to the scheduler. Every provider
message goes through apply_message(), the pure status projection, so
a replayed stream lands on the same status.
"""

from __future__ import annotations

import asyncio
import subprocess
from contextlib import aclosing
from functools import reduce
from typing import Iterable

from loguru import logger
from tenacity import RetryCallState

from forgeline.classifier import RetryPolicy, classify
from forgeline.config_loader import ForgelineConfig
from forgeline.errors import ForgelineError, ProviderStreamError
from forgeline.event_bus import EventBus
from forgeline.features import Feature, FeatureStore, PlanSpec, utcnow
from forgeline.prompts import (
    SYSTEM_PROMPT,
    build_continuation_prompt,
    build_implementation_prompt,
    build_plan_prompt,
    extract_plan,
)
from forgeline.providers import (
    AssistantMessage,
    CancellationToken,
    ErrorMessage,
    ExecuteOptions,
    ProviderMessage,
    ResultMessage,
    StreamWatchdog,
    iterate_messages,
)
from forgeline.providers.registry import ProviderRegistry
from forgeline.state import FeatureStatus
from forgeline.workspace import WorktreeManager


class RunAborted(Exception):
    """The run's token fired or a stop was requested; state is owned by the aborter."""


# ---------------------------------------------------------------------------
# State projection
# ---------------------------------------------------------------------------

_FAILABLE = frozenset({FeatureStatus.PLANNING, FeatureStatus.IN_PROGRESS, FeatureStatus.VERIFICATION})


def apply_message(status: FeatureStatus | str, message: ProviderMessage) -> FeatureStatus:
    """Status after one message. Pure, and a no-op when re-applied."""
    status = FeatureStatus(status)

    if isinstance(message, ErrorMessage) or (
        isinstance(message, ResultMessage) and message.subtype == "error"
    ):
        return FeatureStatus.FAILED if status in _FAILABLE else status

    if isinstance(message, ResultMessage) and status == FeatureStatus.IN_PROGRESS:
        return FeatureStatus.VERIFICATION

    return status


def replay(status: FeatureStatus | str, messages: Iterable[ProviderMessage]) -> FeatureStatus:
    return reduce(apply_message, messages, FeatureStatus(status))


def _message_error(message: ProviderMessage) -> ProviderStreamError | None:
    if isinstance(message, ErrorMessage):
        verdict = classify(message.raw or message.error)
        return ProviderStreamError(verdict.message, raw=message.raw or message.error, classified=verdict)
    if isinstance(message, ResultMessage) and message.subtype == "error":
        verdict = classify(message.result or "Run ended with an error")
        return ProviderStreamError(verdict.message, raw=message.result, classified=verdict)
    return None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class FeatureController:
    """Executes the phases of one Feature against its worktree."""

    def __init__(
        self,
        config: ForgelineConfig,
        store: FeatureStore,
        registry: ProviderRegistry,
        workspace: WorktreeManager,
        bus: EventBus,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.workspace = workspace
        self.bus = bus
        self.retry_policy = RetryPolicy.from_config(config.retry)

    def _emit(self, event_type: str, feature_id: str, payload: dict | None = None) -> None:
        self.bus.emit(event_type, feature_id, str(self.store.repo_path), payload or {})

    @staticmethod
    def checkpoint(token: CancellationToken) -> None:
        if token.cancelled or token.stop_requested:
            raise RunAborted(token.reason or "stop requested")

    def _options(self, feature: Feature, prompt: str, token: CancellationToken, planning: bool) -> ExecuteOptions:
        providers = self.config.providers
        _, bare = self.registry.resolve(feature.model or providers.default_model)
        return ExecuteOptions(
            prompt=prompt,
            model=bare,
            cwd=feature.worktree_path or str(self.store.repo_path),
            system_prompt=SYSTEM_PROMPT,
            max_turns=providers.plan_max_turns if planning else providers.max_turns,
            allowed_tools=list(providers.plan_tools if planning else providers.allowed_tools),
            token=token,
            session_id=None if planning else feature.session_id,
            sandbox=providers.sandbox,
        )

    # -- stream consumption ------------------------------------------------

    def _record(self, feature_id: str, message: ProviderMessage) -> None:
        self.store.append_raw(feature_id, message.model_dump())

        text = ""
        if isinstance(message, AssistantMessage):
            lines = []
            for block in message.content:
                if block.type == "text" and block.text:
                    lines.append(block.text)
                elif block.type == "tool_use":
                    lines.append(f"\n🔧 Tool: {block.name}\n")
            text = "".join(lines)
            if text:
                self.store.append_output(feature_id, text)

        self._emit("feature_message", feature_id, {
            "message_type": message.type,
            "text": text[:500],
        })

    async def _consume(self, feature: Feature, options: ExecuteOptions, token: CancellationToken) -> str:
        """Drain one provider stream, applying each message in order. Returns the result text."""
        provider, _ = self.registry.resolve(feature.model or self.config.providers.default_model)
        status = self.store.get(feature.id).status
        session_id = feature.session_id
        result_text = ""

        def _stalled(idle: float) -> None:
            self._emit("stream_stalled", feature.id, {"idle_seconds": round(idle)})

        async with StreamWatchdog(
            self.config.providers.stream_idle_seconds, on_stall=_stalled, label=feature.id,
        ) as watchdog, aclosing(iterate_messages(provider.execute_query(options), token)) as messages:
            async for message in messages:
                watchdog.touch()
                if token.cancelled:
                    raise RunAborted(token.reason or "cancelled")
                self._record(feature.id, message)

                if message.session_id and message.session_id != session_id:
                    session_id = message.session_id
                    self.store.patch(feature.id, session_id=session_id)

                error = _message_error(message)
                if error is not None:
                    raise error

                target = apply_message(status, message)
                if target != status:
                    self.store.transition(feature.id, target)
                    status = target

                if isinstance(message, ResultMessage):
                    result_text = message.result

                self.checkpoint(token)

        self.checkpoint(token)
        return result_text

    # -- phases ------------------------------------------------------------

    async def plan(self, feature: Feature, token: CancellationToken) -> str:
        logger.info(f"[CONTROLLER] Planning {feature.id} ({feature.planning_mode})")
        self.store.patch(feature.id, plan=feature.plan.model_copy(update={"status": "generating"}))

        options = self._options(feature, build_plan_prompt(feature), token, planning=True)
        text = extract_plan(await self._consume(feature, options, token))
        if not text:
            raise ProviderStreamError("Planning run returned an empty plan")

        current = self.store.get(feature.id).plan
        plan = PlanSpec(
            status="generated",
            content=text,
            version=current.version + 1,
            feedback=current.feedback,
            generated_at=utcnow(),
        )
        self.store.patch(feature.id, plan=plan)
        self.store.append_output(feature.id, f"\n## Plan v{plan.version}\n\n{text}\n")
        self._emit("plan_generated", feature.id, {"version": plan.version})
        return text

    async def implement(self, feature: Feature, token: CancellationToken, resume: bool = False) -> str:
        """Run the agent until it reports completion, retrying network failures."""
        logger.info(f"[CONTROLLER] Implementing {feature.id} with {feature.model or self.config.providers.default_model}")

        def _on_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            current = self.store.get(feature.id)
            self.store.patch(feature.id, retry_count=current.retry_count + 1)
            self._emit("feature_retry", feature.id, {
                "attempt": state.attempt_number,
                "error": str(exc) if exc else None,
            })

        prompt_builder = build_continuation_prompt if resume else build_implementation_prompt
        result = ""
        async for attempt in self.retry_policy.retrying(on_retry=_on_retry):
            with attempt:
                self.checkpoint(token)
                current = self.store.get(feature.id)
                options = self._options(current, prompt_builder(current), token, planning=False)
                result = await self._consume(current, options, token)

        if self.store.get(feature.id).status != FeatureStatus.VERIFICATION:
            raise ProviderStreamError("Agent stream ended without a result")

        self.store.patch(feature.id, summary=result or None)
        return result

    async def verify(self, feature: Feature) -> tuple[bool, str]:
        """Run the configured test command in the worktree. No command means pass."""
        command = self.config.verification.test_command
        if not command:
            return True, "No verification command configured."
        if not feature.worktree_path:
            return False, "Feature has no worktree to verify."

        logger.info(f"[CONTROLLER] Verifying {feature.id}: {command}")
        self._emit("feature_message", feature.id, {"message_type": "verification", "text": command})
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                command,
                shell=True,
                cwd=feature.worktree_path,
                capture_output=True,
                text=True,
                timeout=self.config.verification.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return False, f"Verification timed out after {self.config.verification.timeout_seconds:.0f}s"

        output = (result.stdout + result.stderr)[-3000:]
        self.store.append_output(feature.id, f"\n## Verification (exit {result.returncode})\n\n{output}\n")
        return result.returncode == 0, output

    async def finalize(self, feature: Feature, merge: bool | None = None) -> str | None:
        """Commit worktree changes; merge to trunk when auto_merge (or merge=True)."""
        if not feature.worktree_path:
            return None
        sha = await self.workspace.commit(feature.worktree_path, f"forgeline: {feature.title}\n\nFeature {feature.id}")
        if sha:
            logger.info(f"[CONTROLLER] Committed {feature.id} at {sha[:8]}")

        should_merge = self.config.workspace.auto_merge if merge is None else merge
        if should_merge:
            await self.merge(feature)
        return sha

    async def merge(self, feature: Feature) -> str:
        if not feature.worktree_path or not feature.branch_name:
            raise ForgelineError(f"{feature.id} has no worktree to merge", hint="Nothing to merge.")
        sha = await self.workspace.merge_back(self.store.repo_path, feature.branch_name, feature.worktree_path)
        self.store.patch(feature.id, worktree_path=None)
        self._emit("worktree_merged", feature.id, {"branch": feature.branch_name, "sha": sha})
        return sha
