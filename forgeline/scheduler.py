"""
FORGELINE Scheduler — Runner Pool

One RunnerPool per project. Each pool owns:
  - a bounded in-flight set of RunningTasks (≤ max_concurrency)
  - a derived ready queue (recomputed from the store on every tick)
  - the per-project failure tracker that pauses auto mode

Admission runs on every tick: task completion, feature creation,
a concurrency change, an approval, or an explicit run request.
The Scheduler is just a registry of pools keyed by project path;
there is no module-level "is running" state.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from loguru import logger

from forgeline.classifier import ErrorCategory, FailureTracker, classify
from forgeline.config_loader import ForgelineConfig, load_config
from forgeline.controller import FeatureController, RunAborted
from forgeline.dependencies import are_dependencies_satisfied, sort_key
from forgeline.errors import (
    ApprovalError,
    FeatureValidationError,
    ForgelineError,
    IllegalTransitionError,
    UncommittedChangesError,
    VerificationError,
)
from forgeline.event_bus import EventBus
from forgeline.features import Feature, FeatureError, FeatureStore, utcnow
from forgeline.providers import CancellationToken
from forgeline.providers.registry import ProviderRegistry
from forgeline.state import ACTIVE_STATUSES, FeatureStatus, is_terminal
from forgeline.workspace import WorktreeManager

S = FeatureStatus

# Phases a RunningTask can start from.
START, PLAN, EXECUTE, VERIFY = "start", "plan", "execute", "verify"


@dataclass
class RunningTask:
    feature_id: str
    token: CancellationToken
    started_at: float = field(default_factory=time.monotonic)
    worktree_path: str | None = None
    task: asyncio.Task | None = None


class RunnerPool:
    """Admits, runs and aborts Features for one project."""

    def __init__(
        self,
        project_path: Path,
        config: ForgelineConfig | None = None,
        bus: EventBus | None = None,
        registry: ProviderRegistry | None = None,
        workspace: WorktreeManager | None = None,
        admit: bool = True,
    ):
        self.project_path = Path(project_path).resolve()
        self.config = config or load_config(self.project_path)
        self.bus = bus or EventBus()

        ws = self.config.workspace
        self.store = FeatureStore(self.project_path, ws.features_dir, ws.branch_prefix, self.bus)
        self.registry = registry or ProviderRegistry.from_config(self.config.providers)
        self.workspace = workspace or WorktreeManager(ws.worktree_dir, ws.base_branch)
        self.controller = FeatureController(self.config, self.store, self.registry, self.workspace, self.bus)

        self.max_concurrency = self.config.scheduler.max_concurrency
        self.auto_mode = False
        # False holds admission entirely; control calls still work.
        self.admitting = admit
        self.running: dict[str, RunningTask] = {}
        self.failures = FailureTracker.from_config(self.config.scheduler)

        self._requested: set[str] = set()
        self._resumes: dict[str, str] = {}
        self._stopping = False
        self._tick_lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._background: set[asyncio.Task] = set()

        self.recover()

    def _emit(self, event_type: str, feature_id: str | None = None, payload: dict | None = None) -> None:
        self.bus.emit(event_type, feature_id, str(self.project_path), payload or {})

    def _spawn(self, coro: Any, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -----------------------------------------------------------------------
    # Recovery
    # -----------------------------------------------------------------------

    def recover(self) -> list[str]:
        """Flag Features left mid-run by an unclean shutdown. Nothing auto-resumes."""
        orphaned = []
        for feature in self.store.list_features():
            if feature.status not in ACTIVE_STATUSES or feature.id in self.running or feature.interrupted:
                continue
            if feature.status == S.VERIFICATION and feature.skip_tests:
                # parked for manual verification, not mid-run
                continue
            self.store.patch(
                feature.id,
                interrupted=True,
                last_error=FeatureError(
                    category="interrupted",
                    message=f"Run was interrupted while {feature.status}",
                    hint=f"Resume it manually with `forgeline resume {feature.id}`, or abort it.",
                ),
            )
            self._emit("feature_interrupted", feature.id, {"status": feature.status.value})
            logger.warning(f"[SCHEDULER] {feature.id} was left {feature.status}; marked interrupted")
            orphaned.append(feature.id)
        return orphaned

    # -----------------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------------

    def _occupied(self, features: list[Feature]) -> int:
        # An in_progress Feature holds its slot until it leaves in_progress,
        # whether or not a runner is attached (orphans, pending resumes).
        detached = sum(1 for f in features if f.status == S.IN_PROGRESS and f.id not in self.running)
        return len(self.running) + detached

    def _ready(self, features: list[Feature]) -> list[Feature]:
        by_id = {f.id: f for f in features}
        ready = []
        for f in features:
            if f.id in self.running:
                continue
            if f.id in self._resumes:
                ready.append(f)
                continue
            if f.interrupted:
                continue

            if f.status in (S.BACKLOG, S.QUEUED):
                wanted = f.id in self._requested or (self.auto_mode and f.plan.status != "rejected")
                if wanted and are_dependencies_satisfied(f, by_id):
                    ready.append(f)
            elif f.status == S.WAITING_APPROVAL and f.plan.status == "approved":
                if are_dependencies_satisfied(f, by_id):
                    ready.append(f)
            elif f.status == S.PLANNING and f.plan.status == "rejected":
                ready.append(f)
        # Resumes go first: an in_progress one reclaims the slot it already holds.
        return sorted(ready, key=lambda f: (f.id not in self._resumes, sort_key(f)))

    async def tick(self) -> list[str]:
        """Admit as many ready Features as there are free slots."""
        async with self._tick_lock:
            if self._stopping or not self.admitting or self.max_concurrency <= 0:
                return []
            features = self.store.list_features()
            free = self.max_concurrency - self._occupied(features)
            admitted: list[str] = []

            for feature in self._ready(features):
                holds_slot = feature.status == S.IN_PROGRESS and feature.id in self._resumes
                if free <= 0 and not holds_slot:
                    continue
                try:
                    self._admit(feature)
                except ForgelineError as e:
                    logger.warning(f"[SCHEDULER] Could not admit {feature.id}: {e.message}")
                    continue
                admitted.append(feature.id)
                if not holds_slot:
                    free -= 1

            if admitted:
                logger.info(f"[SCHEDULER] Admitted {', '.join(admitted)} ({len(self.running)}/{self.max_concurrency})")
            return admitted

    def _admit(self, feature: Feature) -> None:
        """Claim a slot and start the runner. Called under the tick lock."""
        resume_phase = self._resumes.pop(feature.id, None)
        self._requested.discard(feature.id)

        if resume_phase:
            phase = resume_phase
        elif feature.status == S.BACKLOG:
            self.store.transition(feature.id, S.QUEUED)
            phase = START
        elif feature.status == S.QUEUED:
            phase = START
        elif feature.status == S.PLANNING:
            phase = PLAN
        else:
            phase = EXECUTE

        rt = RunningTask(feature.id, CancellationToken(), worktree_path=feature.worktree_path)
        self.running[feature.id] = rt
        rt.task = self._spawn(self._run(rt, phase, resume=resume_phase == EXECUTE), name=f"forgeline-{feature.id}")

    def _release(self, rt: RunningTask) -> None:
        """Free the slot and retire the token. Safe to call twice."""
        if self.running.get(rt.feature_id) is rt:
            del self.running[rt.feature_id]
        if not rt.token.invalidated:
            rt.token.invalidate()
        self._changed.set()

    # -----------------------------------------------------------------------
    # Runner
    # -----------------------------------------------------------------------

    async def _run(self, rt: RunningTask, phase: str, resume: bool = False) -> None:
        fid = rt.feature_id
        try:
            feature = self.store.get(fid)

            if phase == START:
                feature = await self._provision(rt, feature)
                phase = EXECUTE if feature.planning_mode == "skip" else PLAN

            if phase == PLAN:
                if await self._plan(rt):
                    return
                phase = EXECUTE

            if phase == EXECUTE:
                await self._execute(rt, resume)
                phase = VERIFY

            if phase == VERIFY:
                await self._verify(rt)

        except RunAborted:
            logger.debug(f"[SCHEDULER] {fid} stopped")
        except Exception as e:
            if rt.token.cancelled:
                logger.debug(f"[SCHEDULER] {fid} raised after abort: {e}")
            else:
                if not isinstance(e, ForgelineError):
                    logger.exception(f"[SCHEDULER] Unexpected error in {fid}")
                await self._fail(fid, e, rt.worktree_path)
        finally:
            self._release(rt)
            if not self._stopping:
                self._spawn(self.tick())

    async def _provision(self, rt: RunningTask, feature: Feature) -> Feature:
        branch = feature.branch_name or f"{self.config.workspace.branch_prefix}{feature.id}"
        record = await self.workspace.create(self.project_path, branch)
        if rt.token.cancelled or rt.token.stop_requested:
            # Aborted while git was running; nobody else knows about this worktree.
            await self._destroy_workspace(feature.id, record.path)
            FeatureController.checkpoint(rt.token)

        rt.worktree_path = record.path
        feature = self.store.patch(
            feature.id,
            worktree_path=record.path,
            branch_name=branch,
            started_at=feature.started_at or utcnow(),
        )
        self._emit("worktree_created", feature.id, {"path": record.path, "branch": branch})
        return feature

    async def _ensure_workspace(self, rt: RunningTask, feature: Feature) -> Feature:
        if feature.worktree_path and Path(feature.worktree_path).exists():
            rt.worktree_path = feature.worktree_path
            return feature
        return await self._provision(rt, feature)

    async def _plan(self, rt: RunningTask) -> bool:
        """Generate a plan. Returns True if the task parks for approval."""
        feature = await self._ensure_workspace(rt, self.store.get(rt.feature_id))
        if feature.status != S.PLANNING:
            feature = self.store.transition(feature.id, S.PLANNING)

        await self.controller.plan(feature, rt.token)
        FeatureController.checkpoint(rt.token)

        feature = self.store.get(feature.id)
        if feature.require_plan_approval:
            self.store.transition(feature.id, S.WAITING_APPROVAL)
            self._emit("plan_approval_required", feature.id, {
                "version": feature.plan.version,
                "plan": feature.plan.content,
            })
            logger.info(f"[SCHEDULER] {feature.id} parked for plan approval")
            return True

        self.store.patch(feature.id, plan=feature.plan.model_copy(update={
            "status": "approved", "approved_at": utcnow(),
        }))
        return False

    async def _execute(self, rt: RunningTask, resume: bool) -> None:
        feature = await self._ensure_workspace(rt, self.store.get(rt.feature_id))
        if feature.status != S.IN_PROGRESS:
            feature = self.store.transition(
                feature.id, S.IN_PROGRESS,
                worktree_path=feature.worktree_path,
                started_at=feature.started_at or utcnow(),
            )

        await self.controller.implement(feature, rt.token, resume=resume)
        self.failures.record_success()

    async def _verify(self, rt: RunningTask) -> None:
        feature = self.store.get(rt.feature_id)
        if feature.skip_tests:
            logger.info(f"[SCHEDULER] {feature.id} awaiting manual verification")
            return

        passed, output = await self.controller.verify(feature)
        FeatureController.checkpoint(rt.token)
        if not passed:
            await self.controller.finalize(feature, merge=False)
            raise VerificationError("Verification checks failed", raw=output)
        await self._complete(feature)

    async def _complete(self, feature: Feature) -> Feature:
        await self.controller.finalize(feature)
        done = self.store.transition(feature.id, S.VERIFIED)
        logger.info(f"[SCHEDULER] {feature.id} verified")
        return done

    async def _fail(self, feature_id: str, error: BaseException, worktree_path: str | None = None) -> None:
        if isinstance(error, VerificationError):
            verdict = None
            record = FeatureError(category="verification", message=error.message, hint=error.hint, raw=error.raw)
        else:
            verdict = classify(error)
            hint = getattr(error, "hint", "") or verdict.hint
            if verdict.is_abort:
                # _run only gets here when our own token was never cancelled.
                verdict = replace(
                    verdict,
                    category=ErrorCategory.STREAM,
                    message="Provider cancelled the run without an abort request",
                    hint="Check the provider's logs, then reset and rerun the feature.",
                )
                hint = verdict.hint
            record = FeatureError(
                category=verdict.category.value,
                message=verdict.message,
                hint=hint,
                raw=verdict.raw,
            )

        feature = self.store.get(feature_id)
        path = feature.worktree_path or worktree_path
        if is_terminal(feature.status) or feature.status in (S.BACKLOG, S.WAITING_APPROVAL):
            self.store.patch(feature_id, last_error=record)
        else:
            self.store.transition(feature_id, S.FAILED, last_error=record, worktree_path=None)
            if path:
                # Branch is kept so committed work survives a reset.
                await self._destroy_workspace(feature_id, path)

        logger.error(f"[SCHEDULER] {feature_id} failed ({record.category}): {record.message}")
        self._emit("feature_error", feature_id, {
            "category": record.category,
            "message": record.message,
            "hint": record.hint,
        })

        if verdict is not None and self.failures.record_failure(verdict) and self.auto_mode:
            self.auto_mode = False
            reason = "quota" if verdict.category.value in ("rate_limit", "billing") else "repeated failures"
            logger.warning(f"[SCHEDULER] Pausing auto mode for {self.project_path} ({reason})")
            self._emit("auto_mode_paused", payload={"reason": reason, "category": verdict.category.value})

    async def _destroy_workspace(self, feature_id: str, path: str, delete_branch: str | None = None) -> None:
        try:
            await self.workspace.destroy(path, delete_branch, repo_path=self.project_path)
        except ForgelineError as e:
            logger.warning(f"[SCHEDULER] Could not destroy {path}: {e.message}")
            return
        self._emit("worktree_destroyed", feature_id, {"path": path})

    # -----------------------------------------------------------------------
    # Control surface
    # -----------------------------------------------------------------------

    async def start_auto_mode(self, max_concurrency: int | None = None) -> None:
        if max_concurrency is not None:
            self._set_limit(max_concurrency)
        self.auto_mode = True
        self.failures.record_success()
        logger.info(f"[SCHEDULER] Auto mode on for {self.project_path} (max {self.max_concurrency})")
        self._emit("auto_mode_started", payload={"max_concurrency": self.max_concurrency})
        await self.tick()

    async def stop_auto_mode(self) -> None:
        """Stop admitting new work. Running tasks finish normally."""
        self.auto_mode = False
        logger.info(f"[SCHEDULER] Auto mode off for {self.project_path} ({len(self.running)} still running)")
        self._emit("auto_mode_stopped", payload={"running": len(self.running)})

    def _set_limit(self, n: int) -> None:
        if n < 0:
            raise FeatureValidationError("max_concurrency must be >= 0")
        self.max_concurrency = n

    async def set_max_concurrency(self, n: int) -> None:
        """Apply a new bound. Runners over it are stopped newest first; 0 stops them all."""
        self._set_limit(n)
        logger.info(f"[SCHEDULER] max_concurrency = {n}")
        excess = self._occupied(self.store.list_features()) - n
        if excess > 0:
            # self.running preserves admission order
            newest = list(self.running.values())[::-1][:excess]
            if newest:
                shed = await self._stop_tasks(newest)
                logger.info(f"[SCHEDULER] Over the new bound; cancelled {', '.join(shed) or 'nothing'}")
        await self.tick()

    async def run_feature(self, feature_id: str) -> None:
        """Explicit run request; admitted once dependencies and capacity allow."""
        feature = self.store.get(feature_id)
        if feature.status not in (S.BACKLOG, S.QUEUED):
            raise IllegalTransitionError(
                feature_id, feature.status.value, S.QUEUED.value,
                reason="only backlog features can be started",
            )
        self._requested.add(feature_id)
        await self.tick()

    async def abort_feature(self, feature_id: str) -> bool:
        """Cancel a Feature now: fire its token, mark it cancelled, discard its worktree, free its slot."""
        feature = self.store.get(feature_id)
        rt = self.running.get(feature_id)
        if rt is None and is_terminal(feature.status):
            return False

        if rt is not None:
            rt.token.cancel("aborted")
        self._requested.discard(feature_id)
        self._resumes.pop(feature_id, None)

        if not is_terminal(feature.status):
            self.store.transition(feature_id, S.CANCELLED, worktree_path=None, interrupted=False)
        path = feature.worktree_path or (rt.worktree_path if rt else None)
        if path:
            self._spawn(self._destroy_workspace(feature_id, path))
        if rt is not None:
            self._release(rt)

        logger.info(f"[SCHEDULER] Aborted {feature_id}")
        await self.tick()
        return True

    async def _abort_all(self, grace: float | None = None) -> list[str]:
        return await self._stop_tasks(list(self.running.values()), grace)

    async def _stop_tasks(self, snapshot: list[RunningTask], grace: float | None = None) -> list[str]:
        """Let each task flush its current message, then abort whatever is left."""
        grace = self.config.scheduler.stop_grace_seconds if grace is None else grace
        if not snapshot:
            return []

        self._stopping = True
        try:
            for rt in snapshot:
                rt.token.request_stop()
            tasks = [rt.task for rt in snapshot if rt.task is not None]
            if tasks and grace > 0:
                await asyncio.wait(tasks, timeout=grace)

            aborted = []
            for rt in snapshot:
                feature = self.store.get(rt.feature_id)
                if rt.feature_id in self.running or feature.status in ACTIVE_STATUSES:
                    if await self.abort_feature(rt.feature_id):
                        aborted.append(rt.feature_id)
            return aborted
        finally:
            self._stopping = False

    async def stop_all(self, grace: float | None = None) -> list[str]:
        self.auto_mode = False
        aborted = await self._abort_all(grace)
        self._emit("auto_mode_stopped", payload={"aborted": aborted})
        return aborted

    async def approve_plan(self, feature_id: str, edited_plan: str | None = None) -> Feature:
        feature = self.store.get(feature_id)
        if feature.status != S.WAITING_APPROVAL:
            raise ApprovalError(f"{feature_id} is {feature.status}, not waiting for approval")

        plan = feature.plan.model_copy(update={
            "status": "approved",
            "content": edited_plan if edited_plan is not None else feature.plan.content,
            "approved_at": utcnow(),
            "reviewed_by_user": True,
            "feedback": None,
        })
        feature = self.store.patch(feature_id, plan=plan)
        self._emit("plan_approved", feature_id, {"edited": edited_plan is not None, "version": plan.version})
        await self.tick()
        return feature

    async def reject_plan(self, feature_id: str, feedback: str | None = None) -> Feature:
        feature = self.store.get(feature_id)
        if feature.status != S.WAITING_APPROVAL:
            raise ApprovalError(f"{feature_id} is {feature.status}, not waiting for approval")

        if feedback and feedback.strip():
            plan = feature.plan.model_copy(update={
                "status": "rejected", "feedback": feedback.strip(), "reviewed_by_user": True,
            })
            feature = self.store.transition(feature_id, S.PLANNING, plan=plan)
            self._emit("plan_rejected", feature_id, {"feedback": plan.feedback, "replan": True})
            await self.tick()
            return feature

        path = feature.worktree_path
        plan = feature.plan.model_copy(update={"status": "rejected", "reviewed_by_user": True})
        feature = self.store.transition(feature_id, S.BACKLOG, plan=plan, worktree_path=None)
        if path:
            await self._destroy_workspace(feature_id, path)
        self._emit("plan_rejected", feature_id, {"feedback": None, "replan": False})
        return feature

    async def verify_feature(self, feature_id: str) -> Feature:
        """Manual verification of a Feature parked in `verification`."""
        feature = self.store.get(feature_id)
        if feature.status != S.VERIFICATION or feature_id in self.running:
            raise IllegalTransitionError(
                feature_id, feature.status.value, S.VERIFIED.value,
                reason="only a parked verification can be verified manually",
            )
        done = await self._complete(feature)
        await self.tick()
        return done

    async def resume_feature(self, feature_id: str) -> None:
        """Re-admit a Feature that a restart interrupted."""
        feature = self.store.get(feature_id)
        if not feature.interrupted:
            raise FeatureValidationError(f"{feature_id} was not interrupted")
        phase = {
            S.QUEUED: START,
            S.PLANNING: PLAN,
            S.IN_PROGRESS: EXECUTE,
            S.VERIFICATION: VERIFY,
        }.get(feature.status)
        if phase is None:
            raise FeatureValidationError(f"{feature_id} is {feature.status}; nothing to resume")

        self.store.patch(feature_id, interrupted=False, last_error=None)
        self._resumes[feature_id] = phase
        await self.tick()

    async def reset_feature(self, feature_id: str) -> Feature:
        """failed/cancelled -> backlog, clearing run state."""
        feature = self.store.get(feature_id)
        if feature.status not in (S.FAILED, S.CANCELLED):
            raise IllegalTransitionError(
                feature_id, feature.status.value, S.BACKLOG.value,
                reason="only failed or cancelled features can be reset",
            )
        path = feature.worktree_path
        feature = self.store.transition(
            feature_id, S.BACKLOG,
            last_error=None, retry_count=0, interrupted=False,
            session_id=None, summary=None, started_at=None, worktree_path=None,
            plan=feature.plan.model_copy(update={"status": "pending", "feedback": None}),
        )
        if path:
            await self._destroy_workspace(feature_id, path)
        await self.tick()
        return feature

    async def merge_feature(self, feature_id: str) -> str:
        feature = self.store.get(feature_id)
        if feature.status != S.VERIFIED:
            raise IllegalTransitionError(
                feature_id, feature.status.value, S.VERIFIED.value,
                reason="only verified features can be merged",
            )
        await self.controller.finalize(feature, merge=False)
        return await self.controller.merge(self.store.get(feature_id))

    async def _discard(self, feature_id: str, force: bool = False) -> None:
        """Abort if running, then drop the worktree and its branch.

        An idle worktree with uncommitted changes is kept unless `force`.
        """
        feature = self.store.get(feature_id)
        rt = self.running.get(feature_id)
        path = feature.worktree_path or (rt.worktree_path if rt else None)
        if rt is None and path and not force and Path(path).exists():
            record = await self.workspace.status(path)
            if record.has_changes:
                raise UncommittedChangesError(
                    f"{feature_id} has {record.changed_files_count} uncommitted change(s) in {path}",
                    hint="Commit or discard them first, or pass --force to delete anyway.",
                )
        if rt is not None:
            await self.abort_feature(feature_id)
            if rt.task is not None:
                # the runner may still flush output into the feature dir
                await asyncio.wait({rt.task})
        if path:
            await self._destroy_workspace(feature_id, path, feature.branch_name)

    async def delete_feature(self, feature_id: str, force: bool = False) -> bool:
        await self._discard(feature_id, force=force)
        self.store.delete(feature_id)
        return True

    async def bulk_delete(self, feature_ids: list[str], force: bool = False) -> list[dict[str, Any]]:
        refused: dict[str, str] = {}
        for fid in feature_ids:
            if not self.store.exists(fid) or fid in refused:
                continue
            try:
                await self._discard(fid, force=force)
            except ForgelineError as e:
                logger.warning(f"[SCHEDULER] Not deleting {fid}: {e.message}")
                refused[fid] = e.message
        # store results come back in request order
        deleted = iter(await self.store.bulk_delete([fid for fid in feature_ids if fid not in refused]))
        return [
            {"feature_id": fid, "success": False, "error": refused[fid]} if fid in refused else next(deleted)
            for fid in feature_ids
        ]

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        features = self.store.list_features()
        counts: dict[str, int] = {}
        for f in features:
            counts[f.status.value] = counts.get(f.status.value, 0) + 1
        now = time.monotonic()
        return {
            "project_path": str(self.project_path),
            "auto_mode": self.auto_mode,
            "max_concurrency": self.max_concurrency,
            "running": [
                {
                    "feature_id": rt.feature_id,
                    "worktree_path": rt.worktree_path,
                    "elapsed_seconds": round(now - rt.started_at, 1),
                }
                for rt in self.running.values()
            ],
            "counts": counts,
            "interrupted": [f.id for f in features if f.interrupted],
            "waiting_approval": [f.id for f in features if f.status == S.WAITING_APPROVAL],
        }

    async def _drain_background(self) -> None:
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._background if t is not current and not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Block until nothing is running and a tick admits nothing."""

        async def _until_idle() -> None:
            while True:
                self._changed.clear()
                admitted = await self.tick()
                if not self.running and not admitted:
                    if not any(not t.done() for t in self._background):
                        return
                    await self._drain_background()
                    continue
                await self._changed.wait()

        await asyncio.wait_for(_until_idle(), timeout)
        if self.auto_mode:
            self._emit("auto_mode_idle")


class Scheduler:
    """Registry of RunnerPools keyed by resolved project path."""

    def __init__(
        self,
        bus: EventBus | None = None,
        registry: ProviderRegistry | None = None,
        workspace: WorktreeManager | None = None,
        config: ForgelineConfig | None = None,
    ):
        self.bus = bus or EventBus()
        self.registry = registry
        self.workspace = workspace
        self.config = config
        self._pools: dict[str, RunnerPool] = {}

    def pool(self, project_path: Path | str) -> RunnerPool:
        key = str(Path(project_path).resolve())
        if key not in self._pools:
            self._pools[key] = RunnerPool(
                Path(key),
                config=self.config,
                bus=self.bus,
                registry=self.registry,
                workspace=self.workspace,
            )
        return self._pools[key]

    @property
    def pools(self) -> dict[str, RunnerPool]:
        return dict(self._pools)

    async def stop_all(self) -> dict[str, list[str]]:
        return {key: await pool.stop_all() for key, pool in self._pools.items()}

    def status(self) -> dict[str, Any]:
        return {key: pool.status() for key, pool in self._pools.items()}
