"""
FORGELINE Feature Store

Each Feature lives in its own folder:
    <repo>/.forgeline/features/<feature-id>/feature.json

The JSON is pretty-printed so the backlog stays human-diffable.
Writes go through a temp file + os.replace, with one .bak copy of the
previous version for recovery after a torn write.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import tempfile
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from forgeline.dependencies import DEFAULT_PRIORITY, get_blocking_dependencies, would_create_cycle
from forgeline.errors import (
    DependencyError,
    DuplicateTitleError,
    FeatureNotFoundError,
    FeatureValidationError,
    ForgelineError,
    IllegalTransitionError,
    WorktreeInUseError,
)
from forgeline.event_bus import EventBus
from forgeline.state import FeatureStatus, validate_transition


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(text: str, max_len: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "feature"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class PlanSpec(BaseModel):
    status: Literal["pending", "generating", "generated", "approved", "rejected"] = "pending"
    content: str = ""
    version: int = 0
    feedback: str | None = None
    generated_at: str | None = None
    approved_at: str | None = None
    reviewed_by_user: bool = False


class FeatureError(BaseModel):
    """Last error seen on a feature: classified message plus raw diagnostic."""
    category: str
    message: str
    hint: str = ""
    raw: str | None = None


class Feature(BaseModel):
    id: str
    title: str
    description: str = ""
    category: str = "general"
    status: FeatureStatus = FeatureStatus.BACKLOG
    dependencies: list[str] = Field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    model: str | None = None
    branch_name: str | None = None
    # Set only while the feature holds a workspace.
    worktree_path: str | None = None

    planning_mode: Literal["skip", "lite", "spec", "full"] = "skip"
    require_plan_approval: bool = False
    skip_tests: bool = False
    plan: PlanSpec = Field(default_factory=PlanSpec)

    last_error: FeatureError | None = None
    session_id: str | None = None
    summary: str | None = None
    retry_count: int = 0
    interrupted: bool = False

    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)
    started_at: str | None = None

    @field_validator("dependencies")
    @classmethod
    def _as_set(cls, value: list[str]) -> list[str]:
        return sorted({v for v in value if v})

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


# Fields a user may edit through update(); runtime fields go through patch().
EDITABLE_FIELDS = frozenset({
    "title", "description", "category", "dependencies", "priority", "model",
    "branch_name", "planning_mode", "require_plan_approval", "skip_tests",
})


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class FeatureStore:
    """File-backed CRUD for the Features of one project."""

    def __init__(
        self,
        repo_path: Path,
        features_dir: str = ".forgeline/features",
        branch_prefix: str = "forgeline/",
        bus: EventBus | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.features_dir = self.repo_path / features_dir
        self.branch_prefix = branch_prefix
        self.bus = bus
        self._lock = threading.RLock()

    # -- paths -------------------------------------------------------------

    def feature_dir(self, feature_id: str) -> Path:
        return self.features_dir / feature_id

    def json_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / "feature.json"

    def output_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / "agent-output.md"

    def raw_output_path(self, feature_id: str) -> Path:
        return self.feature_dir(feature_id) / "raw-output.jsonl"

    @staticmethod
    def generate_id() -> str:
        return f"feature-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

    # -- io ----------------------------------------------------------------

    def _read(self, feature_id: str) -> Feature | None:
        path = self.json_path(feature_id)
        for candidate in (path, path.with_name(path.name + ".bak")):
            if not candidate.exists():
                continue
            try:
                return Feature.model_validate_json(candidate.read_text(encoding="utf-8"))
            except (ValidationError, ValueError, OSError) as e:
                logger.warning(f"[STORE] Unreadable {candidate}: {e}")
        return None

    def _write(self, feature: Feature) -> None:
        path = self.json_path(feature.id)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            shutil.copy2(path, path.with_name(path.name + ".bak"))

        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".feature.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(feature.model_dump_json(indent=2))
                f.write("\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _emit(self, event_type: str, feature_id: str, payload: dict | None = None) -> None:
        if self.bus:
            self.bus.emit(event_type, feature_id, str(self.repo_path), payload or {})

    # -- read --------------------------------------------------------------

    def list_features(self) -> list[Feature]:
        if not self.features_dir.exists():
            return []
        features = []
        for entry in self.features_dir.iterdir():
            if not entry.is_dir():
                continue
            feature = self._read(entry.name)
            if feature is not None:
                features.append(feature)
        return sorted(features, key=lambda f: (f.created_at, f.id))

    def by_id(self) -> dict[str, Feature]:
        return {f.id: f for f in self.list_features()}

    def exists(self, feature_id: str) -> bool:
        return self.json_path(feature_id).exists()

    def get(self, feature_id: str) -> Feature:
        feature = self._read(feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature not found: {feature_id}")
        return feature

    # -- create / update ---------------------------------------------------

    def _check_title(self, title: str, exclude_id: str | None = None) -> None:
        wanted = title.strip().casefold()
        for other in self.list_features():
            if other.id != exclude_id and other.title.casefold() == wanted:
                raise DuplicateTitleError(f"A feature titled '{other.title}' already exists ({other.id})")

    def _check_dependencies(self, feature_id: str, dependencies: list[str]) -> None:
        by_id = self.by_id()
        if feature_id in dependencies:
            raise DependencyError(f"{feature_id} cannot depend on itself")
        missing = [d for d in dependencies if d not in by_id]
        if missing:
            raise DependencyError(f"Unknown dependencies: {', '.join(missing)}")
        if would_create_cycle(feature_id, dependencies, by_id):
            raise DependencyError(f"Dependencies of {feature_id} would create a cycle")

    def create(self, title: str, **fields: Any) -> Feature:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise FeatureValidationError(f"Unknown feature fields: {', '.join(sorted(unknown))}")

        with self._lock:
            feature_id = self.generate_id()
            try:
                feature = Feature(id=feature_id, title=title, **fields)
            except ValidationError as e:
                raise FeatureValidationError(f"Invalid feature: {e.errors()[0]['msg']}", raw=str(e))

            self._check_title(feature.title)
            self._check_dependencies(feature_id, feature.dependencies)

            if not feature.branch_name:
                feature.branch_name = f"{self.branch_prefix}{slugify(feature.title)}-{feature_id[-6:]}"

            self._write(feature)

        logger.info(f"[STORE] Created {feature.id}: {feature.title}")
        self._emit("feature_created", feature.id, {"title": feature.title})
        return feature

    def update(self, feature_id: str, **changes: Any) -> Feature:
        """User-facing edit. Status changes must go through transition()."""
        if "status" in changes:
            raise FeatureValidationError("Status cannot be edited directly; use a transition.")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise FeatureValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

        with self._lock:
            current = self.get(feature_id)
            try:
                updated = Feature.model_validate({**current.model_dump(), **changes, "updated_at": utcnow()})
            except ValidationError as e:
                raise FeatureValidationError(f"Invalid feature: {e.errors()[0]['msg']}", raw=str(e))

            if updated.title.casefold() != current.title.casefold():
                self._check_title(updated.title, exclude_id=feature_id)
            if updated.dependencies != current.dependencies:
                self._check_dependencies(feature_id, updated.dependencies)

            self._write(updated)

        self._emit("feature_updated", feature_id, {"fields": sorted(changes)})
        return updated

    def patch(self, feature_id: str, **changes: Any) -> Feature:
        """Runtime bookkeeping (worktree, plan, errors, session). Never status."""
        if "status" in changes:
            raise FeatureValidationError("Status cannot be patched; use a transition.")
        with self._lock:
            current = self.get(feature_id)
            updated = current.model_copy(update={**changes, "updated_at": utcnow()})
            self._write(updated)
        return updated

    # -- transitions -------------------------------------------------------

    def transition(self, feature_id: str, target: FeatureStatus | str, **changes: Any) -> Feature:
        """
        The single validated status change.

        Replaying the same target is a no-op on status (extra fields are
        still applied, which is safe to repeat).
        """
        target = FeatureStatus(target)
        with self._lock:
            current = self.get(feature_id)
            changed = validate_transition(feature_id, current.status, target)

            if changed and target == FeatureStatus.IN_PROGRESS:
                self._guard_in_progress(current, changes.get("worktree_path", current.worktree_path))

            update = {**changes, "updated_at": utcnow(), "status": target}
            updated = current.model_copy(update=update)
            self._write(updated)

        if changed:
            logger.info(f"[STORE] {feature_id}: {current.status} -> {target}")
            self._emit("feature_status_changed", feature_id, {
                "from": current.status.value,
                "to": target.value,
            })
        return updated

    def _guard_in_progress(self, feature: Feature, worktree_path: str | None) -> None:
        by_id = self.by_id()
        blocking = get_blocking_dependencies(feature, by_id)
        if blocking:
            raise IllegalTransitionError(
                feature.id, feature.status.value, FeatureStatus.IN_PROGRESS.value,
                reason=f"dependencies not verified: {', '.join(blocking)}",
            )
        if worktree_path:
            for other in by_id.values():
                if (
                    other.id != feature.id
                    and other.status == FeatureStatus.IN_PROGRESS
                    and other.worktree_path == worktree_path
                ):
                    raise WorktreeInUseError(f"Worktree {worktree_path} is in use by {other.id}")

    # -- delete ------------------------------------------------------------

    def delete(self, feature_id: str) -> bool:
        """Delete a feature and prune it from every other feature's dependencies."""
        with self._lock:
            if not self.exists(feature_id) and not self.feature_dir(feature_id).exists():
                raise FeatureNotFoundError(f"Feature not found: {feature_id}")

            for other in self.list_features():
                if feature_id in other.dependencies:
                    pruned = [d for d in other.dependencies if d != feature_id]
                    self._write(other.model_copy(update={"dependencies": pruned, "updated_at": utcnow()}))
                    logger.debug(f"[STORE] Pruned {feature_id} from {other.id} dependencies")

            shutil.rmtree(self.feature_dir(feature_id))

        logger.info(f"[STORE] Deleted {feature_id}")
        self._emit("feature_deleted", feature_id)
        return True

    def _delete_result(self, feature_id: str) -> dict[str, Any]:
        try:
            self.delete(feature_id)
            return {"feature_id": feature_id, "success": True, "error": None}
        except (ForgelineError, OSError) as e:
            logger.warning(f"[STORE] Bulk delete failed for {feature_id}: {e}")
            return {"feature_id": feature_id, "success": False, "error": str(e)}

    async def bulk_delete(self, feature_ids: list[str], batch_size: int = 20) -> list[dict[str, Any]]:
        """Delete in fixed-size batches, in parallel within a batch."""
        results: list[dict[str, Any]] = []
        for start in range(0, len(feature_ids), batch_size):
            batch = feature_ids[start:start + batch_size]
            results.extend(await asyncio.gather(
                *(asyncio.to_thread(self._delete_result, fid) for fid in batch)
            ))
        return results

    # -- agent output ------------------------------------------------------

    def append_output(self, feature_id: str, text: str) -> None:
        path = self.output_path(feature_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)
            if not text.endswith("\n"):
                f.write("\n")

    def append_raw(self, feature_id: str, record: dict[str, Any]) -> None:
        path = self.raw_output_path(feature_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")
