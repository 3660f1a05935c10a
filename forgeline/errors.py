"""
FORGELINE error taxonomy.

Every error a caller can see carries a short remediation hint.
The raw diagnostic is kept separately so it can be shown on demand.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forgeline.classifier import ClassifiedError


class ForgelineError(Exception):
    """Base class for all FORGELINE errors."""

    hint: str = ""

    def __init__(self, message: str, hint: str | None = None, raw: str | None = None):
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint
        self.raw = raw

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "hint": self.hint,
            "raw": self.raw,
        }


# ---------------------------------------------------------------------------
# User input / conflicts
# ---------------------------------------------------------------------------

class FeatureValidationError(ForgelineError):
    hint = "Check the feature fields and try again."


class FeatureNotFoundError(ForgelineError):
    hint = "List features to find a valid id."


class ConflictError(ForgelineError):
    hint = "Resolve the conflicting resource first."


class DuplicateTitleError(ConflictError):
    hint = "Pick a title that is not already used in this project."


class WorktreeInUseError(ConflictError):
    hint = "Another running feature owns this worktree. Abort it or wait for it to finish."


class DependencyError(FeatureValidationError):
    hint = "Dependencies must reference existing features and must not form a cycle."


class ApprovalError(ForgelineError):
    hint = "Only features waiting for approval can be approved or rejected."


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class IllegalTransitionError(ForgelineError):
    hint = "Reset the feature to backlog before running it again."

    def __init__(self, feature_id: str, current: str, target: str, reason: str = ""):
        message = f"Illegal transition for {feature_id}: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.feature_id = feature_id
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderInstallationError(ForgelineError):
    hint = "Install the provider CLI (or fix its path in config) and run `forgeline status`."


class ProviderStreamError(ForgelineError):
    """A backend failed mid-stream. Carries the classifier verdict."""

    def __init__(
        self,
        message: str,
        raw: str | None = None,
        classified: "ClassifiedError | None" = None,
    ):
        super().__init__(message, hint=classified.hint if classified else None, raw=raw)
        self.classified = classified


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

class WorkspaceError(ForgelineError):
    hint = "Inspect the repository with `git worktree list` and retry."


class BranchCheckedOutError(WorkspaceError):
    hint = "The branch is checked out in another worktree. Remove that worktree or use a different branch."


class LockContentionError(WorkspaceError):
    hint = "Another git operation is in flight. Wait for it or remove a stale .git/index.lock."


class NotARepositoryError(WorkspaceError):
    hint = "Point FORGELINE at a git repository (run `git init` first)."


class PermissionDeniedError(WorkspaceError):
    hint = "Check filesystem permissions on the repository and worktree directory."


class UncommittedChangesError(WorkspaceError):
    hint = "Commit or discard the worktree changes before merging or deleting it."


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationError(ForgelineError):
    """The verification command ran and reported failure."""

    hint = "Inspect the feature output, fix the branch, then reset and rerun."
