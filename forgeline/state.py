"""
FORGELINE Task State Machine

The validated lifecycle of a Feature. Every status change in the
system goes through validate_transition(); nothing else is allowed
to decide whether an edge exists.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from forgeline.errors import IllegalTransitionError


class FeatureStatus(str, Enum):
    BACKLOG = "backlog"
    QUEUED = "queued"
    PLANNING = "planning"
    WAITING_APPROVAL = "waiting_approval"
    IN_PROGRESS = "in_progress"
    VERIFICATION = "verification"
    VERIFIED = "verified"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


S = FeatureStatus

TRANSITIONS: dict[FeatureStatus, frozenset[FeatureStatus]] = {
    S.BACKLOG: frozenset({S.QUEUED, S.CANCELLED}),
    # queued -> in_progress: workspace provisioned, planning skipped
    # queued|planning -> failed: provisioning or plan run failed
    S.QUEUED: frozenset({S.PLANNING, S.IN_PROGRESS, S.FAILED, S.CANCELLED}),
    S.PLANNING: frozenset({S.WAITING_APPROVAL, S.IN_PROGRESS, S.FAILED, S.CANCELLED}),
    S.WAITING_APPROVAL: frozenset({S.IN_PROGRESS, S.BACKLOG, S.PLANNING, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.VERIFICATION, S.FAILED, S.CANCELLED}),
    S.VERIFICATION: frozenset({S.VERIFIED, S.FAILED, S.CANCELLED}),
    S.VERIFIED: frozenset(),
    S.FAILED: frozenset({S.BACKLOG}),
    S.CANCELLED: frozenset({S.BACKLOG}),
}

TERMINAL_STATUSES = frozenset({S.VERIFIED, S.FAILED, S.CANCELLED})

# Statuses that imply a live runner; finding one at startup means a crash.
ACTIVE_STATUSES = frozenset({S.QUEUED, S.PLANNING, S.IN_PROGRESS, S.VERIFICATION})


def is_terminal(status: FeatureStatus | str) -> bool:
    return FeatureStatus(status) in TERMINAL_STATUSES


def can_transition(current: FeatureStatus | str, target: FeatureStatus | str) -> bool:
    return FeatureStatus(target) in TRANSITIONS[FeatureStatus(current)]


def validate_transition(
    feature_id: str,
    current: FeatureStatus | str,
    target: FeatureStatus | str,
) -> bool:
    """
    Check an edge against the transition table.

    Returns False for a same-status request (an idempotent no-op),
    True for a legal edge, and raises IllegalTransitionError otherwise.
    """
    current = FeatureStatus(current)
    target = FeatureStatus(target)

    if current == target:
        return False

    if not can_transition(current, target):
        logger.warning(f"[STATE] Rejected {feature_id}: {current} -> {target}")
        raise IllegalTransitionError(feature_id, current.value, target.value)

    logger.debug(f"[STATE] {feature_id}: {current} -> {target}")
    return True
