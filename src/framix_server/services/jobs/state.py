"""
Legal state transitions for render jobs.

    pending   -> queued
    queued    -> cancelled | rendering
    rendering -> completed | failed

Terminal states accept no further transitions. Startup recovery is the one
caller allowed to move ``rendering`` back to ``queued`` and does so through
``validate_transition(..., recovering=True)``.
"""

from __future__ import annotations

from typing import FrozenSet

from framix_server.errors import InvalidStateTransitionError
from framix_server.services.jobs.types import JobStatus

TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

_TRANSITIONS: FrozenSet[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.QUEUED),
        (JobStatus.QUEUED, JobStatus.CANCELLED),
        (JobStatus.QUEUED, JobStatus.RENDERING),
        (JobStatus.RENDERING, JobStatus.COMPLETED),
        (JobStatus.RENDERING, JobStatus.FAILED),
    }
)

_RECOVERY_TRANSITIONS: FrozenSet[tuple[JobStatus, JobStatus]] = frozenset(
    {(JobStatus.RENDERING, JobStatus.QUEUED)}
)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(
    current: JobStatus, target: JobStatus, *, recovering: bool = False
) -> bool:
    if is_terminal(current):
        return False
    if (current, target) in _TRANSITIONS:
        return True
    return recovering and (current, target) in _RECOVERY_TRANSITIONS


def validate_transition(
    current: JobStatus, target: JobStatus, *, recovering: bool = False
) -> None:
    if not can_transition(current, target, recovering=recovering):
        raise InvalidStateTransitionError(current.value, target.value)
