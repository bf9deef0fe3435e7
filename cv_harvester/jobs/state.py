"""Job lifecycle graph."""

from __future__ import annotations

from ..errors import InvalidTransitionError
from ..models import JobStatus

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})
# Statuses whose waiting tasks may be handed to workers.
DISPATCHABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(job_id, current.value, target.value)


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


__all__ = [
    "ACTIVE_STATUSES",
    "DISPATCHABLE_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "is_terminal",
]
