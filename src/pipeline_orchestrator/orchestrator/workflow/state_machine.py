from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED},
    JobStatus.SUCCESS: set(),
    JobStatus.FAILURE: set(),
    JobStatus.SKIPPED: set(),
    JobStatus.CANCELLED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def transition(*, current: JobStatus, to: JobStatus) -> JobStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to
