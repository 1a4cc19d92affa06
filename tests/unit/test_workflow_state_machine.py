"""Unit tests for the job state machine.

Illegal transitions must fail loudly; terminal states accept nothing.
"""

from __future__ import annotations

import pytest

from pipeline_orchestrator.orchestrator.workflow.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    IllegalTransitionError,
    JobStatus,
    transition,
)


def test_pending_may_start_skip_or_cancel() -> None:
    for to in (JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED):
        assert transition(current=JobStatus.PENDING, to=to) is to


def test_transition_rejects_illegal_transitions() -> None:
    with pytest.raises(IllegalTransitionError):
        transition(current=JobStatus.PENDING, to=JobStatus.SUCCESS)
    with pytest.raises(IllegalTransitionError):
        transition(current=JobStatus.RUNNING, to=JobStatus.SKIPPED)


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_states_are_final(terminal: JobStatus) -> None:
    assert terminal.is_terminal
    assert ALLOWED_TRANSITIONS[terminal] == set()
    with pytest.raises(IllegalTransitionError):
        transition(current=terminal, to=JobStatus.RUNNING)


def test_non_terminal_states() -> None:
    assert not JobStatus.PENDING.is_terminal
    assert not JobStatus.RUNNING.is_terminal
