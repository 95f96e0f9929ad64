"""Embedding job state machine.

This module is the single authority on which job status changes are legal
and on how a failed attempt is resolved. The queue query functions consult
it before every transition so that a job can only move
``pending -> processing -> completed | pending | failed``.
"""

from __future__ import annotations

from contextlens.database.models.job import JobStatus


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current job status.
        target: The attempted target status.
        job_id: The ID of the job that failed to transition.
    """

    def __init__(self, current: JobStatus, target: JobStatus, job_id: str | None = None):
        self.current = current
        self.target = target
        self.job_id = job_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if job_id:
            msg += f" for job {job_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.pending: {JobStatus.processing},
    JobStatus.processing: {JobStatus.completed, JobStatus.pending, JobStatus.failed},
    JobStatus.completed: set(),  # Terminal
    JobStatus.failed: set(),  # Terminal
}


def validate_transition(current: JobStatus, target: JobStatus) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current job status.
        target: Target job status.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def ensure_transition(
    current: JobStatus, target: JobStatus, job_id: str | None = None
) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not validate_transition(current, target):
        raise InvalidTransitionError(current, target, job_id)


def failure_outcome(retry_count: int, max_retries: int, permanent: bool = False) -> JobStatus:
    """Decide where a failed attempt sends the job.

    Args:
        retry_count: Retries already consumed by the job.
        max_retries: Retry budget.
        permanent: True if the error cannot be fixed by retrying.

    Returns:
        JobStatus.pending while budget remains and the error is transient,
        otherwise JobStatus.failed.
    """
    if permanent or retry_count >= max_retries:
        return JobStatus.failed
    return JobStatus.pending
