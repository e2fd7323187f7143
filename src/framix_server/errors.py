"""
Render job error types.

Every error raised by the job orchestration layer inherits from JobError so
transport handlers can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Iterable


class JobError(Exception):
    """Base exception for all job-related failures."""


class DuplicateJobError(JobError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job already exists: {job_id}")


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobConflictError(JobError):
    """A requested state change is not allowed for the job's current status."""

    def __init__(self, job_id: str, *, status: str | None, reason: str, message: str) -> None:
        self.job_id = job_id
        self.status = status
        self.reason = reason
        super().__init__(message)


class NotCancellableError(JobConflictError):
    """
    Cancel was requested for a job that is not waiting in the queue.

    ``reason`` tells the caller why: ``rendering``, ``terminal``,
    ``not_queued`` or ``not_found``.
    """


class InvalidStateTransitionError(JobError):
    def __init__(self, current_state: str, target_state: str) -> None:
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(f"Invalid job state transition: {current_state} -> {target_state}")


class StorageError(JobError):
    """The job store could not durably read or write a record."""


class CollaboratorFailure(JobError):
    """The render engine reported a failure or raised."""


class TemplateValidationError(JobError):
    def __init__(self, template_ids: Iterable[str]) -> None:
        self.template_ids = list(template_ids)
        joined = ", ".join(repr(template_id) for template_id in self.template_ids)
        super().__init__(f"Invalid or unknown templateId: {joined}")
