"""Job domain enums."""

from enum import StrEnum


class JobStatus(StrEnum):
    """Job status."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


JOB_TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT}
)


def is_terminal_job_status(status: str) -> bool:
    return status in JOB_TERMINAL_STATUSES
