from enum import Enum


class JobStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELED = "CANCELED"
    COMPLETED = "COMPLETED"
    DELETION_IN_PROGRESS = "DELETION_IN_PROGRESS"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


class JobExecutionStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    REJECTED = "REJECTED"
    REMOVED = "REMOVED"
    CANCELED = "CANCELED"


class Network(str, Enum):
    LTEM = "ltem"
    NBIOT = "nbiot"


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.CANCELED,
    JobStatus.COMPLETED,
    JobStatus.DELETION_IN_PROGRESS,
})
