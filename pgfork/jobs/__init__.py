from pgfork.jobs.service import CleanupResult, JobService, snapshot_to_dict
from pgfork.jobs.store import InvalidJobStateError, JobNotFoundError, JobStateStore
from pgfork.jobs.types import ForkJob

__all__ = [
    "CleanupResult",
    "ForkJob",
    "InvalidJobStateError",
    "JobNotFoundError",
    "JobService",
    "JobStateStore",
    "snapshot_to_dict",
]
