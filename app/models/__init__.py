from app.models.job import JobRecord
from app.models.job_parameter import JobParameter
from app.models.job_state import JobState
from app.models.queue_entry import QueueEntry
from app.models.distributed_lock import DistributedLockRow
from app.models.counter import Counter, AggregatedCounter
from app.models.structures import HashEntry, SetEntry, ListEntry, Server

__all__ = [
    "JobRecord",
    "JobParameter",
    "JobState",
    "QueueEntry",
    "DistributedLockRow",
    "Counter",
    "AggregatedCounter",
    "HashEntry",
    "SetEntry",
    "ListEntry",
    "Server",
]
