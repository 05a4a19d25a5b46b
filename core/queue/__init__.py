"""
Queue system for RowQueue - claiming and processing jobs stored in a relational database.
"""

from core.queue.queue_manager import QueueManager, dispatch
from core.queue.queue_worker import QueueWorker
from core.queue.queue_driver import QueueDriver
from core.queue.database_queue import DatabaseQueue
from core.queue.fetched_job import FetchedJob, JobLink

__all__ = [
    "QueueManager",
    "dispatch",
    "QueueWorker",
    "QueueDriver",
    "DatabaseQueue",
    "FetchedJob",
    "JobLink",
]
