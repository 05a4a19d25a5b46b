class RowQueueError(Exception):
    """Base class for all RowQueue errors."""


class ConfigurationError(RowQueueError):
    """Raised when the storage is not configured or the options are invalid."""


class TransientStoreError(RowQueueError):
    """
    Raised when the underlying store is temporarily unavailable
    (lost connection, lock wait timeout, deadlock victim, ...).
    Callers are expected to retry with back-off.
    """


class ConsistencyViolation(RowQueueError):
    """
    Raised internally when an operation observes state that a concurrent
    worker has already changed (e.g. a fetch token no longer matches).
    It marks a lost race and is never surfaced from the queue or lock API.
    """


class OperationCancelled(RowQueueError):
    """Raised when a blocking call is aborted through its cancellation event."""


class LockTimeoutError(RowQueueError, TimeoutError):
    """Raised when a distributed lock could not be acquired before the deadline."""

    def __init__(self, resource: str, timeout: float):
        super().__init__(
            f"Timeout expired while acquiring distributed lock on '{resource}' "
            f"({timeout}s)"
        )
        self.resource = resource
        self.timeout = timeout


class DequeueTimeoutError(RowQueueError, TimeoutError):
    """Raised when no queue entry could be claimed before the deadline."""

    def __init__(self, queues, timeout: float):
        super().__init__(
            f"No job could be fetched from queues {list(queues)} within {timeout}s"
        )
        self.queues = list(queues)
        self.timeout = timeout


class JobNotFoundError(RowQueueError, LookupError):
    """Raised when a state transition or parameter targets a job that does not exist."""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} does not exist")
        self.job_id = job_id
