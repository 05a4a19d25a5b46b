import importlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("RowQueue.Job")

# Attributes describing how a job runs, not what it works on
RESERVED_ATTRIBUTES = (
    "job_id",
    "attempts",
    "max_tries",
    "timeout",
    "queue",
)


class Job(ABC):
    """
    Base Job class that all background jobs should extend.

    A job is stored as two opaque text blobs: the invocation data (which class
    to run and how) and the arguments (the instance data it runs with).
    """

    # Maximum number of times the job may be attempted
    max_tries: int = 3

    # Number of seconds the job can run before timing out
    timeout: int = 60

    # The name of the queue the job should be sent to
    queue: str = "default"

    def __init__(self):
        """Initialize the job."""
        self.job_id: Optional[int] = None
        self.attempts: int = 0

    @abstractmethod
    async def handle(self) -> None:
        """
        Execute the job.
        This method must be implemented by all job classes.
        """
        pass

    async def failed(self, exception: Exception) -> None:
        """
        Handle a job failure.
        Override this method to perform cleanup when a job fails permanently.

        Args:
            exception: The exception that caused the job to fail
        """
        logger.error(
            f"Job {self.__class__.__name__} failed permanently: {str(exception)}"
        )

    def serialize(self) -> Tuple[str, str]:
        """
        Serialize the job for storage.

        Returns:
            (invocation_data, arguments) JSON strings
        """
        invocation_data = {
            "class": f"{self.__class__.__module__}.{self.__class__.__name__}",
            "max_tries": self.max_tries,
            "timeout": self.timeout,
            "queue": self.queue,
        }
        return json.dumps(invocation_data), json.dumps(self.get_data())

    def get_data(self) -> Dict[str, Any]:
        """
        Get the serializable data for the job.
        Override this method to include custom data that needs to be serialized.

        Returns:
            Dictionary of data to be serialized
        """
        # Get all instance attributes except private ones and job metadata
        data = {}
        for key, value in self.__dict__.items():
            if not key.startswith("_") and key not in RESERVED_ATTRIBUTES:
                data[key] = value
        return data

    @classmethod
    def unserialize(cls, invocation_data: str, arguments: str) -> "Job":
        """
        Rebuild a job from its stored invocation data and arguments.

        Raises:
            ValueError: if the invocation data does not name an importable Job class
        """
        try:
            invocation = json.loads(invocation_data)
            data = json.loads(arguments) if arguments else {}
            module_name, class_name = invocation["class"].rsplit(".", 1)
        except (ValueError, KeyError, AttributeError) as e:
            raise ValueError(f"Malformed job invocation data: {e}") from e

        try:
            module = importlib.import_module(module_name)
            job_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Cannot load job class '{invocation['class']}': {e}") from e

        if not (isinstance(job_class, type) and issubclass(job_class, Job)):
            raise ValueError(f"'{invocation['class']}' is not a Job")

        # Create job instance
        job = job_class()

        # Restore job properties
        job.max_tries = invocation.get("max_tries", 3)
        job.timeout = invocation.get("timeout", 60)
        job.queue = invocation.get("queue", "default")

        # Restore custom data
        for key, value in data.items():
            setattr(job, key, value)

        return job

    def __repr__(self):
        return f"<{self.__class__.__name__}(attempts={self.attempts}, max_tries={self.max_tries})>"
