import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from core.queue.fetched_job import FetchedJob


class QueueDriver(ABC):
    """
    Abstract base class for job queues.
    A queue holds (job, queue name) placements that workers claim one at a time.
    """

    @abstractmethod
    async def enqueue(
        self,
        job_id: int,
        queue: str = "default",
        session: Optional[AsyncSession] = None,
    ) -> None:
        """
        Place a job on a queue.

        Args:
            job_id: Identifier of an existing job
            queue: Queue name
            session: Session of an enclosing transaction; when given the entry
                is committed together with the caller's other writes
        """
        pass

    @abstractmethod
    async def dequeue(
        self,
        queues: Sequence[str],
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> FetchedJob:
        """
        Claim the next available entry, waiting until one appears.

        Args:
            queues: Queue names in priority order
            timeout: Seconds to wait before giving up
            cancel: Event that aborts the wait when set

        Returns:
            The claimed entry

        Raises:
            DequeueTimeoutError: if nothing could be claimed in time
            OperationCancelled: if ``cancel`` was set while waiting
        """
        pass

    @abstractmethod
    async def size(self, queue: str = "default") -> int:
        """
        Get the number of entries waiting to be fetched.

        Args:
            queue: Queue name

        Returns:
            Number of unclaimed entries in the queue
        """
        pass

    @abstractmethod
    async def fetched_count(self, queue: str = "default") -> int:
        """
        Get the number of entries currently claimed by workers.

        Args:
            queue: Queue name

        Returns:
            Number of claimed entries in the queue
        """
        pass

    @abstractmethod
    async def queues(self) -> List[str]:
        """Get the names of all queues that have entries."""
        pass
