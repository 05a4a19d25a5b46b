import logging
from typing import Dict, List, Optional

from core.job import Job
from core.model import Model
from core.options import StorageOptions
from core.queue.database_queue import DatabaseQueue
from core.queue.queue_driver import QueueDriver
from core.state_machine import JobStateMachine

logger = logging.getLogger("RowQueue.QueueManager")

ENQUEUED_STATE = "Enqueued"
DELETED_STATE = "Deleted"


class QueueManager:
    """
    Producer side of the job storage: creates jobs and places them on queues.
    """

    def __init__(
        self,
        driver: Optional[QueueDriver] = None,
        state_machine: Optional[JobStateMachine] = None,
        options: Optional[StorageOptions] = None,
    ):
        """
        Initialize the queue manager.

        Raises:
            ConfigurationError: if the storage has not been configured
        """
        Model.ensure_configured("QueueManager")
        self.options = options or StorageOptions.from_env()
        self.driver = driver or DatabaseQueue(self.options)
        self.state_machine = state_machine or JobStateMachine(self.options)

    async def push(
        self,
        job: Job,
        queue: Optional[str] = None,
        parameters: Optional[Dict[str, Optional[str]]] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Create a job and push it to a queue.

        The job row, its parameters, its Enqueued state and its queue entry
        are written in one transaction.

        Args:
            job: Job instance to push
            queue: Queue name (uses job's queue if not specified)
            parameters: Extra named values stored with the job
            reason: Reason recorded on the Enqueued state

        Returns:
            The new job id
        """
        queue = queue or job.queue
        invocation_data, arguments = job.serialize()

        async with Model.transaction() as session:
            job_id = await self.state_machine.create_job(
                invocation_data,
                arguments,
                parameters=parameters,
                session=session,
            )
            await self._enqueue(job_id, queue, reason, session)

        job.job_id = job_id
        logger.info(f"Job {job.__class__.__name__} ({job_id}) dispatched to queue '{queue}'")
        return job_id

    async def bulk(
        self,
        jobs: List[Job],
        queue: Optional[str] = None,
    ) -> List[int]:
        """
        Push multiple jobs to the queue.

        Args:
            jobs: List of Job instances to push
            queue: Queue name (uses each job's queue if not specified)
        """
        job_ids = [await self.push(job, queue) for job in jobs]
        logger.info(f"Bulk dispatched {len(jobs)} jobs to queue")
        return job_ids

    async def requeue(self, job_id: int, queue: str = "default", reason: Optional[str] = None) -> None:
        """Place an existing job on a queue again, e.g. to retry a failed job."""
        async with Model.transaction() as session:
            await self._enqueue(job_id, queue, reason or "Requeued", session)
        logger.info(f"Job {job_id} requeued to '{queue}'")

    async def delete(self, job_id: int, reason: Optional[str] = None) -> None:
        """
        Move a job to the Deleted state. The job stays visible until the
        expiration manager removes it; a queue entry still pointing at it is
        acknowledged by the worker without running the job.
        """
        await self.state_machine.append_state(job_id, DELETED_STATE, reason or "Deleted by user")
        logger.info(f"Job {job_id} deleted")

    async def _enqueue(self, job_id: int, queue: str, reason: Optional[str], session) -> None:
        await self.state_machine.append_state(
            job_id,
            ENQUEUED_STATE,
            reason,
            data={"Queue": queue, "EnqueuedAt": self.state_machine.clock().isoformat()},
            session=session,
        )
        await self.driver.enqueue(job_id, queue, session=session)

    async def size(self, queue: str = "default") -> int:
        """
        Get the size of the queue.

        Args:
            queue: Queue name

        Returns:
            Number of jobs waiting in the queue
        """
        return await self.driver.size(queue)


_default_manager: Optional[QueueManager] = None


# Helper function for dispatching jobs
async def dispatch(job: Job, queue: Optional[str] = None) -> int:
    """
    Dispatch a job to the queue.

    Args:
        job: Job instance to dispatch

    Example:
        await dispatch(SendEmailJob(to="user@example.com", subject="Hello"))
    """
    global _default_manager
    if _default_manager is None:
        _default_manager = QueueManager()
    return await _default_manager.push(job, queue)
