import asyncio
import logging
import os
import signal
import socket
import traceback
from typing import List, Optional

from core.exceptions import DequeueTimeoutError, OperationCancelled
from core.job import Job
from core.metadata_store import MetadataStore
from core.options import StorageOptions
from core.queue.database_queue import DatabaseQueue
from core.queue.fetched_job import FetchedJob
from core.queue.queue_driver import QueueDriver
from core.queue.queue_manager import DELETED_STATE, ENQUEUED_STATE
from core.state_machine import JobStateMachine

logger = logging.getLogger("RowQueue.QueueWorker")

PROCESSING_STATE = "Processing"
SUCCEEDED_STATE = "Succeeded"
FAILED_STATE = "Failed"
RETRY_COUNT_PARAMETER = "RetryCount"


class QueueWorker:
    """
    Queue Worker for processing jobs from queues.

    Claims one entry at a time, runs the job it points to and records the
    outcome through the state machine. An entry is only acknowledged once the
    outcome is recorded; if the worker dies first, the claim expires and
    another worker processes the job again.
    """

    def __init__(
        self,
        queues: Optional[List[str]] = None,
        max_jobs: Optional[int] = None,
        max_time: Optional[int] = None,
        max_tries: Optional[int] = None,
        timeout: int = 60,
        fetch_timeout: float = 30.0,
        driver: Optional[QueueDriver] = None,
        state_machine: Optional[JobStateMachine] = None,
        metadata: Optional[MetadataStore] = None,
        options: Optional[StorageOptions] = None,
        handle_signals: bool = True,
    ):
        """
        Initialize the queue worker.

        Args:
            queues: Names of the queues to process, in priority order
            max_jobs: Maximum number of jobs to process before stopping
            max_time: Maximum time in seconds to run before stopping
            max_tries: Maximum number of times to attempt a job
            timeout: Maximum number of seconds a job can run
            fetch_timeout: Seconds a single dequeue call may block
            handle_signals: Stop gracefully on SIGINT/SIGTERM
        """
        self.options = options or StorageOptions.from_env()
        self.queues = queues or self.options.queues
        self.max_jobs = max_jobs
        self.max_time = max_time
        self.max_tries = max_tries
        self.timeout = timeout
        self.fetch_timeout = fetch_timeout

        self.driver = driver or DatabaseQueue(self.options)
        self.state_machine = state_machine or JobStateMachine(self.options)
        self.metadata = metadata or MetadataStore()

        self.server_id = f"{socket.gethostname()}:{os.getpid()}"
        self.paused = False
        self.jobs_processed = 0
        self.start_time = None
        self._stop = asyncio.Event()

        if handle_signals:
            # Setup signal handlers for graceful shutdown
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self._stop.set()

    @property
    def should_quit(self) -> bool:
        return self._stop.is_set()

    async def work(self) -> None:
        """
        Start processing jobs from the queues.
        This is the main worker loop.
        """
        logger.info(f"Queue worker {self.server_id} started for queues {self.queues}")
        self.start_time = asyncio.get_running_loop().time()

        while not self.should_quit:
            # Check if we've reached max jobs or max time
            if self._should_stop():
                logger.info("Worker stopping due to limits")
                break

            # Check if paused
            if self.paused:
                await asyncio.sleep(1)
                continue

            try:
                fetched = await self.driver.dequeue(
                    self.queues,
                    timeout=self.fetch_timeout,
                    cancel=self._stop,
                )
            except DequeueTimeoutError:
                logger.debug(f"No jobs available on {self.queues}")
                continue
            except OperationCancelled:
                break

            try:
                async with fetched:
                    await self._process_job(fetched)
                self.jobs_processed += 1
            except Exception as e:
                logger.error(f"Error in worker loop: {str(e)}")
                logger.debug(traceback.format_exc())

        logger.info(f"Queue worker stopped. Processed {self.jobs_processed} jobs.")

    async def _process_job(self, fetched: FetchedJob) -> None:
        """
        Process a single claimed entry.

        Args:
            fetched: The claimed queue entry
        """
        job_id = fetched.job_id
        record = await fetched.job.resolve()

        if record is None:
            logger.warning(f"Job {job_id} no longer exists, dropping its queue entry")
            await fetched.remove_from_queue()
            return

        if record.state_name == DELETED_STATE:
            logger.info(f"Job {job_id} was deleted, skipping")
            await fetched.remove_from_queue()
            return

        attempts = int(await self.state_machine.get_parameter(job_id, RETRY_COUNT_PARAMETER) or 0) + 1
        await self.state_machine.set_parameter(job_id, RETRY_COUNT_PARAMETER, str(attempts))
        await self.state_machine.append_state(
            job_id,
            PROCESSING_STATE,
            data={"ServerId": self.server_id, "Queue": fetched.queue},
        )

        logger.info(f"Processing job {job_id} (attempt {attempts})")

        try:
            job = Job.unserialize(record.invocation_data, record.arguments)
        except ValueError as e:
            logger.error(f"Failed to unserialize job {job_id}: {e}")
            await self._record_failure(fetched, e)
            return

        job.job_id = job_id
        job.attempts = attempts
        max_tries = self.max_tries or job.max_tries

        try:
            await asyncio.wait_for(job.handle(), timeout=job.timeout or self.timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = TimeoutError(f"Job timed out after {job.timeout or self.timeout} seconds")
            logger.error(f"Job {job_id} failed: {str(e)}")
            logger.debug(traceback.format_exc())

            if attempts < max_tries:
                await self.state_machine.append_state(
                    job_id,
                    ENQUEUED_STATE,
                    f"Retry attempt {attempts} of {max_tries}: {str(e)}",
                    data={"Queue": fetched.queue},
                )
                await fetched.requeue()
                logger.info(f"Job {job_id} released back to queue (attempt {attempts}/{max_tries})")
            else:
                await self._fail_job(job, fetched, e)
            return

        await self.state_machine.append_state(job_id, SUCCEEDED_STATE, data={"ServerId": self.server_id})
        await self.metadata.increment_counter("stats:succeeded")
        await fetched.remove_from_queue()
        logger.info(f"Job {job_id} completed successfully")

    async def _fail_job(self, job: Job, fetched: FetchedJob, exception: Exception) -> None:
        """
        Handle a permanently failed job.

        Args:
            job: The job that failed
            fetched: The claimed queue entry
            exception: The exception that caused the failure
        """
        try:
            # Call the job's failed handler
            await job.failed(exception)
        except Exception as e:
            logger.error(f"Error in failed handler of job {job.job_id}: {str(e)}")
            logger.debug(traceback.format_exc())

        await self._record_failure(fetched, exception)

    async def _record_failure(self, fetched: FetchedJob, exception: Exception) -> None:
        await self.state_machine.append_state(
            fetched.job_id,
            FAILED_STATE,
            f"{exception.__class__.__name__}: {str(exception)}",
            data={
                "ExceptionType": exception.__class__.__name__,
                "ExceptionMessage": str(exception),
                "ServerId": self.server_id,
            },
        )
        await self.metadata.increment_counter("stats:failed")
        await fetched.remove_from_queue()
        logger.info(f"Job {fetched.job_id} moved to failed state")

    def _should_stop(self) -> bool:
        """Check if the worker should stop based on limits."""
        # Check max jobs
        if self.max_jobs and self.jobs_processed >= self.max_jobs:
            return True

        # Check max time
        if self.max_time and self.start_time:
            elapsed = asyncio.get_running_loop().time() - self.start_time
            if elapsed >= self.max_time:
                return True

        return False

    def pause(self) -> None:
        """Pause the worker."""
        self.paused = True
        logger.info("Worker paused")

    def resume(self) -> None:
        """Resume the worker."""
        self.paused = False
        logger.info("Worker resumed")

    def stop(self) -> None:
        """Stop the worker gracefully."""
        self._stop.set()
        logger.info("Worker stop requested")
