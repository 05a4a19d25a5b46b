import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.queue_entry import QueueEntry
from core.distributed_lock import DistributedLock
from core.exceptions import DequeueTimeoutError, LockTimeoutError, TransientStoreError
from core.model import Model, utc_now
from core.options import StorageOptions
from core.polling import PollingPolicy, check_cancelled
from core.queue.fetched_job import FetchedJob
from core.queue.queue_driver import QueueDriver

logger = logging.getLogger("RowQueue.DatabaseQueue")

# Consecutive lost claim races tolerated before a queue is treated as empty
MAX_CLAIM_RACES = 16


class DatabaseQueue(QueueDriver):
    """
    Database-backed queue over the job_queue table.

    An entry is available while ``fetched_at`` is NULL or older than the
    invisibility timeout. Workers claim entries with a conditional UPDATE that
    only matches while the entry is still available, so of several workers
    racing for the same row exactly one UPDATE affects it.
    """

    def __init__(
        self,
        options: Optional[StorageOptions] = None,
        polling: Optional[PollingPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        serialize_claims: bool = False,
        lock: Optional[DistributedLock] = None,
    ):
        """
        Initialize the database queue.

        Args:
            options: Storage options (read from the environment if omitted)
            polling: Back-off used while no entry is available
            clock: Source of the current UTC time
            serialize_claims: Claim under the distributed lock ``queue:<name>``
            lock: Lock used when ``serialize_claims`` is enabled
        """
        Model.ensure_configured("DatabaseQueue")
        self.options = options or StorageOptions.from_env()
        self.polling = polling or PollingPolicy.from_options(self.options)
        self.clock = clock
        self.serialize_claims = serialize_claims
        self.lock = lock
        if serialize_claims and self.lock is None:
            self.lock = DistributedLock(self.options, clock=clock)

    async def enqueue(
        self,
        job_id: int,
        queue: str = "default",
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Place a job on a queue."""
        entry = QueueEntry(job_id=job_id, queue=queue)

        if session is not None:
            session.add(entry)
            await session.flush()
        else:
            async with Model.transaction() as own_session:
                own_session.add(entry)

        logger.debug(f"Job {job_id} enqueued to '{queue}'")

    async def dequeue(
        self,
        queues: Sequence[str],
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> FetchedJob:
        """Claim the next available entry from ``queues``, polling until ``timeout``."""
        if not queues:
            raise ValueError("Queue array must be non-empty")
        if timeout is None:
            timeout = self.options.invisibility_timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0

        while True:
            check_cancelled(cancel)

            try:
                fetched = await self._claim_from(queues, deadline, cancel)
            except TransientStoreError as e:
                logger.warning(f"Store unavailable while fetching from {list(queues)}: {e}")
                fetched = None

            if fetched is not None:
                logger.debug(f"Job {fetched.job_id} fetched from queue '{fetched.queue}'")
                return fetched

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DequeueTimeoutError(queues, timeout)

            await self.polling.sleep(attempt, cancel, remaining)
            attempt += 1

    async def _claim_from(
        self,
        queues: Sequence[str],
        deadline: float,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[FetchedJob]:
        loop = asyncio.get_running_loop()
        for queue in queues:
            if self.serialize_claims:
                # The lock wait never outlives the dequeue deadline
                lock_timeout = max(0.0, min(self.options.lock_timeout, deadline - loop.time()))
                try:
                    async with self.lock.hold(f"queue:{queue}", timeout=lock_timeout, cancel=cancel):
                        fetched = await self._claim(queue)
                except LockTimeoutError:
                    logger.debug(f"Queue '{queue}' is locked by another fetcher, skipping")
                    continue
            else:
                fetched = await self._claim(queue)

            if fetched is not None:
                return fetched
        return None

    def _available(self, now: datetime):
        """Entries never claimed, or whose claim outlived the invisibility timeout."""
        expired_before = now - timedelta(seconds=self.options.invisibility_timeout)
        return or_(
            QueueEntry.fetched_at.is_(None),
            QueueEntry.fetched_at < expired_before,
        )

    async def _claim(self, queue: str) -> Optional[FetchedJob]:
        for _ in range(MAX_CLAIM_RACES):
            now = self.clock()
            available = self._available(now)
            token = str(uuid.uuid4())

            async with Model.transaction() as session:
                result = await session.execute(
                    select(QueueEntry.id, QueueEntry.job_id)
                    .where(QueueEntry.queue == queue, available)
                    .order_by(QueueEntry.id)
                    .limit(1)
                )
                candidate = result.first()
                if candidate is None:
                    return None

                claimed = await session.execute(
                    update(QueueEntry)
                    .where(QueueEntry.id == candidate.id, available)
                    .values(fetched_at=now, fetch_token=token)
                    .execution_options(synchronize_session=False)
                )
                won = claimed.rowcount == 1

            if won:
                return FetchedJob(
                    entry_id=candidate.id,
                    job_id=candidate.job_id,
                    queue=queue,
                    fetch_token=token,
                    fetched_at=now,
                )

            logger.debug(f"Lost the race for entry {candidate.id} on '{queue}', retrying")

        return None

    async def size(self, queue: str = "default") -> int:
        """Get the number of entries a fetcher could claim now, expired claims included."""
        return await Model.count(
            QueueEntry,
            QueueEntry.queue == queue,
            self._available(self.clock()),
        )

    async def fetched_count(self, queue: str = "default") -> int:
        """Get the number of entries held by a live claim."""
        return await Model.count(
            QueueEntry,
            QueueEntry.queue == queue,
            not_(self._available(self.clock())),
        )

    async def queues(self) -> List[str]:
        """Get the distinct queue names that currently have entries."""
        async with Model.transaction() as session:
            result = await session.execute(
                select(QueueEntry.queue).group_by(QueueEntry.queue).order_by(QueueEntry.queue)
            )
            return [row[0] for row in result.all()]
