import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update

from app.models.job import JobRecord
from app.models.queue_entry import QueueEntry
from core.exceptions import ConsistencyViolation, TransientStoreError
from core.model import Model

logger = logging.getLogger("RowQueue.FetchedJob")


class JobLink:
    """
    Soft reference from a queue entry to its job.

    Queue entries carry no foreign key, so the job may have been deleted
    (e.g. expired) while the entry was waiting; ``resolve`` returns None then.
    """

    def __init__(self, job_id: int):
        self.job_id = job_id

    async def resolve(self) -> Optional[JobRecord]:
        return await Model.find(JobRecord, self.job_id)

    def __repr__(self):
        return f"<JobLink(job_id={self.job_id})>"


class FetchedJob:
    """
    A queue entry claimed by this worker.

    The fetch token proves ownership; acknowledging or releasing the entry only
    succeeds while the token still matches, i.e. while no other worker has
    re-claimed the entry after the invisibility timeout.
    """

    def __init__(
        self,
        entry_id: int,
        job_id: int,
        queue: str,
        fetch_token: str,
        fetched_at: datetime,
    ):
        self.entry_id = entry_id
        self.job_id = job_id
        self.queue = queue
        self.fetch_token = fetch_token
        self.fetched_at = fetched_at
        self.job = JobLink(job_id)
        self.removed = False
        self.requeued = False

    async def remove_from_queue(self) -> bool:
        """Acknowledge the entry by deleting it. Returns False if the claim was lost."""
        stmt = delete(QueueEntry).where(
            QueueEntry.id == self.entry_id,
            QueueEntry.fetch_token == self.fetch_token,
        )
        if await self._apply(stmt, "remove"):
            self.removed = True
            logger.debug(f"Job {self.job_id} removed from queue '{self.queue}'")
            return True
        return False

    async def requeue(self) -> bool:
        """Release the claim so another worker can fetch the entry right away."""
        stmt = (
            update(QueueEntry)
            .where(
                QueueEntry.id == self.entry_id,
                QueueEntry.fetch_token == self.fetch_token,
            )
            .values(fetched_at=None, fetch_token=None)
        )
        if await self._apply(stmt, "requeue"):
            self.requeued = True
            logger.debug(f"Job {self.job_id} requeued to '{self.queue}'")
            return True
        return False

    async def _apply(self, stmt, action: str) -> bool:
        try:
            async with Model.transaction() as session:
                result = await session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConsistencyViolation(
                        f"Fetch token for job {self.job_id} no longer matches"
                    )
            return True
        except ConsistencyViolation as e:
            logger.warning(f"Could not {action} job {self.job_id}: {e}; another worker owns it now")
            return False
        except TransientStoreError as e:
            # The claim will expire after the invisibility timeout
            logger.error(f"Could not {action} job {self.job_id}: {e}")
            return False

    async def __aenter__(self) -> "FetchedJob":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.removed and not self.requeued:
            await self.requeue()

    def __repr__(self):
        return f"<FetchedJob(job_id={self.job_id}, queue='{self.queue}', token='{self.fetch_token}')>"
