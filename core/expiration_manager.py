import asyncio
import logging
import traceback
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import delete, select

from app.models.counter import AggregatedCounter
from app.models.job import JobRecord
from app.models.structures import HashEntry, ListEntry, SetEntry
from core.counters_aggregator import CountersAggregator
from core.distributed_lock import DistributedLock
from core.exceptions import LockTimeoutError
from core.model import Model, utc_now
from core.options import StorageOptions

logger = logging.getLogger("RowQueue.ExpirationManager")

# Deleting a job cascades to its parameters and states
EXPIRING_TABLES = (AggregatedCounter, JobRecord, ListEntry, SetEntry, HashEntry)

SWEEPER_LOCK = "locks:expirationmanager"


class ExpirationManager:
    """
    Background sweeper that deletes rows whose ``expire_at`` has passed.

    Each pass first folds raw counters into aggregated counters, then walks
    every expiring table deleting expired rows in bounded batches so that no
    single statement holds locks on a large part of a table. With
    ``exclusive`` set, a pass only runs while holding the sweeper lock, so
    one process sweeps at a time when several run the manager.
    """

    def __init__(
        self,
        options: Optional[StorageOptions] = None,
        check_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        aggregator: Optional[CountersAggregator] = None,
        exclusive: bool = True,
    ):
        Model.ensure_configured("ExpirationManager")
        self.options = options or StorageOptions.from_env()
        self.check_interval = (
            self.options.job_expiration_check_interval
            if check_interval is None else check_interval
        )
        self.clock = clock
        self.aggregator = aggregator or CountersAggregator(self.options)
        self.lock = DistributedLock(self.options, clock=clock) if exclusive else None
        self.passes = 0

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run a single sweeper pass.

        Returns:
            Number of deleted rows per table name
        """
        now = now or self.clock()
        await self.aggregator.aggregate()

        removed = {}
        for model in EXPIRING_TABLES:
            removed[model.__tablename__] = await self._remove_expired(model, now)

        self.passes += 1
        total = sum(removed.values())
        if total:
            logger.info(f"Removed {total} outdated record(s): {removed}")
        else:
            logger.debug("No outdated records found")
        return removed

    async def _remove_expired(self, model, now: datetime) -> int:
        batch_size = self.options.delete_batch_size
        removed = 0

        while True:
            async with Model.transaction() as session:
                result = await session.execute(
                    select(model.id)
                    .where(model.expire_at.is_not(None), model.expire_at <= now)
                    .order_by(model.id)
                    .limit(batch_size)
                )
                ids = list(result.scalars().all())
                if not ids:
                    break

                deleted = await session.execute(
                    delete(model)
                    .where(model.id.in_(ids), model.expire_at <= now)
                    .execution_options(synchronize_session=False)
                )
                removed += deleted.rowcount

            if len(ids) < batch_size:
                break

        if removed:
            logger.debug(f"Removed {removed} outdated record(s) from '{model.__tablename__}'")
        return removed

    async def run_exclusive(self) -> Optional[Dict[str, int]]:
        """Run a pass under the sweeper lock; returns None if another process holds it."""
        if self.lock is None:
            return await self.run_once()

        try:
            async with self.lock.hold(SWEEPER_LOCK, timeout=0):
                return await self.run_once()
        except LockTimeoutError:
            logger.debug("Another process is sweeping, skipping this pass")
            return None

    async def run(self, cancel: Optional[asyncio.Event] = None) -> None:
        """
        Sweep forever, waiting ``check_interval`` seconds between passes,
        until ``cancel`` is set. Failed passes are logged and retried on the
        next interval.
        """
        cancel = cancel or asyncio.Event()
        logger.info(f"Expiration manager started (interval: {self.check_interval}s)")

        while not cancel.is_set():
            try:
                await self.run_exclusive()
            except Exception as e:
                logger.error(f"Expiration pass failed, retrying in {self.check_interval}s: {str(e)}")
                logger.debug(traceback.format_exc())

            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Expiration manager stopped after {self.passes} pass(es)")
