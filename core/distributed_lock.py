import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError

from app.models.distributed_lock import DistributedLockRow
from core.exceptions import LockTimeoutError, TransientStoreError
from core.model import Model, utc_now
from core.options import StorageOptions
from core.polling import PollingPolicy, check_cancelled

logger = logging.getLogger("RowQueue.DistributedLock")


class Lease:
    """
    A time-bounded grant over a named resource.

    The lease is advisory: once it is older than the staleness window another
    acquirer may reclaim the resource, after which releasing this lease does
    nothing.
    """

    def __init__(self, lock: "DistributedLock", resource: str, owner: str, acquired_at: datetime):
        self.resource = resource
        self.owner = owner
        self.acquired_at = acquired_at
        self._lock = lock
        self.released = False

    async def release(self) -> bool:
        return await self._lock.release(self)

    async def __aenter__(self) -> "Lease":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    def __repr__(self):
        return f"<Lease(resource='{self.resource}', acquired_at='{self.acquired_at}')>"


class DistributedLock:
    """
    Named mutual exclusion across processes, backed by the distributed_locks table.

    A resource is held while a row for it exists. Acquiring inserts the row;
    the primary key on ``resource`` makes concurrent inserts fail for all but
    one caller. Rows older than ``lock_staleness`` are deleted and replaced in
    the same transaction, so a crashed holder blocks others for a bounded time.
    """

    def __init__(
        self,
        options: Optional[StorageOptions] = None,
        polling: Optional[PollingPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        Model.ensure_configured("DistributedLock")
        self.options = options or StorageOptions.from_env()
        self.polling = polling or PollingPolicy(interval=0.05, max_interval=1.0, jitter=0.5)
        self.clock = clock

    async def acquire(
        self,
        resource: str,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Lease:
        """
        Acquire a lease on ``resource``, waiting up to ``timeout`` seconds.

        Raises:
            LockTimeoutError: if the resource is still held when the timeout expires
            OperationCancelled: if ``cancel`` is set while waiting
        """
        if timeout is None:
            timeout = self.options.lock_timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        owner = str(uuid.uuid4())
        attempt = 0

        while True:
            check_cancelled(cancel)

            try:
                acquired_at = await self._try_acquire(resource, owner)
                if acquired_at is not None:
                    logger.debug(f"Lock on '{resource}' acquired after {attempt + 1} attempt(s)")
                    return Lease(self, resource, owner, acquired_at)
            except TransientStoreError as e:
                logger.warning(f"Store unavailable while acquiring lock on '{resource}': {e}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"Timed out acquiring lock on '{resource}'")
                raise LockTimeoutError(resource, timeout)

            await self.polling.sleep(attempt, cancel, remaining)
            attempt += 1

    async def _try_acquire(self, resource: str, owner: str) -> Optional[datetime]:
        now = self.clock()
        stale_before = now - timedelta(seconds=self.options.lock_staleness)

        try:
            async with Model.transaction() as session:
                reclaimed = await session.execute(
                    delete(DistributedLockRow)
                    .where(
                        DistributedLockRow.resource == resource,
                        DistributedLockRow.created_at < stale_before,
                    )
                    .execution_options(synchronize_session=False)
                )
                if reclaimed.rowcount:
                    logger.warning(f"Reclaimed stale lock on '{resource}'")

                await session.execute(
                    insert(DistributedLockRow).values(
                        resource=resource,
                        created_at=now,
                        owner=owner,
                    )
                )
        except IntegrityError:
            return None

        return now

    async def release(self, lease: Lease) -> bool:
        """
        Release ``lease``.

        Returns False when the lease had already been reclaimed by another
        acquirer (or released before); that case is not an error.
        """
        if lease.released:
            return False

        try:
            async with Model.transaction() as session:
                result = await session.execute(
                    delete(DistributedLockRow)
                    .where(
                        DistributedLockRow.resource == lease.resource,
                        DistributedLockRow.owner == lease.owner,
                    )
                    .execution_options(synchronize_session=False)
                )
                released = result.rowcount
        except TransientStoreError as e:
            # The row will be reclaimed once it goes stale
            logger.error(f"Failed to release lock on '{lease.resource}': {e}")
            return False

        lease.released = True
        if released == 0:
            logger.info(f"Lock on '{lease.resource}' was already reclaimed, release ignored")
            return False

        logger.debug(f"Lock on '{lease.resource}' released")
        return True

    @asynccontextmanager
    async def hold(
        self,
        resource: str,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Lease]:
        """Acquire ``resource`` for the duration of the ``async with`` block."""
        lease = await self.acquire(resource, timeout, cancel)
        try:
            yield lease
        finally:
            await lease.release()
