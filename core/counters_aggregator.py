import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from app.models.counter import AggregatedCounter, Counter
from core.exceptions import ConsistencyViolation
from core.model import Model
from core.options import StorageOptions

logger = logging.getLogger("RowQueue.CountersAggregator")


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class CountersAggregator:
    """
    Folds raw counter rows into aggregated_counters.

    Each batch runs in one transaction: the selected raw rows are deleted by
    id, the delete must remove every one of them (otherwise a concurrent
    aggregator already folded them and the batch is rolled back), and the
    per-key sums are added to the aggregated totals. Increments inserted while
    a batch runs are not among the selected ids and wait for the next batch.
    """

    def __init__(self, options: Optional[StorageOptions] = None):
        Model.ensure_configured("CountersAggregator")
        self.options = options or StorageOptions.from_env()

    async def aggregate(self) -> int:
        """
        Fold raw counters batch by batch until a partial batch is left.

        Returns:
            Number of raw rows folded
        """
        total = 0
        while True:
            folded = await self.aggregate_batch()
            total += folded
            if folded < self.options.counters_aggregate_batch_size:
                break

        if total:
            logger.info(f"Aggregated {total} counter record(s)")
        return total

    async def aggregate_batch(self) -> int:
        """Fold up to one batch of raw counters. Returns the number of rows folded."""
        try:
            async with Model.transaction() as session:
                result = await session.execute(
                    select(Counter.id, Counter.key, Counter.value, Counter.expire_at)
                    .order_by(Counter.id)
                    .limit(self.options.counters_aggregate_batch_size)
                    .with_for_update()
                )
                rows = result.all()
                if not rows:
                    return 0

                ids = [row.id for row in rows]
                deleted = await session.execute(
                    delete(Counter)
                    .where(Counter.id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount != len(ids):
                    raise ConsistencyViolation(
                        f"Expected to fold {len(ids)} counter rows, deleted {deleted.rowcount}"
                    )

                for key, (value, expire_at) in self._sum_by_key(rows).items():
                    await self._add_to_aggregate(session, key, value, expire_at)

            return len(ids)

        except ConsistencyViolation as e:
            logger.info(f"Counter batch skipped, folded concurrently: {e}")
            return 0
        except IntegrityError:
            # Another aggregator created the same aggregated key first
            logger.info("Counter batch skipped after a concurrent insert, will retry")
            return 0

    @staticmethod
    def _sum_by_key(rows) -> Dict[str, Tuple[int, Optional[datetime]]]:
        sums: Dict[str, Tuple[int, Optional[datetime]]] = {}
        for row in rows:
            value, expire_at = sums.get(row.key, (0, None))
            sums[row.key] = (value + row.value, _later(expire_at, row.expire_at))
        return sums

    async def _add_to_aggregate(self, session, key: str, value: int, expire_at: Optional[datetime]) -> None:
        result = await session.execute(
            select(AggregatedCounter.id, AggregatedCounter.expire_at)
            .where(AggregatedCounter.key == key)
            .with_for_update()
        )
        existing = result.first()

        if existing is None:
            session.add(AggregatedCounter(key=key, value=value, expire_at=expire_at))
            await session.flush()
            return

        await session.execute(
            update(AggregatedCounter)
            .where(AggregatedCounter.id == existing.id)
            .values(
                value=AggregatedCounter.value + value,
                expire_at=_later(existing.expire_at, expire_at),
            )
            .execution_options(synchronize_session=False)
        )
